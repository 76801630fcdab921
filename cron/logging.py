"""Cron logging: stdout + file per script."""

import logging
from pathlib import Path

from cron.config import config


def get_logger(script_name: str, log_dir: str | None = None) -> logging.Logger:
    """Logger for cron.<script_name>, writing to stdout and <log_dir>/cron_<script_name>.log."""
    logger = logging.getLogger(f"cron.{script_name}")
    logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))
    if logger.handlers:
        return logger

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    logger.addHandler(sh)

    directory = Path(log_dir or config.LOG_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(directory / f"cron_{script_name}.log", encoding="utf-8")
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger
