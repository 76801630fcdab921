"""Cron config from environment."""

import os


def _bool(val: str | None, default: bool = False) -> bool:
    if val is None or val.strip() == "":
        return default
    return val.strip().lower() in ("1", "true", "yes")


def _ids(val: str | None) -> list[int]:
    """Comma-separated data source ids. Non-numeric entries are dropped."""
    if val is None or val.strip() == "":
        return []
    return [int(s.strip()) for s in val.split(",") if s.strip().isdigit()]


class Config:
    """Cron configuration from env vars. Read at construction so tests can rebuild after patching os.environ."""

    def __init__(self) -> None:
        # Empty = every active data source.
        self.DATA_SOURCE_IDS: list[int] = _ids(os.getenv("DATA_SOURCE_IDS"))
        self.SYNC_FORCE: bool = _bool(os.getenv("SYNC_FORCE"))
        self.LOG_DIR: str = os.getenv("CRON_LOG_DIR", "logs")
        self.LOG_LEVEL: str = (os.getenv("CRON_LOG_LEVEL") or "INFO").upper()


config = Config()
