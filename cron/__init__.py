"""Cron package: scheduled maintenance jobs for the NL2SQL service."""

from cron.config import config
from cron.logging import get_logger

__all__ = ["config", "get_logger"]
