"""Logging setup for fittrack.

Two outputs under ``{data_dir}/logs``:
- ``local-{date}.log``: the regular ``fittrack`` logger hierarchy.
- ``sync-events-{date}.log``: one line per sync event, for quick auditing.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fittrack.utils import get_fittrack_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _log_dir() -> Path:
    log_dir = get_fittrack_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_fittrack_logging(account_id: str = "default", level: str = "INFO") -> logging.Logger:
    """Configure the ``fittrack`` logger with a dated file handler.

    Safe to call repeatedly; handlers are only added once. DEBUG also logs
    to the console.
    """
    level_name = (level or "INFO").upper()
    if level_name not in _VALID_LEVELS:
        level_name = "INFO"

    logger = logging.getLogger("fittrack")
    logger.setLevel(getattr(logging, level_name))

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_file = _log_dir() / f"local-{_today()}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if level_name == "DEBUG" and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    logger.debug("Logging configured for account=%s level=%s", account_id, level_name)
    return logger


def log_sync_event(event_type: str, details: str, account_id: Optional[str] = None) -> None:
    """Append a single sync event line to the daily event log."""
    timestamp = datetime.now(timezone.utc).isoformat()
    line = f"{timestamp} | {event_type} | account={account_id or 'default'} | {details}\n"
    try:
        with open(_log_dir() / f"sync-events-{_today()}.log", "a", encoding="utf-8") as f:
            f.write(line)
    except OSError as e:
        logging.getLogger(__name__).debug(f"Could not write sync event log: {e}")


def log_sync(
    account_id: Optional[str],
    uploaded: int,
    downloaded: int,
    conflicts: int,
    error: Optional[str] = None,
) -> None:
    """Record the outcome of a full sync."""
    details = f"uploaded={uploaded}, downloaded={downloaded}, conflicts={conflicts}"
    if error:
        details += f", error={error}"
    log_sync_event("sync", details, account_id=account_id)
