"""Utility helpers for fittrack."""

import os
from pathlib import Path


def get_fittrack_home() -> Path:
    """Return the fittrack data directory.

    ``FITTRACK_DATA_DIR`` wins when set; otherwise ``~/.fittrack``.
    """
    override = os.environ.get("FITTRACK_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".fittrack"


def account_meta_key(name: str, account_id: str) -> str:
    """Build a per-account sync metadata key."""
    return f"{name}:{account_id}"
