"""
fittrack - offline-first sync for a personal workout tracker.

Local SQLite storage that reconciles with a per-account cloud store.
"""

from .storage import HttpRemoteStore, InMemoryRemoteStore, SQLiteLocalStore
from .sync import SyncEngine, SyncResult, SyncStatus

try:
    from importlib.metadata import version

    __version__ = version("fittrack")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "SQLiteLocalStore",
    "HttpRemoteStore",
    "InMemoryRemoteStore",
    "SyncEngine",
    "SyncResult",
    "SyncStatus",
]
