"""fittrack storage backends.

Local-first storage using SQLite, plus the remote store adapters the
sync engine pushes to and pulls from.
"""

from .cloud import HttpRemoteStore, validate_backend_url
from .memory import InMemoryRemoteStore
from .serializers import from_document, to_document
from .sqlite import SQLiteLocalStore

__all__ = [
    # Local
    "SQLiteLocalStore",
    # Remote
    "HttpRemoteStore",
    "InMemoryRemoteStore",
    "validate_backend_url",
    # Documents
    "to_document",
    "from_document",
]
