"""Storage module for samlsp.

Provides SQLite-backed persistence for sessions and single-use IDs, used
when several server processes must share state.
"""

from samlsp.storage.database import (
    DEFAULT_DB_PATH,
    ENV_DB_PATH,
    Database,
    DatabaseError,
    create_database_engine,
    get_database_path,
)
from samlsp.storage.models import Base, PendingRequest, SessionRecord
from samlsp.storage.stores import SQLPendingRequestStore, SQLSessionStore

__all__ = [
    # Database management
    "Database",
    "DatabaseError",
    "create_database_engine",
    "get_database_path",
    # Constants
    "DEFAULT_DB_PATH",
    "ENV_DB_PATH",
    # Models
    "Base",
    "PendingRequest",
    "SessionRecord",
    # Stores
    "SQLPendingRequestStore",
    "SQLSessionStore",
]
