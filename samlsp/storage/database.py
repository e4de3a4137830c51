"""SQLite engine and session handling for the ``sql`` storage backend."""

from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

ENV_DB_PATH = "SAMLSP_DB_PATH"
DEFAULT_DB_PATH = Path.home() / ".samlsp" / "samlsp.db"


class DatabaseError(Exception):
    """The session database cannot be opened or queried."""


def get_database_path() -> Path:
    """``$SAMLSP_DB_PATH`` if set, else ``~/.samlsp/samlsp.db``."""
    configured = os.environ.get(ENV_DB_PATH)
    return Path(configured).expanduser() if configured else DEFAULT_DB_PATH


def create_database_engine(db_path: Path | None = None, echo: bool = False) -> Engine:
    """Engine for a SQLite file, creating its directory if needed.

    The connection is shared across Flask's request threads.
    """
    path = db_path or get_database_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        f"sqlite:///{path}",
        echo=echo,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False},
    )


class Database:
    """Lazily opened handle on the session database.

    Nothing touches the filesystem until the first query.

    Args:
        db_path: SQLite file; see :func:`get_database_path` for the default.
        echo: Log every SQL statement.
    """

    def __init__(self, db_path: Path | None = None, echo: bool = False) -> None:
        self.path = db_path or get_database_path()
        self.echo = echo
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_database_engine(self.path, self.echo)
        return self._engine

    def get_session(self) -> Session:
        if self._sessions is None:
            self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._sessions()

    def init_db(self) -> None:
        """Create the session and pending-request tables if they are missing."""
        from samlsp.storage.models import Base

        Base.metadata.create_all(self.engine)

    def verify_connection(self) -> bool:
        """Run a trivial query.

        Raises:
            DatabaseError: The database cannot be opened or queried.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).scalar_one()
        except SQLAlchemyError as e:
            raise DatabaseError(f"cannot query {self.path}: {e}") from e
        return True

    def close(self) -> None:
        """Dispose of pooled connections; the next query reopens the file."""
        engine, self._engine, self._sessions = self._engine, None, None
        if engine is not None:
            engine.dispose()
