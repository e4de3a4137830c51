"""SQL-backed session and pending-request stores.

Single-use guarantees come from the database: an ID is consumed by the one
``DELETE`` that reports a row count of 1, and a session is revoked by the one
``UPDATE`` that finds it still active. Concurrent workers sharing the
database therefore agree on who won.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from samlsp.core.saml.replay import KIND_LOGOUT, PendingEntry
from samlsp.core.saml.session import Session
from samlsp.storage.database import Database
from samlsp.storage.models import PendingRequest, SessionRecord, to_db_time

logger = logging.getLogger(__name__)


class SQLPendingRequestStore:
    """Pending-request store in the ``pending_requests`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def add(
        self,
        id: str,
        kind: str,
        expires_at: datetime,
        data: dict[str, str] | None = None,
        now: datetime | None = None,
    ) -> bool:
        try:
            with self._db.get_session() as session, session.begin():
                if now is not None:
                    session.execute(
                        delete(PendingRequest).where(
                            PendingRequest.kind == kind,
                            PendingRequest.id == id,
                            PendingRequest.expires_at <= to_db_time(now),
                        )
                    )
                session.add(
                    PendingRequest(kind=kind, id=id, expires_at=to_db_time(expires_at), data=dict(data or {}))
                )
        except IntegrityError:
            return False
        return True

    def consume(self, id: str, kind: str, now: datetime) -> PendingEntry | None:
        with self._db.get_session() as session, session.begin():
            record = session.get(PendingRequest, (kind, id))
            if record is None:
                return None
            entry = record.to_entry()
            result = session.execute(
                delete(PendingRequest).where(PendingRequest.kind == kind, PendingRequest.id == id)
            )
            if result.rowcount != 1:
                return None
        if entry.is_expired(now):
            return None
        return entry

    def purge_expired(self, now: datetime) -> int:
        with self._db.get_session() as session, session.begin():
            result = session.execute(
                delete(PendingRequest).where(
                    PendingRequest.kind != KIND_LOGOUT,
                    PendingRequest.expires_at <= to_db_time(now),
                )
            )
            return result.rowcount

    def pop_expired(self, kind: str, now: datetime) -> list[PendingEntry]:
        popped = []
        with self._db.get_session() as session, session.begin():
            records = session.scalars(
                select(PendingRequest).where(
                    PendingRequest.kind == kind,
                    PendingRequest.expires_at <= to_db_time(now),
                )
            ).all()
            for record in records:
                entry = record.to_entry()
                result = session.execute(
                    delete(PendingRequest).where(PendingRequest.kind == kind, PendingRequest.id == entry.id)
                )
                if result.rowcount == 1:
                    popped.append(entry)
        return popped


class SQLSessionStore:
    """Session store in the ``sessions`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def save(self, session: Session) -> None:
        with self._db.get_session() as db_session, db_session.begin():
            db_session.merge(SessionRecord.from_session(session))

    def get(self, token: str) -> Session | None:
        with self._db.get_session() as db_session:
            record = db_session.get(SessionRecord, token)
            return record.to_session() if record else None

    def revoke(self, token: str, now: datetime) -> bool:
        with self._db.get_session() as db_session, db_session.begin():
            result = db_session.execute(
                update(SessionRecord)
                .where(SessionRecord.token == token, SessionRecord.revoked_at.is_(None))
                .values(revoked_at=to_db_time(now))
            )
            return result.rowcount == 1

    def find_by_subject(self, name_id: str, session_index: str | None = None) -> list[Session]:
        query = select(SessionRecord).where(
            SessionRecord.name_id == name_id,
            SessionRecord.revoked_at.is_(None),
        )
        if session_index is not None:
            query = query.where(SessionRecord.session_index == session_index)
        with self._db.get_session() as db_session:
            return [record.to_session() for record in db_session.scalars(query)]
