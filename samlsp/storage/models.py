"""SQLAlchemy 2.x ORM models for sessions and single-use IDs."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from samlsp.core.saml.replay import PendingEntry
from samlsp.core.saml.session import Session


def to_db_time(value: datetime) -> datetime:
    """Naive UTC, the form SQLite stores and compares."""
    return value.astimezone(UTC).replace(tzinfo=None)


def from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
    }


class SessionRecord(Base):
    """A bound local session."""

    __tablename__ = "sessions"
    __table_args__ = (Index("ix_sessions_subject", "name_id", "session_index"),)

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    name_id: Mapped[str] = mapped_column(Text, nullable=False)
    idp_issuer: Mapped[str] = mapped_column(String(500), nullable=False)
    name_id_format: Mapped[str | None] = mapped_column(String(500))
    name_qualifier: Mapped[str | None] = mapped_column(String(500))
    sp_name_qualifier: Mapped[str | None] = mapped_column(String(500))
    session_index: Mapped[str | None] = mapped_column(String(255))
    mail: Mapped[str | None] = mapped_column(String(500))
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    application_token: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime)

    @classmethod
    def from_session(cls, session: Session) -> SessionRecord:
        return cls(
            token=session.token,
            name_id=session.name_id,
            idp_issuer=session.idp_issuer,
            name_id_format=session.name_id_format,
            name_qualifier=session.name_qualifier,
            sp_name_qualifier=session.sp_name_qualifier,
            session_index=session.session_index,
            mail=session.mail,
            attributes={k: list(v) for k, v in session.attributes.items()},
            application_token=session.application_token,
            created_at=to_db_time(session.created_at),
            revoked_at=to_db_time(session.revoked_at) if session.revoked_at else None,
        )

    def to_session(self) -> Session:
        return Session(
            token=self.token,
            name_id=self.name_id,
            idp_issuer=self.idp_issuer,
            created_at=from_db_time(self.created_at),
            name_id_format=self.name_id_format,
            name_qualifier=self.name_qualifier,
            sp_name_qualifier=self.sp_name_qualifier,
            session_index=self.session_index,
            mail=self.mail,
            attributes={k: list(v) for k, v in (self.attributes or {}).items()},
            application_token=self.application_token,
            revoked_at=from_db_time(self.revoked_at) if self.revoked_at else None,
        )

    def __repr__(self) -> str:
        return f"<SessionRecord(issuer='{self.idp_issuer}', revoked={self.revoked_at is not None})>"


class PendingRequest(Base):
    """A single-use ID: issued request, seen assertion or received LogoutRequest."""

    __tablename__ = "pending_requests"
    __table_args__ = (Index("ix_pending_requests_expiry", "kind", "expires_at"),)

    kind: Mapped[str] = mapped_column(String(20), primary_key=True)
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    def to_entry(self) -> PendingEntry:
        return PendingEntry(
            id=self.id,
            kind=self.kind,
            expires_at=from_db_time(self.expires_at),
            data=dict(self.data or {}),
        )

    def __repr__(self) -> str:
        return f"<PendingRequest(kind='{self.kind}', id='{self.id}')>"
