"""Session Binder: maps validated assertions to local sessions.

A session only ever comes into existence from an Assertion returned by the
Response Validator. Sessions are addressed by an opaque random token, which
is all the browser ever holds.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from samlsp.core.errors import NotAuthenticated

if TYPE_CHECKING:
    from samlsp.core.config import ServiceProviderConfig
    from samlsp.core.saml.response import Assertion

logger = logging.getLogger(__name__)

# Fallback used when none of the configured mail attributes is present
FALLBACK_MAIL_ATTRIBUTE = "email"


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class Session:
    """A local session bound to an asserted identity."""

    token: str
    name_id: str
    idp_issuer: str
    created_at: datetime
    name_id_format: str | None = None
    name_qualifier: str | None = None
    sp_name_qualifier: str | None = None
    session_index: str | None = None
    mail: str | None = None
    attributes: dict[str, list[str]] = field(default_factory=dict)
    application_token: str | None = None
    revoked_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def to_user(self) -> dict[str, Any]:
        """The user object handed to the application after login."""
        return {
            "nameID": self.name_id,
            "nameIDFormat": self.name_id_format,
            "mail": self.mail,
            "attributes": {k: list(v) for k, v in self.attributes.items()},
            "cloudToken": self.application_token,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "token": self.token,
            "name_id": self.name_id,
            "idp_issuer": self.idp_issuer,
            "created_at": self.created_at.isoformat(),
            "name_id_format": self.name_id_format,
            "name_qualifier": self.name_qualifier,
            "sp_name_qualifier": self.sp_name_qualifier,
            "session_index": self.session_index,
            "mail": self.mail,
            "attributes": {k: list(v) for k, v in self.attributes.items()},
            "application_token": self.application_token,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Create a Session from a dictionary produced by :meth:`to_dict`."""
        revoked_at = data.get("revoked_at")
        return cls(
            token=data["token"],
            name_id=data["name_id"],
            idp_issuer=data["idp_issuer"],
            created_at=datetime.fromisoformat(data["created_at"]),
            name_id_format=data.get("name_id_format"),
            name_qualifier=data.get("name_qualifier"),
            sp_name_qualifier=data.get("sp_name_qualifier"),
            session_index=data.get("session_index"),
            mail=data.get("mail"),
            attributes={k: list(v) for k, v in (data.get("attributes") or {}).items()},
            application_token=data.get("application_token"),
            revoked_at=datetime.fromisoformat(revoked_at) if revoked_at else None,
        )


class SessionStore(Protocol):
    """Contract for session persistence.

    ``revoke`` must be atomic per token: a concurrent ``get`` sees the session
    either active or revoked, and exactly one ``revoke`` call wins.
    """

    def save(self, session: Session) -> None:
        ...

    def get(self, token: str) -> Session | None:
        ...

    def revoke(self, token: str, now: datetime) -> bool:
        """Mark a session revoked. Returns False if unknown or already revoked."""
        ...

    def find_by_subject(self, name_id: str, session_index: str | None = None) -> list[Session]:
        """Active sessions for a NameID, narrowed to one session index if given."""
        ...


class MemorySessionStore:
    """In-process session store guarded by a lock."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def save(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.token] = session

    def get(self, token: str) -> Session | None:
        with self._lock:
            return self._sessions.get(token)

    def revoke(self, token: str, now: datetime) -> bool:
        with self._lock:
            session = self._sessions.get(token)
            if session is None or not session.is_active:
                return False
            self._sessions[token] = replace(session, revoked_at=now)
            return True

    def find_by_subject(self, name_id: str, session_index: str | None = None) -> list[Session]:
        with self._lock:
            return [
                s
                for s in self._sessions.values()
                if s.is_active
                and s.name_id == name_id
                and (session_index is None or s.session_index == session_index)
            ]


class SessionBinder:
    """Creates, looks up and ends sessions.

    Args:
        sp: Service Provider configuration (mail attributes, application token).
        store: Session persistence.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        sp: ServiceProviderConfig,
        store: SessionStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sp = sp
        self.store = store
        self.clock = clock

    def select_mail(self, attributes: dict[str, list[str]]) -> str | None:
        """First value of the first configured mail attribute that is present."""
        for name in (*self.sp.mail_attributes, FALLBACK_MAIL_ATTRIBUTE):
            values = attributes.get(name)
            if values:
                return values[0]
        return None

    def to_session(self, assertion: Assertion, token: str | None = None) -> Session:
        """Map an assertion to a session without persisting it.

        The mapping is deterministic: the same assertion always yields the
        same identity fields. Only the token and creation time vary.
        """
        return Session(
            token=token or new_session_token(),
            name_id=assertion.name_id,
            idp_issuer=assertion.issuer,
            created_at=self.clock(),
            name_id_format=assertion.name_id_format,
            name_qualifier=assertion.name_qualifier,
            sp_name_qualifier=assertion.sp_name_qualifier,
            session_index=assertion.session_index,
            mail=self.select_mail(assertion.attributes),
            attributes={k: list(v) for k, v in assertion.attributes.items()},
            application_token=self.sp.application_token,
        )

    def bind(self, assertion: Assertion) -> Session:
        """Create and persist a session for a validated assertion."""
        session = self.to_session(assertion)
        self.store.save(session)
        logger.info(f"Bound session for assertion {assertion.assertion_id} from {assertion.issuer}")
        return session

    def lookup(self, token: str | None) -> Session:
        """Return the active session for a token.

        Raises:
            NotAuthenticated: If the token is missing, unknown or revoked.
        """
        if not token:
            raise NotAuthenticated("No session token presented")
        session = self.store.get(token)
        if session is None:
            raise NotAuthenticated("Unknown session token")
        if not session.is_active:
            raise NotAuthenticated("Session has been revoked")
        return session

    def revoke(self, token: str) -> bool:
        """End a session. Returns False if it was unknown or already ended."""
        revoked = self.store.revoke(token, self.clock())
        if revoked:
            logger.info("Revoked local session")
        return revoked

    def find_by_subject(self, name_id: str, session_index: str | None = None) -> list[Session]:
        return self.store.find_by_subject(name_id, session_index)

    def revoke_subject(self, name_id: str, session_index: str | None = None) -> int:
        """Revoke every active session of a subject. Returns the number revoked."""
        count = sum(1 for s in self.find_by_subject(name_id, session_index) if self.revoke(s.token))
        logger.info(f"Revoked {count} session(s) on IdP logout request")
        return count
