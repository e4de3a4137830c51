"""Single-use storage for pending request IDs and seen assertion IDs.

Every AuthnRequest and LogoutRequest ID the SP issues is registered here and
consumed exactly once when the matching response arrives. Assertion IDs are
remembered under their own kind until the assertion expires, which is what
makes a replayed assertion detectable.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

KIND_AUTHN = "authn"
KIND_LOGOUT = "logout"
KIND_ASSERTION = "assertion"
# IDs of LogoutRequests received from the IdP
KIND_INBOUND = "inbound"


@dataclass(frozen=True)
class PendingEntry:
    """A registered single-use ID."""

    id: str
    kind: str
    expires_at: datetime
    data: dict[str, str] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class PendingRequestStore(Protocol):
    """Contract for pending-request storage.

    ``consume`` must be atomic: when two callers race on the same ID, exactly
    one of them gets the entry.
    """

    def add(
        self,
        id: str,
        kind: str,
        expires_at: datetime,
        data: dict[str, str] | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Register an ID.

        Returns False if an entry with that ID exists and has not expired at
        ``now`` (any existing entry counts when ``now`` is None).
        """
        ...

    def consume(self, id: str, kind: str, now: datetime) -> PendingEntry | None:
        """Remove and return a live entry, or None if absent or expired."""
        ...

    def purge_expired(self, now: datetime) -> int:
        """Drop expired authn and assertion entries. Returns the count removed."""
        ...

    def pop_expired(self, kind: str, now: datetime) -> list[PendingEntry]:
        """Remove and return every expired entry of one kind."""
        ...


class MemoryPendingRequestStore:
    """In-process pending-request store guarded by a lock."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], PendingEntry] = {}
        self._lock = threading.Lock()

    def add(
        self,
        id: str,
        kind: str,
        expires_at: datetime,
        data: dict[str, str] | None = None,
        now: datetime | None = None,
    ) -> bool:
        with self._lock:
            existing = self._entries.get((kind, id))
            if existing is not None and (now is None or not existing.is_expired(now)):
                return False
            self._entries[(kind, id)] = PendingEntry(id=id, kind=kind, expires_at=expires_at, data=dict(data or {}))
            return True

    def consume(self, id: str, kind: str, now: datetime) -> PendingEntry | None:
        with self._lock:
            entry = self._entries.pop((kind, id), None)
        if entry is None or entry.is_expired(now):
            return None
        return entry

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if entry.kind != KIND_LOGOUT and entry.is_expired(now)
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def pop_expired(self, kind: str, now: datetime) -> list[PendingEntry]:
        with self._lock:
            expired = [
                key for key, entry in self._entries.items() if entry.kind == kind and entry.is_expired(now)
            ]
            return [self._entries.pop(key) for key in expired]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
