"""Tests for the Session Binder and the in-memory stores."""

from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import NOW, race
from samlsp.core.errors import NotAuthenticated
from samlsp.core.saml.replay import KIND_ASSERTION, KIND_AUTHN, KIND_LOGOUT, MemoryPendingRequestStore
from samlsp.core.saml.response import Assertion
from samlsp.core.saml.session import MemorySessionStore, Session, SessionBinder


@pytest.fixture
def assertion() -> Assertion:
    return Assertion(
        assertion_id="_a1",
        issuer="https://idp.example.com/saml",
        name_id="alice@example.com",
        name_id_format="urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress",
        session_index="_session_1",
        attributes={
            "mail": ["alice@corp.example.com"],
            "urn:oid:0.9.2342.19200300.100.1.3": ["alice@example.com", "second@example.com"],
            "groups": ["admins"],
        },
    )


@pytest.fixture
def binder(sp_config, clock) -> SessionBinder:
    return SessionBinder(sp_config, MemorySessionStore(), clock)


class TestBind:
    """Assertion to session mapping."""

    def test_bind_persists_session(self, binder, assertion):
        session = binder.bind(assertion)

        assert binder.lookup(session.token) == session
        assert session.name_id == "alice@example.com"
        assert session.session_index == "_session_1"
        assert session.created_at == NOW
        assert session.application_token == "cloud-token-123"

    def test_mail_follows_configured_order(self, binder, assertion):
        assert binder.bind(assertion).mail == "alice@example.com"

    def test_mail_fallback_attribute(self, binder):
        assert binder.select_mail({"email": ["fallback@example.com"]}) == "fallback@example.com"
        assert binder.select_mail({"groups": ["admins"]}) is None

    def test_mapping_is_deterministic(self, binder, assertion):
        first = binder.to_session(assertion, token="t")
        second = binder.to_session(assertion, token="t")
        assert first == second

    def test_tokens_are_unique(self, binder, assertion):
        assert binder.bind(assertion).token != binder.bind(assertion).token

    def test_to_user(self, binder, assertion):
        user = binder.bind(assertion).to_user()

        assert user == {
            "nameID": "alice@example.com",
            "nameIDFormat": "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress",
            "mail": "alice@example.com",
            "attributes": assertion.attributes,
            "cloudToken": "cloud-token-123",
        }

    def test_session_dict_round_trip(self, binder, assertion):
        session = binder.bind(assertion)
        assert Session.from_dict(session.to_dict()) == session


class TestLookupAndRevoke:
    """Session lifecycle."""

    @pytest.mark.parametrize("token", [None, "", "unknown"])
    def test_lookup_without_session(self, binder, token):
        with pytest.raises(NotAuthenticated):
            binder.lookup(token)

    def test_revoke_once(self, binder, assertion):
        session = binder.bind(assertion)

        assert binder.revoke(session.token) is True
        assert binder.revoke(session.token) is False
        with pytest.raises(NotAuthenticated):
            binder.lookup(session.token)

    def test_concurrent_revoke_succeeds_once(self, binder, assertion):
        session = binder.bind(assertion)

        results = race(lambda: binder.revoke(session.token))

        assert results.count(True) == 1
        with pytest.raises(NotAuthenticated):
            binder.lookup(session.token)

    def test_revoke_subject_narrowed_by_session_index(self, binder, assertion):
        first = binder.bind(assertion)
        second = binder.bind(replace(assertion, session_index="_session_2"))
        other = binder.bind(replace(assertion, name_id="bob@example.com"))

        assert binder.revoke_subject("alice@example.com", "_session_2") == 1
        assert binder.lookup(first.token)
        assert binder.lookup(other.token)
        with pytest.raises(NotAuthenticated):
            binder.lookup(second.token)

    def test_revoke_subject_all_sessions(self, binder, assertion):
        binder.bind(assertion)
        binder.bind(replace(assertion, session_index="_session_2"))

        assert binder.revoke_subject("alice@example.com") == 2
        assert binder.find_by_subject("alice@example.com") == []


class TestPendingRequestStore:
    """Single-use ID storage."""

    def test_consume_exactly_once(self):
        store = MemoryPendingRequestStore()
        store.add("_r1", KIND_AUTHN, NOW + timedelta(minutes=5))

        assert store.consume("_r1", KIND_AUTHN, NOW).id == "_r1"
        assert store.consume("_r1", KIND_AUTHN, NOW) is None

    def test_kinds_are_separate(self):
        store = MemoryPendingRequestStore()
        store.add("_r1", KIND_AUTHN, NOW + timedelta(minutes=5))

        assert store.consume("_r1", KIND_LOGOUT, NOW) is None
        assert store.consume("_r1", KIND_AUTHN, NOW) is not None

    def test_expired_entry_is_not_returned(self):
        store = MemoryPendingRequestStore()
        store.add("_r1", KIND_AUTHN, NOW)

        assert store.consume("_r1", KIND_AUTHN, NOW) is None

    def test_add_refuses_live_duplicate(self):
        store = MemoryPendingRequestStore()
        assert store.add("_a1", KIND_ASSERTION, NOW + timedelta(minutes=5), now=NOW)
        assert not store.add("_a1", KIND_ASSERTION, NOW + timedelta(minutes=10), now=NOW)
        assert store.add("_a1", KIND_ASSERTION, NOW + timedelta(minutes=20), now=NOW + timedelta(minutes=6))

    def test_purge_keeps_pending_logouts(self):
        store = MemoryPendingRequestStore()
        store.add("_r1", KIND_AUTHN, NOW)
        store.add("_l1", KIND_LOGOUT, NOW, {"session_token": "t"})

        assert store.purge_expired(NOW) == 1
        popped = store.pop_expired(KIND_LOGOUT, NOW)
        assert [entry.id for entry in popped] == ["_l1"]
        assert popped[0].data == {"session_token": "t"}
        assert len(store) == 0

    def test_concurrent_consume_yields_one_entry(self):
        store = MemoryPendingRequestStore()
        store.add("_r1", KIND_AUTHN, NOW + timedelta(minutes=5))

        results = race(lambda: store.consume("_r1", KIND_AUTHN, NOW))

        assert [entry.id for entry in results if entry is not None] == ["_r1"]

    def test_concurrent_add_of_one_assertion_id_succeeds_once(self):
        store = MemoryPendingRequestStore()

        results = race(lambda: store.add("_a1", KIND_ASSERTION, NOW + timedelta(minutes=5), now=NOW))

        assert results.count(True) == 1
