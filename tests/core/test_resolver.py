import pytest
from unittest.mock import MagicMock
from sqlalchemy import func, select

from accountlink.core.errors import CollaboratorError
from accountlink.core.resolver import IdentityResolver, display_name_from_hints
from accountlink.store.auth_identity import placeholder_address
from accountlink.store.database import session_scope
from accountlink.store.models import AccountDB, AuthIdentityDB


def _count(session_factory, model):
    with session_scope(session_factory) as db:
        return db.scalar(select(func.count()).select_from(model))


def test_first_contact_provisions_unverified_account(resolver, session_factory):
    account = resolver.get_or_create("tg:1001", {"first_name": "Ada"})

    assert account.chat_identity_id == "tg:1001"
    assert account.email_verified is False
    assert account.email_address is None
    assert account.display_name == "Ada"
    with session_scope(session_factory) as db:
        identity = db.get(AuthIdentityDB, account.id)
        assert identity is not None
        assert identity.email == placeholder_address("tg:1001")


def test_get_or_create_is_idempotent(resolver, session_factory):
    first = resolver.get_or_create("tg:1001")
    second = resolver.get_or_create("tg:1001")

    assert first.id == second.id
    assert _count(session_factory, AccountDB) == 1
    assert _count(session_factory, AuthIdentityDB) == 1


def test_lost_insert_race_returns_existing_account(resolver, session_factory):
    winner = resolver.get_or_create("tg:2002")

    real_find = resolver.find
    calls = []

    def racing_find(chat_identity_id):
        # first lookup misses, as if the concurrent insert had not committed yet
        calls.append(chat_identity_id)
        return None if len(calls) == 1 else real_find(chat_identity_id)

    resolver.find = racing_find
    loser = resolver.get_or_create("tg:2002")

    assert loser.id == winner.id
    assert _count(session_factory, AccountDB) == 1


def test_provisioner_retry_reuses_identity(provisioner, session_factory):
    address = placeholder_address("tg:3003")
    a = provisioner.create(address)
    b = provisioner.create(address)

    assert a == b
    assert _count(session_factory, AuthIdentityDB) == 1


def test_provisioner_failure_creates_no_account(session_factory):
    provisioner = MagicMock()
    provisioner.create.side_effect = CollaboratorError("auth_identity_provisioner", "down")
    resolver = IdentityResolver(provisioner=provisioner, session_factory=session_factory)

    with pytest.raises(CollaboratorError):
        resolver.get_or_create("tg:4004")
    assert _count(session_factory, AccountDB) == 0


def test_placeholder_addresses_do_not_collide_after_sanitising():
    a = placeholder_address("user/1", domain="x.invalid")
    b = placeholder_address("user:1", domain="x.invalid")

    assert a != b
    assert a.startswith("chat-user-1-")
    assert a.endswith("@x.invalid")


def test_display_name_hint_order():
    assert display_name_from_hints({"username": "u", "first_name": "F"}) == "F"
    assert display_name_from_hints({"username": "  u  "}) == "u"
    assert display_name_from_hints({"first_name": "   "}) is None
    assert display_name_from_hints(None) is None
