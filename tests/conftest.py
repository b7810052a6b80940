import os

# Settings are read at import time; pin a hermetic environment first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STATE_STORE_BACKEND"] = "memory"
os.environ["METRICS_ENABLED"] = "false"
os.environ["REPLY_DELIVERY_MODE"] = "inline"
os.environ["API_KEY"] = ""
os.environ["EMAIL_SERVICE_URL"] = ""
os.environ["CHAT_GATEWAY_URL"] = ""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import StaticPool

from accountlink.channel.email import VerificationChannel
from accountlink.core.coordinator import AccountLinkCoordinator
from accountlink.core.errors import CollaboratorError
from accountlink.core.resolver import IdentityResolver
from accountlink.core.verification import VerificationChallengeService
from accountlink.store.auth_identity import SqlAuthIdentityProvisioner
from accountlink.store.database import build_engine, build_session_factory, init_db
from accountlink.store.state_store import InMemoryConversationStateStore


class RecordingChannel(VerificationChannel):
    """Captures sent codes instead of mailing them."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to_address, code, mode):
        if self.fail:
            raise CollaboratorError("verification_channel", "mail service down")
        self.sent.append({"toAddress": to_address, "code": code, "mode": str(mode)})

    @property
    def last_code(self):
        return self.sent[-1]["code"] if self.sent else None


class MutableClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now = self.now + timedelta(**kw)


@pytest.fixture
def db_engine():
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def provisioner(session_factory):
    return SqlAuthIdentityProvisioner(session_factory)


@pytest.fixture
def resolver(provisioner, session_factory):
    return IdentityResolver(provisioner=provisioner, session_factory=session_factory)


@pytest.fixture
def challenges(channel, session_factory, clock):
    return VerificationChallengeService(
        channel=channel,
        session_factory=session_factory,
        clock=clock,
        ttl_minutes=15,
        max_attempts=5,
        max_issues_per_hour=4,
    )


@pytest.fixture
def states():
    return InMemoryConversationStateStore(ttl_sec=3600)


@pytest.fixture
def actions_run():
    return []


@pytest.fixture
def coordinator(resolver, challenges, states, session_factory, actions_run):
    def runner(action, account):
        actions_run.append((action.name, dict(action.payload), account.id))
        return f"Running {action.name}."

    return AccountLinkCoordinator(
        resolver=resolver,
        challenges=challenges,
        states=states,
        action_runner=runner,
        session_factory=session_factory,
        dedupe_window=5,
    )


@pytest.fixture
def make_verified_account(resolver, session_factory):
    """A pre-existing verified account (e.g. signed up on the web), optionally bound to a chat."""
    from accountlink.store import account_repo
    from accountlink.store.database import session_scope

    def _make(email, chat_identity_id=None):
        account = resolver.get_or_create(chat_identity_id or f"web-{email}")
        with session_scope(session_factory) as db:
            account_repo.mark_verified(db, account.id, email)
            if chat_identity_id is None:
                row = account_repo.get_by_id(db, account.id)
                row.chat_identity_id = None
        return account.id

    return _make
