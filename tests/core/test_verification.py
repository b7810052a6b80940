import hmac
from unittest.mock import patch

import pytest
from sqlalchemy import select

from accountlink.core.errors import ChallengeNotFound, ChallengeThrottled, CollaboratorError
from accountlink.core.resolver import IdentityResolver
from accountlink.core.verification import VerificationChallengeService, VerifyResult, generate_code
from accountlink.store.database import session_scope, build_engine, build_session_factory, init_db
from accountlink.store.models import ChallengeMode, VerificationChallengeDB


@pytest.fixture
def account_id(resolver):
    return resolver.get_or_create("tg:500").id


def _wrong(code):
    return "000000" if code != "000000" else "111111"


def _challenges(session_factory, account_id):
    with session_scope(session_factory) as db:
        return db.scalars(
            select(VerificationChallengeDB)
            .where(VerificationChallengeDB.account_id == account_id)
            .order_by(VerificationChallengeDB.issued_at)
        ).all()


def test_generate_code_is_six_digits():
    for _ in range(50):
        code = generate_code()
        assert len(code) == 6 and code.isdigit()


def test_issue_sends_code_and_stores_challenge(challenges, channel, session_factory, account_id, clock):
    code = challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")

    assert channel.sent == [{"toAddress": "ada@example.com", "code": code, "mode": "REGISTER"}]
    rows = _challenges(session_factory, account_id)
    assert len(rows) == 1
    assert rows[0].failed_attempts == 0
    assert rows[0].consumed_at is None


def test_match_consumes_and_cannot_match_twice(challenges, account_id):
    code = challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")

    first = challenges.verify(account_id, code)
    second = challenges.verify(account_id, code)

    assert first.result == VerifyResult.MATCH
    assert first.mode == ChallengeMode.REGISTER
    assert first.emailAddress == "ada@example.com"
    assert second.result == VerifyResult.NOT_FOUND


def test_issue_supersedes_previous_code(challenges, session_factory, account_id, clock):
    old = challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")
    clock.advance(minutes=1)
    new = challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")

    if old != new:
        assert challenges.verify(account_id, old).result == VerifyResult.MISMATCH
    assert challenges.verify(account_id, new).result == VerifyResult.MATCH

    rows = _challenges(session_factory, account_id)
    assert rows[0].superseded_at is not None
    assert rows[1].consumed_at is not None


def test_expired_code_is_rejected_before_comparison(challenges, session_factory, account_id, clock):
    code = challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")
    clock.advance(minutes=15)

    assert challenges.verify(account_id, code).result == VerifyResult.EXPIRED
    assert challenges.verify(account_id, _wrong(code)).result == VerifyResult.EXPIRED
    row = _challenges(session_factory, account_id)[0]
    assert row.consumed_at is None
    assert row.failed_attempts == 0


def test_mismatch_counts_attempts_then_locks(challenges, account_id):
    code = challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")

    left = [challenges.verify(account_id, _wrong(code)).attemptsLeft for _ in range(5)]
    assert left == [4, 3, 2, 1, 0]

    locked = challenges.verify(account_id, code)
    assert locked.result == VerifyResult.LOCKED


def test_new_issue_clears_lock(challenges, account_id):
    code = challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")
    for _ in range(5):
        challenges.verify(account_id, _wrong(code))

    fresh = challenges.resend(account_id)
    assert challenges.verify(account_id, fresh).result == VerifyResult.MATCH


def test_resend_reuses_mode_and_address_and_resets_expiry(challenges, channel, account_id, clock):
    challenges.issue(account_id, ChallengeMode.LINK, "bob@example.com")
    clock.advance(minutes=14)
    code = challenges.resend(account_id)
    clock.advance(minutes=14)

    assert channel.sent[-1]["toAddress"] == "bob@example.com"
    assert channel.sent[-1]["mode"] == "LINK"
    outcome = challenges.verify(account_id, code)
    assert outcome.result == VerifyResult.MATCH
    assert outcome.mode == ChallengeMode.LINK


def test_resend_without_any_challenge(challenges, account_id):
    with pytest.raises(ChallengeNotFound):
        challenges.resend(account_id)


def test_verify_without_challenge_is_not_found(challenges, account_id):
    assert challenges.verify(account_id, "123456").result == VerifyResult.NOT_FOUND


def test_delivery_failure_keeps_previous_code(challenges, channel, session_factory, account_id):
    code = challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")
    channel.fail = True

    with pytest.raises(CollaboratorError):
        challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")

    assert len(_challenges(session_factory, account_id)) == 1
    assert challenges.verify(account_id, code).result == VerifyResult.MATCH


def test_issue_throttle_reports_wait(challenges, account_id, clock):
    for _ in range(4):
        challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")
        clock.advance(minutes=5)

    with pytest.raises(ChallengeThrottled) as exc:
        challenges.resend(account_id)
    # oldest issue was 20 minutes ago; it leaves the hour window in 40
    assert exc.value.retry_after_minutes == 40

    clock.advance(minutes=41)
    assert challenges.resend(account_id)


@pytest.fixture
def file_db(tmp_path):
    """Separate connections per session, so two submissions really interleave."""
    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})
    init_db(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


def test_concurrent_right_code_matches_exactly_once(file_db, channel, clock):
    service = VerificationChallengeService(
        channel=channel, session_factory=file_db, clock=clock,
        ttl_minutes=15, max_attempts=5, max_issues_per_hour=4,
    )
    account_id = IdentityResolver(session_factory=file_db).get_or_create("tg:600").id
    code = service.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")

    real_compare = hmac.compare_digest
    started, rival = [], []

    def compare_after_rival_commits(a, b):
        # the other submission runs start to finish between our read and our update
        if not started:
            started.append(True)
            rival.append(service.verify(account_id, code))
        return real_compare(a, b)

    with patch("accountlink.core.verification.hmac.compare_digest", side_effect=compare_after_rival_commits):
        ours = service.verify(account_id, code)

    assert rival[0].result == VerifyResult.MATCH
    assert ours.result == VerifyResult.NOT_FOUND
    rows = _challenges(file_db, account_id)
    assert len(rows) == 1 and rows[0].consumed_at is not None


def test_non_ascii_digits_count_as_a_wrong_guess(challenges, account_id):
    challenges.issue(account_id, ChallengeMode.REGISTER, "ada@example.com")

    outcome = challenges.verify(account_id, "١٢٣٤٥٦")

    assert outcome.result == VerifyResult.MISMATCH
    assert outcome.attemptsLeft == 4
