"""
Verification challenges: issue, supersede, verify, resend.

Concurrency rests on the database rather than on locks:
- a partial unique index allows one active challenge per account, and issue()
  supersedes the previous one in the same transaction that inserts the new one;
- a MATCH consumes the row with a conditional UPDATE, so of two concurrent
  submissions of the right code only one sees MATCH, the other NOT_FOUND.

issue() holds its transaction open across the e-mail send and commits only
after the channel accepted the message; a failed send leaves the previous
code valid.
"""
from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import accountlink.observability.metrics as metrics
from accountlink.channel.email import HttpVerificationChannel, VerificationChannel
from accountlink.core.errors import ChallengeNotFound, ChallengeThrottled, CollaboratorError
from accountlink.observability.logging import log
from accountlink.settings import settings
from accountlink.store.database import SessionLocal, session_scope
from accountlink.store.models import ChallengeMode, VerificationChallengeDB
from accountlink.utils.time import as_utc, minutes_until, utcnow

CODE_DIGITS = 6
THROTTLE_WINDOW = timedelta(hours=1)


class VerifyResult(str, Enum):
    MATCH = "MATCH"
    MISMATCH = "MISMATCH"
    EXPIRED = "EXPIRED"
    NOT_FOUND = "NOT_FOUND"
    LOCKED = "LOCKED"  # too many wrong guesses on this challenge


@dataclass(frozen=True)
class VerifyOutcome:
    result: VerifyResult
    challengeId: Optional[str] = None
    mode: Optional[ChallengeMode] = None
    emailAddress: Optional[str] = None
    attemptsLeft: Optional[int] = None


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"


def _active(account_id: str):
    return (
        VerificationChallengeDB.account_id == account_id,
        VerificationChallengeDB.consumed_at.is_(None),
        VerificationChallengeDB.superseded_at.is_(None),
    )


class VerificationChallengeService:
    def __init__(
        self,
        channel: Optional[VerificationChannel] = None,
        session_factory=None,
        clock=utcnow,
        ttl_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
        max_issues_per_hour: Optional[int] = None,
    ):
        self.channel = channel or HttpVerificationChannel()
        self.session_factory = session_factory or SessionLocal
        self.clock = clock
        self.ttl = timedelta(minutes=int(ttl_minutes or settings.CHALLENGE_TTL_MINUTES))
        self.max_attempts = int(max_attempts or settings.VERIFY_MAX_ATTEMPTS)
        self.max_issues_per_hour = int(max_issues_per_hour or settings.CHALLENGE_MAX_ISSUES_PER_HOUR)

    # ------------------------------------------------------------------
    # issue / resend
    # ------------------------------------------------------------------
    def _check_throttle(self, db, account_id: str, now) -> None:
        since = now - THROTTLE_WINDOW
        row = db.execute(
            select(func.count(VerificationChallengeDB.id), func.min(VerificationChallengeDB.issued_at)).where(
                VerificationChallengeDB.account_id == account_id,
                VerificationChallengeDB.issued_at > since,
            )
        ).one()
        issued, oldest = int(row[0] or 0), row[1]
        if issued >= self.max_issues_per_hour:
            retry_after = minutes_until(as_utc(oldest) + THROTTLE_WINDOW, now) if oldest else 60
            metrics.increment(metrics.CHALLENGE_THROTTLED)
            log(event="challenge_throttled", accountId=account_id, issuedInWindow=issued, retryAfterMin=retry_after)
            raise ChallengeThrottled(retry_after)

    def issue(self, account_id: str, mode, email_address: str) -> str:
        mode = ChallengeMode(mode)
        now = self.clock()
        try:
            with session_scope(self.session_factory) as db:
                self._check_throttle(db, account_id, now)
                db.execute(
                    update(VerificationChallengeDB)
                    .where(*_active(account_id))
                    .values(superseded_at=now)
                    .execution_options(synchronize_session=False)
                )
                code = generate_code()
                challenge = VerificationChallengeDB(
                    account_id=account_id,
                    code=code,
                    mode=mode,
                    email_address=email_address,
                    issued_at=now,
                    expires_at=now + self.ttl,
                    failed_attempts=0,
                )
                db.add(challenge)
                db.flush()
                # delivery before commit: no committed code the user never received
                self.channel.send(email_address, code, mode.value)
        except IntegrityError as e:
            # another issue for the same account committed first
            raise CollaboratorError("account_store", "concurrent challenge issue") from e
        except SQLAlchemyError as e:
            raise CollaboratorError("account_store", str(e)[:200]) from e

        metrics.increment(metrics.CHALLENGE_ISSUED)
        log(
            event="challenge_issued",
            accountId=account_id,
            mode=mode.value,
            email=email_address,
            expiresAt=(now + self.ttl).isoformat(),
        )
        return code

    def resend(self, account_id: str) -> str:
        """Re-issue with the mode and address of the most recent challenge."""
        try:
            with session_scope(self.session_factory) as db:
                latest = db.scalars(
                    select(VerificationChallengeDB)
                    .where(VerificationChallengeDB.account_id == account_id)
                    .order_by(VerificationChallengeDB.issued_at.desc())
                ).first()
                prior = (latest.mode, latest.email_address) if latest is not None else None
        except SQLAlchemyError as e:
            raise CollaboratorError("account_store", str(e)[:200]) from e
        if prior is None:
            raise ChallengeNotFound(account_id)
        return self.issue(account_id, prior[0], prior[1])

    # ------------------------------------------------------------------
    # verify
    # ------------------------------------------------------------------
    def verify(self, account_id: str, submitted_code: str, db=None) -> VerifyOutcome:
        """Check a submitted code against the active challenge.

        With db given the check runs inside the caller's transaction (the
        caller commits); otherwise it commits on its own.
        """
        try:
            if db is not None:
                outcome = self._verify(db, account_id, submitted_code)
            else:
                with session_scope(self.session_factory) as own_db:
                    outcome = self._verify(own_db, account_id, submitted_code)
        except SQLAlchemyError as e:
            raise CollaboratorError("account_store", str(e)[:200]) from e
        metrics.record_verify_result(outcome.result.value)
        log(
            event="challenge_verified",
            accountId=account_id,
            result=outcome.result.value,
            attemptsLeft=outcome.attemptsLeft,
        )
        return outcome

    def _verify(self, db, account_id: str, submitted_code: str) -> VerifyOutcome:
        now = self.clock()
        challenge = db.scalar(select(VerificationChallengeDB).where(*_active(account_id)))
        if challenge is None:
            return VerifyOutcome(VerifyResult.NOT_FOUND)

        base = dict(challengeId=challenge.id, mode=challenge.mode, emailAddress=challenge.email_address)
        failed = int(challenge.failed_attempts or 0)
        if failed >= self.max_attempts:
            return VerifyOutcome(VerifyResult.LOCKED, attemptsLeft=0, **base)
        if as_utc(challenge.expires_at) <= as_utc(now):
            return VerifyOutcome(VerifyResult.EXPIRED, **base)

        # bytes: compare_digest rejects non-ASCII str outright
        if not hmac.compare_digest(str(challenge.code).encode("utf-8"), str(submitted_code or "").encode("utf-8")):
            db.execute(
                update(VerificationChallengeDB)
                .where(VerificationChallengeDB.id == challenge.id)
                .values(failed_attempts=VerificationChallengeDB.failed_attempts + 1)
                .execution_options(synchronize_session=False)
            )
            return VerifyOutcome(VerifyResult.MISMATCH, attemptsLeft=max(0, self.max_attempts - failed - 1), **base)

        consumed = db.execute(
            update(VerificationChallengeDB)
            .where(
                VerificationChallengeDB.id == challenge.id,
                VerificationChallengeDB.consumed_at.is_(None),
                VerificationChallengeDB.superseded_at.is_(None),
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            # a concurrent submission consumed it first
            return VerifyOutcome(VerifyResult.NOT_FOUND)
        return VerifyOutcome(VerifyResult.MATCH, **base)
