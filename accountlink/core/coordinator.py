"""
AccountLinkCoordinator: the per-chat-identity state machine.

    IDLE --/start--> AWAITING_EMAIL --email--> AWAITING_CODE(REGISTER | LINK)
      ^                                              |
      +---------------- code MATCH ------------------+

Ordering rules the handlers keep:
- conversation state is saved only after the database work it describes has
  committed;
- a pending action is cleared and persisted before it runs, so it runs at
  most once even when the event is redelivered;
- any CollaboratorError ends the event with a try_again reply and the flow
  exactly as it was.
"""
import functools
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import accountlink.core.replies as replies
import accountlink.observability.metrics as metrics
import accountlink.store.account_repo as account_repo
from accountlink.core.commands import (
    CANCEL,
    RESEND,
    START,
    is_valid_code,
    is_valid_email,
    looks_like_email,
    normalize_code,
    normalize_email,
    parse_command,
)
from accountlink.core.errors import (
    ChallengeNotFound,
    ChallengeThrottled,
    CollaboratorError,
    ProvisionalAccountNotMergeable,
)
from accountlink.core.pending_actions import PendingAction, run_pending_action
from accountlink.core.resolver import IdentityResolver
from accountlink.core.state_machine import (
    AwaitingCode,
    AwaitingEmail,
    AwaitingLinkCode,
    AwaitingRegisterCode,
    ConversationState,
    Flow,
    Idle,
)
from accountlink.core.verification import VerificationChallengeService, VerifyResult
from accountlink.observability.logging import log
from accountlink.settings import settings
from accountlink.store.database import SessionLocal, session_scope
from accountlink.store.models import ChallengeMode
from accountlink.store.state_store import ConversationStateStore, get_state_store

# Outcomes that must not be remembered as "processed": a redelivery of the
# same event has to be handled again.
NOT_REMEMBERED = {"try_again", "unhandled", "duplicate"}

_VERIFY_FAILURE_OUTCOMES = {
    VerifyResult.MISMATCH: "code_mismatch",
    VerifyResult.EXPIRED: "code_expired",
    VerifyResult.NOT_FOUND: "code_not_found",
    VerifyResult.LOCKED: "code_locked",
}


@dataclass(frozen=True)
class Reply:
    text: str
    outcome: str


def event_fingerprint(chat_identity_id: str, text: str, received_at: Any,
                      event_id: Optional[str] = None) -> Optional[str]:
    """None when the event carries neither an id nor a receive time: it cannot be told apart from a repeat."""
    if event_id:
        return f"id:{event_id}"
    if received_at is None or received_at == "":
        return None
    raw = json.dumps([str(chat_identity_id), text or "", str(received_at)], ensure_ascii=False)
    return "h:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


class _Rollback(Exception):
    """Abort the code-submission transaction with the given outcome."""

    def __init__(self, outcome: str, flow: Optional[Flow] = None):
        self.outcome = outcome
        self.flow = flow
        super().__init__(outcome)


def _guarded(fn):
    """CollaboratorError -> try_again, nothing else touched."""
    @functools.wraps(fn)
    def wrapper(self, chat_identity_id, *args, **kwargs):
        try:
            return fn(self, chat_identity_id, *args, **kwargs)
        except CollaboratorError as e:
            return self._try_again(chat_identity_id, e)
    return wrapper


class AccountLinkCoordinator:
    def __init__(
        self,
        resolver: Optional[IdentityResolver] = None,
        challenges: Optional[VerificationChallengeService] = None,
        states: Optional[ConversationStateStore] = None,
        action_runner=run_pending_action,
        session_factory=None,
        dedupe_window: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.resolver = resolver or IdentityResolver(session_factory=self.session_factory)
        self.challenges = challenges or VerificationChallengeService(session_factory=self.session_factory)
        self.states = states if states is not None else get_state_store()
        self.action_runner = action_runner
        self.dedupe_window = int(dedupe_window or settings.EVENT_DEDUPE_WINDOW)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _try_again(self, chat_identity_id: str, e: CollaboratorError) -> Reply:
        metrics.record_collaborator_failure(e.collaborator, chat_identity_id)
        log(
            event="collaborator_failed",
            chatIdentityId=chat_identity_id,
            collaborator=e.collaborator,
            detail=e.detail,
        )
        return Reply(replies.render("try_again"), "try_again")

    def _save(self, state: ConversationState, flow: Flow, reason: str) -> None:
        previous = state.flowState
        state.flow = flow
        self.states.set(state)
        if previous != flow.flowState:
            log(
                event="flow_transition",
                chatIdentityId=state.chatIdentityId,
                fromState=previous,
                toState=flow.flowState,
                reason=reason,
            )

    def _ttl_minutes(self) -> int:
        return int(self.challenges.ttl.total_seconds() // 60)

    def _run_pending(self, action: PendingAction, account, chat_identity_id: str) -> Optional[str]:
        metrics.increment(metrics.PENDING_ACTION_RUN)
        try:
            return self.action_runner(action, account)
        except Exception as e:
            # the account work is committed; a failing feature handler must not undo it
            metrics.record_collaborator_failure(f"pending_action:{action.name}", chat_identity_id)
            log(
                event="pending_action_failed",
                chatIdentityId=chat_identity_id,
                action=action.name,
                error=str(e)[:200],
            )
            return None

    def _find_by_email(self, email: str, own_id: str):
        try:
            with session_scope(self.session_factory) as db:
                found = account_repo.find_verified_by_email(db, email)
                if found is None:
                    found = account_repo.find_unverified_by_email(db, email, exclude_id=own_id)
                return found
        except SQLAlchemyError as e:
            raise CollaboratorError("account_store", str(e)[:200]) from e

    def _delete_shadow_identity(self, identity_id: str, chat_identity_id: str) -> None:
        try:
            self.resolver.provisioner.delete(identity_id)
        except CollaboratorError as e:
            log(
                event="auth_identity_orphaned",
                chatIdentityId=chat_identity_id,
                identityId=identity_id,
                detail=e.detail,
            )

    # ------------------------------------------------------------------
    # inbound events
    # ------------------------------------------------------------------
    @_guarded
    def handle_event(self, chat_identity_id: str, text: str, received_at: Any = None,
                     event_id: Optional[str] = None, profile: Optional[Dict[str, Any]] = None) -> Reply:
        key = event_fingerprint(chat_identity_id, text, received_at, event_id)
        state = self.states.get(chat_identity_id)
        if key is not None and key in (state.recentEventKeys or []):
            metrics.increment(metrics.EVENT_DUPLICATE)
            log(event="event_duplicate", chatIdentityId=chat_identity_id, eventKey=key)
            return Reply((state.eventReplies or {}).get(key, ""), "duplicate")

        reply = self._route(chat_identity_id, text or "", state, profile)
        log(
            event="event_handled",
            chatIdentityId=chat_identity_id,
            outcome=reply.outcome,
            text=text,
            reply=reply.text,
        )
        if key is not None and reply.outcome not in NOT_REMEMBERED:
            self._remember(chat_identity_id, key, reply)
        return reply

    def _route(self, chat_identity_id: str, text: str, state: ConversationState,
               profile: Optional[Dict[str, Any]]) -> Reply:
        command = parse_command(text)
        if command == START:
            return self.start(chat_identity_id, profile)
        if command == RESEND:
            return self.resend(chat_identity_id)
        if command == CANCEL:
            return self.cancel(chat_identity_id)

        flow = state.flow
        if isinstance(flow, AwaitingEmail) or looks_like_email(text):
            return self.handle_email_submission(chat_identity_id, text)
        if isinstance(flow, AwaitingCode) or is_valid_code(normalize_code(text)):
            return self.handle_code_submission(chat_identity_id, text)
        return Reply("", "unhandled")

    def _remember(self, chat_identity_id: str, key: str, reply: Reply) -> None:
        # Reload: the handler may have saved a new flow.
        try:
            state = self.states.get(chat_identity_id)
            keys = [k for k in (state.recentEventKeys or []) if k != key]
            keys.append(key)
            state.recentEventKeys = keys[-self.dedupe_window:]
            replies_by_key = dict(state.eventReplies or {})
            replies_by_key[key] = reply.text
            state.eventReplies = {k: replies_by_key.get(k, "") for k in state.recentEventKeys}
            self.states.set(state)
        except CollaboratorError as e:
            # the event itself was handled; only redelivery protection is lost
            log(event="event_key_not_recorded", chatIdentityId=chat_identity_id, detail=e.detail)

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------
    @_guarded
    def start(self, chat_identity_id: str, profile_hints: Optional[Dict[str, Any]] = None) -> Reply:
        state = self.states.get(chat_identity_id)
        account = self.resolver.get_or_create(chat_identity_id, profile_hints)

        if isinstance(state.flow, AwaitingCode):
            # redelivered or repeated /start must not abandon a code already sent,
            # including a verified account re-confirming its address
            return Reply(replies.render("code_pending", email=state.flow.email), "code_pending")

        if account.email_verified:
            if isinstance(state.flow, AwaitingEmail):
                self._save(state, Idle(), "start_verified")
            return Reply(replies.render("welcome_back"), "welcome_back")

        self._save(state, AwaitingEmail(), "start")
        return Reply(replies.render("welcome"), "welcome")

    @_guarded
    def handle_email_submission(self, chat_identity_id: str, text: str) -> Reply:
        email = normalize_email(text)
        if not is_valid_email(email):
            log(event="email_invalid", chatIdentityId=chat_identity_id, email=email)
            return Reply(replies.render("invalid_email"), "invalid_email")

        state = self.states.get(chat_identity_id)
        own = self.resolver.get_or_create(chat_identity_id)
        found = self._find_by_email(email, own.id)

        if found is None or found.id == own.id:
            return self._issue(
                state, own.id, ChallengeMode.REGISTER, email,
                AwaitingRegisterCode(accountId=own.id, email=email),
            )

        if not found.email_verified:
            log(event="email_unverified_account", chatIdentityId=chat_identity_id, email=email, accountId=found.id)
            self._save(state, AwaitingEmail(), "email_unverified")
            return Reply(replies.render("email_unverified"), "email_unverified")

        if found.chat_identity_id is not None:
            metrics.increment(metrics.EMAIL_CONFLICT)
            log(event="email_conflict", chatIdentityId=chat_identity_id, email=email, accountId=found.id)
            self._save(state, AwaitingEmail(), "email_conflict")
            return Reply(replies.render("email_conflict"), "email_conflict")

        if own.email_verified:
            # a verified account is not provisional and is never merged away
            log(event="link_refused_verified", chatIdentityId=chat_identity_id, accountId=own.id, targetId=found.id)
            self._save(state, AwaitingEmail(), "already_verified")
            return Reply(replies.render("already_verified"), "already_verified")

        return self._issue(
            state, found.id, ChallengeMode.LINK, email,
            AwaitingLinkCode(provisionalAccountId=own.id, targetAccountId=found.id, email=email),
        )

    def _issue(self, state: ConversationState, account_id: str, mode: ChallengeMode, email: str, flow: Flow) -> Reply:
        try:
            self.challenges.issue(account_id, mode, email)
        except ChallengeThrottled as e:
            return Reply(replies.render("resend_throttled", minutes=e.retry_after_minutes), "resend_throttled")

        self._save(state, flow, f"challenge_{mode.value.lower()}")
        template = "code_sent_register" if mode == ChallengeMode.REGISTER else "code_sent_link"
        return Reply(replies.render(template, email=email, minutes=self._ttl_minutes()), "code_sent")

    @_guarded
    def handle_code_submission(self, chat_identity_id: str, text: str) -> Reply:
        state = self.states.get(chat_identity_id)
        flow = state.flow
        if not isinstance(flow, AwaitingCode):
            return Reply(replies.render("no_active_verification"), "no_active_verification")

        code = normalize_code(text)
        if not is_valid_code(code):
            return Reply(replies.render("invalid_code"), "invalid_code")

        linking = isinstance(flow, AwaitingLinkCode)
        expected_mode = ChallengeMode.LINK if linking else ChallengeMode.REGISTER

        try:
            with session_scope(self.session_factory) as db:
                outcome = self.challenges.verify(flow.challengeAccountId, code, db=db)
                if outcome.result != VerifyResult.MATCH:
                    account = None
                elif outcome.mode != expected_mode:
                    raise _Rollback("code_not_found")
                elif linking:
                    target = account_repo.get_by_id(db, flow.targetAccountId)
                    if target is None:
                        raise _Rollback("no_active_verification", Idle())
                    if target.chat_identity_id not in (None, chat_identity_id):
                        raise _Rollback("email_conflict", AwaitingEmail())
                    account = account_repo.merge_provisional_into(
                        db, flow.provisionalAccountId, flow.targetAccountId, chat_identity_id
                    )
                else:
                    account = account_repo.mark_verified(db, flow.accountId, outcome.emailAddress or flow.email)
        except _Rollback as r:
            return self._code_rejected(state, r.outcome, r.flow)
        except ProvisionalAccountNotMergeable:
            return self._code_rejected(state, "already_verified", AwaitingEmail())
        except IntegrityError:
            # the address was verified by another account after the code was sent
            metrics.increment(metrics.EMAIL_CONFLICT)
            return self._code_rejected(state, "email_conflict", AwaitingEmail())
        except LookupError:
            return self._code_rejected(state, "no_active_verification", Idle())
        except SQLAlchemyError as e:
            raise CollaboratorError("account_store", str(e)[:200]) from e

        if account is None:
            name = _VERIFY_FAILURE_OUTCOMES[outcome.result]
            return Reply(replies.render(name, attemptsLeft=outcome.attemptsLeft), name)

        if linking:
            self._delete_shadow_identity(flow.provisionalAccountId, chat_identity_id)
            metrics.increment(metrics.ACCOUNT_LINKED)
            log(
                event="account_linked",
                chatIdentityId=chat_identity_id,
                accountId=account.id,
                provisionalAccountId=flow.provisionalAccountId,
            )
            result = Reply(replies.render("linked", email=account.email_address), "linked")
        else:
            metrics.increment(metrics.ACCOUNT_REGISTERED)
            log(event="account_registered", chatIdentityId=chat_identity_id, accountId=account.id,
                email=account.email_address)
            result = Reply(replies.render("registered"), "registered")

        pending = PendingAction.from_dict(state.pendingAction)
        state.pendingAction = None
        self._save(state, Idle(), result.outcome)

        if pending is not None:
            follow_up = self._run_pending(pending, account, chat_identity_id)
            if follow_up:
                result = Reply(f"{result.text}\n\n{follow_up}", result.outcome)
        return result

    def _code_rejected(self, state: ConversationState, outcome: str, flow: Optional[Flow]) -> Reply:
        log(event="code_rejected", chatIdentityId=state.chatIdentityId, outcome=outcome, flowState=state.flowState)
        if flow is not None:
            self._save(state, flow, outcome)
        return Reply(replies.render(outcome), outcome)

    @_guarded
    def resend(self, chat_identity_id: str) -> Reply:
        state = self.states.get(chat_identity_id)
        flow = state.flow
        if not isinstance(flow, AwaitingCode):
            return Reply(replies.render("no_active_verification"), "no_active_verification")
        try:
            self.challenges.resend(flow.challengeAccountId)
        except ChallengeThrottled as e:
            return Reply(replies.render("resend_throttled", minutes=e.retry_after_minutes), "resend_throttled")
        except ChallengeNotFound:
            return Reply(replies.render("no_active_verification"), "no_active_verification")
        log(event="challenge_resent", chatIdentityId=chat_identity_id, accountId=flow.challengeAccountId)
        return Reply(replies.render("code_resent", email=flow.email, minutes=self._ttl_minutes()), "code_resent")

    @_guarded
    def cancel(self, chat_identity_id: str) -> Reply:
        state = self.states.get(chat_identity_id)
        if state.pendingAction:
            log(event="pending_action_dropped", chatIdentityId=chat_identity_id,
                action=(state.pendingAction or {}).get("name"))
        state.pendingAction = None
        self._save(state, Idle(), "cancel")
        return Reply(replies.render("cancelled"), "cancelled")

    @_guarded
    def request_action(self, chat_identity_id: str, action: PendingAction,
                       profile_hints: Optional[Dict[str, Any]] = None) -> Reply:
        """Run a feature that needs a verified account now, or park it until verification completes."""
        account = self.resolver.get_or_create(chat_identity_id, profile_hints)
        if account.email_verified:
            follow_up = self._run_pending(action, account, chat_identity_id)
            return Reply(follow_up or "", "action_completed")

        state = self.states.get(chat_identity_id)
        state.pendingAction = action.to_dict()
        log(event="pending_action_stored", chatIdentityId=chat_identity_id, action=action.name)
        if isinstance(state.flow, AwaitingCode):
            self.states.set(state)
            return Reply(replies.render("code_pending", email=state.flow.email), "verification_required")
        self._save(state, AwaitingEmail(), "verification_required")
        return Reply(replies.render("verification_required"), "verification_required")


_default_coordinator: Optional[AccountLinkCoordinator] = None


def get_coordinator() -> AccountLinkCoordinator:
    global _default_coordinator
    if _default_coordinator is None:
        _default_coordinator = AccountLinkCoordinator()
    return _default_coordinator
