"""
Observability Counters
----------------------
Lightweight Redis counters for the account-linking flow, plus a snapshot
consumed by /admin/stats. Counters are best-effort: a Redis outage never
affects the handling of a chat event.
"""
from __future__ import annotations
import time
from typing import Dict, List, Tuple
from accountlink.store.redis_conn import get_redis
from accountlink.settings import settings

PREFIX = "metrics:"

# Counter names (stable across restarts)
CHALLENGE_ISSUED = "challenge:issued"
CHALLENGE_THROTTLED = "challenge:throttled"
VERIFY_PREFIX = "verify:"                 # verify:MATCH, verify:MISMATCH, ...
ACCOUNT_PROVISIONED = "account:provisioned"
ACCOUNT_REGISTERED = "account:registered"
ACCOUNT_LINKED = "account:linked"
EMAIL_CONFLICT = "email:conflict"
COLLABORATOR_FAILURE = "collaborator:failure"
EVENT_DUPLICATE = "event:duplicate"
PENDING_ACTION_RUN = "pending_action:run"

K_RECENT_FAILURES = "metrics:collaborator:failed_recent"  # LPUSH "<collaborator>:<chatIdentityId>"

SNAPSHOT_COUNTERS: Tuple[str, ...] = (
    CHALLENGE_ISSUED,
    CHALLENGE_THROTTLED,
    ACCOUNT_PROVISIONED,
    ACCOUNT_REGISTERED,
    ACCOUNT_LINKED,
    EMAIL_CONFLICT,
    COLLABORATOR_FAILURE,
    EVENT_DUPLICATE,
    PENDING_ACTION_RUN,
    VERIFY_PREFIX + "MATCH",
    VERIFY_PREFIX + "MISMATCH",
    VERIFY_PREFIX + "EXPIRED",
    VERIFY_PREFIX + "NOT_FOUND",
    VERIFY_PREFIX + "LOCKED",
)

def _now_s() -> int:
    return int(time.time())

def increment(name: str, amount: int = 1) -> None:
    if not settings.METRICS_ENABLED:
        return
    try:
        get_redis().incr(PREFIX + name, amount)
    except Exception:
        # counters must never break event handling
        pass

def record_verify_result(result: str) -> None:
    increment(VERIFY_PREFIX + str(result))

def record_collaborator_failure(collaborator: str, chat_identity_id: str) -> None:
    increment(COLLABORATOR_FAILURE)
    if not settings.METRICS_ENABLED:
        return
    try:
        r = get_redis()
        r.lpush(K_RECENT_FAILURES, f"{collaborator}:{chat_identity_id}")
        r.ltrim(K_RECENT_FAILURES, 0, 49)  # keep last 50
    except Exception:
        pass

def get_stats_snapshot() -> dict:
    """Counter values shaped for /admin/stats."""
    r = get_redis()
    counters: Dict[str, int] = {}
    for name in SNAPSHOT_COUNTERS:
        try:
            counters[name] = int(r.get(PREFIX + name) or 0)
        except (TypeError, ValueError):
            counters[name] = 0

    verified = counters[VERIFY_PREFIX + "MATCH"]
    attempts = sum(counters[VERIFY_PREFIX + k] for k in ("MATCH", "MISMATCH", "EXPIRED", "NOT_FOUND", "LOCKED"))
    match_rate = (verified / attempts) * 100.0 if attempts > 0 else 0.0

    recent: List[str] = [str(x) for x in (r.lrange(K_RECENT_FAILURES, 0, 19) or [])]

    return {
        "counters": counters,
        "verify_match_rate": round(match_rate, 3),
        "recent_collaborator_failures": recent,
        "snapshot_at": _now_s(),
    }
