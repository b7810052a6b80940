"""
ConversationStateStore: per-chat-identity flow state with TTL eviction.

A lost record (eviction, crash of a memory-backed process) reads back as an
Idle state; the account itself stays intact and the user can restart the flow.
"""
import inspect
import json
import threading
import time
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from accountlink.core.errors import CollaboratorError
from accountlink.core.state_machine import ConversationState, flow_from_dict, flow_to_dict
from accountlink.observability.logging import log
from accountlink.settings import settings
from accountlink.store.redis_conn import get_redis

PREFIX = "conv:"


def _key(chat_identity_id: str) -> str:
    return f"{PREFIX}{chat_identity_id}"


def _filter_state_kwargs(data: dict) -> dict:
    """
    Drop unknown fields so ConversationState(**kwargs) never explodes
    """
    sig = inspect.signature(ConversationState)
    allowed = set(sig.parameters.keys())
    return {k: v for k, v in data.items() if k in allowed}


def state_to_json(state: ConversationState) -> str:
    data = {
        "chatIdentityId": state.chatIdentityId,
        "flow": flow_to_dict(state.flow),
        "pendingAction": state.pendingAction,
        "recentEventKeys": list(state.recentEventKeys or []),
        "eventReplies": dict(state.eventReplies or {}),
        "updatedAtEpoch": state.updatedAtEpoch,
    }
    return json.dumps(data)


def state_from_json(chat_identity_id: str, raw: str) -> ConversationState:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        log(event="conversation_state_unreadable", chatIdentityId=chat_identity_id)
        return ConversationState(chatIdentityId=chat_identity_id)
    if not isinstance(data, dict):
        return ConversationState(chatIdentityId=chat_identity_id)

    data["flow"] = flow_from_dict(data.get("flow"))
    if not isinstance(data.get("pendingAction"), dict):
        data["pendingAction"] = None
    if not isinstance(data.get("recentEventKeys"), list):
        data["recentEventKeys"] = []
    if not isinstance(data.get("eventReplies"), dict):
        data["eventReplies"] = {}
    data["chatIdentityId"] = chat_identity_id
    return ConversationState(**_filter_state_kwargs(data))


class ConversationStateStore:
    """get / set / clear keyed by chatIdentityId, entries expire after ttl_sec of inactivity.

    The engine only ever overwrites (a finished flow is saved as Idle so the
    redelivery window survives); clear() backs the admin reset route.
    """

    def __init__(self, ttl_sec: Optional[int] = None):
        self.ttl_sec = int(ttl_sec if ttl_sec is not None else settings.CONVERSATION_STATE_TTL_SEC)

    def get(self, chat_identity_id: str) -> ConversationState:
        raise NotImplementedError

    def set(self, state: ConversationState) -> None:
        raise NotImplementedError

    def clear(self, chat_identity_id: str) -> None:
        raise NotImplementedError


class InMemoryConversationStateStore(ConversationStateStore):
    """Process-local backing; flows do not survive a restart."""

    def __init__(self, ttl_sec: Optional[int] = None, clock=time.monotonic):
        super().__init__(ttl_sec)
        self._clock = clock
        self._items: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def _evict_expired(self, now: float) -> None:
        for k in [k for k, (exp, _) in self._items.items() if exp <= now]:
            del self._items[k]

    def get(self, chat_identity_id: str) -> ConversationState:
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            entry = self._items.get(chat_identity_id)
        if entry is None:
            return ConversationState(chatIdentityId=chat_identity_id)
        return state_from_json(chat_identity_id, entry[1])

    def set(self, state: ConversationState) -> None:
        state.updatedAtEpoch = int(time.time())
        raw = state_to_json(state)
        with self._lock:
            self._items[state.chatIdentityId] = (self._clock() + self.ttl_sec, raw)

    def clear(self, chat_identity_id: str) -> None:
        with self._lock:
            self._items.pop(chat_identity_id, None)

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired(self._clock())
            return len(self._items)


class RedisConversationStateStore(ConversationStateStore):
    """Durable backing: JSON under conv:<chatIdentityId> with EX=ttl, refreshed on every write."""

    def __init__(self, ttl_sec: Optional[int] = None, redis=None):
        super().__init__(ttl_sec)
        self._redis = redis

    def _r(self):
        return self._redis if self._redis is not None else get_redis()

    def get(self, chat_identity_id: str) -> ConversationState:
        try:
            raw = self._r().get(_key(chat_identity_id))
        except RedisError as e:
            raise CollaboratorError("conversation_state_store", str(e)[:200]) from e
        if not raw:
            return ConversationState(chatIdentityId=chat_identity_id)
        return state_from_json(chat_identity_id, raw)

    def set(self, state: ConversationState) -> None:
        state.updatedAtEpoch = int(time.time())
        try:
            self._r().set(_key(state.chatIdentityId), state_to_json(state), ex=self.ttl_sec)
        except RedisError as e:
            raise CollaboratorError("conversation_state_store", str(e)[:200]) from e

    def clear(self, chat_identity_id: str) -> None:
        try:
            self._r().delete(_key(chat_identity_id))
        except RedisError as e:
            raise CollaboratorError("conversation_state_store", str(e)[:200]) from e


_default_store: Optional[ConversationStateStore] = None


def get_state_store() -> ConversationStateStore:
    global _default_store
    if _default_store is None:
        if settings.STATE_STORE_BACKEND == "memory":
            _default_store = InMemoryConversationStateStore()
        else:
            _default_store = RedisConversationStateStore()
    return _default_store
