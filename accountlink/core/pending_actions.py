"""
Deferred user intents.

When a user asks for something that needs a verified account, the feature
hands a PendingAction to the coordinator. It rides along in the conversation
state through the verification flow and is run once, against the resolved
account, after verification completes.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from accountlink.observability.logging import log

ActionHandler = Callable[[Any, Dict[str, Any]], Optional[str]]

_HANDLERS: Dict[str, ActionHandler] = {}


@dataclass(frozen=True)
class PendingAction:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "payload": dict(self.payload)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PendingAction"]:
        if not isinstance(data, dict) or not data.get("name"):
            return None
        payload = data.get("payload")
        return cls(name=str(data["name"]), payload=payload if isinstance(payload, dict) else {})


def register_action(name: str):
    """@register_action("share_food") -> handler(account, payload) -> optional reply text"""
    def deco(fn: ActionHandler) -> ActionHandler:
        _HANDLERS[name] = fn
        return fn
    return deco


def unregister_action(name: str) -> None:
    _HANDLERS.pop(name, None)


def run_pending_action(action: PendingAction, account) -> Optional[str]:
    handler = _HANDLERS.get(action.name)
    if handler is None:
        log(event="pending_action_unhandled", action=action.name, accountId=getattr(account, "id", None))
        return None
    log(event="pending_action_run", action=action.name, accountId=getattr(account, "id", None))
    return handler(account, action.payload)
