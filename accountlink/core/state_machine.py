"""
Account-linking flow states.

Each chat identity has at most one active flow. A flow is one of four closed
variants, each carrying exactly the payload it needs:

    IDLE                      -> Idle()
    AWAITING_EMAIL            -> AwaitingEmail()
    AWAITING_CODE(REGISTER)   -> AwaitingRegisterCode(accountId, email)
    AWAITING_CODE(LINK)       -> AwaitingLinkCode(provisionalAccountId, targetAccountId, email)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

IDLE = "IDLE"
AWAITING_EMAIL = "AWAITING_EMAIL"
AWAITING_CODE_REGISTER = "AWAITING_CODE_REGISTER"
AWAITING_CODE_LINK = "AWAITING_CODE_LINK"


@dataclass(frozen=True)
class Idle:
    flowState: str = field(default=IDLE, init=False)


@dataclass(frozen=True)
class AwaitingEmail:
    flowState: str = field(default=AWAITING_EMAIL, init=False)


@dataclass(frozen=True)
class AwaitingRegisterCode:
    accountId: str
    email: str
    flowState: str = field(default=AWAITING_CODE_REGISTER, init=False)

    @property
    def challengeAccountId(self) -> str:
        return self.accountId


@dataclass(frozen=True)
class AwaitingLinkCode:
    provisionalAccountId: str
    targetAccountId: str
    email: str
    flowState: str = field(default=AWAITING_CODE_LINK, init=False)

    @property
    def challengeAccountId(self) -> str:
        return self.targetAccountId


Flow = Union[Idle, AwaitingEmail, AwaitingRegisterCode, AwaitingLinkCode]
AwaitingCode = (AwaitingRegisterCode, AwaitingLinkCode)


def flow_to_dict(flow: Flow) -> Dict[str, Any]:
    if isinstance(flow, AwaitingRegisterCode):
        return {"flowState": flow.flowState, "accountId": flow.accountId, "email": flow.email}
    if isinstance(flow, AwaitingLinkCode):
        return {
            "flowState": flow.flowState,
            "provisionalAccountId": flow.provisionalAccountId,
            "targetAccountId": flow.targetAccountId,
            "email": flow.email,
        }
    return {"flowState": flow.flowState}


def flow_from_dict(data: Optional[Dict[str, Any]]) -> Flow:
    """Unknown tags or incomplete payloads read back as Idle."""
    data = data or {}
    tag = data.get("flowState")
    if tag == AWAITING_EMAIL:
        return AwaitingEmail()
    if tag == AWAITING_CODE_REGISTER and data.get("accountId") and data.get("email"):
        return AwaitingRegisterCode(accountId=data["accountId"], email=data["email"])
    if (
        tag == AWAITING_CODE_LINK
        and data.get("provisionalAccountId")
        and data.get("targetAccountId")
        and data.get("email")
    ):
        return AwaitingLinkCode(
            provisionalAccountId=data["provisionalAccountId"],
            targetAccountId=data["targetAccountId"],
            email=data["email"],
        )
    return Idle()


@dataclass
class ConversationState:
    chatIdentityId: str = ""
    flow: Flow = field(default_factory=Idle)

    # Deferred user intent: {"name": str, "payload": dict}
    pendingAction: Optional[Dict[str, Any]] = None

    # Redelivery guard: fingerprints of recently processed inbound events,
    # and the reply each of them got so a replay answers identically.
    recentEventKeys: List[str] = field(default_factory=list)
    eventReplies: Dict[str, str] = field(default_factory=dict)

    updatedAtEpoch: Optional[int] = None

    @property
    def flowState(self) -> str:
        return self.flow.flowState
