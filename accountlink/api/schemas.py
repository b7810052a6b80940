from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, Field

class ChatEvent(BaseModel):
    chatIdentityId: str = Field(min_length=1)
    text: str = ""
    # Gateways send epoch ms or ISO-8601. With neither this nor eventId an
    # event is never treated as a redelivery.
    receivedAt: Optional[Union[int, str]] = None
    eventId: Optional[str] = None
    profile: Optional[Dict[str, Any]] = None

class ChatReply(BaseModel):
    status: Literal["success", "error"] = "success"
    chatIdentityId: str = ""
    reply: str
    outcome: str = ""

class DeferredActionRequest(BaseModel):
    chatIdentityId: str = Field(min_length=1)
    name: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    profile: Optional[Dict[str, Any]] = None
