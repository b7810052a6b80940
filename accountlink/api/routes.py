from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from starlette.concurrency import run_in_threadpool

from accountlink.api.auth import require_api_key
from accountlink.api.schemas import ChatEvent, ChatReply, DeferredActionRequest
from accountlink.channel.gateway import deliver_reply
from accountlink.core.coordinator import Reply, get_coordinator
from accountlink.core.pending_actions import PendingAction
from accountlink.observability.logging import log
from accountlink.queue.jobs import enqueue_reply
from accountlink.settings import settings

router = APIRouter(prefix="/api/chat")

# Outcomes with nothing to say back to the user.
SILENT_OUTCOMES = {"unhandled", "duplicate"}


def _dispatch_reply(chat_identity_id: str, reply: Reply) -> None:
    """Out-of-band delivery; the reply is always in the response body as well."""
    mode = settings.REPLY_DELIVERY_MODE
    if mode == "inline" or not reply.text or reply.outcome in SILENT_OUTCOMES:
        return
    if mode == "push":
        deliver_reply(chat_identity_id, reply.text)
    elif mode == "rq":
        try:
            job = enqueue_reply(chat_identity_id, reply.text)
            log(event="reply_enqueued", chatIdentityId=chat_identity_id, jobId=getattr(job, "id", None))
        except RedisError as e:
            log(event="reply_enqueue_failed", chatIdentityId=chat_identity_id, error=str(e)[:200])


def _handle_chat_event(event: ChatEvent) -> Reply:
    reply = get_coordinator().handle_event(
        event.chatIdentityId,
        event.text,
        received_at=event.receivedAt,
        event_id=event.eventId,
        profile=event.profile,
    )
    _dispatch_reply(event.chatIdentityId, reply)
    return reply


def _handle_action(req: DeferredActionRequest) -> Reply:
    reply = get_coordinator().request_action(
        req.chatIdentityId,
        PendingAction(name=req.name, payload=req.payload),
        profile_hints=req.profile,
    )
    _dispatch_reply(req.chatIdentityId, reply)
    return reply


@router.post("/events", response_model=ChatReply, dependencies=[Depends(require_api_key)])
async def chat_event(event: ChatEvent):
    reply = await run_in_threadpool(_handle_chat_event, event)
    return ChatReply(status="success", chatIdentityId=event.chatIdentityId, reply=reply.text, outcome=reply.outcome)


@router.post("/actions", response_model=ChatReply, dependencies=[Depends(require_api_key)])
async def chat_action(req: DeferredActionRequest):
    """A feature asks for a verified account; the action runs now or after verification."""
    reply = await run_in_threadpool(_handle_action, req)
    return ChatReply(status="success", chatIdentityId=req.chatIdentityId, reply=reply.text, outcome=reply.outcome)
