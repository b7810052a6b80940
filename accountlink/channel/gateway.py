import httpx

from accountlink.observability.logging import log
from accountlink.settings import settings


def send_reply_http(chat_identity_id: str, text: str, timeout: float = 5.0):
    """
    POST one outbound reply to the chat gateway.
    Returns (success: bool, status_code: int, error: str | None); never raises.
    """
    if not settings.CHAT_GATEWAY_URL:
        return False, 0, "CHAT_GATEWAY_URL is not set"

    headers = {"Content-Type": "application/json"}
    if settings.CHAT_GATEWAY_TOKEN:
        headers["Authorization"] = f"Bearer {settings.CHAT_GATEWAY_TOKEN}"
    payload = {"chatIdentityId": chat_identity_id, "text": text}

    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.post(settings.CHAT_GATEWAY_URL, json=payload, headers=headers)
        if 200 <= resp.status_code < 300:
            return True, resp.status_code, None
        return False, resp.status_code, f"HTTP {resp.status_code}: {(resp.text or '')[:200]}"
    except httpx.HTTPError as e:
        return False, 0, f"{type(e).__name__}: {str(e)[:200]}"


def deliver_reply(chat_identity_id: str, text: str) -> bool:
    """Synchronous push used by REPLY_DELIVERY_MODE=push and by the RQ job."""
    ok, status_code, error = send_reply_http(
        chat_identity_id, text, timeout=float(settings.CHAT_GATEWAY_TIMEOUT_SEC)
    )
    if ok:
        log(event="reply_delivered", chatIdentityId=chat_identity_id, statusCode=status_code)
    else:
        log(event="reply_delivery_failed", chatIdentityId=chat_identity_id, statusCode=status_code, error=error)
    return ok
