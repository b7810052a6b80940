from rq import Retry

from accountlink.channel.gateway import deliver_reply
from accountlink.observability.logging import log
from accountlink.queue.rq_conn import get_queue


def deliver_reply_job(chat_identity_id: str, text: str):
    """
    Background job pushing one reply to the chat gateway.
    Raising lets RQ apply the Retry policy from enqueue_reply().
    """
    log(event="reply_job_start", chatIdentityId=chat_identity_id)
    if not deliver_reply(chat_identity_id, text):
        raise RuntimeError(f"reply delivery failed for {chat_identity_id}")


def enqueue_reply(chat_identity_id: str, text: str):
    q = get_queue()
    return q.enqueue(
        deliver_reply_job,
        chat_identity_id,
        text,
        retry=Retry(max=5, interval=[5, 15, 30, 60, 120]),
    )
