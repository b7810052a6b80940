from typing import Optional

from redis import Redis
from rq import Queue
from accountlink.settings import settings


def get_queue(name: Optional[str] = None) -> Queue:
    # RQ pickles job payloads, so this connection must not decode responses.
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name or settings.RQ_QUEUE_NAME, connection=conn)
