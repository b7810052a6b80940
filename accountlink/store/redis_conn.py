from typing import Optional

from redis import Redis
from accountlink.settings import settings

_client: Optional[Redis] = None


def get_redis() -> Redis:
    """Shared text-mode client for conversation state and metrics (one pool per process)."""
    global _client
    if _client is None:
        _client = Redis.from_url(settings.REDIS_URL, decode_responses=True, health_check_interval=30)
    return _client
