import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    API_KEY: str = os.getenv("API_KEY", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "")

    # Account Store (relational, FK to auth identities)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://postgres@localhost:5432/accountlink")
    DATABASE_ECHO: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RQ_QUEUE_NAME: str = os.getenv("RQ_QUEUE_NAME", "replies")

    # Conversation flow state
    # "redis" keeps in-flight flows across restarts; "memory" is per-process only.
    STATE_STORE_BACKEND: str = os.getenv("STATE_STORE_BACKEND", "redis").lower()
    CONVERSATION_STATE_TTL_SEC: int = int(os.getenv("CONVERSATION_STATE_TTL_SEC", "86400"))
    # Rolling window of inbound event fingerprints kept per chat identity (redelivery guard)
    EVENT_DEDUPE_WINDOW: int = int(os.getenv("EVENT_DEDUPE_WINDOW", "20"))

    # Verification challenges
    CHALLENGE_TTL_MINUTES: int = int(os.getenv("CHALLENGE_TTL_MINUTES", "15"))
    VERIFY_MAX_ATTEMPTS: int = int(os.getenv("VERIFY_MAX_ATTEMPTS", "5"))
    # Initial issue + resends, per account, rolling hour
    CHALLENGE_MAX_ISSUES_PER_HOUR: int = int(os.getenv("CHALLENGE_MAX_ISSUES_PER_HOUR", "4"))

    # Shadow auth identity address: chat-<id>@<domain>
    PLACEHOLDER_EMAIL_DOMAIN: str = os.getenv("PLACEHOLDER_EMAIL_DOMAIN", "chat.placeholder.invalid")

    # Verification channel (HTTP e-mail API)
    EMAIL_SERVICE_URL: str = os.getenv("EMAIL_SERVICE_URL", "")
    EMAIL_SERVICE_API_KEY: str = os.getenv("EMAIL_SERVICE_API_KEY", "")
    EMAIL_FROM: str = os.getenv("EMAIL_FROM", "")
    EMAIL_TIMEOUT_SEC: int = int(os.getenv("EMAIL_TIMEOUT_SEC", "5"))
    EMAIL_DEADLINE_SEC: float = float(os.getenv("EMAIL_DEADLINE_SEC", "8.0"))
    EMAIL_SYNC_RETRIES: int = int(os.getenv("EMAIL_SYNC_RETRIES", "1"))

    # Outbound chat replies
    # Modes:
    # - "inline": reply only in the webhook response body
    # - "push": also POST the reply to the chat gateway synchronously
    # - "rq": also queue the POST on RQ with retries
    REPLY_DELIVERY_MODE: str = os.getenv("REPLY_DELIVERY_MODE", "inline").lower()
    CHAT_GATEWAY_URL: str = os.getenv("CHAT_GATEWAY_URL", "")
    CHAT_GATEWAY_TOKEN: str = os.getenv("CHAT_GATEWAY_TOKEN", "")
    CHAT_GATEWAY_TIMEOUT_SEC: int = int(os.getenv("CHAT_GATEWAY_TIMEOUT_SEC", "5"))

    # Observability
    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"
    METRICS_ENABLED: bool = os.getenv("METRICS_ENABLED", "true").lower() == "true"

    ADMIN_RBAC_ENABLED: bool = os.getenv("ADMIN_RBAC_ENABLED", "true").lower() == "true"
    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")

settings = Settings()
