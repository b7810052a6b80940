import json
import time
from accountlink.settings import settings

# Redaction patterns for logs (if PII redaction enabled)
SENSITIVE_KEYS = {"text", "reply", "code", "payload"}
EMAIL_KEYS = {"email", "toAddress", "emailAddress"}

def _redact_value(v):
    if isinstance(v, str) and len(v) > 0:
        return f"[REDACTED:{len(v)}chars]"
    if isinstance(v, dict):
        return {k: _redact_value(val) for k, val in v.items()}
    return v

def mask_email(v):
    """n***@example.com"""
    if not isinstance(v, str) or "@" not in v:
        return v
    local, _, domain = v.partition("@")
    return f"{local[:1]}***@{domain}"

def log(event: str, **fields):
    payload = {"ts": int(time.time()), "event": event}

    if settings.ENABLE_PII_REDACTION:
        clean_fields = {}
        for k, v in fields.items():
            if k in SENSITIVE_KEYS:
                clean_fields[k] = _redact_value(v)
            elif k in EMAIL_KEYS:
                clean_fields[k] = mask_email(v)
            elif isinstance(v, dict):
                clean_fields[k] = {sk: (_redact_value(sv) if sk in SENSITIVE_KEYS else sv) for sk, sv in v.items()}
            else:
                clean_fields[k] = v
        payload.update(clean_fields)
    else:
        payload.update(fields)

    print(json.dumps(payload, ensure_ascii=False, default=str))
