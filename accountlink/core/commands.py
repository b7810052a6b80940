import re
from typing import Optional

START = "/start"
RESEND = "/resend"
CANCEL = "/cancel"

COMMANDS = (START, RESEND, CANCEL)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CODE_RE = re.compile(r"^[0-9]{6}$")


def parse_command(text: str) -> Optional[str]:
    """'/start@SomeBot payload' -> '/start'; None when not one of ours."""
    t = (text or "").strip()
    if not t.startswith("/"):
        return None
    head = t.split()[0].split("@", 1)[0].lower()
    return head if head in COMMANDS else None


def normalize_email(text: str) -> str:
    return (text or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(email) and len(email) <= 320 and bool(EMAIL_RE.match(email))


def looks_like_email(text: str) -> bool:
    return "@" in (text or "")


def normalize_code(text: str) -> str:
    # "123 456" and "123-456" are common when copying from mail clients
    return re.sub(r"[\s-]", "", text or "")


def is_valid_code(code: str) -> bool:
    return bool(CODE_RE.match(code or ""))
