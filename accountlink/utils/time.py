from datetime import datetime, timezone

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(dt):
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def minutes_until(later: datetime, now: datetime) -> int:
    """Whole minutes from now until later, rounded up, never below 1."""
    seconds = (as_utc(later) - as_utc(now)).total_seconds()
    return max(1, int(-(-seconds // 60)))
