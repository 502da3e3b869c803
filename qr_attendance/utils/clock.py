"""Time helpers."""
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]

def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def parse_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 string; datetimes pass through untouched."""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
