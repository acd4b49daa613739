from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the row store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
