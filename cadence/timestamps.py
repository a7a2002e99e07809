from datetime import datetime, timezone


def format_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601 string; lexicographic order is chronological order.

    Naive datetimes are taken to be UTC already.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec='microseconds')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(text: str) -> datetime:
    """Inverse of format_timestamp. Also reads SQLite's ``CURRENT_TIMESTAMP`` form."""
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
