import datetime

from .constants import TIME_FORMAT
from .errors import SchemaError


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def format_instant(dt):
    return dt.astimezone(datetime.timezone.utc).strftime(TIME_FORMAT)


def parse_instant(value):
    """Parse an xs:dateTime as sent by IdPs (fractions and offsets allowed)."""
    if value is None:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        # trim fractional seconds beyond microseconds
        head, _, tail = text.partition(".")
        digits = "".join(c for c in tail if c.isdigit())
        offset = tail[len(digits):]
        text = f"{head}.{digits[:6].ljust(6, '0')}{offset}"
    try:
        dt = datetime.datetime.fromisoformat(text)
    except ValueError as e:
        raise SchemaError(f"Invalid timestamp {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)
