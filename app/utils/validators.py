"""Input validation and timestamp parsing utilities."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from app.utils.exceptions import ValidationError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def validate_subscriber_id(subscriber_id: str) -> str:
    """
    Validate an opaque subscriber identifier.

    Args:
        subscriber_id: Identifier supplied by the auth system

    Returns:
        Stripped identifier

    Raises:
        ValidationError: If the identifier is empty or unreasonably long
    """
    if not subscriber_id or not isinstance(subscriber_id, str):
        raise ValidationError("subscriberId must be a non-empty string")

    subscriber_id = subscriber_id.strip()
    if not subscriber_id:
        raise ValidationError("subscriberId must be a non-empty string")

    if len(subscriber_id) > 128:
        raise ValidationError("subscriberId cannot exceed 128 characters")

    # Firestore document IDs cannot contain a slash
    if "/" in subscriber_id:
        raise ValidationError("subscriberId cannot contain '/'")

    return subscriber_id


def parse_epoch_millis(value: Any) -> Optional[datetime]:
    """
    Parse an authority-supplied epoch-millisecond value.

    Apple sends milliseconds as strings, Google and signed tokens as
    strings or numbers.

    Returns:
        UTC datetime, or None when the value is missing or not numeric
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not (value.isascii() and value.isdigit()):
            return None
        value = int(value)
    if not isinstance(value, (int, float)) or value <= 0:
        return None
    try:
        return EPOCH + timedelta(milliseconds=int(value))
    except (OverflowError, ValueError):
        return None


def to_epoch_millis(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(milliseconds=1)
