# device_loans/core/utils.py
from datetime import datetime, timezone
from typing import Optional

from device_loans.core.errors import ValidationFailed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. from a non tz-aware Mongo client) as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def required(value: Optional[str], name: str) -> str:
    """Trimmed `value`, or VALIDATION_ERROR when it is blank."""
    value = (value or "").strip()
    if not value:
        raise ValidationFailed(f"{name} is required and cannot be empty")
    return value
