"""Shared utilities for ORM models."""

import uuid
from datetime import datetime, timezone


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class ModelValidationError(ValueError):
    """A field failed model-level validation.

    Raised from ``@validates`` hooks so callers can report which field
    was rejected without parsing database error strings.
    """

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def validate_max_length(field: str, value: str | None, max_length: int) -> str | None:
    """Raise ModelValidationError if ``value`` is longer than ``max_length``."""
    if value is not None and len(value) > max_length:
        raise ModelValidationError(field, f"should be at most {max_length} character(s)")
    return value
