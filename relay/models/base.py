"""
Base model classes for Webhook Relay.

Every record is a pydantic model stored as JSON in the key-value store.
"""
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Record(BaseModel):
    """Base class for all stored records."""

    model_config = ConfigDict(use_enum_values=False, validate_assignment=True)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes):
        return cls.model_validate_json(raw)
