"""Data models for notestore."""

import datetime
import uuid
from datetime import timezone

from pydantic import BaseModel, Field, field_validator

# Shown in listings for notes whose title is still empty
UNTITLED_NOTE = "New Note"


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_utc(dt_value: datetime.datetime) -> datetime.datetime:
    """Normalize a datetime to UTC, treating naive datetimes as UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same instant expressed in UTC.
    """
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


class Note(BaseModel):
    """A user-authored note."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4, description="Unique ID of the note")
    date: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    order: float = Field(
        default=0.0, description="Sort key; larger values are listed first"
    )
    favorite: bool = Field(default=False, description="Whether the note is starred")
    title: str = Field(default="", description="Title of the note")
    notes: str = Field(default="", description="Free-text body of the note")

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: datetime.datetime) -> datetime.datetime:
        """Store every timestamp in UTC so equality and ordering agree."""
        return ensure_utc(v)

    @property
    def display_title(self) -> str:
        """Title to show in a listing, falling back for untitled notes."""
        return self.title if self.title else UNTITLED_NOTE
