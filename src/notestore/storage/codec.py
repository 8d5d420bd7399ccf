"""Conversion between Note models and rows of the notes table.

Dates are stored as fixed-width UTC text (``2024-05-01T09:30:00.000000Z``) so
that ordering by the text column is chronological ordering. Favorites are
stored as 0/1 integers.
"""
import datetime
import uuid
from datetime import timezone
from typing import Any, Dict, Mapping

from notestore.exceptions import MalformedRowError
from notestore.models.schema import Note, ensure_utc

DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

COLUMNS = ("id", "date", "order", "favorite", "title", "notes")


def format_timestamp(value: datetime.datetime) -> str:
    """Serialize a datetime as sortable UTC text."""
    # strftime does not pad years before 1000 on every platform
    value = ensure_utc(value)
    return f"{value.year:04d}-{value:%m-%dT%H:%M:%S.%f}Z"


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse text written by format_timestamp back into an aware datetime."""
    return datetime.datetime.strptime(value, DATE_FORMAT).replace(tzinfo=timezone.utc)


def encode(note: Note) -> Dict[str, Any]:
    """Encode a note as a row dictionary keyed by column name."""
    return {
        "id": str(note.id),
        "date": format_timestamp(note.date),
        "order": float(note.order),
        "favorite": 1 if note.favorite else 0,
        "title": note.title,
        "notes": note.notes,
    }


def decode(row: Mapping[str, Any]) -> Note:
    """Decode a row (any mapping of column name to value) into a Note.

    Raises:
        MalformedRowError: If a column is missing, has the wrong type, or
            the id is not a valid UUID string.
    """
    for column in COLUMNS:
        if column not in row:
            raise MalformedRowError(f"Row is missing column '{column}'", column=column)

    raw_id = row["id"]
    if not isinstance(raw_id, str):
        raise MalformedRowError("Note id must be text", column="id", value=raw_id)
    try:
        note_id = uuid.UUID(raw_id)
    except ValueError:
        raise MalformedRowError(
            "Note id is not a valid UUID", column="id", value=raw_id
        ) from None

    raw_date = row["date"]
    if not isinstance(raw_date, str):
        raise MalformedRowError("Note date must be text", column="date", value=raw_date)
    try:
        date = parse_timestamp(raw_date)
    except ValueError:
        raise MalformedRowError(
            "Note date is not in the stored timestamp format",
            column="date",
            value=raw_date,
        ) from None

    raw_order = row["order"]
    if isinstance(raw_order, bool) or not isinstance(raw_order, (int, float)):
        raise MalformedRowError("Note order must be a number", column="order", value=raw_order)

    raw_favorite = row["favorite"]
    if isinstance(raw_favorite, bool) or raw_favorite not in (0, 1):
        raise MalformedRowError(
            "Note favorite must be 0 or 1", column="favorite", value=raw_favorite
        )

    for column in ("title", "notes"):
        if not isinstance(row[column], str):
            raise MalformedRowError(
                f"Note {column} must be text", column=column, value=row[column]
            )

    return Note(
        id=note_id,
        date=date,
        order=float(raw_order),
        favorite=bool(raw_favorite),
        title=row["title"],
        notes=row["notes"],
    )
