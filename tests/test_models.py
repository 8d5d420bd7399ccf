# tests/test_models.py
"""Tests for the Note model."""
import datetime
import uuid
from datetime import timedelta, timezone

import pytest
from pydantic import ValidationError

from notestore.models.schema import UNTITLED_NOTE, Note, ensure_utc, utc_now


class TestNoteModel:
    """Tests for the Note model."""

    def test_note_defaults(self):
        """A new note is empty, unstarred and dated now."""
        before = utc_now()
        note = Note()
        after = utc_now()
        assert isinstance(note.id, uuid.UUID)
        assert note.title == ""
        assert note.notes == ""
        assert note.favorite is False
        assert note.order == 0.0
        assert before <= note.date <= after
        assert note.date.tzinfo is not None

    def test_ids_are_unique(self):
        """Each note gets its own id."""
        assert len({Note().id for _ in range(50)}) == 50

    def test_naive_date_is_treated_as_utc(self):
        """Naive datetimes are taken to be UTC."""
        note = Note(date=datetime.datetime(2024, 5, 1, 9, 30))
        assert note.date == datetime.datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)

    def test_aware_date_is_converted_to_utc(self):
        """Dates in other zones are normalized to the same instant in UTC."""
        plus_two = timezone(timedelta(hours=2))
        note = Note(date=datetime.datetime(2024, 5, 1, 11, 30, tzinfo=plus_two))
        assert note.date.utcoffset() == timedelta(0)
        assert note.date.hour == 9

    def test_assignment_is_validated(self):
        """Field assignment goes through validation."""
        note = Note()
        note.title = "Groceries"
        assert note.title == "Groceries"
        with pytest.raises(ValidationError):
            note.favorite = "maybe"

    def test_unknown_fields_are_rejected(self):
        """Notes only carry the known fields."""
        with pytest.raises(ValidationError):
            Note(tags=["x"])

    def test_equality_is_by_value(self):
        """Two notes with the same fields are equal."""
        note = Note(title="A", notes="body")
        copy = note.model_copy()
        assert copy == note
        assert note.model_copy(update={"notes": "changed"}) != note

    def test_display_title(self):
        """Untitled notes show a placeholder."""
        assert Note().display_title == UNTITLED_NOTE
        assert Note(title="Shopping").display_title == "Shopping"


class TestEnsureUtc:
    """Tests for timestamp normalization."""

    def test_utc_passes_through(self):
        value = datetime.datetime(2023, 1, 1, tzinfo=timezone.utc)
        assert ensure_utc(value) == value

    def test_utc_now_is_aware(self):
        assert utc_now().tzinfo == timezone.utc
