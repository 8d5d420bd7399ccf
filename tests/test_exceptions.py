# tests/test_exceptions.py
"""Tests for the structured exception hierarchy."""
from notestore.exceptions import (BusyError, ConfigurationError, ErrorCode,
                                  MalformedRowError, NoteStoreError,
                                  OpenFailedError, QueryFailedError,
                                  RekeyFailedError, SchemaMigrationFailedError,
                                  SecretStoreUnavailableError, StorageError,
                                  ValidationError)


class TestNoteStoreError:
    """Tests for the base exception."""

    def test_str_without_details(self):
        error = NoteStoreError("Something broke", code=ErrorCode.QUERY_FAILED)
        assert str(error) == "[QUERY_FAILED] Something broke"

    def test_str_with_details(self):
        error = ValidationError("Bad value", field="title", value="x")
        assert str(error) == "[VALIDATION_FAILED] Bad value (field=title, value=x)"

    def test_to_dict(self):
        error = StorageError("Write failed", operation="upsert")
        assert error.to_dict() == {
            "error": "StorageError",
            "code": ErrorCode.STORAGE_WRITE_FAILED.value,
            "code_name": "STORAGE_WRITE_FAILED",
            "message": "Write failed",
            "details": {"operation": "upsert"},
        }

    def test_all_errors_share_the_base(self):
        errors = [
            OpenFailedError("x"),
            SchemaMigrationFailedError("x"),
            MalformedRowError("x"),
            QueryFailedError("x"),
            StorageError("x"),
            RekeyFailedError("x"),
            SecretStoreUnavailableError("x"),
            BusyError("save"),
            ValidationError("x"),
            ConfigurationError("x"),
        ]
        for error in errors:
            assert isinstance(error, NoteStoreError)
        assert len({error.code for error in errors}) == len(errors)


class TestSpecificErrors:
    """Details carried by individual errors."""

    def test_open_failed_keeps_only_file_name(self):
        error = OpenFailedError("Cannot open", path="/home/someone/private/notes.db")
        assert error.details["path_hint"] == "notes.db"
        assert "/home/someone" not in str(error)

    def test_original_error_is_truncated(self):
        error = QueryFailedError("Failed", original_error=RuntimeError("y" * 500))
        assert len(error.details["original_error"]) == 200

    def test_rekey_failed_reports_swap_state(self):
        error = RekeyFailedError("Verify failed", step="verify")
        assert error.swapped is False
        assert error.details == {"swapped": False, "step": "verify"}
        assert error.code == ErrorCode.REKEY_FAILED

    def test_schema_migration_versions(self):
        error = SchemaMigrationFailedError("Step failed", version=3, current_version=2)
        assert error.details == {"version": 3, "current_version": 2}

    def test_busy_default_message(self):
        error = BusyError("save a note")
        assert error.message == "Cannot save a note while the database is being re-keyed"
        assert error.code == ErrorCode.BUSY

    def test_malformed_row_value_is_truncated(self):
        error = MalformedRowError("Bad id", column="id", value="z" * 500)
        assert error.details["column"] == "id"
        assert len(error.details["value"]) == 100
