"""Custom exceptions for notestore.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Open / schema errors (1xxx)
    OPEN_FAILED = 1001
    SCHEMA_MIGRATION_FAILED = 1002
    SCHEMA_VERSION_UNSUPPORTED = 1003
    DATABASE_KEY_MISSING = 1004

    # Record errors (2xxx)
    MALFORMED_ROW = 2001

    # Query errors (3xxx)
    QUERY_FAILED = 3001

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003

    # Encryption errors (5xxx)
    REKEY_FAILED = 5001
    REKEY_VERIFICATION_FAILED = 5002
    SECRET_STORE_UNAVAILABLE = 5003

    # Concurrency errors (6xxx)
    BUSY = 6001

    # Validation / configuration errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_MOVE = 7002
    INVALID_KEY = 7003
    CONFIG_INVALID = 7004


class NoteStoreError(Exception):
    """Base exception for all notestore errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


def _path_hint(path: Optional[str]) -> Optional[str]:
    # Don't expose full paths in error details
    if not path:
        return None
    return path.replace("\\", "/").split("/")[-1]


class OpenFailedError(NoteStoreError):
    """Raised when a store cannot be opened (directory, connection or migration)."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.OPEN_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        hint = _path_hint(path)
        if hint:
            details["path_hint"] = hint
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.path = path
        self.original_error = original_error


class SchemaMigrationFailedError(NoteStoreError):
    """Raised when a schema migration step cannot be applied.

    Attributes:
        version: The schema version the failed step would have produced
        current_version: The version the database was left at
    """

    def __init__(
        self,
        message: str,
        version: Optional[int] = None,
        current_version: Optional[int] = None,
        code: ErrorCode = ErrorCode.SCHEMA_MIGRATION_FAILED,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {}
        if version is not None:
            details["version"] = version
        if current_version is not None:
            details["current_version"] = current_version
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.version = version
        self.current_version = current_version
        self.original_error = original_error


class MalformedRowError(NoteStoreError):
    """Raised when a database row cannot be decoded into a Note."""

    def __init__(
        self,
        message: str,
        column: Optional[str] = None,
        value: Optional[Any] = None,
    ):
        details = {}
        if column:
            details["column"] = column
        if value is not None:
            details["value"] = repr(value)[:100]  # Truncate for safety

        super().__init__(message, code=ErrorCode.MALFORMED_ROW, details=details)
        self.column = column
        self.value = value


class QueryFailedError(NoteStoreError):
    """Raised when listing or filtering notes fails."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.QUERY_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.query = query
        self.original_error = original_error


class StorageError(NoteStoreError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class RekeyFailedError(NoteStoreError):
    """Raised when any step of the re-key protocol fails.

    Attributes:
        step: Name of the protocol step that failed
        swapped: Whether the re-keyed file had already replaced the original.
            When False the original file is untouched; when True the file on
            disk is in the requested encryption state.
    """

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        swapped: bool = False,
        code: ErrorCode = ErrorCode.REKEY_FAILED,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {"swapped": swapped}
        if step:
            details["step"] = step
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.step = step
        self.swapped = swapped
        self.original_error = original_error


class SecretStoreUnavailableError(NoteStoreError):
    """Raised when the platform credential store cannot be used."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(
            message, code=ErrorCode.SECRET_STORE_UNAVAILABLE, details=details
        )
        self.operation = operation
        self.original_error = original_error


class BusyError(NoteStoreError):
    """Raised when a mutating call arrives while a key change is in flight."""

    def __init__(self, operation: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot {operation} while the database is being re-keyed",
            code=ErrorCode.BUSY,
            details={"operation": operation}
        )
        self.operation = operation


class ValidationError(NoteStoreError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class ConfigurationError(NoteStoreError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key
