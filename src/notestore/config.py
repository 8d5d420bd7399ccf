"""Configuration module for notestore."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notestore import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the default database
_USER_ENV = Path.home() / ".notestore" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

JOURNAL_MODES = ("WAL", "DELETE", "TRUNCATE", "PERSIST", "MEMORY")
SEARCH_STRATEGIES = ("fts", "like")


class NoteStoreConfig(BaseModel):
    """Configuration for a note store."""

    # Base directory that relative paths are resolved against
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTESTORE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESTORE_DATABASE_PATH", "data/notesdb.sqlite")
        )
    )
    journal_mode: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_JOURNAL_MODE", "WAL").upper()
    )
    # "fts" uses the FTS5 token-prefix index, "like" a folded substring scan
    search_strategy: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_SEARCH_STRATEGY", "fts").lower()
    )
    # Gap between order keys for new notes and moves to either end of the list
    order_offset: float = Field(
        default_factory=lambda: float(os.getenv("NOTESTORE_ORDER_OFFSET", "100.0"))
    )
    # Credential store configuration
    keyring_service: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_KEYRING_SERVICE", "notestore")
    )
    key_name: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_KEY_NAME", "dbkey")
    )
    # Suffix of the temporary file written while the database is re-keyed
    rekey_suffix: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_REKEY_SUFFIX", ".rekey")
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_LOG_LEVEL", "INFO").upper()
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTESTORE_LOG_DIR"))
            if os.getenv("NOTESTORE_LOG_DIR")
            else None
        )
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_settings(self) -> "NoteStoreConfig":
        """Reject settings the storage layer cannot honor."""
        if self.journal_mode not in JOURNAL_MODES:
            raise ValueError(
                f"journal_mode must be one of {', '.join(JOURNAL_MODES)}, "
                f"got {self.journal_mode!r}"
            )
        if self.search_strategy not in SEARCH_STRATEGIES:
            raise ValueError(
                f"search_strategy must be one of {', '.join(SEARCH_STRATEGIES)}, "
                f"got {self.search_strategy!r}"
            )
        if self.order_offset <= 0:
            raise ValueError("order_offset must be > 0")
        if not self.rekey_suffix.startswith("."):
            raise ValueError("rekey_suffix must start with '.'")
        if not self.key_name.strip():
            raise ValueError("key_name cannot be empty")
        if self.journal_mode == "MEMORY":
            logger.warning(
                "journal_mode=MEMORY gives up crash safety for normal writes; "
                "a crash mid-transaction can corrupt the database."
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_database_path(self) -> Path:
        """Get the absolute path of the database file."""
        return self.get_absolute_path(self.database_path)


# Create a global config instance
config = NoteStoreConfig()
