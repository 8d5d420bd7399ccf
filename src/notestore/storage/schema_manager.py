"""Versioned schema migrations driven by ``PRAGMA user_version``.

Each step runs in its own transaction together with the version bump, so a
failed step leaves the database at the previous version with none of that
step's objects. All DDL is idempotent, and a database that is already at
SCHEMA_VERSION is opened without issuing any DDL.
"""
import logging
from typing import Callable, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import ErrorCode, SchemaMigrationFailedError
from notestore.models.db_models import (DriverError, notes_table,
                                        read_user_version, write_user_version)

logger = logging.getLogger(__name__)

Migration = Callable[[Connection], None]


def _create_notes_table(conn: Connection) -> None:
    notes_table.create(conn, checkfirst=True)


def _index_sort_columns(conn: Connection) -> None:
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_notes_date ON notes (date)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_notes_favorite ON notes (favorite)"))
    conn.execute(text('CREATE INDEX IF NOT EXISTS ix_notes_order ON notes ("order")'))


def _index_text_columns(conn: Connection) -> None:
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_notes_title ON notes (title)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_notes_notes ON notes (notes)"))


def _create_search_index(conn: Connection) -> None:
    """Create the FTS5 index over title and notes, kept in sync by triggers.

    The index is an external-content table over ``notes``; the triggers run
    inside the same transaction as the base-table write, so the index never
    lags the table.
    """
    conn.execute(text("""
        CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
            title,
            notes,
            content='notes',
            content_rowid='rowid',
            tokenize='unicode61 remove_diacritics 2'
        )
    """))

    # Trigger for INSERT - add to FTS
    conn.execute(text("""
        CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
            INSERT INTO notes_fts(rowid, title, notes)
            VALUES (NEW.rowid, NEW.title, NEW.notes);
        END
    """))

    # Trigger for DELETE - remove from FTS
    conn.execute(text("""
        CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
            INSERT INTO notes_fts(notes_fts, rowid, title, notes)
            VALUES ('delete', OLD.rowid, OLD.title, OLD.notes);
        END
    """))

    # Trigger for UPDATE - replace the FTS entry
    conn.execute(text("""
        CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
            INSERT INTO notes_fts(notes_fts, rowid, title, notes)
            VALUES ('delete', OLD.rowid, OLD.title, OLD.notes);
            INSERT INTO notes_fts(rowid, title, notes)
            VALUES (NEW.rowid, NEW.title, NEW.notes);
        END
    """))

    # Index rows written before this version existed
    rebuild_search_index(conn)


# Ordered (version, step) pairs; applying step N moves the database to version N
MIGRATIONS: Tuple[Tuple[int, Migration], ...] = (
    (1, _create_notes_table),
    (2, _index_sort_columns),
    (3, _index_text_columns),
    (4, _create_search_index),
)

SCHEMA_VERSION = MIGRATIONS[-1][0]


def has_search_index(conn: Connection) -> bool:
    """Whether the FTS table exists in this database."""
    found = conn.execute(
        text("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'notes_fts'")
    ).first()
    return found is not None


def rebuild_search_index(conn: Connection) -> int:
    """Rebuild the FTS index from the notes table.

    Needed after migrations and after a database export, which renumbers the
    implicit rowids the index is keyed on.

    Returns:
        Number of notes indexed (0 when there is no search index).
    """
    if not has_search_index(conn):
        return 0
    conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES ('rebuild')"))
    return int(conn.execute(text("SELECT COUNT(*) FROM notes")).scalar() or 0)


class SchemaManager:
    """Applies MIGRATIONS to a database until it reaches the target version."""

    def __init__(
        self,
        engine: Engine,
        migrations: Sequence[Tuple[int, Migration]] = MIGRATIONS,
    ) -> None:
        versions = [version for version, _ in migrations]
        if versions != list(range(1, len(versions) + 1)):
            raise ValueError("migrations must be numbered 1..N without gaps")
        self.engine = engine
        self._migrations = tuple(migrations)

    @property
    def target_version(self) -> int:
        return self._migrations[-1][0] if self._migrations else 0

    def current_version(self) -> int:
        """Read the version currently stored in the database."""
        with self.engine.connect() as conn:
            return read_user_version(conn)

    def migrate(self) -> int:
        """Bring the database up to the target version.

        Returns:
            Number of migration steps applied (0 for a current database).

        Raises:
            SchemaMigrationFailedError: If a step fails, or the database was
                written by a newer schema than this code knows.
        """
        try:
            current = self.current_version()
        except (SQLAlchemyError, DriverError) as e:
            raise SchemaMigrationFailedError(
                f"Could not read schema version: {e}", original_error=e
            ) from e

        if current > self.target_version:
            raise SchemaMigrationFailedError(
                f"Database schema version {current} is newer than the supported "
                f"version {self.target_version}",
                current_version=current,
                code=ErrorCode.SCHEMA_VERSION_UNSUPPORTED,
            )

        applied = 0
        for version, step in self._migrations:
            if version <= current:
                continue
            logger.info(f"Migrating schema from version {current} to {version}")
            try:
                with self.engine.begin() as conn:
                    step(conn)
                    write_user_version(conn, version)
            except (SQLAlchemyError, DriverError) as e:
                logger.error(f"Schema migration to version {version} failed: {e}")
                raise SchemaMigrationFailedError(
                    f"Schema migration to version {version} failed",
                    version=version,
                    current_version=current,
                    original_error=e,
                ) from e
            current = version
            applied += 1

        if applied:
            logger.info(f"Schema is at version {current} ({applied} step(s) applied)")
        else:
            logger.debug(f"Schema already at version {current}")
        return applied
