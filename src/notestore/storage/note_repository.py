"""Repository for note storage and retrieval."""

import logging
import uuid
from typing import Iterable, Mapping, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import ErrorCode, StorageError
from notestore.models.db_models import notes_table
from notestore.models.schema import Note
from notestore.storage.codec import encode

logger = logging.getLogger(__name__)

NoteId = Union[uuid.UUID, str]


class NoteRepository:
    """Persists notes in the notes table.

    Every write runs in a single transaction; the FTS triggers update the
    search index inside that same transaction.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def count(self) -> int:
        """Number of stored notes."""
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(select(func.count()).select_from(notes_table)).scalar() or 0)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to count notes: {e}",
                operation="count",
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    def max_order(self) -> Optional[float]:
        """Largest order key in the table, or None when it is empty."""
        try:
            with self.engine.connect() as conn:
                value = conn.execute(select(func.max(notes_table.c["order"]))).scalar()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read order keys: {e}",
                operation="max_order",
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e
        return float(value) if value is not None else None

    def insert(self, note: Note) -> Note:
        """Insert a new note. Fails if the id already exists."""
        try:
            with self.engine.begin() as conn:
                conn.execute(notes_table.insert().values(**encode(note)))
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to insert note {note.id}: {e}",
                operation="insert",
                original_error=e,
            ) from e
        logger.debug(f"Inserted note {note.id}")
        return note

    def upsert(self, note: Note) -> Note:
        """Insert the note, or replace every field of the stored note with the same id."""
        row = encode(note)
        stmt = sqlite_insert(notes_table).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=[notes_table.c.id],
            set_={column: stmt.excluded[column] for column in row if column != "id"},
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to save note {note.id}: {e}",
                operation="upsert",
                original_error=e,
            ) from e
        logger.debug(f"Saved note {note.id}")
        return note

    def delete(self, note_ids: Iterable[NoteId]) -> int:
        """Delete notes by id in one transaction.

        Returns:
            Number of notes actually deleted.
        """
        ids = sorted({str(note_id) for note_id in note_ids})
        if not ids:
            return 0
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    notes_table.delete().where(notes_table.c.id.in_(ids))
                )
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to delete {len(ids)} note(s): {e}",
                operation="delete",
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
        logger.debug(f"Deleted {result.rowcount} of {len(ids)} requested note(s)")
        return result.rowcount

    def update_orders(self, orders: Mapping[NoteId, float]) -> int:
        """Set new order keys for several notes in one transaction.

        Returns:
            Number of notes updated.
        """
        if not orders:
            return 0
        updated = 0
        try:
            with self.engine.begin() as conn:
                for note_id, order in orders.items():
                    result = conn.execute(
                        update(notes_table)
                        .where(notes_table.c.id == str(note_id))
                        .values({"order": float(order)})
                    )
                    updated += result.rowcount
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to reorder {len(orders)} note(s): {e}",
                operation="update_orders",
                original_error=e,
            ) from e
        return updated
