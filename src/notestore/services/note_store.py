"""The note store: one open database file and its cached listing.

``NoteStore`` is what a UI talks to. It owns the connection, keeps an
immutable snapshot of the current (filtered) listing in ``items`` and
reloads it after every mutating call, whether the call succeeded or not.

Failures of individual operations do not raise: they are logged, kept in
``error_message`` for display, and the call returns ``None``/``False``.
The exceptions are opening the store (``OpenFailedError``), ``rekey``
(``RekeyFailedError``) and any call refused while a key change is in
flight (``BusyError``).
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple, Union

from sqlalchemy.engine import Engine

from notestore.config import NoteStoreConfig, config
from notestore.exceptions import (BusyError, NoteStoreError,
                                  OpenFailedError, RekeyFailedError,
                                  SchemaMigrationFailedError, StorageError,
                                  ValidationError)
from notestore.models.schema import Note
from notestore.observability import sanitize_error_message, timed_operation
from notestore.services.reorder import reorder
from notestore.storage.crypto import CryptoManager
from notestore.storage.note_query import NoteQuery
from notestore.storage.note_repository import NoteId, NoteRepository
from notestore.storage.schema_manager import SchemaManager
from notestore.storage.secret_store import KeyringSecretStore, SecretStore

logger = logging.getLogger(__name__)


class NoteStore:
    """Notes kept in a single, optionally encrypted, SQLite database.

    Args:
        database_path: Database file. Defaults to the configured path.
        secret_store: Where the database key is registered. Defaults to the
            platform keyring.
        store_config: Settings to use instead of the module-level config.

    Raises:
        OpenFailedError: If the directory cannot be created, the database
            cannot be opened or migrated, or the first listing fails.
    """

    def __init__(
        self,
        database_path: Optional[Union[str, Path]] = None,
        secret_store: Optional[SecretStore] = None,
        store_config: Optional[NoteStoreConfig] = None,
    ) -> None:
        self.config = store_config or config
        self.database_path = (
            Path(database_path) if database_path else self.config.get_database_path()
        )
        self.secret_store = secret_store or KeyringSecretStore(self.config.keyring_service)
        self.crypto = CryptoManager(
            self.database_path,
            self.secret_store,
            key_name=self.config.key_name,
            journal_mode=self.config.journal_mode,
            rekey_suffix=self.config.rekey_suffix,
        )

        # Serializes every use of the connection
        self._lock = threading.RLock()
        # Set while a key change runs; guarded by _busy_guard for test-and-set
        self._busy = threading.Event()
        self._busy_guard = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

        self._engine: Optional[Engine] = None
        self._repository: Optional[NoteRepository] = None
        self._query: Optional[NoteQuery] = None
        self._key: Optional[str] = None
        self._items: Tuple[Note, ...] = ()
        self._filter = ""
        self._error_message: Optional[str] = None

        with timed_operation("open", path=self.database_path.name):
            self._open()

    @classmethod
    def open(
        cls,
        database_path: Optional[Union[str, Path]] = None,
        secret_store: Optional[SecretStore] = None,
        store_config: Optional[NoteStoreConfig] = None,
    ) -> "NoteStore":
        """Open (creating if needed) the store at database_path."""
        return cls(database_path, secret_store=secret_store, store_config=store_config)

    def _open(self) -> None:
        try:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OpenFailedError(
                f"Could not create directory for the database: {e}",
                path=str(self.database_path),
                original_error=e,
            ) from e

        engine, key = self.crypto.open()
        try:
            applied = SchemaManager(engine).migrate()
        except SchemaMigrationFailedError as e:
            engine.dispose()
            raise OpenFailedError(
                f"Could not prepare the database schema: {e.message}",
                path=str(self.database_path),
                original_error=e,
            ) from e
        self._bind(engine)
        self._key = key

        try:
            self.reload()
        except NoteStoreError as e:
            self._dispose()
            raise OpenFailedError(
                f"Could not load notes: {e.message}",
                path=str(self.database_path),
                original_error=e,
            ) from e
        logger.info(
            f"Opened {self.database_path.name} ({len(self._items)} notes, "
            f"{'encrypted' if key else 'unencrypted'}, {applied} migration(s) applied)"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def items(self) -> Tuple[Note, ...]:
        """Snapshot of the current listing, in display order."""
        return self._items

    @property
    def filter(self) -> str:
        return self._filter

    @filter.setter
    def filter(self, value: str) -> None:
        self.set_filter(value)

    @property
    def encrypted(self) -> bool:
        """Whether the open database is encrypted (a key is registered for it)."""
        return self._key is not None

    @property
    def busy(self) -> bool:
        """True while a key change is in flight."""
        return self._busy.is_set()

    @property
    def error_message(self) -> Optional[str]:
        """Last failure, for display. Cleared by the next successful operation."""
        return self._error_message

    @property
    def closed(self) -> bool:
        return self._engine is None

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def set_filter(self, text: Optional[str]) -> None:
        """Change the listing filter and reload.

        During a key change the filter is recorded and applied when the key
        change finishes.
        """
        self._filter = text or ""
        if self.busy:
            logger.debug("Filter changed during a key change; reload deferred")
            return
        with self._lock:
            if self._refresh():
                self._error_message = None

    def reload(self) -> Tuple[Note, ...]:
        """Re-run the listing query for the current filter.

        Raises:
            QueryFailedError: If the listing cannot be read.
            MalformedRowError: If a stored row cannot be decoded.
        """
        with self._lock:
            query = self._require_open("reload")[1]
            self._items = tuple(query.list(self._filter))
            return self._items

    def schema_version(self) -> int:
        """Schema version stored in the open database."""
        with self._lock:
            repository, _ = self._require_open("read the schema version")
            return SchemaManager(repository.engine).current_version()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self) -> Optional[Note]:
        """Create an empty note at the top of the list.

        Clears the filter so the new note is visible.

        Returns:
            The new note, or None if it could not be stored.
        """
        self._ensure_idle("add a note")
        note: Optional[Note] = None
        with self._lock:
            self._filter = ""
            with self._reloading("add") as outcome:
                repository = self._require_open("add a note")[0]
                top = repository.max_order()
                note = Note(order=(top if top is not None else 0.0) + self.config.order_offset)
                repository.insert(note)
                outcome["note_id"] = str(note.id)
        return note if outcome["ok"] else None

    def save(self, note: Note) -> bool:
        """Insert or replace the stored note with the same id."""
        self._ensure_idle("save a note")
        with self._reloading("save", note_id=str(note.id)) as outcome:
            self._require_open("save a note")[0].upsert(note)
        return outcome["ok"]

    def remove(self, note_ids: Iterable[NoteId]) -> bool:
        """Delete notes by id in one transaction."""
        self._ensure_idle("remove notes")
        ids = list(note_ids)
        with self._reloading("remove", count=len(ids)) as outcome:
            outcome["deleted"] = self._require_open("remove notes")[0].delete(ids)
        return outcome["ok"]

    def remove_at(self, offsets: Iterable[int]) -> bool:
        """Delete the notes at the given positions of ``items``."""
        self._ensure_idle("remove notes")
        with self._reloading("remove_at") as outcome:
            items = self._items
            ids = []
            for offset in sorted(set(offsets)):
                if offset < 0 or offset >= len(items):
                    raise ValidationError(
                        f"Position {offset} is outside the list of {len(items)} notes",
                        field="offsets",
                        value=offset,
                    )
                ids.append(items[offset].id)
            outcome["deleted"] = self._require_open("remove notes")[0].delete(ids)
        return outcome["ok"]

    def move(self, source_offsets: Iterable[int], destination: int) -> bool:
        """Move the notes at source_offsets of ``items`` to destination.

        destination is an insertion point in ``[0, len(items)]`` of the
        listing before the move.
        """
        self._ensure_idle("move notes")
        with self._reloading("move", destination=destination) as outcome:
            changes = reorder(
                source_offsets, destination, self._items, self.config.order_offset
            )
            outcome["moved"] = self._require_open("move notes")[0].update_orders(changes)
        return outcome["ok"]

    def is_modified(self, note: Note) -> bool:
        """Whether note differs from the cached copy with the same id.

        A note with no cached copy (new, or hidden by the filter) counts as
        modified.
        """
        for cached in self._items:
            if cached.id == note.id:
                return cached != note
        return True

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def set_encrypted(self, enabled: bool) -> bool:
        """Encrypt the database under a fresh key, or decrypt it.

        Blocks until the whole file has been rewritten.

        Returns:
            True if the database is now in the requested state.

        Raises:
            BusyError: If another key change is in flight.
        """
        self._begin_key_change()
        return self._apply_encryption(enabled)

    def set_encrypted_async(self, enabled: bool) -> "Future[bool]":
        """Run set_encrypted on a background thread.

        ``busy`` is already set when this returns; it is cleared when the
        future completes.

        Raises:
            BusyError: If another key change is in flight.
        """
        self._begin_key_change()
        try:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="notestore-rekey"
                )
            return self._executor.submit(self._apply_encryption, enabled)
        except RuntimeError:
            self._busy.clear()
            raise

    def rekey(self, key: Optional[str]) -> None:
        """Convert the database to key and register it (None decrypts).

        Raises:
            BusyError: If another key change is in flight.
            ValidationError: If key is not usable as a database key.
            RekeyFailedError: If the conversion fails. The database stays
                readable and the store stays open in whichever state the
                file is in.
        """
        self._begin_key_change()
        try:
            self._change_key(key)
        finally:
            self._end_key_change()

    def _apply_encryption(self, enabled: bool) -> bool:
        try:
            if enabled == self.encrypted:
                return True
            key = self.crypto.generate_key() if enabled else None
            try:
                with timed_operation("set_encrypted", enabled=enabled):
                    self._change_key(key)
            except NoteStoreError as e:
                self._record_failure("set_encrypted", e)
                return False
            self._error_message = None
            return True
        finally:
            self._end_key_change()

    def _change_key(self, key: Optional[str]) -> None:
        with self._lock:
            if self._engine is None:
                raise StorageError("The note store is closed", operation="rekey")
            try:
                engine = self.crypto.change_key(self._engine, self._key, key)
            except RekeyFailedError:
                self._recover_connection()
                raise
            self._bind(engine)
            self._key = key

    def _recover_connection(self) -> None:
        """Reconnect after a failed key change, to whatever state the file is in."""
        self._dispose()
        try:
            engine, key = self.crypto.open()
        except OpenFailedError as e:
            logger.error(f"Could not reopen the database after a failed key change: {e}")
            return
        self._bind(engine)
        self._key = key
        logger.info(
            f"Reconnected to {self.database_path.name} "
            f"({'encrypted' if key else 'unencrypted'}) after a failed key change"
        )

    def _begin_key_change(self) -> None:
        with self._busy_guard:
            if self._busy.is_set():
                raise BusyError("change the encryption key")
            self._busy.set()

    def _end_key_change(self) -> None:
        self._busy.clear()
        with self._lock:
            if self._engine is not None:
                self._refresh()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Wait for a running key change, then close the connection."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        with self._lock:
            self._dispose()

    def __enter__(self) -> "NoteStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _bind(self, engine: Engine) -> None:
        self._engine = engine
        self._repository = NoteRepository(engine)
        self._query = NoteQuery(engine, self.config.search_strategy)

    def _dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._repository = None
        self._query = None

    def _require_open(self, operation: str) -> Tuple[NoteRepository, NoteQuery]:
        if self._repository is None or self._query is None:
            raise StorageError(
                f"Cannot {operation}: the note store is closed", operation=operation
            )
        return self._repository, self._query

    def _ensure_idle(self, operation: str) -> None:
        if self._busy.is_set():
            raise BusyError(operation)

    def _refresh(self) -> bool:
        """Reload items; on failure keep the previous snapshot."""
        try:
            self.reload()
            return True
        except NoteStoreError as e:
            self._record_failure("reload", e)
            return False

    def _record_failure(self, operation: str, error: NoteStoreError) -> None:
        logger.error(f"{operation} failed: {error}")
        self._error_message = sanitize_error_message(error.message)

    @contextmanager
    def _reloading(self, operation: str, **context: Any) -> Iterator[Dict[str, Any]]:
        """Run a mutation, record its outcome, and reload items afterwards.

        Yields a dict whose ``ok`` entry tells the caller whether the
        mutation succeeded. NoteStoreError is logged and kept in
        error_message instead of propagating.
        """
        outcome: Dict[str, Any] = {"ok": False}
        with self._lock:
            try:
                with timed_operation(operation, **context):
                    yield outcome
                outcome["ok"] = True
                self._error_message = None
            except NoteStoreError as e:
                self._record_failure(operation, e)
            finally:
                self._refresh()
