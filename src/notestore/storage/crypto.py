"""Encryption at rest: database key lifecycle and the SQLCipher re-key protocol.

The database file is encrypted exactly when a key is registered in the
secret store. Changing the key rewrites the whole file:

1. record the schema version and row count of the live database
2. ``sqlcipher_export`` the live content into ``<db><suffix>`` under the target key
3. verify the exported file (integrity, row count), rebuild its search index
   and write the schema version into it
4. close the live connection and atomically rename the export over the original
5. reconnect at the original path with the target key
6. write the schema version again (the export does not carry it over)

The original file is only ever replaced by a single ``os.replace`` of an
already verified copy, so a crash at any point leaves at least one readable
database on disk. Leftovers are cleaned up by ``recover_interrupted_rekey``
and key/file mismatches are reconciled by ``open``.
"""
import logging
import os
import re
import secrets
from pathlib import Path
from typing import List, Optional, Tuple, Union

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import (ErrorCode, OpenFailedError, RekeyFailedError,
                                  SecretStoreUnavailableError, ValidationError)
from notestore.models.db_models import (DriverError, create_db_engine,
                                        is_not_a_database, notes_table,
                                        read_user_version, write_user_version)
from notestore.observability import traced
from notestore.storage.schema_manager import rebuild_search_index
from notestore.storage.secret_store import SecretStore

logger = logging.getLogger(__name__)

# Keys end up inside a PRAGMA statement, so quotes and whitespace are refused
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._~+/=:-]+$")

# Files SQLite keeps next to a database
SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")


class CryptoManager:
    """Manages the database key and converts the file between key states.

    Args:
        database_path: Path of the database file.
        secret_store: Where the key is registered.
        key_name: Name of the key in the secret store.
        journal_mode: Journal mode for connections to the database.
        rekey_suffix: Suffix of the temporary export file.
    """

    def __init__(
        self,
        database_path: Union[str, Path],
        secret_store: SecretStore,
        key_name: str = "dbkey",
        journal_mode: str = "WAL",
        rekey_suffix: str = ".rekey",
    ) -> None:
        self.database_path = Path(database_path)
        self.secret_store = secret_store
        self.key_name = key_name
        self.journal_mode = journal_mode
        self.temp_path = self.database_path.with_name(self.database_path.name + rekey_suffix)

    @property
    def previous_key_name(self) -> str:
        """Secret name holding the outgoing key while a key change is in flight."""
        return f"{self.key_name}.previous"

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def generate_key() -> str:
        """Create a fresh random key (64 hex characters)."""
        return secrets.token_hex(32)

    @staticmethod
    def validate_key(key: str) -> str:
        """Check that a key can be used as a SQLCipher passphrase.

        Raises:
            ValidationError: If the key is empty or contains quotes,
                whitespace or other characters outside the allowed set.
        """
        if not isinstance(key, str) or not _KEY_PATTERN.match(key):
            raise ValidationError(
                "Encryption key must be a non-empty string of letters, digits "
                "and ._~+/=:- characters",
                field="key",
                code=ErrorCode.INVALID_KEY,
            )
        return key

    def load_key(self) -> Optional[str]:
        """Read the registered key.

        An unavailable secret store is logged and treated as "no key", so the
        store still opens when the file is unencrypted.
        """
        return self._read_secret(self.key_name)

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    def connect(self, key: Optional[str]) -> Engine:
        """Create an engine for the database and check that the key opens it."""
        engine = create_db_engine(self.database_path, key, self.journal_mode)
        try:
            with engine.connect() as conn:
                conn.exec_driver_sql("SELECT count(*) FROM sqlite_master")
        except (SQLAlchemyError, DriverError):
            engine.dispose()
            raise
        return engine

    def open(self) -> Tuple[Engine, Optional[str]]:
        """Open the database with whichever known key fits it.

        Tries the registered key, then a key left over from an interrupted
        key change, then no key. When the key that worked is not the
        registered one, the secret store is brought back in line with the file.

        Returns:
            The engine and the key it was opened with (None for plaintext).

        Raises:
            OpenFailedError: If no candidate key opens the file, or the file
                cannot be opened for another reason.
        """
        try:
            self.recover_interrupted_rekey()
        except OSError as e:
            raise OpenFailedError(
                f"Could not clean up an interrupted key change: {e}",
                path=str(self.database_path),
                original_error=e,
            ) from e

        registered = self.load_key()
        previous = self._read_secret(self.previous_key_name)
        candidates: List[Optional[str]] = []
        for candidate in (registered, previous, None):
            if candidate not in candidates:
                candidates.append(candidate)

        last_error: Optional[Exception] = None
        for candidate in candidates:
            try:
                engine = self.connect(candidate)
            except (SQLAlchemyError, DriverError) as e:
                if not is_not_a_database(e):
                    raise OpenFailedError(
                        f"Could not open database: {e}",
                        path=str(self.database_path),
                        original_error=e,
                    ) from e
                last_error = e
                continue
            self._reconcile(registered, previous, candidate)
            return engine, candidate

        code = (
            ErrorCode.DATABASE_KEY_MISSING
            if registered is None and previous is None
            else ErrorCode.OPEN_FAILED
        )
        raise OpenFailedError(
            "Database is encrypted and no registered key opens it",
            path=str(self.database_path),
            code=code,
            original_error=last_error,
        )

    def recover_interrupted_rekey(self) -> None:
        """Clean up after a key change that did not run to completion.

        A temporary export next to an existing database is discarded, since
        the original was never replaced. A temporary export with no database
        beside it is moved into place.
        """
        if not self.temp_path.exists():
            return
        if self.database_path.exists():
            logger.warning(
                f"Discarding {self.temp_path.name} left by an interrupted key change"
            )
            self._discard_temp()
        else:
            logger.warning(
                f"Database missing after an interrupted key change; "
                f"restoring it from {self.temp_path.name}"
            )
            os.replace(self.temp_path, self.database_path)

    # ------------------------------------------------------------------
    # Key changes
    # ------------------------------------------------------------------

    def change_key(
        self, engine: Engine, current_key: Optional[str], new_key: Optional[str]
    ) -> Engine:
        """Register new_key and convert the database to it.

        Enabling or changing a key registers the new key before the file is
        converted (keeping the outgoing key under previous_key_name until the
        change is done); disabling converts the file first and removes the key
        afterwards.

        Returns:
            The engine connected to the converted database.

        Raises:
            RekeyFailedError: If the key cannot be registered or the file
                cannot be converted.
        """
        if new_key is None:
            try:
                new_engine = self.rekey(engine, None)
            except RekeyFailedError as e:
                if e.swapped:
                    self._delete_secret(self.key_name)
                raise
            if not self._delete_secret(self.key_name):
                logger.warning(
                    "Database decrypted but its key could not be removed from the "
                    "secret store; it will be dropped on next open"
                )
            return new_engine

        new_key = self.validate_key(new_key)
        try:
            if current_key is not None:
                self.secret_store.set(self.previous_key_name, current_key)
            self.secret_store.set(self.key_name, new_key)
        except SecretStoreUnavailableError as e:
            self._delete_secret(self.previous_key_name)
            raise RekeyFailedError(
                "Could not register the new key; the database was not changed",
                step="register_key",
                original_error=e,
            ) from e

        try:
            new_engine = self.rekey(engine, new_key)
        except RekeyFailedError as e:
            # Before the swap the file still needs the outgoing key
            if e.swapped or self._register(current_key):
                self._delete_secret(self.previous_key_name)
            raise
        self._delete_secret(self.previous_key_name)
        return new_engine

    @traced("rekey")
    def rekey(self, engine: Engine, key: Optional[str]) -> Engine:
        """Convert the database file to key (None for plaintext).

        The given engine is disposed once the converted file is verified;
        use the returned engine afterwards. Does not touch the secret store.

        Raises:
            RekeyFailedError: If any step fails. ``swapped`` tells whether the
                original file had already been replaced.
        """
        if key is not None:
            key = self.validate_key(key)
        logger.info(
            f"{'Encrypting' if key else 'Decrypting'} database {self.database_path.name}"
        )

        step = "inspect"
        try:
            with engine.connect() as conn:
                version = read_user_version(conn)
                expected_rows = int(
                    conn.execute(select(func.count()).select_from(notes_table)).scalar() or 0
                )

            step = "export"
            self._discard_temp()
            self._export(engine, key)

            step = "verify"
            self._verify_export(key, version, expected_rows)

            step = "swap"
            engine.dispose()
            self._remove_sidecars(self.database_path)
            os.replace(self.temp_path, self.database_path)
        except (SQLAlchemyError, DriverError, OSError, RekeyFailedError) as e:
            logger.error(f"Re-key failed during {step}: {e}")
            self._discard_temp()
            if isinstance(e, RekeyFailedError):
                raise
            raise RekeyFailedError(
                f"Re-key failed during {step}; the original database is unchanged",
                step=step,
                original_error=e,
            ) from e

        try:
            step = "reconnect"
            new_engine = self.connect(key)
            step = "restore_version"
            with new_engine.begin() as conn:
                write_user_version(conn, version)
        except (SQLAlchemyError, DriverError) as e:
            logger.error(f"Re-key failed during {step} after the file swap: {e}")
            raise RekeyFailedError(
                f"Database was converted but could not be reopened ({step})",
                step=step,
                swapped=True,
                original_error=e,
            ) from e

        logger.info(f"Database {self.database_path.name} re-keyed ({expected_rows} notes)")
        return new_engine

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    def _export(self, engine: Engine, key: Optional[str]) -> None:
        """Write the live database into the temp file under key."""
        raw = engine.raw_connection()
        try:
            cursor = raw.cursor()
            try:
                # Fold the WAL into the main file so nothing is left behind in it
                cursor.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                # An empty KEY attaches the target as plaintext
                cursor.execute(
                    "ATTACH DATABASE ? AS rekeyed KEY ?", (str(self.temp_path), key or "")
                )
                try:
                    cursor.execute("SELECT sqlcipher_export('rekeyed')")
                finally:
                    cursor.execute("DETACH DATABASE rekeyed")
            finally:
                cursor.close()
        finally:
            raw.close()

    def _verify_export(self, key: Optional[str], version: int, expected_rows: int) -> None:
        """Check the exported file and finish it before it replaces the original."""
        verify_engine = create_db_engine(self.temp_path, key, journal_mode="DELETE")
        try:
            with verify_engine.begin() as conn:
                check = conn.exec_driver_sql("PRAGMA integrity_check").scalar()
                if check != "ok":
                    raise RekeyFailedError(
                        f"Exported database failed its integrity check: {check}",
                        step="verify",
                        code=ErrorCode.REKEY_VERIFICATION_FAILED,
                    )
                rows = int(
                    conn.execute(select(func.count()).select_from(notes_table)).scalar() or 0
                )
                if rows != expected_rows:
                    raise RekeyFailedError(
                        f"Exported database has {rows} notes, expected {expected_rows}",
                        step="verify",
                        code=ErrorCode.REKEY_VERIFICATION_FAILED,
                    )
                rebuild_search_index(conn)
                write_user_version(conn, version)
        finally:
            verify_engine.dispose()

    def _discard_temp(self) -> None:
        if self.temp_path.exists():
            self.temp_path.unlink()
        self._remove_sidecars(self.temp_path)

    @staticmethod
    def _remove_sidecars(path: Path) -> None:
        for suffix in SIDECAR_SUFFIXES:
            sidecar = path.with_name(path.name + suffix)
            if sidecar.exists():
                logger.debug(f"Removing stale {sidecar.name}")
                sidecar.unlink()

    # ------------------------------------------------------------------
    # Secret store bookkeeping (best effort, failures are logged)
    # ------------------------------------------------------------------

    def _reconcile(
        self, registered: Optional[str], previous: Optional[str], used: Optional[str]
    ) -> None:
        if used != registered:
            if used is None:
                logger.warning(
                    "Registered key does not open the database but it opens unencrypted; "
                    "removing the stale key"
                )
            else:
                logger.warning(
                    "Database opened with the key from an interrupted key change; "
                    "registering it again"
                )
            self._register(used)
        if previous is not None:
            self._delete_secret(self.previous_key_name)

    def _register(self, key: Optional[str]) -> bool:
        if key is None:
            return self._delete_secret(self.key_name)
        try:
            self.secret_store.set(self.key_name, key)
            return True
        except SecretStoreUnavailableError as e:
            logger.error(f"Could not restore the database key registration: {e}")
            return False

    def _read_secret(self, name: str) -> Optional[str]:
        try:
            return self.secret_store.get(name) or None
        except SecretStoreUnavailableError as e:
            logger.warning(f"{e}; continuing as if no key '{name}' is registered")
            return None

    def _delete_secret(self, name: str) -> bool:
        try:
            self.secret_store.delete(name)
            return True
        except SecretStoreUnavailableError as e:
            logger.error(f"Could not remove secret '{name}': {e}")
            return False
