"""SQLAlchemy database models and engine setup for notestore."""
import logging
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import (Column, Float, Integer, MetaData, String, Table, Text,
                        create_engine, event, text)
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.pool import QueuePool
from sqlcipher3 import dbapi2 as sqlcipher

from notestore.utils import fold_text

logger = logging.getLogger(__name__)

metadata = MetaData()

# The only persisted entity. Values are written by storage.codec, which owns
# the text date format and the 0/1 favorite encoding.
notes_table = Table(
    "notes",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("date", String(32), nullable=False),
    Column("order", Float, nullable=False),
    Column("favorite", Integer, nullable=False, server_default=text("0")),
    Column("title", Text, nullable=False, server_default=""),
    Column("notes", Text, nullable=False, server_default=""),
)

# Display order: manual order key first, newest date breaks ties
NOTE_ORDERING = (notes_table.c["order"].desc(), notes_table.c.date.desc())

# Errors raised by the driver outside of SQLAlchemy (raw connections)
DriverError = sqlcipher.Error
DriverDatabaseError = sqlcipher.DatabaseError


def create_db_engine(
    database_path: Union[str, Path],
    key: Optional[str] = None,
    journal_mode: str = "WAL",
) -> Engine:
    """Create an engine for a (possibly encrypted) SQLite database file.

    Both plaintext and encrypted files go through the SQLCipher driver so a
    live connection can always export to the other form. With a key, the
    pysqlcipher dialect issues ``PRAGMA key`` before anything else touches
    the file.

    A single pooled connection backs the engine; the store serializes access
    to it. Every connection:
    - runs in driver autocommit with an explicit BEGIN per transaction, so DDL
      and ``PRAGMA user_version`` writes commit or roll back together
    - uses the configured journal mode and NORMAL synchronous mode
    - has a ``fold(text)`` SQL function for diacritic-insensitive matching

    Args:
        database_path: Path of the database file (created if missing).
        key: SQLCipher passphrase, or None for a plaintext file.
        journal_mode: SQLite journal mode to apply on connect.

    Returns:
        The configured engine. No connection is opened yet.
    """
    pool_args = dict(
        poolclass=QueuePool,
        pool_size=1,           # one live connection per database file
        max_overflow=0,
        pool_timeout=30,
        connect_args={"check_same_thread": False},
    )
    if key:
        url = URL.create("sqlite+pysqlcipher", password=key, database=str(database_path))
        engine = create_engine(url, **pool_args)
    else:
        engine = create_engine(f"sqlite:///{database_path}", module=sqlcipher, **pool_args)

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Let SQLAlchemy's begin event below control transactions
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            # First read of the file; fails here when the key is wrong
            cursor.execute("SELECT count(*) FROM sqlite_master")
            cursor.execute(f"PRAGMA journal_mode={journal_mode}")
            cursor.execute("PRAGMA synchronous=NORMAL")
        finally:
            cursor.close()
        dbapi_connection.create_function("fold", 1, fold_text)

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def read_user_version(conn: Connection) -> int:
    """Read the schema version stored in the database header."""
    return int(conn.exec_driver_sql("PRAGMA user_version").scalar() or 0)


def write_user_version(conn: Connection, version: int) -> None:
    """Write the schema version into the database header."""
    # PRAGMA arguments cannot be bound parameters
    conn.exec_driver_sql(f"PRAGMA user_version = {int(version)}")


def is_not_a_database(error: BaseException) -> bool:
    """Whether an error means the file could not be read with the given key."""
    # "file is not a database" (older builds: "file is encrypted or is not a database")
    message = str(getattr(error, "orig", None) or error).lower()
    return "not a database" in message
