"""Storage layer for notestore."""

from notestore.storage.crypto import CryptoManager
from notestore.storage.note_query import NoteQuery
from notestore.storage.note_repository import NoteRepository
from notestore.storage.schema_manager import SchemaManager
from notestore.storage.secret_store import KeyringSecretStore, SecretStore

__all__ = [
    "CryptoManager",
    "KeyringSecretStore",
    "NoteQuery",
    "NoteRepository",
    "SchemaManager",
    "SecretStore",
]
