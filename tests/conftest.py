"""Common test fixtures for notestore."""

import tempfile
from pathlib import Path

import pytest

from notestore.config import config
from notestore.models.db_models import create_db_engine
from notestore.observability import metrics
from notestore.services.note_store import NoteStore
from notestore.storage.schema_manager import SchemaManager
from tests.fakes import MemorySecretStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for database files."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def db_path(temp_dir):
    """Path of a database file that does not exist yet."""
    return temp_dir / "data" / "notesdb.sqlite"


@pytest.fixture
def test_config(temp_dir, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "base_dir", temp_dir)
    monkeypatch.setattr(config, "database_path", Path("data") / "notesdb.sqlite")
    monkeypatch.setattr(config, "search_strategy", "fts")
    yield config


@pytest.fixture
def secret_store():
    """Empty in-memory secret store."""
    return MemorySecretStore()


@pytest.fixture
def engine(db_path):
    """Plaintext engine on a fully migrated database."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_db_engine(db_path)
    SchemaManager(engine).migrate()
    yield engine
    engine.dispose()


@pytest.fixture
def note_store(test_config, secret_store):
    """An open store on a fresh database."""
    store = NoteStore(secret_store=secret_store, store_config=test_config)
    yield store
    store.close()


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep the global metrics collector independent between tests."""
    metrics.reset()
    yield
    metrics.reset()

