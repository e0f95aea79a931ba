"""Shared fixtures for task board tests."""

import sys
from pathlib import Path

import pytest

# Ensure the repository root is importable without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskboard.api import TaskBoardAPI
from taskboard.config import Config
from taskboard.integrity import IntegrityEngine
from taskboard.schema import EntityKind
from taskboard.store import SQLiteEntityStore


@pytest.fixture
def store(tmp_path):
    return SQLiteEntityStore(str(tmp_path / "taskboard.db"))


@pytest.fixture
def engine(store):
    return IntegrityEngine(store)


@pytest.fixture
def api(engine):
    return TaskBoardAPI(engine)


@pytest.fixture
def config(tmp_path):
    return Config(db_path=str(tmp_path / "server.db"), cors_origin="http://localhost:3000")


@pytest.fixture
def client(config):
    from taskboard_server import create_app
    app = create_app(config)
    app.testing = True
    return app.test_client()


@pytest.fixture
def snapshot(store):
    """Callable returning every document in the store, keyed by kind then id."""
    def take():
        return {kind: {d["_id"]: d for d in store.find(kind)} for kind in EntityKind}
    return take
