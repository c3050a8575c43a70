import os
import tempfile

# main crea su DatabaseManager al importarse; que no toque el directorio actual
os.environ.setdefault("SENSOR_DB_PATH", os.path.join(tempfile.mkdtemp(), "import.db"))

import pytest
from fastapi.testclient import TestClient

import main
from logic import ThresholdStore
from services import DatabaseManager


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(str(tmp_path / "sensores.db"))


@pytest.fixture
def store(db):
    return ThresholdStore(db)


@pytest.fixture
def client(db, store):
    main.app.dependency_overrides[main.get_db_manager] = lambda: db
    main.app.dependency_overrides[main.get_threshold_store] = lambda: store
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
