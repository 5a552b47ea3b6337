import os

# Must be set before importing app. load_dotenv() does not override existing env vars,
# so these take precedence over whatever is in .env.
os.environ.setdefault("TASKS_DATA_FILE", "/tmp/tasks-test.json")
os.environ.setdefault("TASKS_AUTO_COMPLETE", "0")

import pytest
from fastapi.testclient import TestClient

from app import app, get_store
from store import TaskStore, keyword_rule
from tests.helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def data_file(tmp_path):
    return tmp_path / "tasks.json"


@pytest.fixture
def store(data_file, clock):
    """A store backed by a per-test file, with a clock the test controls."""
    return TaskStore(data_file, clock=clock)


@pytest.fixture
def keyword_store(data_file, clock):
    return TaskStore(data_file, completion_rule=keyword_rule(), clock=clock)


@pytest.fixture
def client(store):
    """
    A TestClient whose get_store dependency is overridden to use the per-test
    store, so no test ever touches the configured data file.
    """
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app, raise_server_exceptions=True)
    app.dependency_overrides.clear()


@pytest.fixture
def add(client):
    """POST a task and return its JSON, asserting it was created."""
    def _add(title, **extra):
        r = client.post("/api/tasks", json={"title": title, **extra})
        assert r.status_code == 201, r.text
        return r.json()
    return _add
