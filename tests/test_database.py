import time
from unittest import mock

import mongomock
from pymongo.errors import ServerSelectionTimeoutError

from database import Database, SYSTEM, run_concurrently
from schemas import SYSTEM_KEY


def failing_client():
    client = mock.MagicMock()
    client.admin.command.side_effect = ServerSelectionTimeoutError("no servers available")
    return client


def test_connection_failure_is_recorded_not_raised():
    client = failing_client()
    handle = Database(url="mongodb://down:27017", client_factory=lambda *a, **kw: client)

    assert handle.ensure_connected() is False
    assert handle.connected is False
    assert "no servers available" in handle.error

    # every request retries
    assert handle.ensure_connected() is False
    assert client.admin.command.call_count == 2


def test_connection_is_memoized_after_success():
    client = failing_client()
    handle = Database(url="mongodb://flaky:27017", client_factory=lambda *a, **kw: client)
    handle.ensure_connected()

    client.admin.command.side_effect = None
    assert handle.ensure_connected() is True
    assert handle.error is None
    assert handle.ensure_connected() is True
    assert client.admin.command.call_count == 2


def test_connect_seeds_system_once():
    mongo = mongomock.MongoClient()
    handle = Database(url="mongodb://test:27017", name="seed_test", client_factory=lambda *a, **kw: mongo)
    assert handle.ensure_connected()
    handle.seed_system()

    docs = list(handle[SYSTEM].find({"key": SYSTEM_KEY}))
    assert len(docs) == 1
    assert docs[0]["budget"] == 30000000
    assert docs[0]["rankProfit"] == 0
    mongo.drop_database("seed_test")


def test_status_without_env_uri(monkeypatch):
    monkeypatch.delenv("MONGODB_URI", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    handle = Database()
    status = handle.status()
    assert handle.url == "mongodb://localhost:27017"
    assert status["uri_provided"] is False
    assert status["connected"] is False
    assert set(status) == {"connected", "error", "uri_provided", "timestamp"}


def test_status_with_env_uri(monkeypatch):
    monkeypatch.setenv("MONGODB_URI", "mongodb://db.internal:27017")
    handle = Database()
    assert handle.url == "mongodb://db.internal:27017"
    assert handle.status()["uri_provided"] is True


def test_run_concurrently_waits_for_all_before_raising():
    done = []

    def fails():
        raise ValueError("boom")

    def succeeds():
        done.append(True)
        return 1

    try:
        run_concurrently(fails, succeeds)
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")
    assert done == [True]
    assert run_concurrently(lambda: 1, lambda: 2) == [1, 2]


def test_concurrent_access_builds_one_client():
    mongo = mongomock.MongoClient()
    created = []

    def factory(*args, **kwargs):
        created.append(args)
        time.sleep(0.01)
        return mongo

    handle = Database(url="mongodb://test:27017", name="client_test", client_factory=factory)
    run_concurrently(*[lambda: handle["users"] for _ in range(8)])
    assert len(created) == 1
