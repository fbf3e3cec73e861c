import mongomock
import pytest
from fastapi.testclient import TestClient

from database import Database
from main import app, get_database

TEST_DATABASE_NAME = "loan_sync_test"


@pytest.fixture
def mongo_client():
    client = mongomock.MongoClient()
    yield client
    client.drop_database(TEST_DATABASE_NAME)


@pytest.fixture
def store(mongo_client):
    handle = Database(url="mongodb://test:27017", name=TEST_DATABASE_NAME,
                      client_factory=lambda *args, **kwargs: mongo_client)
    assert handle.ensure_connected()
    return handle


@pytest.fixture
def client(store):
    app.dependency_overrides[get_database] = lambda: store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
