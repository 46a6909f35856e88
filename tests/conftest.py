import os

import pytest
from fastapi.testclient import TestClient

from indexer.app.main import create_app
from indexer.app.settings import Settings
from tests.support import PROGRAM_ID, FakeLedger, FakeRedis, MemoryStore

DATABASE_URL = os.environ.get("DATABASE_URL")


@pytest.fixture(scope="session")
def database_url():
    if not DATABASE_URL:
        pytest.skip("DATABASE_URL not set; PostgreSQL store tests need a live database")
    return DATABASE_URL


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def broker():
    return FakeRedis()


@pytest.fixture
def settings():
    return Settings(workers=0, webhook_auth="s3cret", program_id=PROGRAM_ID)


@pytest.fixture
def client(settings, store, broker, ledger):
    app = create_app(settings, db=store, redis_client=broker, ledger=ledger)
    with TestClient(app) as c:
        yield c
