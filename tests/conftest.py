import os

# Settings are read at import time
os.environ.setdefault("API_KEY", "test-api-key")
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["REDIS_URL"] = ""
os.environ["FAL_KEY"] = ""
os.environ["WEBHOOK_URL"] = ""
os.environ["LOG_FILE"] = "test.log"
os.environ["RATE_LIMIT_PER_MINUTE"] = "1000"

from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import SqlJobStore, create_tables
from events import LocalJobEvents
from job_store import InMemoryJobStore
from provider import FalQueueClient, ProviderStatus


@pytest.fixture
def events():
    return LocalJobEvents()


@pytest.fixture
def store(events):
    return InMemoryJobStore(listener=events.publish)


@pytest.fixture
def sql_store(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'jobs.db'}",
        connect_args={"check_same_thread": False}
    )
    create_tables(bind=engine)
    yield SqlJobStore(session_factory=sessionmaker(autocommit=False, autoflush=False, bind=engine))
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_store(request):
    """Runs a test against both store implementations"""
    if request.param == "memory":
        return InMemoryJobStore()
    return request.getfixturevalue("sql_store")


@pytest.fixture
def provider():
    fake = Mock(spec=FalQueueClient)
    fake.submit.return_value = "req-123"
    fake.status.return_value = ProviderStatus(status="IN_QUEUE", logs=[])
    return fake


@pytest.fixture
def client(store, events):
    from main import app, get_events, get_provider, get_scheduler, get_store
    from rate_limiter import limiter

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_events] = lambda: events
    app.dependency_overrides[get_provider] = lambda: None
    app.dependency_overrides[get_scheduler] = lambda: None
    limiter.reset()

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def use_provider(client, provider):
    """Wire the mock provider into the app"""
    from main import app, get_provider

    app.dependency_overrides[get_provider] = lambda: provider
    return provider


@pytest.fixture
def api_headers():
    from config import settings
    return {settings.api_key_name: settings.api_key}
