import os

# Settings are read at import time
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("INTERNAL_API_TOKEN", "test-internal-token")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("STATUS_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("RETRIGGER_ENABLED", "false")
os.environ.setdefault("LOG_FILE", "test.log")

import fakeredis
import pytest

from database import Base, engine
from queue_index import QueueIndex
from scrape_executor import PropertyData


class RecordingTrigger:
    def __init__(self):
        self.dispatched = 0

    def dispatch(self):
        self.dispatched += 1
        return True


def fake_executor(url):
    return PropertyData(source_url=url, provider="fake", title="3 bed house", price=450000.0)


def failing_executor(url):
    raise RuntimeError("ScraperAPI error: 500 Internal Server Error")


@pytest.fixture
def redis_conn():
    return fakeredis.FakeRedis()


@pytest.fixture
def queue_index(redis_conn):
    return QueueIndex(redis_conn, prefix="test:queue")


@pytest.fixture
def trigger():
    return RecordingTrigger()


@pytest.fixture
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def api_headers():
    return {"access_token": os.environ["API_KEY"]}


@pytest.fixture
def internal_headers():
    return {"X-Internal-Token": os.environ["INTERNAL_API_TOKEN"]}


@pytest.fixture
def scheduler_headers():
    return {"Authorization": f"Bearer {os.environ['CRON_SECRET']}"}
