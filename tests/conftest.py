import os
from collections import defaultdict

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from complaint_desk.db import models  # noqa: E402,F401
from complaint_desk.db.session import Base  # noqa: E402
from complaint_desk.model.auth.principal import Principal  # noqa: E402
from complaint_desk.model.complaint.complaint_request import ComplaintCreate  # noqa: E402
from complaint_desk.service.backend.policy import BackendPolicy  # noqa: E402
from complaint_desk.service.backend.sql_backend import SqlBackend  # noqa: E402
from complaint_desk.service.complaint.data_service import ComplaintDataService  # noqa: E402

USER = Principal(id="U1", name="Alice", role="user")
OTHER_USER = Principal(id="U2", name="Bob", role="user")
AGENT = Principal(id="A1", name="Sarah", role="agent")
OTHER_AGENT = Principal(id="A2", name="Tom", role="agent")
ADMIN = Principal(id="ADM", name="Root", role="admin")


class _StubSubscription:
    def __init__(self, feed, table, handler):
        self._feed = feed
        self._table = table
        self._handler = handler

    async def close(self):
        self._feed.handlers[self._table].remove(self._handler)


class InMemoryChangeFeed:
    """Delivers events inline so tests observe refreshes deterministically."""

    def __init__(self):
        self.handlers = defaultdict(list)
        self.published = []

    async def publish(self, event):
        self.published.append(event)
        for handler in list(self.handlers[event.table]):
            await handler(event)

    async def subscribe(self, table, handler):
        self.handlers[table].append(handler)
        return _StubSubscription(self, table, handler)

    def subscriber_count(self):
        return sum(len(h) for h in self.handlers.values())


@pytest.fixture(scope="function")
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


@pytest.fixture(scope="function")
def feed():
    return InMemoryChangeFeed()


@pytest.fixture(scope="function")
def backend(session_factory, feed):
    return SqlBackend(session_factory, feed)


@pytest.fixture(scope="function")
def policy():
    return BackendPolicy(timeout=5, fetch_attempts=2, retry_wait=0)


@pytest.fixture(scope="function")
def open_session(backend, policy):
    async def _open(principal):
        service = ComplaintDataService(backend, policy)
        await service.start(principal)
        return service

    return _open


def complaint_form(**overrides):
    values = {
        "title": "Broken item",
        "description": "Arrived with a cracked screen",
        "category": "Product Quality",
        "priority": "high",
        "user_id": USER.id,
        "user_name": USER.name,
    }
    values.update(overrides)
    return ComplaintCreate(**values)
