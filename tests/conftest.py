from __future__ import annotations

import asyncio
import os
import threading
import time
from collections.abc import Callable, Generator, Iterator, Sequence
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from pickup_audit.db.session import Base, build_session_factory
from pickup_audit.db.time import utcnow
from pickup_audit.repositories.task_repo import TaskRepository
from pickup_audit.schemas.audit import AuditRecord
from pickup_audit.services.kafka import PublishError


@pytest.fixture()
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    # A file database gives each worker thread its own connection.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'audit.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def repository(session_factory: sessionmaker[Session]) -> TaskRepository:
    return TaskRepository(session_factory)


class RecordingSink:
    """Sink that remembers every batch it was handed."""

    def __init__(self) -> None:
        self.batches: list[list[AuditRecord]] = []
        self._lock = threading.Lock()

    def process(self, batch: Sequence[AuditRecord]) -> None:
        with self._lock:
            self.batches.append(list(batch))

    @property
    def sizes(self) -> list[int]:
        with self._lock:
            return [len(batch) for batch in self.batches]

    @property
    def messages(self) -> list[str]:
        with self._lock:
            return [record.message for batch in self.batches for record in batch]


class FailingSink:
    def __init__(self) -> None:
        self.calls = 0

    def process(self, batch: Sequence[AuditRecord]) -> None:
        self.calls += 1
        raise RuntimeError("sink is down")


class FakePublisher:
    """Publisher whose outcome per call is scripted with booleans."""

    def __init__(self, outcomes: Sequence[bool] = ()) -> None:
        self.outcomes = list(outcomes)
        self.published: list[tuple[str, bytes]] = []
        self.calls = 0
        self._lock = threading.Lock()

    def publish(self, topic: str, payload: bytes) -> None:
        with self._lock:
            self.calls += 1
            ok = self.outcomes.pop(0) if self.outcomes else True
            if not ok:
                raise PublishError("broker unavailable")
            self.published.append((topic, payload))


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture()
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def fake_publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


def make_record(message: str = "ok", order_id: str = "order-1") -> AuditRecord:
    return AuditRecord(
        order_id=order_id,
        old_state="accepted",
        new_state="delivered",
        endpoint="/orders-deliver/",
        request="PUT /orders-deliver/order-1",
        response="200",
        message=message,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> bool:
    """Poll ``predicate`` on the event loop until it holds or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()
