# pylint: disable=redefined-outer-name
import base64
import json
import threading
import time

import pytest

from notification.adapters.channels import AbstractNotificationChannel, ChannelError
from notification.adapters.redis_adapter import AbstractAlertPublisher
from notification.service_layer.dispatcher import NotificationDispatcher
from notification.service_layer.unit_of_work import InMemoryUnitOfWork, SqlAlchemyUnitOfWork
from notification.service_layer.worker import PushWorker


class FakeChannel(AbstractNotificationChannel):
    """Channel that records sends; fails the first `failures` calls."""

    name = "fake"

    def __init__(self, failures=0, delay=0.0, error="gateway unavailable"):
        self.failures = failures
        self.delay = delay
        self.error = error
        self.calls = 0
        self.sent = []
        self.opened = False
        self.closed = False
        self._lock = threading.Lock()

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    def send(self, report):
        with self._lock:
            self.calls += 1
            call = self.calls
        if self.delay:
            time.sleep(self.delay)
        if call <= self.failures:
            raise ChannelError(self.error)
        with self._lock:
            self.sent.append(report.report_id)


class FakeAlertPublisher(AbstractAlertPublisher):
    def __init__(self):
        self.published = []

    def publish(self, channel, event):
        self.published.append((channel, event))

    def events_on(self, channel):
        return [event for name, event in self.published if name == channel]


def encode_report(payload) -> str:
    """Base64-encode a payload the way the bus delivers it."""
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def push_body(payload, message_id="msg-1"):
    return {
        "message": {
            "data": encode_report(payload),
            "messageId": message_id,
            "publishTime": "2024-01-15T10:30:00Z",
        },
        "subscription": "projects/lab/subscriptions/email-push",
    }


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def fake_publisher():
    return FakeAlertPublisher()


@pytest.fixture
def in_memory_uow_factory():
    """Factory of units of work that all share one in-memory record store."""
    records = {}
    lock = threading.Lock()
    return lambda: InMemoryUnitOfWork(records, lock)


@pytest.fixture
def sqlite_session_factory(tmp_path):
    """File-based SQLite database, so that separate threads share the data."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker, clear_mappers
    from notification.adapters import orm

    engine = create_engine(f"sqlite:///{tmp_path / 'notify.db'}")
    orm.metadata.create_all(engine)
    orm.start_mappers()

    yield sessionmaker(bind=engine)

    clear_mappers()
    engine.dispose()


@pytest.fixture
def sqlite_uow_factory(sqlite_session_factory):
    return lambda: SqlAlchemyUnitOfWork(sqlite_session_factory)


@pytest.fixture
def make_worker(fake_publisher):
    """Build a PushWorker around a channel and a unit of work factory."""
    workers = []

    def _make_worker(channel, uow_factory, max_attempts=5, liveness_seconds=300,
                     in_flight_wait_seconds=0, timeout=2, max_workers=8):
        worker = PushWorker(
            uow_factory=uow_factory,
            dispatcher=NotificationDispatcher(channel, timeout=timeout, max_workers=max_workers),
            publisher=fake_publisher,
            max_attempts=max_attempts,
            liveness_seconds=liveness_seconds,
            in_flight_wait_seconds=in_flight_wait_seconds,
        )
        workers.append(worker)
        return worker

    yield _make_worker

    for worker in workers:
        worker.dispatcher.close()
