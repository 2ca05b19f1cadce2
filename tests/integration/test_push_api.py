"""Integration tests for the push endpoint, backed by a SQLite record store."""

import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from conftest import FakeChannel, push_body
from notification.adapters.redis_adapter import DEAD_LETTER_CHANNEL
from notification.entrypoints.push_api import create_app


@pytest.fixture
def make_client(make_worker, sqlite_uow_factory):
    """Start the app around a worker and hand back a TestClient."""
    clients = []

    def _make_client(channel, **worker_kwargs):
        worker = make_worker(channel, sqlite_uow_factory, **worker_kwargs)
        client = TestClient(create_app(worker))
        client.__enter__()
        clients.append(client)
        return client

    yield _make_client

    for client in clients:
        client.__exit__(None, None, None)


def test_health(make_client):
    client = make_client(FakeChannel())

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["service"] == "lab-notify-fake"


def test_lifespan_opens_and_closes_channel(make_worker, sqlite_uow_factory):
    channel = FakeChannel()
    app = create_app(make_worker(channel, sqlite_uow_factory))

    with TestClient(app):
        assert channel.opened
        assert not channel.closed

    assert channel.closed


def test_first_push_is_sent_and_acknowledged(make_client):
    channel = FakeChannel()
    client = make_client(channel)

    response = client.post("/push", json=push_body({"id": "R1", "patient": "A"}))

    assert response.status_code == 200
    assert response.json() == {
        "status": "acknowledged",
        "outcome": "delivered",
        "report_id": "R1",
        "detail": None,
    }
    assert channel.sent == ["R1"]


def test_duplicate_push_is_acknowledged_without_second_send(make_client):
    channel = FakeChannel()
    client = make_client(channel)

    first = client.post("/push", json=push_body({"id": "R1"}, message_id="msg-1"))
    second = client.post("/push", json=push_body({"id": "R1"}, message_id="msg-2"))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["outcome"] == "already_handled"
    assert channel.calls == 1


def test_invalid_base64_is_acknowledged_and_logged_once(make_client, caplog):
    channel = FakeChannel()
    client = make_client(channel)
    body = push_body({"id": "R1"})
    body["message"]["data"] = "%%% not base64 %%%"

    with caplog.at_level(logging.WARNING):
        response = client.post("/push", json=body)

    assert response.status_code == 200
    assert response.json()["outcome"] == "malformed_envelope"
    assert channel.calls == 0
    assert len([r for r in caplog.records if "malformed_envelope" in r.getMessage()]) == 1


@pytest.mark.parametrize(
    "content",
    [b"not json at all", b'{"subscription": "s"}', b'{"message": {"messageId": "m"}}'],
)
def test_body_that_is_not_a_push_envelope_is_acknowledged(make_client, content):
    channel = FakeChannel()
    client = make_client(channel)

    response = client.post("/push", content=content, headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json()["outcome"] == "malformed_envelope"
    assert channel.calls == 0


def test_failed_send_asks_for_redelivery(make_client):
    client = make_client(FakeChannel(failures=1))

    first = client.post("/push", json=push_body({"id": "R1"}))
    second = client.post("/push", json=push_body({"id": "R1"}, message_id="msg-2"))

    assert first.status_code == 503
    assert first.json()["status"] == "retry"
    assert first.json()["detail"] == "gateway unavailable"
    assert second.status_code == 200
    assert second.json()["outcome"] == "delivered"


def test_exhausted_report_is_acknowledged_and_alerted(make_client, fake_publisher):
    channel = FakeChannel(failures=float("inf"))
    client = make_client(channel, max_attempts=5)

    codes = [
        client.post("/push", json=push_body({"id": "R2"}, message_id=f"msg-{n}")).status_code
        for n in range(1, 6)
    ]
    after = client.post("/push", json=push_body({"id": "R2"}, message_id="msg-6"))

    assert codes == [503, 503, 503, 503, 200]
    assert after.status_code == 200
    assert after.json()["outcome"] == "already_handled"
    assert channel.calls == 5

    [alert] = fake_publisher.events_on(DEAD_LETTER_CHANNEL)
    assert alert.report_id == "R2"
    assert alert.attempts == 5

    record = client.get("/api/v1/processing/R2").json()
    assert record["status"] == "permanently_failed"
    assert record["attempts"] == 5
    assert record["deliveries"] == 6


def test_push_while_another_claim_is_in_flight_returns_conflict(make_client, sqlite_uow_factory):
    channel = FakeChannel()
    client = make_client(channel)
    uow = sqlite_uow_factory()
    with uow:
        uow.records.try_claim("R1", "fake", datetime.now(timezone.utc), timedelta(minutes=5))
        uow.commit()

    response = client.post("/push", json=push_body({"id": "R1"}))

    assert response.status_code == 409
    assert response.json()["outcome"] == "in_flight"
    assert channel.calls == 0


def test_concurrent_duplicates_are_both_acknowledged_and_sent_once(make_client):
    channel = FakeChannel(delay=0.2)
    client = make_client(channel, in_flight_wait_seconds=3)
    barrier = threading.Barrier(2)
    responses = []

    def deliver(message_id):
        barrier.wait()
        responses.append(client.post("/push", json=push_body({"id": "R1"}, message_id=message_id)))

    threads = [threading.Thread(target=deliver, args=(f"msg-{n}",)) for n in (1, 2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert [r.status_code for r in responses] == [200, 200]
    assert sorted(r.json()["outcome"] for r in responses) == ["already_handled", "delivered"]
    assert channel.sent == ["R1"]


def test_store_outage_asks_for_redelivery(make_worker, fake_channel):
    def unavailable():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    app = create_app(make_worker(fake_channel, unavailable))

    with TestClient(app) as client:
        response = client.post("/push", json=push_body({"id": "R1"}))

    assert response.status_code == 503
    assert response.json()["outcome"] == "dispatch_failed"
    assert fake_channel.calls == 0


class TestProcessingViews:

    def test_lists_records_by_status(self, make_client):
        client = make_client(FakeChannel(failures=1))
        client.post("/push", json=push_body({"id": "R1"}))
        client.post("/push", json=push_body({"id": "R2"}, message_id="msg-2"))

        failed = client.get("/api/v1/processing", params={"status": "failed"}).json()
        everything = client.get("/api/v1/processing").json()

        assert [r["report_id"] for r in failed["records"]] == ["R1"]
        assert failed["records"][0]["last_error"] == "gateway unavailable"
        assert everything["total"] == 2

    def test_pagination(self, make_client):
        client = make_client(FakeChannel())
        for n in range(3):
            client.post("/push", json=push_body({"id": f"R{n}"}, message_id=f"msg-{n}"))

        page = client.get("/api/v1/processing", params={"limit": 2, "offset": 2}).json()

        assert page["total"] == 3
        assert page["count"] == 1

    def test_unknown_report_is_not_found(self, make_client):
        client = make_client(FakeChannel())

        response = client.get("/api/v1/processing/missing")

        assert response.status_code == 404
