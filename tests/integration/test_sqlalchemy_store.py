"""Integration tests for the SQLAlchemy processing record store on SQLite."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from notification.domain.model import ClaimOutcome, ProcessingStatus, StaleClaim
from notification.service_layer.unit_of_work import SqlAlchemyUnitOfWork

NOW = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
LIVENESS = timedelta(minutes=5)


def claim(session_factory, report_id="R1", now=NOW):
    uow = SqlAlchemyUnitOfWork(session_factory)
    with uow:
        result = uow.records.try_claim(report_id, "email", now, LIVENESS)
        uow.commit()
    return result


def mark_failed(session_factory, attempt, max_attempts=5, report_id="R1"):
    uow = SqlAlchemyUnitOfWork(session_factory)
    with uow:
        status = uow.records.mark_failed(report_id, attempt, "down", max_attempts, NOW)
        uow.commit()
    return status, list(uow.collect_new_events())


def mark_succeeded(session_factory, attempt, report_id="R1"):
    uow = SqlAlchemyUnitOfWork(session_factory)
    with uow:
        status = uow.records.mark_succeeded(report_id, attempt, NOW)
        uow.commit()
    return status


def fetch(session_factory, report_id="R1"):
    uow = SqlAlchemyUnitOfWork(session_factory)
    with uow:
        record = uow.records.get(report_id)
        return dict(
            status=record.status,
            attempts=record.attempts,
            deliveries=record.deliveries,
            last_error=record.last_error,
        )


def test_first_claim_creates_pending_record(sqlite_session_factory):
    result = claim(sqlite_session_factory)

    assert result.outcome == ClaimOutcome.FIRST_ATTEMPT
    assert result.attempt == 1
    assert fetch(sqlite_session_factory) == dict(
        status=ProcessingStatus.PENDING, attempts=1, deliveries=1, last_error=None
    )


def test_fresh_pending_claim_is_in_flight(sqlite_session_factory):
    claim(sqlite_session_factory)

    result = claim(sqlite_session_factory, now=NOW + timedelta(seconds=30))

    assert result.outcome == ClaimOutcome.IN_FLIGHT
    assert fetch(sqlite_session_factory)["deliveries"] == 2


def test_stale_pending_claim_is_taken_over(sqlite_session_factory):
    claim(sqlite_session_factory)

    result = claim(sqlite_session_factory, now=NOW + timedelta(minutes=10))

    assert result.outcome == ClaimOutcome.FIRST_ATTEMPT
    assert result.attempt == 2


def test_succeeded_record_is_already_handled(sqlite_session_factory):
    first = claim(sqlite_session_factory)
    assert mark_succeeded(sqlite_session_factory, first.attempt) == ProcessingStatus.SUCCEEDED

    result = claim(sqlite_session_factory, now=NOW + timedelta(days=1))

    assert result.outcome == ClaimOutcome.ALREADY_HANDLED
    assert result.status == ProcessingStatus.SUCCEEDED


def test_failed_record_can_be_claimed_again(sqlite_session_factory):
    first = claim(sqlite_session_factory)
    status, events = mark_failed(sqlite_session_factory, first.attempt)

    result = claim(sqlite_session_factory, now=NOW + timedelta(seconds=5))

    assert status == ProcessingStatus.FAILED
    assert [type(e).__name__ for e in events] == ["NotificationFailed"]
    assert result.outcome == ClaimOutcome.FIRST_ATTEMPT
    assert result.attempt == 2
    assert fetch(sqlite_session_factory)["last_error"] == "down"


def test_exhausted_record_is_terminal(sqlite_session_factory):
    for attempt in range(1, 4):
        result = claim(sqlite_session_factory, now=NOW + timedelta(seconds=attempt))
        assert result.attempt == attempt
        status, events = mark_failed(sqlite_session_factory, attempt, max_attempts=3)

    assert status == ProcessingStatus.PERMANENTLY_FAILED
    assert [type(e).__name__ for e in events] == ["DeliveryExhausted"]
    assert claim(sqlite_session_factory, now=NOW + timedelta(days=1)).outcome == ClaimOutcome.ALREADY_HANDLED


def test_stale_claimant_cannot_overwrite_newer_claim(sqlite_session_factory):
    claim(sqlite_session_factory)
    takeover = claim(sqlite_session_factory, now=NOW + timedelta(minutes=10))

    uow = SqlAlchemyUnitOfWork(sqlite_session_factory)
    with uow, pytest.raises(StaleClaim):
        uow.records.mark_failed("R1", 1, "late", 5, NOW)

    assert fetch(sqlite_session_factory)["status"] == ProcessingStatus.PENDING
    assert fetch(sqlite_session_factory)["attempts"] == takeover.attempt


def test_list_filters_by_status(sqlite_session_factory):
    for report_id in ("R1", "R2"):
        claim(sqlite_session_factory, report_id=report_id)
    mark_succeeded(sqlite_session_factory, 1, report_id="R2")

    uow = SqlAlchemyUnitOfWork(sqlite_session_factory)
    with uow:
        succeeded = [r.report_id for r in uow.records.list(ProcessingStatus.SUCCEEDED)]
        everything = [r.report_id for r in uow.records.list()]

    assert succeeded == ["R2"]
    assert sorted(everything) == ["R1", "R2"]


def test_concurrent_claims_yield_exactly_one_first_attempt(sqlite_session_factory):
    contenders = 6
    barrier = threading.Barrier(contenders)
    outcomes = []
    lock = threading.Lock()

    def contend():
        barrier.wait()
        result = claim(sqlite_session_factory)
        with lock:
            outcomes.append(result.outcome)

    threads = [threading.Thread(target=contend) for _ in range(contenders)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(ClaimOutcome.FIRST_ATTEMPT) == 1
    assert all(o in (ClaimOutcome.FIRST_ATTEMPT, ClaimOutcome.IN_FLIGHT) for o in outcomes)
    assert len(outcomes) == contenders
