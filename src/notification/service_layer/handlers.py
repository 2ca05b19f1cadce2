from __future__ import annotations
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from notification.adapters import redis_adapter
from notification.adapters.envelope_decoder import DecodeError, decode_report
from notification.domain import commands, events
from notification.domain.model import ClaimOutcome, ClaimResult, ProcessingStatus
from notification.service_layer import policy
from notification.service_layer.dispatcher import record_outcome
from notification.service_layer.unit_of_work import AbstractUnitOfWork

if TYPE_CHECKING:
    from notification.service_layer.worker import PushWorker

logger = logging.getLogger(__name__)

IN_FLIGHT_POLL_SECONDS = 0.05


def process_pushed_report(
    command: commands.ProcessPushedReport,
    uow: AbstractUnitOfWork,
    worker: PushWorker,
) -> policy.PushResult:
    """
    Run one push delivery through the worker pipeline.

    Flow:
    1. Decode the base64 payload into a LabReport
    2. Claim the report in the processing record store
    3. Dispatch the notification if the claim was a first attempt
    4. Record the dispatch outcome on the processing record
    5. Map the outcome onto acknowledge / retry

    Args:
        command: ProcessPushedReport command with the pushed message
        uow: Unit of work for the processing record store
        worker: The push worker holding dispatcher and settings

    Returns:
        PushResult telling the endpoint whether to acknowledge

    Raises:
        SQLAlchemyError: If the record store is unavailable; the endpoint
            turns this into a retry since nothing was decided
    """
    logger.info(f"Processing pushed message {command.message_id}")

    try:
        report = decode_report(command.data)
    except DecodeError as e:
        logger.warning(f"Rejecting message {command.message_id} ({e.kind}): {e}")
        uow.add_event(
            events.EnvelopeRejected(
                message_id=command.message_id,
                error=e.kind,
                reason=str(e),
                rejected_at=datetime.now(timezone.utc),
            )
        )
        return policy.decide(policy.Outcome(e.kind), detail=str(e))

    with uow:
        claim = uow.records.try_claim(
            report.report_id,
            worker.channel_name,
            datetime.now(timezone.utc),
            worker.liveness,
        )
        uow.commit()

    if claim.outcome == ClaimOutcome.IN_FLIGHT and worker.in_flight_wait > 0:
        claim = _await_in_flight(uow, report.report_id, claim, worker.in_flight_wait)

    stop = policy.outcome_for_claim(claim.outcome)
    if stop is not None:
        logger.info(
            f"Not dispatching report {report.report_id} from message {command.message_id}: "
            f"{stop.value} (status={claim.status.value})"
        )
        return policy.decide(stop, report.report_id, detail=claim.status.value)

    result = worker.dispatcher.dispatch(report)
    status = record_outcome(uow, report.report_id, claim.attempt, result, worker.max_attempts)

    outcome = policy.outcome_for_dispatch(result.success, status)
    return policy.decide(outcome, report.report_id, detail=result.reason)


def _await_in_flight(uow: AbstractUnitOfWork, report_id: str, claim: ClaimResult, wait: float) -> ClaimResult:
    """
    Give a concurrent claimant a bounded time to finish.

    A duplicate that arrives while the first delivery is still sending can
    then be acknowledged as already handled instead of being bounced back
    to the bus. Only terminal statuses end the wait; anything else stays
    IN_FLIGHT.
    """
    deadline = time.monotonic() + wait
    while time.monotonic() < deadline:
        time.sleep(IN_FLIGHT_POLL_SECONDS)
        with uow:
            record = uow.records.get(report_id)
            status = ProcessingStatus(record.status) if record is not None else None
        if status is not None and status.is_terminal:
            logger.info(f"In-flight report {report_id} settled as {status.value}")
            return ClaimResult(ClaimOutcome.ALREADY_HANDLED, claim.attempt, status)
    return claim


def alert_delivery_exhausted(event: events.DeliveryExhausted, uow: AbstractUnitOfWork, worker: PushWorker):
    """
    Surface a report that ran out of attempts.

    The push is acknowledged to stop redelivery, so this log entry and the
    dead-letter publication are the only trace an operator gets.
    """
    logger.error(
        f"Delivery exhausted for report {event.report_id} on {event.channel} "
        f"after {event.attempts} attempts: {event.reason}"
    )
    worker.publisher.publish(redis_adapter.DEAD_LETTER_CHANNEL, event)


def publish_rejected_envelope(event: events.EnvelopeRejected, uow: AbstractUnitOfWork, worker: PushWorker):
    worker.publisher.publish(redis_adapter.REJECTED_CHANNEL, event)


def log_notification_sent(event: events.NotificationSent, uow: AbstractUnitOfWork, worker: PushWorker):
    logger.info(f"Report {event.report_id} notified via {event.channel} on attempt {event.attempts}")


def log_notification_failed(event: events.NotificationFailed, uow: AbstractUnitOfWork, worker: PushWorker):
    logger.warning(
        f"Report {event.report_id} failed on attempt {event.attempts} via {event.channel}, "
        f"awaiting redelivery: {event.reason}"
    )
