"""
Retry/acknowledgement policy.

Maps what happened to a push onto the only two answers the bus understands:
acknowledge (never deliver this message again) or retry (redeliver later,
with the bus's own backoff).

    malformed envelope / payload      -> ACK    permanent rejection, logged
    already handled                   -> ACK    duplicate suppressed
    in flight                         -> RETRY  concurrent duplicate
    dispatch succeeded                -> ACK
    dispatch failed, attempts < max   -> RETRY
    dispatch failed, attempts >= max  -> ACK    DeliveryExhausted alert
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from notification.domain.model import ClaimOutcome, ProcessingStatus


class Acknowledgement(str, Enum):
    ACK = "acknowledged"
    RETRY = "retry"


class Outcome(str, Enum):
    MALFORMED_ENVELOPE = "malformed_envelope"
    MALFORMED_PAYLOAD = "malformed_payload"
    ALREADY_HANDLED = "already_handled"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    DISPATCH_FAILED = "dispatch_failed"
    EXHAUSTED = "exhausted"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class PushResult:
    """What the push endpoint reports back for one delivery."""
    acknowledgement: Acknowledgement
    outcome: Outcome
    report_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ack(self) -> bool:
        return self.acknowledgement == Acknowledgement.ACK


_ACKNOWLEDGEMENTS = {
    Outcome.MALFORMED_ENVELOPE: Acknowledgement.ACK,
    Outcome.MALFORMED_PAYLOAD: Acknowledgement.ACK,
    Outcome.ALREADY_HANDLED: Acknowledgement.ACK,
    Outcome.IN_FLIGHT: Acknowledgement.RETRY,
    Outcome.DELIVERED: Acknowledgement.ACK,
    Outcome.DISPATCH_FAILED: Acknowledgement.RETRY,
    Outcome.EXHAUSTED: Acknowledgement.ACK,
    # a newer claim owns the report now; it will produce the final answer
    Outcome.SUPERSEDED: Acknowledgement.RETRY,
}


def decide(outcome: Outcome, report_id: str = None, detail: str = None) -> PushResult:
    return PushResult(_ACKNOWLEDGEMENTS[outcome], outcome, report_id, detail)


def outcome_for_claim(claim: ClaimOutcome) -> Optional[Outcome]:
    """Outcome of a claim that stops the pipeline, or None if dispatch should go ahead."""
    if claim == ClaimOutcome.ALREADY_HANDLED:
        return Outcome.ALREADY_HANDLED
    if claim == ClaimOutcome.IN_FLIGHT:
        return Outcome.IN_FLIGHT
    return None


def outcome_for_dispatch(success: bool, status: Optional[ProcessingStatus]) -> Outcome:
    """Outcome of a dispatch, from the status it left on the processing record."""
    if success:
        return Outcome.DELIVERED
    if status is None:
        return Outcome.SUPERSEDED
    if status == ProcessingStatus.PERMANENTLY_FAILED:
        return Outcome.EXHAUSTED
    return Outcome.DISPATCH_FAILED
