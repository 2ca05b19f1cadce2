"""
Push notification worker domain model.

A LabReport is what the bus delivers; a ProcessingRecord is the worker's
memory of it. One ProcessingRecord exists per report_id and it is never
deleted, which is what makes duplicate pushes detectable.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from notification.domain.events import DeliveryExhausted, NotificationFailed, NotificationSent


class ProcessingStatus(str, Enum):
    """Lifecycle of a report inside the worker."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.SUCCEEDED, ProcessingStatus.PERMANENTLY_FAILED)


class ClaimOutcome(str, Enum):
    """Answer of the idempotency guard for one push."""
    FIRST_ATTEMPT = "first_attempt"
    ALREADY_HANDLED = "already_handled"
    IN_FLIGHT = "in_flight"


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of a claim plus the fencing token the claimant must present."""
    outcome: ClaimOutcome
    attempt: int
    status: ProcessingStatus


@dataclass(frozen=True)
class LabReport:
    """Decoded lab report as delivered by the bus"""
    report_id: str
    patient_ref: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    pathogen: Optional[str] = None
    interpretation: Optional[str] = None
    timestamp: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class StaleClaim(Exception):
    """Raised when a status update is presented with an outdated claim."""
    pass


class ProcessingRecord:
    """Per-report processing state, keyed by report_id."""

    def __init__(
        self,
        report_id: str,
        channel: str,
        status: ProcessingStatus = ProcessingStatus.PENDING,
        attempts: int = 0,
        deliveries: int = 0,
        first_seen_at: Optional[datetime] = None,
        last_attempt_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
    ):
        self.report_id = report_id
        self.channel = channel
        self.status = status
        self.attempts = attempts
        self.deliveries = deliveries
        self.first_seen_at = first_seen_at
        self.last_attempt_at = last_attempt_at
        self.last_error = last_error
        self.events: List = []

    def __repr__(self):
        return f"<ProcessingRecord {self.report_id} {self.status.value} attempts={self.attempts}>"

    def __eq__(self, other):
        if not isinstance(other, ProcessingRecord):
            return False
        return other.report_id == self.report_id

    def __hash__(self):
        return hash(self.report_id)

    def is_claimable(self, stale_before: datetime) -> bool:
        """
        Whether a new push may take over this record.

        Failed records are always claimable again. Pending records are only
        claimable once their last attempt is older than stale_before, which
        means the previous claimant is presumed to have crashed.
        """
        if self.status == ProcessingStatus.FAILED:
            return True
        if self.status == ProcessingStatus.PENDING and self.last_attempt_at is not None:
            return self.last_attempt_at < stale_before
        return False

    def claim(self, now: datetime) -> int:
        """Take the record for a new dispatch attempt and return its fencing token."""
        self.status = ProcessingStatus.PENDING
        self.attempts += 1
        self.deliveries += 1
        self.last_attempt_at = now
        if self.first_seen_at is None:
            self.first_seen_at = now
        return self.attempts

    def record_delivery(self) -> None:
        self.deliveries += 1

    def succeed(self, attempt: int, now: datetime) -> ProcessingStatus:
        """
        Mark the report as delivered and raise NotificationSent.

        A completed send is recorded even if a newer claim has taken the
        record in the meantime, so that the newer claimant's outcome is
        dropped instead of leaving the report claimable for another send.
        """
        if self.status.is_terminal:
            raise StaleClaim(
                f"Report {self.report_id} is already {self.status.value}, ignoring claim {attempt}"
            )
        self.status = ProcessingStatus.SUCCEEDED
        self.last_error = None
        self.events.append(
            NotificationSent(
                report_id=self.report_id,
                channel=self.channel,
                attempts=self.attempts,
                sent_at=now,
            )
        )
        return self.status

    def fail(self, attempt: int, reason: str, max_attempts: int, now: datetime) -> ProcessingStatus:
        """
        Mark the claimed attempt as failed.

        The record stays claimable unless max_attempts has been reached, in
        which case it becomes PERMANENTLY_FAILED and DeliveryExhausted is
        raised. Since a permanently failed record can never be claimed again,
        that event is raised at most once per report.
        """
        self._check_claim(attempt)
        self.last_error = reason
        if self.attempts >= max_attempts:
            self.status = ProcessingStatus.PERMANENTLY_FAILED
            self.events.append(
                DeliveryExhausted(
                    report_id=self.report_id,
                    channel=self.channel,
                    attempts=self.attempts,
                    reason=reason,
                    exhausted_at=now,
                )
            )
        else:
            self.status = ProcessingStatus.FAILED
            self.events.append(
                NotificationFailed(
                    report_id=self.report_id,
                    channel=self.channel,
                    attempts=self.attempts,
                    reason=reason,
                    failed_at=now,
                )
            )
        return self.status

    def _check_claim(self, attempt: int) -> None:
        if self.status != ProcessingStatus.PENDING or self.attempts != attempt:
            raise StaleClaim(
                f"Claim {attempt} on report {self.report_id} is stale "
                f"(status={self.status.value}, attempts={self.attempts})"
            )
