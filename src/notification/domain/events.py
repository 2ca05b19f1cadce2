"""Domain events for the push notification worker."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Event:
    """Base class for all domain events."""
    pass


@dataclass
class NotificationSent(Event):
    """Event raised when the channel confirmed the side effect for a report."""
    report_id: str
    channel: str
    attempts: int
    sent_at: datetime


@dataclass
class NotificationFailed(Event):
    """Event raised when a dispatch failed but the report stays retryable."""
    report_id: str
    channel: str
    attempts: int
    reason: str
    failed_at: datetime


@dataclass
class DeliveryExhausted(Event):
    """Event raised once when a report runs out of dispatch attempts."""
    report_id: str
    channel: str
    attempts: int
    reason: str
    exhausted_at: datetime


@dataclass
class EnvelopeRejected(Event):
    """Event raised when a pushed envelope can never be processed."""
    message_id: str
    error: str
    reason: str
    rejected_at: datetime
    report_id: Optional[str] = None
