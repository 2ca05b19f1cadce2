"""
Notification dispatcher - run one bounded send and record its outcome.

The dispatcher never retries. A failed send leaves the processing record
claimable, and the retry happens when the bus redelivers the message.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import OperationalError
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from notification.adapters.channels import AbstractNotificationChannel
from notification.domain.model import LabReport, ProcessingStatus, StaleClaim
from notification.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls):
        return cls(success=True)

    @classmethod
    def failure(cls, reason: str):
        return cls(success=False, reason=reason)


class NotificationDispatcher:
    """Drive a notification channel with a per-send timeout."""

    def __init__(
        self,
        channel: AbstractNotificationChannel,
        timeout: float = 10,
        max_workers: int = 40,
        queue_timeout: float = 60,
    ):
        self.channel = channel
        self.timeout = timeout
        self.max_workers = max_workers
        self.queue_timeout = queue_timeout
        self._executor = None

    @property
    def channel_name(self) -> str:
        return self.channel.name

    def open(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix=f"dispatch-{self.channel.name}",
            )
        self.channel.open()

    def close(self) -> None:
        self.channel.close()
        if self._executor is not None:
            # sends that already timed out are left to finish on their own
            self._executor.shutdown(wait=False)
            self._executor = None

    def dispatch(self, report: LabReport) -> DispatchResult:
        """
        Send exactly one notification for the report.

        The timeout covers the send itself. Time spent waiting for a free
        worker does not count against it, so a send that starts late is not
        reported as failed while it is still going out. A send that never
        gets a worker within queue_timeout is cancelled before it starts.

        Returns:
            DispatchResult.ok() if the channel returned, otherwise a failure
            carrying the reason (channel error, timeout or no free worker)
        """
        if self._executor is None:
            self.open()

        started = threading.Event()

        def send():
            started.set()
            self.channel.send(report)

        future = self._executor.submit(send)
        if not started.wait(self.queue_timeout) and future.cancel():
            logger.error(
                f"Send for report {report.report_id} got no free worker within {self.queue_timeout}s"
            )
            return DispatchResult.failure(f"no free dispatch worker after {self.queue_timeout}s")

        try:
            future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            logger.error(f"Send for report {report.report_id} timed out after {self.timeout}s")
            return DispatchResult.failure(f"timeout after {self.timeout}s")
        except Exception as e:
            logger.error(f"Send for report {report.report_id} via {self.channel.name} failed: {e}")
            return DispatchResult.failure(str(e) or type(e).__name__)

        logger.info(f"Sent {self.channel.name} notification for report {report.report_id}")
        return DispatchResult.ok()


def record_outcome(
    uow: AbstractUnitOfWork,
    report_id: str,
    attempt: int,
    result: DispatchResult,
    max_attempts: int,
) -> Optional[ProcessingStatus]:
    """
    Persist the result of a dispatch on the processing record.

    Returns:
        The record's new status, or None when the claim was superseded by a
        later one (the update is dropped so it cannot overwrite newer state)
    """
    try:
        status = _persist_outcome(uow, report_id, attempt, result, max_attempts)
    except StaleClaim as e:
        logger.warning(f"Dropping outcome for report {report_id}: {e}")
        return None
    except OperationalError:
        logger.error(
            f"Could not record outcome of attempt {attempt} for report {report_id} "
            f"(success={result.success})"
        )
        raise

    logger.info(f"Report {report_id} is now {status.value} after attempt {attempt}")
    return status


@retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_fixed(0.1),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def _persist_outcome(uow, report_id, attempt, result, max_attempts):
    # the send already happened, so a lock conflict must not leave the record pending
    now = datetime.now(timezone.utc)
    with uow:
        if result.success:
            status = uow.records.mark_succeeded(report_id, attempt, now)
        else:
            status = uow.records.mark_failed(report_id, attempt, result.reason, max_attempts, now)
        uow.commit()
    return status
