"""
Processing record stores - the idempotency guard's persistence.

Every store must make try_claim atomic: two concurrent pushes of the same
report may both call it, and only one of them may get FIRST_ATTEMPT.
"""
import abc
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from sqlalchemy import insert, or_, and_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from notification.adapters.orm import processing_records
from notification.domain.model import (
    ClaimOutcome,
    ClaimResult,
    ProcessingRecord,
    ProcessingStatus,
)

logger = logging.getLogger(__name__)


class AbstractProcessingStore(abc.ABC):
    def __init__(self):
        self.seen = set()  # type: Set[ProcessingRecord]

    def try_claim(self, report_id: str, channel: str, now: datetime, liveness: timedelta) -> ClaimResult:
        result = self._try_claim(report_id, channel, now, now - liveness)
        logger.info(f"Claim for report {report_id}: {result.outcome.value} (attempt {result.attempt})")
        return result

    def mark_succeeded(self, report_id: str, attempt: int, now: datetime) -> ProcessingStatus:
        record = self._get_for_update(report_id)
        if record is None:
            raise KeyError(report_id)
        self.seen.add(record)
        return record.succeed(attempt, now)

    def mark_failed(
        self, report_id: str, attempt: int, reason: str, max_attempts: int, now: datetime
    ) -> ProcessingStatus:
        record = self._get_for_update(report_id)
        if record is None:
            raise KeyError(report_id)
        self.seen.add(record)
        return record.fail(attempt, reason, max_attempts, now)

    def get(self, report_id: str) -> Optional[ProcessingRecord]:
        record = self._get(report_id)
        if record:
            self.seen.add(record)
        return record

    def list(self, status: Optional[ProcessingStatus] = None) -> List[ProcessingRecord]:
        records = self._list(status)
        for record in records:
            self.seen.add(record)
        return records

    @abc.abstractmethod
    def _try_claim(self, report_id: str, channel: str, now: datetime, stale_before: datetime) -> ClaimResult:
        raise NotImplementedError

    @abc.abstractmethod
    def _get_for_update(self, report_id: str) -> Optional[ProcessingRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, report_id: str) -> Optional[ProcessingRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list(self, status: Optional[ProcessingStatus]) -> List[ProcessingRecord]:
        raise NotImplementedError


class SqlAlchemyProcessingStore(AbstractProcessingStore):
    """
    Row store backed by the processing_records table.

    The claim is a sequence of single statements, each atomic on its own:
    an INSERT guarded by the primary key, then a conditional UPDATE guarded
    by its WHERE clause. Claims commit immediately so that a concurrent push
    on another worker sees them before the dispatch starts.
    """

    def __init__(self, session):
        super().__init__()
        self.session = session

    def _try_claim(self, report_id, channel, now, stale_before):
        try:
            self.session.execute(
                insert(processing_records).values(
                    report_id=report_id,
                    channel=channel,
                    status=ProcessingStatus.PENDING,
                    attempts=1,
                    deliveries=1,
                    first_seen_at=now,
                    last_attempt_at=now,
                )
            )
            self.session.commit()
            return ClaimResult(ClaimOutcome.FIRST_ATTEMPT, 1, ProcessingStatus.PENDING)
        except IntegrityError:
            self.session.rollback()
            logger.debug(f"Report {report_id} already has a processing record")

        table = processing_records
        try:
            reclaimed = self.session.execute(
                update(table)
                .where(table.c.report_id == report_id)
                .where(
                    or_(
                        table.c.status == ProcessingStatus.FAILED,
                        and_(
                            table.c.status == ProcessingStatus.PENDING,
                            table.c.last_attempt_at < stale_before,
                        ),
                    )
                )
                .values(
                    status=ProcessingStatus.PENDING,
                    attempts=table.c.attempts + 1,
                    deliveries=table.c.deliveries + 1,
                    last_attempt_at=now,
                )
            )
            if reclaimed.rowcount == 1:
                attempt = self.session.execute(
                    select(table.c.attempts).where(table.c.report_id == report_id)
                ).scalar_one()
                self.session.commit()
                return ClaimResult(ClaimOutcome.FIRST_ATTEMPT, attempt, ProcessingStatus.PENDING)

            self.session.execute(
                update(table)
                .where(table.c.report_id == report_id)
                .values(deliveries=table.c.deliveries + 1)
            )
            row = self.session.execute(
                select(table.c.status, table.c.attempts).where(table.c.report_id == report_id)
            ).one()
            self.session.commit()
        except OperationalError as e:
            # concurrent update on the same row (serialization failure / lock timeout)
            self.session.rollback()
            logger.warning(f"Claim for report {report_id} lost a concurrent update: {e}")
            return ClaimResult(ClaimOutcome.IN_FLIGHT, 0, ProcessingStatus.PENDING)

        status = ProcessingStatus(row.status)
        if status.is_terminal:
            return ClaimResult(ClaimOutcome.ALREADY_HANDLED, row.attempts, status)
        return ClaimResult(ClaimOutcome.IN_FLIGHT, row.attempts, status)

    def _get_for_update(self, report_id):
        return (
            self.session.query(ProcessingRecord)
            .filter_by(report_id=report_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def _get(self, report_id):
        return self.session.query(ProcessingRecord).filter_by(report_id=report_id).first()

    def _list(self, status=None):
        query = self.session.query(ProcessingRecord)
        if status is not None:
            query = query.filter_by(status=status)
        return query.order_by(processing_records.c.first_seen_at).all()


class InMemoryProcessingStore(AbstractProcessingStore):
    """
    Dict-backed store for a single worker process.

    All records live in one shared dict guarded by one lock, so separate
    store instances created from the same records dict see each other's
    claims.
    """

    def __init__(self, records: Dict[str, ProcessingRecord] = None, lock: threading.Lock = None):
        super().__init__()
        self.records = records if records is not None else {}
        self.lock = lock or threading.Lock()

    def _try_claim(self, report_id, channel, now, stale_before):
        with self.lock:
            record = self.records.get(report_id)
            if record is None:
                record = ProcessingRecord(report_id=report_id, channel=channel)
                self.records[report_id] = record
                attempt = record.claim(now)
                return ClaimResult(ClaimOutcome.FIRST_ATTEMPT, attempt, record.status)

            if record.is_claimable(stale_before):
                attempt = record.claim(now)
                return ClaimResult(ClaimOutcome.FIRST_ATTEMPT, attempt, record.status)

            record.record_delivery()
            if record.status.is_terminal:
                return ClaimResult(ClaimOutcome.ALREADY_HANDLED, record.attempts, record.status)
            return ClaimResult(ClaimOutcome.IN_FLIGHT, record.attempts, record.status)

    def mark_succeeded(self, report_id, attempt, now):
        with self.lock:
            return super().mark_succeeded(report_id, attempt, now)

    def mark_failed(self, report_id, attempt, reason, max_attempts, now):
        with self.lock:
            return super().mark_failed(report_id, attempt, reason, max_attempts, now)

    def _get_for_update(self, report_id):
        return self.records.get(report_id)

    def _get(self, report_id):
        record = self.records.get(report_id)
        return self._snapshot(record) if record is not None else None

    def _list(self, status=None):
        records = [self._snapshot(r) for r in list(self.records.values())]
        if status is not None:
            records = [r for r in records if r.status == status]
        return records

    @staticmethod
    def _snapshot(record):
        # reads must not share the live record, whose events belong to its claimant
        return ProcessingRecord(
            report_id=record.report_id,
            channel=record.channel,
            status=record.status,
            attempts=record.attempts,
            deliveries=record.deliveries,
            first_seen_at=record.first_seen_at,
            last_attempt_at=record.last_attempt_at,
            last_error=record.last_error,
        )
