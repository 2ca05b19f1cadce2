"""
Views for read operations - separate from the push/write path.

Used by operators to look up why a report was or was not notified, and to
list permanently failed reports awaiting manual handling.
"""
import logging
from typing import Any, Dict, Optional

from notification.domain.model import ProcessingRecord, ProcessingStatus
from notification.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _isoformat(value):
    return value.isoformat() if value is not None else None


def _serialize(record: ProcessingRecord) -> Dict[str, Any]:
    return {
        "report_id": record.report_id,
        "channel": record.channel,
        "status": ProcessingStatus(record.status).value,
        "attempts": record.attempts,
        "deliveries": record.deliveries,
        "first_seen_at": _isoformat(record.first_seen_at),
        "last_attempt_at": _isoformat(record.last_attempt_at),
        "last_error": record.last_error,
    }


def get_processing_record(report_id: str, uow: AbstractUnitOfWork) -> Optional[Dict[str, Any]]:
    # Serialize inside the unit of work while the session is still open
    with uow:
        record = uow.records.get(report_id)
        if record is None:
            return None
        return _serialize(record)


def list_processing_records(
    uow: AbstractUnitOfWork,
    status: Optional[ProcessingStatus] = None,
    limit: int = 100,
    offset: int = 0,
) -> Dict[str, Any]:
    with uow:
        records = uow.records.list(status)
        total = len(records)
        page = [_serialize(r) for r in records[offset:offset + limit]]

    logger.debug(f"Listed {len(page)} of {total} processing records (status={status})")
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "count": len(page),
        "records": page,
    }
