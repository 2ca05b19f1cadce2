import logging
from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    Text,
    event,
    inspect,
)
from sqlalchemy.orm import registry
from notification.domain import model

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata

# report_id primary key is the uniqueness constraint the claim relies on
processing_records = Table(
    "processing_records",
    metadata,
    Column("report_id", String(255), primary_key=True),
    Column("channel", String(32), nullable=False),
    Column(
        "status",
        Enum(
            model.ProcessingStatus,
            native_enum=False,
            length=32,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
    ),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("deliveries", Integer, nullable=False, server_default="0"),
    Column("first_seen_at", DateTime(timezone=True)),
    Column("last_attempt_at", DateTime(timezone=True)),
    Column("last_error", Text),
)


def start_mappers():
    if inspect(model.ProcessingRecord, raiseerr=False) is not None:
        return
    logger.info("Starting mappers")
    mapper_registry.map_imperatively(model.ProcessingRecord, processing_records)


@event.listens_for(model.ProcessingRecord, "load")
def receive_load(record, _):
    record.events = []
