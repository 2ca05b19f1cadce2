"""
Push endpoint - the HTTP boundary the message bus pushes lab reports to.

Any 2xx answer acknowledges the message; anything else makes the bus
redeliver it later with its own backoff.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

import config
from notification import views
from notification.adapters import orm
from notification.adapters.channels import AbstractNotificationChannel
from notification.adapters.redis_adapter import AbstractAlertPublisher, RedisAlertPublisher
from notification.domain.commands import ProcessPushedReport
from notification.domain.model import ProcessingStatus
from notification.service_layer import policy
from notification.service_layer.dispatcher import NotificationDispatcher
from notification.service_layer.unit_of_work import SqlAlchemyUnitOfWork, create_session_factory
from notification.service_layer.worker import PushWorker

logger = logging.getLogger(__name__)


class PushMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str  # base64-encoded JSON lab report
    message_id: str = Field(alias="messageId")
    publish_time: Optional[str] = Field(default=None, alias="publishTime")
    attributes: Dict[str, str] = Field(default_factory=dict)


class PushEnvelope(BaseModel):
    """Request body pushed by the message bus"""
    message: PushMessage
    subscription: str = ""


class PushResponse(BaseModel):
    status: str
    outcome: str
    report_id: Optional[str] = None
    detail: Optional[str] = None


def _parse_publish_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Ignoring unparseable publishTime {value!r}")
        return None


def build_sql_worker(
    channel: AbstractNotificationChannel,
    uri: str = None,
    publisher: AbstractAlertPublisher = None,
) -> PushWorker:
    """Worker backed by the processing_records table and the Redis alert channel."""
    delivery = config.get_delivery_policy()
    session_factory = create_session_factory(uri)
    engine = session_factory.kw["bind"]

    def open_database():
        # Initialize database and ORM mappers (Cosmic Python pattern)
        orm.metadata.create_all(engine)
        orm.start_mappers()

    return PushWorker(
        uow_factory=lambda: SqlAlchemyUnitOfWork(session_factory),
        dispatcher=NotificationDispatcher(
            channel,
            timeout=delivery["dispatch_timeout_seconds"],
            max_workers=delivery["dispatch_workers"],
            queue_timeout=delivery["dispatch_queue_timeout_seconds"],
        ),
        publisher=publisher or RedisAlertPublisher(),
        max_attempts=delivery["max_attempts"],
        liveness_seconds=delivery["liveness_seconds"],
        in_flight_wait_seconds=delivery["in_flight_wait_seconds"],
        on_open=open_database,
        on_close=engine.dispose,
    )


def create_app(worker: PushWorker, title: str = "Lab Report Push Worker") -> FastAPI:
    """
    Build the push endpoint application around one worker.

    The worker is opened when the application starts and closed when it
    shuts down.
    """
    status_codes = config.get_status_codes()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        worker.open()
        try:
            yield
        finally:
            worker.close()

    app = FastAPI(
        title=title,
        description="Push consumer for lab report notifications",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.worker = worker

    def respond(result: policy.PushResult) -> JSONResponse:
        if result.ack:
            status_code = 200
        elif result.outcome == policy.Outcome.IN_FLIGHT:
            status_code = status_codes["in_flight"]
        else:
            status_code = status_codes["retry"]
        body = PushResponse(
            status=result.acknowledgement.value,
            outcome=result.outcome.value,
            report_id=result.report_id,
            detail=result.detail,
        )
        return JSONResponse(status_code=status_code, content=body.model_dump())

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": f"lab-notify-{worker.channel_name}",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/push", response_model=PushResponse)
    async def receive_push(request: Request):
        """
        Receive one pushed message.

        A body that is not even a push envelope can never succeed, so it is
        acknowledged as malformed instead of being redelivered forever.
        """
        try:
            envelope = PushEnvelope.model_validate(await request.json())
        except (ValueError, ValidationError) as e:
            logger.warning(f"Rejecting push that is not a valid envelope: {e}")
            return respond(policy.decide(policy.Outcome.MALFORMED_ENVELOPE, detail="invalid push envelope"))

        message = envelope.message
        cmd = ProcessPushedReport(
            message_id=message.message_id,
            data=message.data,
            publish_time=_parse_publish_time(message.publish_time),
            attributes=message.attributes,
        )

        try:
            result = await run_in_threadpool(worker.handle_push, cmd)
        except Exception as e:
            logger.error(f"Failed to process message {message.message_id}, asking for redelivery: {e}")
            return respond(policy.decide(policy.Outcome.DISPATCH_FAILED, detail="processing error"))

        logger.info(
            f"Message {message.message_id}: {result.outcome.value} -> {result.acknowledgement.value}"
        )
        return respond(result)

    @app.get("/api/v1/processing")
    def list_processing_records(status: Optional[ProcessingStatus] = None, limit: int = 100, offset: int = 0):
        """List processing records, e.g. ?status=permanently_failed for dead letters."""
        return views.list_processing_records(worker.uow_factory(), status, limit, offset)

    @app.get("/api/v1/processing/{report_id}")
    def get_processing_record(report_id: str):
        record = views.get_processing_record(report_id, worker.uow_factory())
        if record is None:
            raise HTTPException(status_code=404, detail=f"No processing record for report {report_id}")
        return record

    return app
