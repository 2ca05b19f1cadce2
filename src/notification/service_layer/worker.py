"""Push notification worker - wires the pipeline's collaborators together."""

import logging
from datetime import timedelta
from typing import Callable

from notification.adapters.redis_adapter import AbstractAlertPublisher
from notification.domain.commands import ProcessPushedReport
from notification.service_layer import messagebus
from notification.service_layer.dispatcher import NotificationDispatcher
from notification.service_layer.policy import PushResult
from notification.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


class PushWorker:
    """
    One worker per service process.

    Holds the injected collaborators (record store, notification channel,
    alert side channel) and the delivery settings. open() is called on
    service startup and close() on shutdown.
    """

    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        dispatcher: NotificationDispatcher,
        publisher: AbstractAlertPublisher,
        max_attempts: int = 5,
        liveness_seconds: float = 300,
        in_flight_wait_seconds: float = 0,
        on_open: Callable[[], None] = None,
        on_close: Callable[[], None] = None,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.uow_factory = uow_factory
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.max_attempts = max_attempts
        self.liveness = timedelta(seconds=liveness_seconds)
        self.in_flight_wait = in_flight_wait_seconds
        self._on_open = on_open
        self._on_close = on_close

    @property
    def channel_name(self) -> str:
        return self.dispatcher.channel_name

    def open(self) -> None:
        logger.info(f"Opening {self.channel_name} push worker (max_attempts={self.max_attempts})")
        if self._on_open is not None:
            self._on_open()
        self.dispatcher.open()
        self.publisher.open()

    def close(self) -> None:
        logger.info(f"Closing {self.channel_name} push worker")
        self.publisher.close()
        self.dispatcher.close()
        if self._on_close is not None:
            self._on_close()

    def handle_push(self, command: ProcessPushedReport) -> PushResult:
        uow = self.uow_factory()
        [result] = messagebus.handle(command, uow, self)
        return result
