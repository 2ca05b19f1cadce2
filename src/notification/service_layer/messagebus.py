# pylint: disable=broad-except
"""Message bus for the push notification worker following Cosmic Python pattern."""

from __future__ import annotations
import logging
from typing import List, Dict, Callable, Type, Union, TYPE_CHECKING

from notification.domain.commands import Command, ProcessPushedReport
from notification.domain.events import (
    DeliveryExhausted,
    EnvelopeRejected,
    Event,
    NotificationFailed,
    NotificationSent,
)
from notification.service_layer import handlers

if TYPE_CHECKING:
    from notification.service_layer.unit_of_work import AbstractUnitOfWork
    from notification.service_layer.worker import PushWorker

logger = logging.getLogger(__name__)

Message = Union[Command, Event]


def handle(
    message: Message,
    uow: AbstractUnitOfWork,
    worker: PushWorker,
):
    """Handle message (command or event) with the appropriate handler."""
    results = []
    queue = [message]

    while queue:
        message = queue.pop(0)

        if isinstance(message, Event):
            handle_event(message, queue, uow, worker)
        elif isinstance(message, Command):
            cmd_result = handle_command(message, queue, uow, worker)
            results.append(cmd_result)
        else:
            raise Exception(f"{message} was not an Event or Command")

    return results


def handle_event(
    event: Event,
    queue: List[Message],
    uow: AbstractUnitOfWork,
    worker: PushWorker,
):
    """Handle event by calling all registered event handlers."""
    for handler in EVENT_HANDLERS[type(event)]:
        try:
            logger.debug(f"handling event {event} with handler {handler}")
            handler(event, uow=uow, worker=worker)
            queue.extend(uow.collect_new_events())
        except Exception:
            logger.exception("Exception handling event %s", event)
            continue


def handle_command(
    command: Command,
    queue: List[Message],
    uow: AbstractUnitOfWork,
    worker: PushWorker,
):
    """Handle command by calling the registered command handler."""
    logger.debug(f"handling command {command}")
    try:
        handler = COMMAND_HANDLERS[type(command)]
        result = handler(command, uow=uow, worker=worker)
        queue.extend(uow.collect_new_events())
        return result
    except Exception:
        logger.exception("Exception handling command %s", command)
        raise


# Event handlers - multiple handlers can respond to same event
EVENT_HANDLERS = {
    DeliveryExhausted: [handlers.alert_delivery_exhausted],
    EnvelopeRejected: [handlers.publish_rejected_envelope],
    NotificationSent: [handlers.log_notification_sent],
    NotificationFailed: [handlers.log_notification_failed],
}  # type: Dict[Type[Event], List[Callable]]

# Command handlers - single handler per command type
COMMAND_HANDLERS = {
    ProcessPushedReport: handlers.process_pushed_report,
}  # type: Dict[Type[Command], Callable]
