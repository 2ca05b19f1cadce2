"""Redis adapter for publishing operator-facing events following Cosmic Python pattern."""

import abc
import json
import logging
from dataclasses import asdict
from datetime import datetime
from enum import Enum
import redis

import config
from notification.domain.events import Event

logger = logging.getLogger(__name__)

DEAD_LETTER_CHANNEL = "notifications:dead-letter"
REJECTED_CHANNEL = "notifications:rejected"


def serialize_event(event: Event) -> str:
    """Serialize event to JSON, handling datetime and enum values."""
    event_dict = asdict(event)

    for key, value in event_dict.items():
        if isinstance(value, datetime):
            event_dict[key] = value.isoformat()
        elif isinstance(value, Enum):
            event_dict[key] = value.value

    event_dict["event_type"] = type(event).__name__
    return json.dumps(event_dict)


class AbstractAlertPublisher(abc.ABC):
    """Side channel for failures that need operator attention."""

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    @abc.abstractmethod
    def publish(self, channel: str, event: Event) -> None:
        raise NotImplementedError


class RedisAlertPublisher(AbstractAlertPublisher):
    """Publish events to Redis pub/sub channels."""

    def __init__(self, client: redis.Redis = None):
        self.client = client

    def open(self) -> None:
        if self.client is None:
            self.client = redis.Redis(**config.get_redis_host_and_port())

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None

    def publish(self, channel: str, event: Event) -> None:
        if self.client is None:
            self.open()
        logger.info("publishing: channel=%s, event=%s", channel, event)
        self.client.publish(channel, serialize_event(event))

