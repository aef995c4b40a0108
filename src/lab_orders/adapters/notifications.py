"""Redis adapter for publishing order notifications."""

import abc
import json
import logging
from dataclasses import asdict
from datetime import date, datetime
from typing import Optional

import redis

from config import get_redis_host_and_port
from shared.domain.commands import Event

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "lab-orders"


def channel_name(topic: str) -> str:
    return f"{CHANNEL_PREFIX}:{topic}"


def _serialize_event(event: Event) -> str:
    """Serialize event to JSON, handling datetime objects."""
    event_dict = asdict(event)

    # Convert datetime objects to ISO strings
    for key, value in event_dict.items():
        if isinstance(value, (datetime, date)):
            event_dict[key] = value.isoformat()

    event_dict["event_type"] = type(event).__name__
    return json.dumps(event_dict)


class AbstractNotifications(abc.ABC):
    @abc.abstractmethod
    def publish(self, topic: str, event: Event):
        raise NotImplementedError


class RedisNotifications(AbstractNotifications):
    def __init__(self, client: Optional[redis.Redis] = None):
        self._client = client

    @property
    def client(self) -> redis.Redis:
        # Connect on first publish so building a unit of work never touches redis
        if self._client is None:
            self._client = redis.Redis(**get_redis_host_and_port())
        return self._client

    def publish(self, topic: str, event: Event):
        channel = channel_name(topic)
        logger.info("publishing: channel=%s, event=%s", channel, event)
        self.client.publish(channel, _serialize_event(event))
