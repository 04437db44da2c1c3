from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, Optional
import json
import logging
import os
import uuid

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None  # type: ignore

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "assistant_hub.events"


class EventType(str, Enum):
    TURN_COMPLETED = "turn.completed"
    TURN_FAILED = "turn.failed"
    CONVERSATION_CLEARED = "conversation.cleared"


@dataclass(frozen=True)
class DomainEvent:
    """A conversation lifecycle event as it goes out on the bus.

    Subscribers get ``event_id`` for de-duplication and ``occurred_at`` so
    events that arrive late can still be ordered.
    """

    event_type: EventType
    data: Dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def channel(self) -> str:
        return f"{CHANNEL_PREFIX}.{self.event_type.value}"

    def to_message(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "data": dict(self.data),
        }


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client = None
        self._connect()

    def _connect(self) -> None:
        if redis is None:
            return
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            logger.warning("event_publisher_unavailable", extra={"err": str(exc)})
            self._client = None

    def publish(self, event: DomainEvent) -> bool:
        if not self._client:
            self._connect()
        if not self._client:
            return False
        try:
            self._client.publish(event.channel, json.dumps(event.to_message(), default=str))
        except Exception as exc:
            logger.warning(
                "event_publish_failed",
                extra={"channel": event.channel, "event_id": event.event_id, "err": str(exc)},
            )
            self._client = None
            return False
        return True


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def publish_event(event_type: EventType | str, payload: Dict[str, Any]) -> Optional[DomainEvent]:
    """Publish a conversation event; never raises into the request path.

    Returns the event that went out, or None when no bus is configured or the
    publish was dropped.
    """
    publisher = _get_publisher()
    if not publisher:
        return None
    event = DomainEvent(EventType(event_type), payload)
    return event if publisher.publish(event) else None
