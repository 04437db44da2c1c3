import importlib
import json
import sys
import types
from datetime import datetime

import pytest

from conftest import FakeProvider
from src.assistant_hub.domain.errors import ProviderError
from src.assistant_hub.domain.models import ChatTurnRequest
from src.assistant_hub.infrastructure.events import DomainEvent, EventType
from src.assistant_hub.services import turn_orchestrator

MODULE = "src.assistant_hub.infrastructure.events"


def _reload_events(monkeypatch, *, url=None, redis_module=None):
    monkeypatch.delenv("REDIS_URL", raising=False)
    if url is not None:
        monkeypatch.setenv("REDIS_URL", url)
    if redis_module is None:
        redis_module = types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=lambda *args, **kwargs: None))
    monkeypatch.setitem(sys.modules, "redis", redis_module)
    monkeypatch.delitem(sys.modules, MODULE, raising=False)
    return importlib.import_module(MODULE)


def test_publish_event_without_url_is_a_no_op(monkeypatch):
    module = _reload_events(monkeypatch)
    assert module._get_publisher() is None
    assert module.publish_event("turn.completed", {"conversation_id": "c1"}) is None


def test_domain_event_envelope():
    event = DomainEvent(EventType.CONVERSATION_CLEARED, {"conversation_id": "c1"})
    message = event.to_message()
    assert event.channel == "assistant_hub.events.conversation.cleared"
    assert message["type"] == "conversation.cleared"
    assert message["data"] == {"conversation_id": "c1"}
    assert len(message["event_id"]) == 32
    assert datetime.fromisoformat(message["occurred_at"]).tzinfo is not None
    assert DomainEvent(EventType.TURN_FAILED, {}).event_id != DomainEvent(EventType.TURN_FAILED, {}).event_id


def test_unknown_event_type_is_rejected(monkeypatch):
    module = _reload_events(
        monkeypatch,
        url="redis://localhost",
        redis_module=types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=lambda *a, **k: FakeRedisClient())),
    )
    FakeRedisClient.attempt = 1
    with pytest.raises(ValueError):
        module.publish_event("assistant.deleted", {})
class FakeRedisClient:
    attempt = 0
    published = []
    publish_should_fail = False

    def ping(self):
        if FakeRedisClient.attempt == 0:
            FakeRedisClient.attempt += 1
            raise Exception("connect failed")

    def publish(self, channel, payload):
        FakeRedisClient.published.append((channel, payload))
        if FakeRedisClient.publish_should_fail:
            FakeRedisClient.publish_should_fail = False
            raise Exception("publish failed")


def test_publisher_reconnects_and_namespaces_channels(monkeypatch):
    FakeRedisClient.attempt = 0
    FakeRedisClient.published = []
    FakeRedisClient.publish_should_fail = False

    def from_url(url, socket_timeout=0.5):
        return FakeRedisClient()

    redis_module = types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=from_url))
    module = _reload_events(monkeypatch, url="redis://localhost", redis_module=redis_module)

    publisher = module._get_publisher()
    event = module.publish_event("turn.failed", {"conversation_id": "c1", "kind": "ProviderError"})
    assert FakeRedisClient.attempt == 1
    channel, payload = FakeRedisClient.published[-1]
    assert channel == "assistant_hub.events.turn.failed"
    body = json.loads(payload)
    assert body["type"] == "turn.failed"
    assert body["data"] == {"conversation_id": "c1", "kind": "ProviderError"}
    assert body["event_id"] == event.event_id

    FakeRedisClient.publish_should_fail = True
    # Publish failures are logged and dropped.
    assert module.publish_event(module.EventType.TURN_COMPLETED, {"conversation_id": "c1"}) is None
    assert module._get_publisher() is publisher


@pytest.fixture
def published(monkeypatch):
    events = []
    monkeypatch.setattr(turn_orchestrator, "publish_event", lambda event_type, payload: events.append((event_type, payload)))
    return events


def test_turns_publish_completed_and_failed_events(make_orchestrator, helper, published):
    orchestrator = make_orchestrator()
    reply = orchestrator.take_turn(ChatTurnRequest(assistant_id=helper.assistant_id, message="Hello"))
    event_type, payload = published[-1]
    assert event_type is EventType.TURN_COMPLETED
    assert payload["conversation_id"] == reply.conversation_id
    assert payload["assistant_id"] == helper.assistant_id

    orchestrator.clear(reply.conversation_id)
    assert published[-1] == (EventType.CONVERSATION_CLEARED, {"conversation_id": reply.conversation_id})

    orchestrator._provider = FakeProvider(error=ProviderError("upstream down"))
    with pytest.raises(ProviderError):
        orchestrator.take_turn(
            ChatTurnRequest(assistant_id=helper.assistant_id, conversation_id=reply.conversation_id, message="Again")
        )
    event_type, payload = published[-1]
    assert event_type is EventType.TURN_FAILED
    assert payload["kind"] == "ProviderError"
