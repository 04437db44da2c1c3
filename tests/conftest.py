import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from src.assistant_hub.config import TurnSettings  # noqa: E402
from src.assistant_hub.domain.models import AssistantCreate  # noqa: E402
from src.assistant_hub.infrastructure import assistant_repository, conversation_store  # noqa: E402
from src.assistant_hub.infrastructure.assistant_repository import InMemoryAssistantRepository  # noqa: E402
from src.assistant_hub.infrastructure.conversation_store import InMemoryConversationStore  # noqa: E402
from src.assistant_hub.services import channel_bridge, turn_orchestrator  # noqa: E402
from src.assistant_hub.services.turn_orchestrator import TurnOrchestrator  # noqa: E402


class FakeProvider:
    """Records every prompt and answers with a canned reply (or raises)."""

    def __init__(self, reply: str = "Hello! How can I help?", error: Optional[Exception] = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def complete(self, messages, model, max_reply_tokens):
        self.calls.append(
            {"messages": [dict(m) for m in messages], "model": model, "max_reply_tokens": max_reply_tokens}
        )
        if self.error is not None:
            raise self.error
        return self.reply


class FakeTranscriber:
    def __init__(self, text: str = "transcribed words", error: Optional[Exception] = None) -> None:
        self.text = text
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def transcribe(self, data, filename, media_type=None):
        self.calls.append({"data": data, "filename": filename, "media_type": media_type})
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture(autouse=True)
def _isolate_state(monkeypatch):
    """Fresh assistant directory and no cached singletons for every test."""
    for key in (
        "ASSISTANT_HUB_STORE_IMPL",
        "ASSISTANT_HUB_STORE_REQUIRE_MONGO",
        "ASSISTANT_HUB_FORCE_MODEL",
        "ASSISTANT_HUB_FILE_TOKEN_BUDGET",
        "ASSISTANT_HUB_CHANNEL_REUSE_CONVERSATION",
        "ASSISTANT_HUB_CHANNEL_MAX_TRACKED_ADDRESSES",
        "REDIS_URL",
    ):
        monkeypatch.delenv(key, raising=False)
    repo = InMemoryAssistantRepository()
    monkeypatch.setattr(assistant_repository, "_assistants_repo", repo)
    monkeypatch.setattr(conversation_store, "_store", None)
    monkeypatch.setattr(turn_orchestrator, "_orchestrator", None)
    monkeypatch.setattr(channel_bridge, "_bridge", None)
    yield repo


@pytest.fixture
def assistants(_isolate_state) -> InMemoryAssistantRepository:
    return _isolate_state


@pytest.fixture
def helper(assistants):
    return assistants.create(
        AssistantCreate(
            name="Helper",
            model="llama-3.3-70b-versatile",
            personality="friendly",
            instructions="You are a helpful assistant.",
        )
    )


@pytest.fixture
def store(assistants) -> InMemoryConversationStore:
    return InMemoryConversationStore(assistants)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def make_orchestrator(store, provider, transcriber, assistants):
    def _make(**settings) -> TurnOrchestrator:
        return TurnOrchestrator(store, provider, transcriber, assistants, TurnSettings(**settings))

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> TurnOrchestrator:
    return make_orchestrator()


@pytest.fixture
def client(orchestrator, assistants):
    from fastapi.testclient import TestClient

    from src.assistant_hub.api.main import app
    from src.assistant_hub.infrastructure.assistant_repository import get_assistant_repo
    from src.assistant_hub.services.turn_orchestrator import get_turn_orchestrator

    app.dependency_overrides[get_turn_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_assistant_repo] = lambda: assistants
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
