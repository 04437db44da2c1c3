from __future__ import annotations

from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol
import os

from ..domain.models import Assistant, AssistantCreate


class AssistantRepository(Protocol):
    def list(self) -> List[Assistant]: ...

    def get(self, assistant_id: str) -> Optional[Assistant]: ...

    def create(self, payload: AssistantCreate) -> Assistant: ...

    def find_by_channel_address(self, address: str) -> Optional[Assistant]: ...


class InMemoryAssistantRepository:
    """In-memory assistant directory.

    Assistants are immutable once created; conversations reference them by id.
    """

    def __init__(self) -> None:
        self._assistants: Dict[str, Assistant] = {}
        self._counter: int = 0
        self._lock = RLock()

    def _generate_assistant_id(self) -> str:
        self._counter += 1
        year = datetime.now(UTC).year
        return f"AST-{year}-{self._counter:04d}"

    def list(self) -> List[Assistant]:
        with self._lock:
            return sorted(self._assistants.values(), key=lambda a: a.created_at)

    def get(self, assistant_id: str) -> Optional[Assistant]:
        with self._lock:
            return self._assistants.get(assistant_id)

    def create(self, payload: AssistantCreate) -> Assistant:
        with self._lock:
            aid = self._generate_assistant_id()
            assistant = Assistant(
                assistant_id=aid,
                name=payload.name,
                model=payload.model,
                personality=payload.personality,
                instructions=payload.instructions,
                channel_address=payload.channel_address,
                created_at=datetime.now(UTC),
            )
            self._assistants[aid] = assistant
            return assistant

    def find_by_channel_address(self, address: str) -> Optional[Assistant]:
        needle = (address or "").strip()
        if not needle:
            return None
        with self._lock:
            for assistant in self._assistants.values():
                if assistant.channel_address == needle:
                    return assistant
            return None


_assistants_repo: AssistantRepository | None = None


def get_assistant_repo() -> AssistantRepository:
    global _assistants_repo
    if _assistants_repo is not None:
        return _assistants_repo
    # Assistants live in the same backend as the conversations that reference them.
    impl = os.getenv("ASSISTANT_HUB_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        from .assistant_repository_mongo import MongoAssistantRepository

        _assistants_repo = MongoAssistantRepository()
        return _assistants_repo
    _assistants_repo = InMemoryAssistantRepository()
    return _assistants_repo
