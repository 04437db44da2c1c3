from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import logging
import os
import uuid

from ..config import DEFAULT_SYSTEM_PROMPT
from ..domain.errors import InvalidRequest, NotFound
from ..domain.models import (
    Assistant,
    Conversation,
    ConversationSummary,
    ConversationWithMessages,
    Message,
    Role,
)
from .assistant_repository import AssistantRepository, get_assistant_repo

logger = logging.getLogger(__name__)

# Mongo stores datetimes at millisecond precision, so both stores step by 1ms.
TIMESTAMP_STEP = timedelta(milliseconds=1)


class ConversationStore(Protocol):
    def create_conversation(self, assistant_id: str) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> ConversationWithMessages: ...

    def list_messages(self, conversation_id: str) -> List[Message]: ...

    def append_message(
        self,
        conversation_id: str,
        role: Role | str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message: ...

    def clear_conversation(self, conversation_id: str) -> Message: ...

    def list_conversations(self) -> List[ConversationSummary]: ...

    def mark_reply_failed(self, conversation_id: str, message_id: str, kind: str) -> None: ...

    def failed_replies(self, conversation_id: str) -> Dict[str, str]: ...


def coerce_role(role: Role | str) -> Role:
    if isinstance(role, Role):
        return role
    try:
        return Role(str(role).strip().lower())
    except ValueError:
        raise InvalidRequest(f"Unknown message role: {role!r}")


def seed_content(assistant: Assistant) -> str:
    return (assistant.instructions or "").strip() or DEFAULT_SYSTEM_PROMPT


def next_timestamp(last: Optional[datetime]) -> datetime:
    now = datetime.now(UTC)
    now = now.replace(microsecond=(now.microsecond // 1000) * 1000)
    if last is not None and now <= last:
        return last + TIMESTAMP_STEP
    return now


@dataclass
class _Conversation:
    conversation_id: str
    assistant_id: str
    created_at: datetime
    updated_at: datetime
    next_seq: int = 0
    last_message_at: Optional[datetime] = None
    failed: Dict[str, str] = field(default_factory=dict)


@dataclass
class _Message:
    message_id: str
    conversation_id: str
    seq: int
    role: Role
    content: str
    created_at: datetime
    metadata: Dict[str, Any] | None = None


class InMemoryConversationStore:
    def __init__(self, assistants: Optional[AssistantRepository] = None) -> None:
        self._assistants = assistants or get_assistant_repo()
        self._conversations: Dict[str, _Conversation] = {}
        self._messages: Dict[str, List[_Message]] = {}
        self._lock = RLock()

    def _conversation_model(self, conv: _Conversation) -> Conversation:
        return Conversation(
            conversation_id=conv.conversation_id,
            assistant_id=conv.assistant_id,
            created_at=conv.created_at,
            updated_at=conv.updated_at,
        )

    def _message_model(self, message: _Message) -> Message:
        return Message(**message.__dict__)

    def _require(self, conversation_id: str) -> _Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise NotFound("Conversation not found")
        return conv

    def _require_assistant(self, assistant_id: str) -> Assistant:
        assistant = self._assistants.get(assistant_id)
        if assistant is None:
            raise NotFound("Assistant not found")
        return assistant

    def _new_message(
        self,
        conv: _Conversation,
        role: Role,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> _Message:
        created_at = next_timestamp(conv.last_message_at)
        msg = _Message(
            message_id=uuid.uuid4().hex,
            conversation_id=conv.conversation_id,
            seq=conv.next_seq,
            role=role,
            content=content,
            created_at=created_at,
            metadata=dict(metadata) if metadata else None,
        )
        conv.next_seq += 1
        conv.last_message_at = created_at
        conv.updated_at = created_at
        return msg

    def create_conversation(self, assistant_id: str) -> Conversation:
        with self._lock:
            assistant = self._require_assistant(assistant_id)
            now = next_timestamp(None)
            conv = _Conversation(
                conversation_id=uuid.uuid4().hex,
                assistant_id=assistant.assistant_id,
                created_at=now,
                updated_at=now,
            )
            seed = self._new_message(conv, Role.SYSTEM, seed_content(assistant))
            self._conversations[conv.conversation_id] = conv
            self._messages[conv.conversation_id] = [seed]
            return self._conversation_model(conv)

    def get_conversation(self, conversation_id: str) -> ConversationWithMessages:
        with self._lock:
            conv = self._require(conversation_id)
            assistant = self._require_assistant(conv.assistant_id)
            return ConversationWithMessages(
                conversation=self._conversation_model(conv),
                assistant=assistant,
                messages=[self._message_model(m) for m in self._messages.get(conversation_id, [])],
            )

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._lock:
            self._require(conversation_id)
            return [self._message_model(m) for m in self._messages.get(conversation_id, [])]

    def append_message(
        self,
        conversation_id: str,
        role: Role | str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        resolved = coerce_role(role)
        if not isinstance(content, str):
            raise InvalidRequest("Message content must be text")
        with self._lock:
            conv = self._require(conversation_id)
            msg = self._new_message(conv, resolved, content, metadata)
            self._messages.setdefault(conversation_id, []).append(msg)
            return self._message_model(msg)

    def clear_conversation(self, conversation_id: str) -> Message:
        with self._lock:
            conv = self._require(conversation_id)
            assistant = self._require_assistant(conv.assistant_id)
            seed = self._new_message(conv, Role.SYSTEM, seed_content(assistant))
            self._messages[conversation_id] = [seed]
            conv.failed.clear()
            return self._message_model(seed)

    def list_conversations(self) -> List[ConversationSummary]:
        with self._lock:
            out: List[ConversationSummary] = []
            # Reverse insertion order so ties on updated_at list the newer conversation first.
            for conv in reversed(list(self._conversations.values())):
                assistant = self._assistants.get(conv.assistant_id)
                if assistant is None:
                    logger.warning("conversation %s references missing assistant %s", conv.conversation_id, conv.assistant_id)
                    continue
                msgs = self._messages.get(conv.conversation_id, [])
                out.append(
                    ConversationSummary(
                        conversation_id=conv.conversation_id,
                        assistant_id=conv.assistant_id,
                        created_at=conv.created_at,
                        updated_at=conv.updated_at,
                        assistant=assistant,
                        messages=[self._message_model(msgs[-1])] if msgs else [],
                    )
                )
            # Newest first
            return sorted(out, key=lambda s: s.updated_at, reverse=True)

    def mark_reply_failed(self, conversation_id: str, message_id: str, kind: str) -> None:
        with self._lock:
            conv = self._require(conversation_id)
            conv.failed[message_id] = kind

    def failed_replies(self, conversation_id: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._require(conversation_id).failed)


_store: ConversationStore | None = None


def get_conversation_store() -> ConversationStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("ASSISTANT_HUB_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        from .conversation_store_mongo import MongoConversationStore

        _store = MongoConversationStore()
        return _store
    _store = InMemoryConversationStore()
    return _store
