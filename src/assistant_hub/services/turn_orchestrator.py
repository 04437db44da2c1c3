from __future__ import annotations

"""Conversation turn pipeline.

A turn moves through Resolving -> Extracting -> Budgeting -> Prompting ->
Completing -> Persisting. Every failure surfaces as an AssistantHubError
subclass; the only condition absorbed here is an empty provider reply, which
is replaced with ``FALLBACK_REPLY``.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Union
import logging

from ..config import FALLBACK_REPLY, TurnSettings
from ..domain.errors import AssistantHubError, ExtractionError, InvalidRequest, NotFound, ProviderError
from ..domain.models import (
    Assistant,
    ChatReply,
    ChatTurnRequest,
    ConversationSnapshot,
    ConversationSummary,
    ConversationWithMessages,
    Message,
    ReplyStatus,
    Role,
    UploadedFile,
    VisibleMessage,
)
from ..infrastructure.assistant_repository import AssistantRepository, get_assistant_repo
from ..infrastructure.conversation_store import ConversationStore, get_conversation_store, seed_content
from ..infrastructure.events import EventType, publish_event
from ..observability.metrics import TURNS_TOTAL
from . import content_extractor
from .context_budget import count_units, truncate
from .providers import CompletionProvider, Transcriber, build_completion_provider, build_transcriber

logger = logging.getLogger(__name__)

TurnResult = Union[ChatReply, ConversationSnapshot]


@dataclass
class _LockEntry:
    lock: Lock = field(default_factory=Lock)
    users: int = 0


class ConversationLocks:
    """Per-conversation mutual exclusion; entries are dropped once unused."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._entries: Dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(conversation_id, _LockEntry())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._entries.pop(conversation_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


@dataclass(frozen=True)
class Contribution:
    mode: str
    stored_content: str
    prompt_content: str
    metadata: Optional[Dict[str, Any]] = None


def file_message_content(name: str, text: str) -> str:
    return f"Uploaded file: {name}\n\nFile content:\n{text}"


def file_prompt_content(text: str) -> str:
    return f"Please analyze the following file content:\n\n{text}"


def visible_messages(messages: List[Message], failed: Optional[Dict[str, str]] = None) -> List[VisibleMessage]:
    """Drop system messages and annotate each user message with its reply status."""
    failed = failed or {}
    public = [m for m in messages if m.role != Role.SYSTEM]
    out: List[VisibleMessage] = []
    for idx, m in enumerate(public):
        status: Optional[ReplyStatus] = None
        if m.role == Role.USER:
            nxt = public[idx + 1] if idx + 1 < len(public) else None
            if nxt is not None and nxt.role == Role.ASSISTANT:
                status = ReplyStatus.ANSWERED
            elif m.message_id in failed:
                status = ReplyStatus.FAILED
            else:
                status = ReplyStatus.PENDING
        out.append(
            VisibleMessage(
                message_id=m.message_id,
                role=m.role,
                content=m.content,
                created_at=m.created_at,
                reply_status=status,
            )
        )
    return out


class TurnOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        provider: CompletionProvider,
        transcriber: Optional[Transcriber] = None,
        assistants: Optional[AssistantRepository] = None,
        settings: Optional[TurnSettings] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._transcriber = transcriber
        self._assistants = assistants or get_assistant_repo()
        self._settings = settings or TurnSettings()
        self._locks = ConversationLocks()

    @property
    def settings(self) -> TurnSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def take_turn(self, request: ChatTurnRequest, upload: Optional[UploadedFile] = None) -> TurnResult:
        """Run one turn, or return the conversation when no content is given."""
        text = (request.message or "").strip() or None
        mode = "file" if upload is not None else ("text" if text else "fetch")
        try:
            result = self._take_turn(request, text, upload)
        except AssistantHubError as exc:
            TURNS_TOTAL.labels(mode=mode, outcome=exc.kind.value).inc()
            raise
        TURNS_TOTAL.labels(mode=mode, outcome="ok").inc()
        return result

    def clear(self, conversation_id: str) -> None:
        with self._locks.hold(conversation_id):
            self._store.clear_conversation(conversation_id)
        logger.info("conversation cleared id=%s", conversation_id)
        publish_event(EventType.CONVERSATION_CLEARED, {"conversation_id": conversation_id})

    def append(self, conversation_id: str, role: Role, content: str) -> Message:
        with self._locks.hold(conversation_id):
            return self._store.append_message(conversation_id, role, content)

    def list_conversations(self) -> List[ConversationSummary]:
        return self._store.list_conversations()

    def visible_messages(self, conversation_id: str) -> List[VisibleMessage]:
        messages = self._store.list_messages(conversation_id)
        return visible_messages(messages, self._store.failed_replies(conversation_id))

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------
    def _take_turn(self, request: ChatTurnRequest, text: Optional[str], upload: Optional[UploadedFile]) -> TurnResult:
        if request.conversation_id and request.assistant_id:
            raise InvalidRequest("Provide either conversationId or assistantId, not both")
        if not request.conversation_id and not request.assistant_id:
            raise InvalidRequest("Either conversationId or assistantId is required")
        if text and upload is not None:
            raise InvalidRequest("Send either a message or a file, not both")

        # Resolving
        if request.conversation_id:
            conversation_id = request.conversation_id
            current = self._store.get_conversation(conversation_id)
            if text is None and upload is None:
                return self._snapshot(current)
        else:
            assistant = self._require_assistant(str(request.assistant_id))
            if text is None and upload is None:
                created = self._store.create_conversation(assistant.assistant_id)
                return self._snapshot(self._store.get_conversation(created.conversation_id))
            conversation_id = ""

        # Extracting / Budgeting run before anything is persisted.
        contribution = self._prepare(text, upload)

        if not conversation_id:
            conversation_id = self._store.create_conversation(str(request.assistant_id)).conversation_id
            logger.info("conversation created id=%s assistant=%s", conversation_id, request.assistant_id)

        with self._locks.hold(conversation_id):
            current = self._store.get_conversation(conversation_id)
            return self._complete_turn(current, contribution)

    def _prepare(self, text: Optional[str], upload: Optional[UploadedFile]) -> Contribution:
        budget = self._settings.file_token_budget
        if upload is None:
            raw = text or ""
            # Plain messages keep their formatting unless they exceed the budget.
            if count_units(raw) > budget:
                raw = truncate(raw, budget)
            return Contribution(mode="text", stored_content=raw, prompt_content=raw)

        kind = content_extractor.classify(upload.name, upload.media_type)
        if kind == content_extractor.ArtifactKind.AUDIO:
            extracted = self._transcribe(upload)
        else:
            extracted = content_extractor.extract(upload.data, upload.name, upload.media_type)
        if not extracted.strip():
            raise ExtractionError(f"No readable text found in {upload.name}")

        budgeted = truncate(extracted, budget)
        return Contribution(
            mode="file",
            stored_content=file_message_content(upload.name, budgeted),
            prompt_content=file_prompt_content(budgeted),
            metadata={
                "file_name": upload.name,
                "media_type": upload.media_type,
                "artifact_kind": kind.value,
                "token_count": count_units(budgeted),
            },
        )

    def _transcribe(self, upload: UploadedFile) -> str:
        if self._transcriber is None:
            raise ExtractionError("Audio transcription is not available")
        try:
            return self._transcriber.transcribe(upload.data, upload.name, upload.media_type)
        except AssistantHubError:
            raise
        except Exception as exc:
            logger.warning("transcription raised %s", exc)
            raise ExtractionError("Failed to transcribe audio") from exc

    def _complete_turn(self, current: ConversationWithMessages, contribution: Contribution) -> ChatReply:
        conversation_id = current.conversation.conversation_id
        assistant = current.assistant
        history = [m for m in current.messages if m.role != Role.SYSTEM]

        # Persisting (pre)
        user_msg = self._store.append_message(
            conversation_id, Role.USER, contribution.stored_content, metadata=contribution.metadata
        )

        # Prompting
        prompt = [{"role": Role.SYSTEM.value, "content": seed_content(assistant)}]
        prompt.extend({"role": m.role.value, "content": m.content} for m in history)
        prompt.append({"role": Role.USER.value, "content": contribution.prompt_content})
        model = self._select_model(assistant)

        # Completing
        try:
            reply = self._provider.complete(prompt, model, self._settings.max_reply_tokens)
        except Exception as exc:
            kind = exc.kind.value if isinstance(exc, AssistantHubError) else ProviderError.kind.value
            self._store.mark_reply_failed(conversation_id, user_msg.message_id, kind)
            publish_event(
                EventType.TURN_FAILED,
                {
                    "conversation_id": conversation_id,
                    "assistant_id": assistant.assistant_id,
                    "message_id": user_msg.message_id,
                    "kind": kind,
                },
            )
            logger.warning("turn failed conversation=%s kind=%s err=%s", conversation_id, kind, exc)
            message = exc.message if isinstance(exc, ProviderError) else "The assistant could not complete the request. Please try again."
            raise ProviderError(
                message,
                details={"conversationId": conversation_id, "messageId": user_msg.message_id},
            ) from exc

        # Persisting (post)
        if not isinstance(reply, str) or not reply.strip():
            logger.info("empty provider reply conversation=%s; using fallback", conversation_id)
            reply = FALLBACK_REPLY
        self._store.append_message(conversation_id, Role.ASSISTANT, reply, metadata={"model": model})
        publish_event(
            EventType.TURN_COMPLETED,
            {
                "conversation_id": conversation_id,
                "assistant_id": assistant.assistant_id,
                "mode": contribution.mode,
                "model": model,
            },
        )
        return ChatReply(reply=reply, conversation_id=conversation_id)

    def _select_model(self, assistant: Assistant) -> str:
        return self._settings.force_model or (assistant.model or "").strip() or self._settings.default_model

    def _require_assistant(self, assistant_id: str) -> Assistant:
        assistant = self._assistants.get(assistant_id)
        if assistant is None:
            raise NotFound("Assistant not found")
        return assistant

    def _snapshot(self, current: ConversationWithMessages) -> ConversationSnapshot:
        conversation_id = current.conversation.conversation_id
        return ConversationSnapshot(
            conversation_id=conversation_id,
            messages=visible_messages(current.messages, self._store.failed_replies(conversation_id)),
        )


_orchestrator: TurnOrchestrator | None = None


def get_turn_orchestrator() -> TurnOrchestrator:
    global _orchestrator
    if _orchestrator is not None:
        return _orchestrator
    _orchestrator = TurnOrchestrator(
        store=get_conversation_store(),
        provider=build_completion_provider(),
        transcriber=build_transcriber(),
        assistants=get_assistant_repo(),
        settings=TurnSettings.from_env(),
    )
    return _orchestrator
