from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from ..domain.errors import NotFound, StorageError
from ..domain.models import (
    Assistant,
    Conversation,
    ConversationSummary,
    ConversationWithMessages,
    Message,
    Role,
)
from .assistant_repository import AssistantRepository, get_assistant_repo
from .conversation_store import InMemoryConversationStore, coerce_role, next_timestamp, seed_content
from .mongo import as_utc, mongo_required, open_database, storage_errors

logger = logging.getLogger(__name__)

# Attempts at claiming the next seq before giving up on a hot conversation.
APPEND_ATTEMPTS = 20


class MongoConversationStore:
    """Mongo-backed conversation store.

    Conversation creation and clearing run inside multi-document transactions,
    which requires the server to be a replica set (a single-node replica set
    is enough). Appends claim ``seq`` and ``created_at`` with a conditional
    update on the conversation document, so ordering holds across workers.
    If Mongo is unreachable at start-up and ASSISTANT_HUB_STORE_REQUIRE_MONGO
    is not set, the store falls back to an in-memory store so local
    development keeps working. Failures after a successful connection raise
    StorageError.
    """

    def __init__(self, assistants: Optional[AssistantRepository] = None) -> None:
        self._assistants = assistants or get_assistant_repo()
        self._fallback = InMemoryConversationStore(self._assistants)
        self._client = None
        self._conversations = None
        self._messages = None
        try:
            client, db = open_database()
            self._conversations = db["conversations"]
            self._messages = db["messages"]
            self._conversations.create_index("conversation_id", unique=True)
            self._conversations.create_index("updated_at")
            self._messages.create_index([("conversation_id", 1), ("seq", 1)], unique=True)
            self._client = client
        except Exception as exc:
            if mongo_required():
                raise StorageError("Mongo conversation store required but not available") from exc
            logger.warning("mongo_unavailable_using_memory_store", extra={"err": str(exc)})
            self._client = None
            self._conversations = None
            self._messages = None

    def _use_fallback(self) -> bool:
        return self._client is None or self._conversations is None or self._messages is None

    def _require_assistant(self, assistant_id: str) -> Assistant:
        assistant = self._assistants.get(assistant_id)
        if assistant is None:
            raise NotFound("Assistant not found")
        return assistant

    def _require_doc(self, conversation_id: str) -> Dict[str, Any]:
        doc = self._conversations.find_one({"conversation_id": conversation_id})  # type: ignore[union-attr]
        if not doc:
            raise NotFound("Conversation not found")
        return doc

    def create_conversation(self, assistant_id: str) -> Conversation:
        if self._use_fallback():
            return self._fallback.create_conversation(assistant_id)
        assistant = self._require_assistant(assistant_id)
        now = next_timestamp(None)
        conversation_id = uuid.uuid4().hex
        conv_doc = {
            "conversation_id": conversation_id,
            "assistant_id": assistant.assistant_id,
            "created_at": now,
            "updated_at": now,
            "next_seq": 1,
            "last_message_at": now,
            "failed": {},
        }
        seed_doc = self._message_doc(conversation_id, 0, Role.SYSTEM, seed_content(assistant), now)

        def _txn(session: Any) -> None:
            self._conversations.insert_one(conv_doc, session=session)  # type: ignore[union-attr]
            self._messages.insert_one(seed_doc, session=session)  # type: ignore[union-attr]

        with storage_errors():
            with self._client.start_session() as session:  # type: ignore[union-attr]
                session.with_transaction(_txn)
        return self._to_conversation(conv_doc)

    def get_conversation(self, conversation_id: str) -> ConversationWithMessages:
        if self._use_fallback():
            return self._fallback.get_conversation(conversation_id)
        with storage_errors():
            doc = self._require_doc(conversation_id)
            assistant = self._require_assistant(str(doc.get("assistant_id")))
            messages = self._load_messages(conversation_id)
        return ConversationWithMessages(
            conversation=self._to_conversation(doc),
            assistant=assistant,
            messages=messages,
        )

    def list_messages(self, conversation_id: str) -> List[Message]:
        if self._use_fallback():
            return self._fallback.list_messages(conversation_id)
        with storage_errors():
            self._require_doc(conversation_id)
            return self._load_messages(conversation_id)

    def append_message(
        self,
        conversation_id: str,
        role: Role | str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        if self._use_fallback():
            return self._fallback.append_message(conversation_id, role, content, metadata=metadata)
        resolved = coerce_role(role)
        with storage_errors():
            seq, created_at = self._claim_slot(conversation_id)
            doc = self._message_doc(conversation_id, seq, resolved, content, created_at, metadata)
            self._messages.insert_one(doc)  # type: ignore[union-attr]
        return self._to_message(doc)

    def _claim_slot(self, conversation_id: str) -> Tuple[int, datetime]:
        """Claim ``(seq, created_at)`` for the next message.

        The update only matches while ``next_seq`` still holds the value that
        was read, so a writer in another process that got there first forces
        a re-read and both the sequence number and the timestamp move forward
        together.
        """
        for _ in range(APPEND_ATTEMPTS):
            current = self._require_doc(conversation_id)
            seq = int(current.get("next_seq", 0))
            last = current.get("last_message_at")
            created_at = next_timestamp(as_utc(last) if last else None)
            result = self._conversations.update_one(  # type: ignore[union-attr]
                {"conversation_id": conversation_id, "next_seq": seq},
                {"$set": {"next_seq": seq + 1, "last_message_at": created_at, "updated_at": created_at}},
            )
            if result.matched_count:
                return seq, created_at
            logger.debug("append_slot_contended", extra={"conversation_id": conversation_id, "seq": seq})
        raise StorageError("Conversation is busy; try again")

    def clear_conversation(self, conversation_id: str) -> Message:
        if self._use_fallback():
            return self._fallback.clear_conversation(conversation_id)

        def _txn(session: Any) -> Dict[str, Any]:
            before = self._conversations.find_one_and_update(  # type: ignore[union-attr]
                {"conversation_id": conversation_id},
                {"$inc": {"next_seq": 1}, "$set": {"failed": {}}},
                session=session,
            )
            if not before:
                raise NotFound("Conversation not found")
            assistant = self._require_assistant(str(before.get("assistant_id")))
            created_at = next_timestamp(before.get("last_message_at"))
            seed = self._message_doc(
                conversation_id,
                int(before.get("next_seq", 0)),
                Role.SYSTEM,
                seed_content(assistant),
                created_at,
            )
            self._messages.delete_many({"conversation_id": conversation_id}, session=session)  # type: ignore[union-attr]
            self._messages.insert_one(seed, session=session)  # type: ignore[union-attr]
            self._conversations.update_one(  # type: ignore[union-attr]
                {"conversation_id": conversation_id},
                {"$set": {"last_message_at": created_at, "updated_at": created_at}},
                session=session,
            )
            return seed

        with storage_errors():
            with self._client.start_session() as session:  # type: ignore[union-attr]
                seed_doc = session.with_transaction(_txn)
        return self._to_message(seed_doc)

    def list_conversations(self) -> List[ConversationSummary]:
        if self._use_fallback():
            return self._fallback.list_conversations()
        out: List[ConversationSummary] = []
        with storage_errors():
            for doc in self._conversations.find({}).sort([("updated_at", -1), ("created_at", -1)]):  # type: ignore[union-attr]
                assistant = self._assistants.get(str(doc.get("assistant_id")))
                if assistant is None:
                    logger.warning("conversation %s references missing assistant", doc.get("conversation_id"))
                    continue
                latest = self._messages.find_one(  # type: ignore[union-attr]
                    {"conversation_id": doc.get("conversation_id")},
                    sort=[("seq", -1)],
                )
                conv = self._to_conversation(doc)
                out.append(
                    ConversationSummary(
                        **conv.model_dump(),
                        assistant=assistant,
                        messages=[self._to_message(latest)] if latest else [],
                    )
                )
        return out

    def mark_reply_failed(self, conversation_id: str, message_id: str, kind: str) -> None:
        if self._use_fallback():
            return self._fallback.mark_reply_failed(conversation_id, message_id, kind)
        with storage_errors():
            result = self._conversations.update_one(  # type: ignore[union-attr]
                {"conversation_id": conversation_id},
                {"$set": {f"failed.{message_id}": kind}},
            )
            if not result.matched_count:
                raise NotFound("Conversation not found")

    def failed_replies(self, conversation_id: str) -> Dict[str, str]:
        if self._use_fallback():
            return self._fallback.failed_replies(conversation_id)
        with storage_errors():
            doc = self._require_doc(conversation_id)
        return {str(k): str(v) for k, v in (doc.get("failed") or {}).items()}

    def _load_messages(self, conversation_id: str) -> List[Message]:
        cursor = self._messages.find({"conversation_id": conversation_id}).sort("seq", 1)  # type: ignore[union-attr]
        return [self._to_message(doc) for doc in cursor]

    def _message_doc(
        self,
        conversation_id: str,
        seq: int,
        role: Role,
        content: str,
        created_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "message_id": uuid.uuid4().hex,
            "conversation_id": conversation_id,
            "seq": seq,
            "role": role.value,
            "content": content,
            "created_at": created_at,
            "metadata": dict(metadata) if metadata else None,
        }

    def _to_conversation(self, doc: Dict[str, Any]) -> Conversation:
        return Conversation(
            conversation_id=str(doc.get("conversation_id")),
            assistant_id=str(doc.get("assistant_id")),
            created_at=as_utc(doc.get("created_at")),
            updated_at=as_utc(doc.get("updated_at")),
        )

    def _to_message(self, doc: Dict[str, Any]) -> Message:
        return Message(
            message_id=str(doc.get("message_id")),
            conversation_id=str(doc.get("conversation_id")),
            seq=int(doc.get("seq", 0)),
            role=coerce_role(doc.get("role", "assistant")),
            content=str(doc.get("content", "")),
            created_at=as_utc(doc.get("created_at")),
            metadata=doc.get("metadata") or None,
        )
