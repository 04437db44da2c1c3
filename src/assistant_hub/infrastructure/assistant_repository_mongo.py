from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional
import logging

from ..domain.errors import StorageError
from ..domain.models import Assistant, AssistantCreate
from .assistant_repository import InMemoryAssistantRepository
from .mongo import as_utc, mongo_required, open_database, storage_errors

logger = logging.getLogger(__name__)

COUNTER_ID = "assistant_id"


class MongoAssistantRepository:
    """Assistant directory persisted in the ``assistants`` collection.

    The numeric part of ``AST-<year>-<n>`` comes from a counter document in
    ``counters``, so ids are never reused after a restart or across workers.
    """

    def __init__(self) -> None:
        self._fallback = InMemoryAssistantRepository()
        self._client = None
        self._assistants = None
        self._counters = None
        try:
            client, db = open_database()
            self._assistants = db["assistants"]
            self._counters = db["counters"]
            self._assistants.create_index("assistant_id", unique=True)
            self._assistants.create_index("channel_address")
            self._client = client
        except Exception as exc:
            if mongo_required():
                raise StorageError("Mongo assistant repository required but not available") from exc
            logger.warning("mongo_unavailable_using_memory_assistants", extra={"err": str(exc)})
            self._client = None
            self._assistants = None
            self._counters = None

    def _use_fallback(self) -> bool:
        return self._client is None or self._assistants is None or self._counters is None

    def list(self) -> List[Assistant]:
        if self._use_fallback():
            return self._fallback.list()
        with storage_errors():
            docs = list(self._assistants.find({}).sort("created_at", 1))  # type: ignore[union-attr]
        return [self._to_assistant(doc) for doc in docs]

    def get(self, assistant_id: str) -> Optional[Assistant]:
        if self._use_fallback():
            return self._fallback.get(assistant_id)
        with storage_errors():
            doc = self._assistants.find_one({"assistant_id": assistant_id})  # type: ignore[union-attr]
        return self._to_assistant(doc) if doc else None

    def create(self, payload: AssistantCreate) -> Assistant:
        if self._use_fallback():
            return self._fallback.create(payload)
        with storage_errors():
            assistant = Assistant(
                assistant_id=self._next_id(),
                name=payload.name,
                model=payload.model,
                personality=payload.personality,
                instructions=payload.instructions,
                channel_address=payload.channel_address,
                created_at=datetime.now(UTC),
            )
            self._assistants.insert_one(assistant.model_dump())  # type: ignore[union-attr]
        return assistant

    def find_by_channel_address(self, address: str) -> Optional[Assistant]:
        needle = (address or "").strip()
        if not needle:
            return None
        if self._use_fallback():
            return self._fallback.find_by_channel_address(needle)
        with storage_errors():
            doc = self._assistants.find_one({"channel_address": needle})  # type: ignore[union-attr]
        return self._to_assistant(doc) if doc else None

    def _next_id(self) -> str:
        from pymongo import ReturnDocument  # type: ignore

        counter = self._counters.find_one_and_update(  # type: ignore[union-attr]
            {"_id": COUNTER_ID},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        year = datetime.now(UTC).year
        return f"AST-{year}-{int(counter['value']):04d}"

    def _to_assistant(self, doc: Dict[str, Any]) -> Assistant:
        data = dict(doc)
        data.pop("_id", None)
        data["created_at"] = as_utc(data.get("created_at"))
        return Assistant(**data)
