"""Shared pymongo plumbing for the Mongo-backed stores."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Iterator, Tuple
import logging
import os

from ..config import env_flag
from ..domain.errors import AssistantHubError, StorageError

logger = logging.getLogger(__name__)

REQUIRE_MONGO_ENV = "ASSISTANT_HUB_STORE_REQUIRE_MONGO"


def open_database() -> Tuple[Any, Any]:
    """Connect with MONGO_URL/MONGO_DB and return ``(client, database)``.

    Raises whatever pymongo raises when the server is unreachable; callers
    decide between falling back and failing.
    """
    from pymongo import MongoClient  # type: ignore

    mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    mongo_db = os.getenv("MONGO_DB", "assistant_hub")
    client = MongoClient(mongo_url, serverSelectionTimeoutMS=500, tz_aware=True)
    # Trigger server selection
    client.server_info()
    return client, client[mongo_db]


def mongo_required() -> bool:
    return env_flag(REQUIRE_MONGO_ENV)


@contextmanager
def storage_errors() -> Iterator[None]:
    try:
        yield
    except AssistantHubError:
        raise
    except Exception as exc:
        logger.exception("mongo_operation_failed")
        raise StorageError("Conversation storage is unavailable") from exc


def as_utc(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    return datetime.now(UTC)
