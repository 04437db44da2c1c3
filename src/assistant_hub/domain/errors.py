from __future__ import annotations

"""Error taxonomy surfaced by the turn pipeline.

Each error carries a stable ``kind`` that API clients can branch on and the
HTTP status the API layer renders it with.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    INVALID_REQUEST = "InvalidRequest"
    NOT_FOUND = "NotFound"
    UNSUPPORTED_FORMAT = "UnsupportedFormat"
    EXTRACTION_ERROR = "ExtractionError"
    PROVIDER_ERROR = "ProviderError"
    STORAGE_ERROR = "StorageError"


class AssistantHubError(Exception):
    kind: ErrorKind = ErrorKind.INVALID_REQUEST
    status_code: int = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "kind": self.kind.value}
        if self.details:
            payload.update(self.details)
        return payload


class InvalidRequest(AssistantHubError):
    kind = ErrorKind.INVALID_REQUEST
    status_code = 400


class NotFound(AssistantHubError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class UnsupportedFormat(AssistantHubError):
    kind = ErrorKind.UNSUPPORTED_FORMAT
    status_code = 415


class ExtractionError(AssistantHubError):
    kind = ErrorKind.EXTRACTION_ERROR
    status_code = 422


class ProviderError(AssistantHubError):
    kind = ErrorKind.PROVIDER_ERROR
    status_code = 502


class StorageError(AssistantHubError):
    kind = ErrorKind.STORAGE_ERROR
    status_code = 503
