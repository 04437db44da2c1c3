from __future__ import annotations

"""Provider adapters for text completion and audio transcription.

Every call is single-shot: no streaming, no retries, no circuit breaking.
The turn orchestrator depends only on the two protocols below.
"""

from typing import Dict, List, Optional, Protocol
import logging
import time

import requests
from requests.adapters import HTTPAdapter

from ..domain.errors import ExtractionError, ProviderError
from ..observability.metrics import PROVIDER_LATENCY
from .model_router import ModelRouter, ProviderSelection

# Optional import: langchain-openai
try:
    from langchain_openai import ChatOpenAI  # type: ignore
except Exception:  # pragma: no cover - optional import
    ChatOpenAI = None  # type: ignore

logger = logging.getLogger(__name__)
LOG = logging.getLogger("assistant_hub.llm")

PromptMessage = Dict[str, str]


class CompletionProvider(Protocol):
    def complete(self, messages: List[PromptMessage], model: str, max_reply_tokens: int) -> str: ...


class Transcriber(Protocol):
    def transcribe(self, data: bytes, filename: str, media_type: Optional[str] = None) -> str: ...


def _build_session() -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=0, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _content_text(res: object) -> str:
    content = res.content if hasattr(res, "content") else res
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Some SDKs return content parts; keep the text ones.
        parts = [p.get("text", "") if isinstance(p, dict) else str(p) for p in content]
        return "".join(parts)
    return ""


class ChatCompletionProvider:
    """OpenAI-compatible hosted completion via langchain-openai."""

    def __init__(self, selection: ProviderSelection, temperature: float = 0.7, timeout: float = 60.0) -> None:
        self.selection = selection
        self.temperature = temperature
        self.timeout = timeout

    def _llm(self, model: str, max_reply_tokens: int):
        if ChatOpenAI is None:
            raise ProviderError("LLM client not available")
        api_key = self.selection.api_key()
        if self.selection.requires_api_key and not api_key:
            raise ProviderError("LLM not configured")
        return ChatOpenAI(
            api_key=api_key,
            base_url=self.selection.base_url,
            model=model,
            max_tokens=max_reply_tokens,
            temperature=self.temperature,
            timeout=self.timeout,
            max_retries=0,
        )

    def complete(self, messages: List[PromptMessage], model: str, max_reply_tokens: int) -> str:
        llm = self._llm(model, max_reply_tokens)
        LOG.debug("llm_complete", extra={"provider": self.selection.name, "model": model, "messages": len(messages)})
        start = time.perf_counter()
        try:
            res = llm.invoke(messages)
        except Exception as exc:
            LOG.warning("llm_complete_failed", extra={"provider": self.selection.name, "model": model, "err": str(exc)})
            raise ProviderError("The assistant could not complete the request. Please try again.") from exc
        finally:
            PROVIDER_LATENCY.labels(operation="complete", provider=self.selection.name).observe(time.perf_counter() - start)
        return _content_text(res)


class LocalCompletionProvider:
    """Completion against a local OpenAI-compatible server (Ollama, LM Studio)."""

    def __init__(self, selection: ProviderSelection, timeout: tuple[float, float] = (3, 90)) -> None:
        self.selection = selection
        self._timeout = timeout
        self._session = _build_session()

    def complete(self, messages: List[PromptMessage], model: str, max_reply_tokens: int) -> str:
        url = f"{self.selection.base_url}/v1/chat/completions"
        LOG.debug("local_llm_invoke", extra={"model": model, "base_url": self.selection.base_url})
        start = time.perf_counter()
        try:
            resp = self._session.post(
                url,
                json={"model": model, "messages": messages, "max_tokens": max_reply_tokens, "stream": False},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            LOG.warning("local_llm_failed", extra={"base_url": self.selection.base_url, "model": model, "err": str(exc)})
            raise ProviderError("The assistant could not complete the request. Please try again.") from exc
        finally:
            PROVIDER_LATENCY.labels(operation="complete", provider=self.selection.name).observe(time.perf_counter() - start)
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content")
            if content:
                return str(content)
        return str(data.get("response") or data.get("text") or "")


class WhisperTranscriber:
    """Transcription through an OpenAI-compatible /audio/transcriptions endpoint."""

    def __init__(self, selection: ProviderSelection, timeout: tuple[float, float] = (3, 120)) -> None:
        self.selection = selection
        self.model = selection.transcribe_model or "whisper-large-v3"
        self._timeout = timeout
        self._session = _build_session()

    def transcribe(self, data: bytes, filename: str, media_type: Optional[str] = None) -> str:
        api_key = self.selection.api_key()
        if self.selection.requires_api_key and not api_key:
            raise ExtractionError("Transcription is not configured")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        start = time.perf_counter()
        try:
            resp = self._session.post(
                f"{self.selection.base_url}/audio/transcriptions",
                headers=headers,
                files={"file": (filename or "audio", data, media_type or "application/octet-stream")},
                data={"model": self.model},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            LOG.warning("transcription_failed", extra={"provider": self.selection.name, "err": str(exc)})
            raise ExtractionError("Failed to transcribe audio") from exc
        finally:
            PROVIDER_LATENCY.labels(operation="transcribe", provider=self.selection.name).observe(time.perf_counter() - start)
        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise ExtractionError("Transcription response contained no text")
        return text


class UnavailableProvider:
    """Stands in when no provider is configured; every call fails cleanly."""

    def __init__(self, reason: str) -> None:
        self.reason = reason

    def complete(self, messages: List[PromptMessage], model: str, max_reply_tokens: int) -> str:
        raise ProviderError(f"No completion provider is configured: {self.reason}")

    def transcribe(self, data: bytes, filename: str, media_type: Optional[str] = None) -> str:
        raise ExtractionError(f"No transcription provider is configured: {self.reason}")


def build_completion_provider(router: Optional[ModelRouter] = None) -> CompletionProvider:
    router = router or ModelRouter()
    try:
        selection = router.select_provider("conversation")
    except RuntimeError as exc:
        logger.warning("No completion provider available: %s", exc)
        return UnavailableProvider(str(exc))
    logger.info("Using completion provider name=%s base_url=%s", selection.name, selection.base_url)
    if selection.name == "local":
        return LocalCompletionProvider(selection)
    return ChatCompletionProvider(selection)


def build_transcriber(router: Optional[ModelRouter] = None) -> Transcriber:
    router = router or ModelRouter()
    try:
        selection = router.select_provider("transcription")
    except RuntimeError as exc:
        logger.warning("No transcription provider available: %s", exc)
        return UnavailableProvider(str(exc))
    logger.info("Using transcription provider name=%s", selection.name)
    return WhisperTranscriber(selection)
