import pytest
import requests

from src.assistant_hub.domain.errors import ExtractionError, ProviderError
from src.assistant_hub.services import providers as pv
from src.assistant_hub.services.model_router import ModelRouter, ProviderSelection

GROQ = ProviderSelection(
    name="groq",
    model="llama-3.3-70b-versatile",
    api_key_env="GROQ_API_KEY",
    base_url="https://api.groq.com/openai/v1",
    transcribe_model="whisper-large-v3",
)
LOCAL = ProviderSelection(
    name="local",
    model="llama3.1",
    api_key_env="LOCAL_API_KEY",
    base_url="http://127.0.0.1:11434",
    requires_api_key=False,
)


class _Resp:
    def __init__(self, payload=None, status=200):
        self._payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _Session:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def test_chat_provider_passes_reply_cap_and_disables_retries(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "k")
    captured = {}

    class StubLLM:
        def __init__(self, **kwargs):
            captured.update(kwargs)

        def invoke(self, msgs):
            captured["msgs"] = msgs
            return type("Resp", (), {"content": "OK"})()

    monkeypatch.setattr(pv, "ChatOpenAI", StubLLM)
    out = pv.ChatCompletionProvider(GROQ).complete([{"role": "user", "content": "Hi"}], "llama3", 1000)

    assert out == "OK"
    assert captured["max_tokens"] == 1000
    assert captured["max_retries"] == 0
    assert captured["model"] == "llama3"
    assert captured["base_url"] == GROQ.base_url
    assert captured["msgs"] == [{"role": "user", "content": "Hi"}]


def test_chat_provider_joins_content_parts(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "k")

    class StubLLM:
        def __init__(self, **kwargs):
            pass

        def invoke(self, msgs):
            return type("Resp", (), {"content": [{"type": "text", "text": "A"}, {"type": "text", "text": "B"}]})()

    monkeypatch.setattr(pv, "ChatOpenAI", StubLLM)
    assert pv.ChatCompletionProvider(GROQ).complete([], "m", 10) == "AB"


def test_chat_provider_wraps_sdk_errors(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "k")

    class StubLLM:
        def __init__(self, **kwargs):
            pass

        def invoke(self, msgs):
            raise RuntimeError("429 Too Many Requests")

    monkeypatch.setattr(pv, "ChatOpenAI", StubLLM)
    with pytest.raises(ProviderError):
        pv.ChatCompletionProvider(GROQ).complete([], "m", 10)


def test_chat_provider_without_key_is_not_configured(monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    monkeypatch.setattr(pv, "ChatOpenAI", lambda **kwargs: None)
    with pytest.raises(ProviderError):
        pv.ChatCompletionProvider(GROQ).complete([], "m", 10)


def test_local_provider_reads_choices():
    provider = pv.LocalCompletionProvider(LOCAL)
    session = _Session(_Resp({"choices": [{"message": {"content": "local reply"}}]}))
    provider._session = session

    assert provider.complete([{"role": "user", "content": "Hi"}], "llama3.1", 64) == "local reply"
    url, kwargs = session.posts[0]
    assert url == "http://127.0.0.1:11434/v1/chat/completions"
    assert kwargs["json"]["max_tokens"] == 64
    assert kwargs["json"]["stream"] is False


def test_local_provider_connection_error():
    provider = pv.LocalCompletionProvider(LOCAL)
    provider._session = _Session(error=requests.exceptions.ConnectionError("refused"))
    with pytest.raises(ProviderError):
        provider.complete([], "llama3.1", 64)


def test_whisper_transcriber_posts_multipart(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "k")
    transcriber = pv.WhisperTranscriber(GROQ)
    session = _Session(_Resp({"text": "hello from audio"}))
    transcriber._session = session

    assert transcriber.transcribe(b"ID3", "memo.mp3", "audio/mpeg") == "hello from audio"
    url, kwargs = session.posts[0]
    assert url == "https://api.groq.com/openai/v1/audio/transcriptions"
    assert kwargs["data"] == {"model": "whisper-large-v3"}
    assert kwargs["files"]["file"] == ("memo.mp3", b"ID3", "audio/mpeg")
    assert kwargs["headers"] == {"Authorization": "Bearer k"}


def test_whisper_transcriber_http_error(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "k")
    transcriber = pv.WhisperTranscriber(GROQ)
    transcriber._session = _Session(_Resp({"error": "bad"}, status=400))
    with pytest.raises(ExtractionError):
        transcriber.transcribe(b"ID3", "memo.mp3")


def test_whisper_transcriber_without_text(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "k")
    transcriber = pv.WhisperTranscriber(GROQ)
    transcriber._session = _Session(_Resp({"segments": []}))
    with pytest.raises(ExtractionError):
        transcriber.transcribe(b"ID3", "memo.mp3")


def test_builders_without_configuration_fail_cleanly():
    router = ModelRouter(env={})
    provider = pv.build_completion_provider(router)
    transcriber = pv.build_transcriber(router)
    assert isinstance(provider, pv.UnavailableProvider)
    with pytest.raises(ProviderError):
        provider.complete([], "m", 10)
    with pytest.raises(ExtractionError):
        transcriber.transcribe(b"", "memo.mp3")


def test_builders_pick_adapter_by_provider():
    assert isinstance(pv.build_completion_provider(ModelRouter(env={"GROQ_API_KEY": "k"})), pv.ChatCompletionProvider)
    local = pv.build_completion_provider(ModelRouter(env={"ASSISTANT_HUB_ENABLE_LOCAL_PROVIDER": "1"}))
    assert isinstance(local, pv.LocalCompletionProvider)
    assert isinstance(pv.build_transcriber(ModelRouter(env={"OPENAI_API_KEY": "k"})), pv.WhisperTranscriber)
