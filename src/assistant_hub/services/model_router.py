"""Routing helpers for selecting the completion and transcription provider.

The router does not couple directly to concrete SDK clients; it selects a
provider configuration that :mod:`providers` uses to build an adapter. This
keeps the selection policy unit-testable without network access.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Set


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a task."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url: str
    requires_api_key: bool = True
    transcribe_model: Optional[str] = None

    def api_key(self, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
        source = env if env is not None else os.environ
        return source.get(self.api_key_env) if self.api_key_env else None


class ModelRouter:
    """Policy-based router over OpenAI-compatible providers."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "groq": {
            "api_key_env": "GROQ_API_KEY",
            "base_url_env": "GROQ_BASE_URL",
            "model_env": "GROQ_MODEL",
            "default_model": "llama-3.3-70b-versatile",
            "default_base_url": "https://api.groq.com/openai/v1",
            "transcribe_model": "whisper-large-v3",
        },
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "default_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com/v1",
            "transcribe_model": "whisper-1",
        },
        "xai": {
            "api_key_env": "XAI_API_KEY",
            "base_url_env": "XAI_BASE_URL",
            "model_env": "XAI_MODEL",
            "default_model": "grok-2-latest",
            "default_base_url": "https://api.x.ai/v1",
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "model_env": "LOCAL_MODEL",
            "default_model": "llama3.1",
            "default_base_url": "http://127.0.0.1:11434",
            "requires_api_key": False,
        },
    }

    ROUTING_POLICY: Dict[str, tuple[str, ...]] = {
        "conversation": ("groq", "openai", "xai", "local"),
        # Only providers exposing /audio/transcriptions.
        "transcription": ("groq", "openai"),
    }

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env: Mapping[str, str] = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("ASSISTANT_HUB_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred or None

    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        if bool(cfg.get("requires_api_key", True)):
            api_key_env = cfg.get("api_key_env")
            return bool(api_key_env and self._env.get(str(api_key_env)))
        # Keyless providers must be switched on explicitly.
        base_url_env = cfg.get("base_url_env")
        enabled_flag = (self._env.get("ASSISTANT_HUB_ENABLE_LOCAL_PROVIDER") or "").strip() == "1"
        return enabled_flag or bool(base_url_env and self._env.get(str(base_url_env)))

    def resolve_provider(self, provider: str) -> ProviderSelection:
        """Build the selection for a named provider without checking availability.

        Raises
        ------
        KeyError
            If the provider name is unknown.
        """
        cfg = self.PROVIDER_CONFIG[provider]
        model_env = str(cfg.get("model_env") or "")
        base_url_env = str(cfg.get("base_url_env") or "")
        model = self._env.get(model_env) or str(cfg.get("default_model") or "")
        base_url = self._env.get(base_url_env) or str(cfg.get("default_base_url") or "")
        transcribe_model = self._env.get("ASSISTANT_HUB_TRANSCRIBE_MODEL") or cfg.get("transcribe_model")
        return ProviderSelection(
            name=provider,
            model=model,
            api_key_env=str(cfg["api_key_env"]) if cfg.get("api_key_env") else None,
            base_url=base_url.rstrip("/"),
            requires_api_key=bool(cfg.get("requires_api_key", True)),
            transcribe_model=str(transcribe_model) if transcribe_model else None,
        )

    def select_provider(self, purpose: str = "conversation") -> ProviderSelection:
        """Return the provider selected for the supplied purpose.

        Raises
        ------
        RuntimeError
            If no provider configured for the purpose is available.
        """
        priority = list(self.ROUTING_POLICY.get(purpose, self.ROUTING_POLICY["conversation"]))
        if self._preferred_provider and self._preferred_provider in priority:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self.provider_available(provider):
                return self.resolve_provider(provider)
        raise RuntimeError(f"No active model provider available for {purpose}.")
