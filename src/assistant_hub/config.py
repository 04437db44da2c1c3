from __future__ import annotations

"""Environment-driven settings for the turn pipeline.

Values are read on each call so tests (and operators) can change them via
environment variables without reloading modules.
"""

import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_FILE_TOKEN_BUDGET = 32000
DEFAULT_MAX_REPLY_TOKENS = 1000
DEFAULT_MODEL = "llama-3.3-70b-versatile"
DEFAULT_TRANSCRIBE_MODEL = "whisper-large-v3"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
FALLBACK_REPLY = "I'm sorry, I couldn't generate a response."


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


@dataclass(frozen=True)
class TurnSettings:
    # Input-side budget (whitespace tokens of extracted file text) and
    # output-side cap (reply tokens requested from the provider).
    file_token_budget: int = DEFAULT_FILE_TOKEN_BUDGET
    max_reply_tokens: int = DEFAULT_MAX_REPLY_TOKENS
    default_model: str = DEFAULT_MODEL
    force_model: Optional[str] = None
    reuse_channel_conversation: bool = False

    @classmethod
    def from_env(cls) -> "TurnSettings":
        return cls(
            file_token_budget=env_int("ASSISTANT_HUB_FILE_TOKEN_BUDGET", DEFAULT_FILE_TOKEN_BUDGET),
            max_reply_tokens=env_int("ASSISTANT_HUB_MAX_REPLY_TOKENS", DEFAULT_MAX_REPLY_TOKENS),
            default_model=env_str("ASSISTANT_HUB_DEFAULT_MODEL", DEFAULT_MODEL) or DEFAULT_MODEL,
            force_model=env_str("ASSISTANT_HUB_FORCE_MODEL"),
            reuse_channel_conversation=env_flag("ASSISTANT_HUB_CHANNEL_REUSE_CONVERSATION"),
        )
