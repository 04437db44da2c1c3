from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _ApiModel(BaseModel):
    # The web client speaks camelCase; Python code uses snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ReplyStatus(str, Enum):
    ANSWERED = "answered"
    PENDING = "pending"
    FAILED = "failed"


class AssistantCreate(_ApiModel):
    name: str = Field(min_length=1)
    model: str = Field(min_length=1)
    personality: str = Field(min_length=1)
    instructions: str = Field(min_length=1)
    channel_address: Optional[str] = None

    @field_validator("name", "model", "personality", "instructions")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @field_validator("channel_address")
    @classmethod
    def _normalize_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class Assistant(_ApiModel):
    assistant_id: str
    name: str
    model: str
    personality: str
    instructions: str
    channel_address: Optional[str] = None
    created_at: datetime


class AssistantEnvelope(_ApiModel):
    assistant: Assistant


class AssistantList(_ApiModel):
    assistants: List[Assistant]


class Conversation(_ApiModel):
    conversation_id: str
    assistant_id: str
    created_at: datetime
    updated_at: datetime


class Message(_ApiModel):
    message_id: str
    conversation_id: str
    seq: int
    role: Role
    content: str
    created_at: datetime
    metadata: Optional[Dict[str, Any]] = None


class ConversationWithMessages(_ApiModel):
    conversation: Conversation
    assistant: Assistant
    messages: List[Message]


class ConversationSummary(_ApiModel):
    conversation_id: str
    assistant_id: str
    created_at: datetime
    updated_at: datetime
    assistant: Assistant
    # At most one entry: the most recent message, for directory previews.
    messages: List[Message] = Field(default_factory=list)


class VisibleMessage(_ApiModel):
    message_id: str
    role: Role
    content: str
    created_at: datetime
    reply_status: Optional[ReplyStatus] = None


class MessageCreate(_ApiModel):
    role: Role
    content: str = Field(min_length=1)

    @field_validator("role")
    @classmethod
    def _no_system(cls, value: Role) -> Role:
        if value == Role.SYSTEM:
            raise ValueError("system messages are created by the conversation store only")
        return value


class ChatTurnRequest(_ApiModel):
    conversation_id: Optional[str] = None
    assistant_id: Optional[str] = None
    message: Optional[str] = None


class ChatReply(_ApiModel):
    reply: str
    conversation_id: str


class ConversationSnapshot(_ApiModel):
    conversation_id: str
    messages: List[VisibleMessage]


@dataclass(frozen=True)
class UploadedFile:
    name: str
    media_type: str
    data: bytes
