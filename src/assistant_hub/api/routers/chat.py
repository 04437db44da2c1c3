from __future__ import annotations

from typing import Optional, Union, cast

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status

from ...config import env_int
from ...domain.errors import InvalidRequest
from ...domain.models import ChatReply, ChatTurnRequest, ConversationSnapshot, UploadedFile
from ...security.rate_limit import RateLimitExceeded, rate_limit_action
from ...services.turn_orchestrator import TurnOrchestrator, get_turn_orchestrator

# Whisper-style endpoints reject audio above 25 MB.
DEFAULT_MAX_UPLOAD_BYTES = 25 * 1024 * 1024

router = APIRouter(prefix="/chat", tags=["chat"])


def enforce_turn_rate_limit(request: Request) -> None:
    identifier = request.client.host if request.client else "anonymous"
    try:
        rate_limit_action(
            "turn",
            identifier,
            limit_env="ASSISTANT_HUB_RATE_LIMIT_TURNS",
            window_env="ASSISTANT_HUB_RATE_LIMIT_WINDOW_SECONDS",
            default_limit=30,
            default_window_seconds=60,
        )
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many chat requests. Please try again later.",
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc


@router.post("", response_model=Union[ChatReply, ConversationSnapshot])
def post_turn(
    req: ChatTurnRequest,
    _: None = Depends(enforce_turn_rate_limit),
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> Union[ChatReply, ConversationSnapshot]:
    return orchestrator.take_turn(req)


@router.post("/upload", response_model=ChatReply)
def upload_turn(
    file: UploadFile = File(...),
    conversation_id: Optional[str] = Form(None, alias="conversationId"),
    assistant_id: Optional[str] = Form(None, alias="assistantId"),
    _: None = Depends(enforce_turn_rate_limit),
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> ChatReply:
    limit = env_int("ASSISTANT_HUB_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES)
    raw = file.file.read(limit + 1)
    if not raw:
        raise InvalidRequest("No file uploaded.")
    if len(raw) > limit:
        raise InvalidRequest(f"File exceeds the {limit} byte upload limit.")
    upload = UploadedFile(
        name=file.filename or "upload.txt",
        media_type=file.content_type or "application/octet-stream",
        data=raw,
    )
    result = orchestrator.take_turn(
        ChatTurnRequest(conversation_id=conversation_id or None, assistant_id=assistant_id or None),
        upload,
    )
    return cast(ChatReply, result)


@router.delete("")
def clear_conversation(
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> dict:
    if not conversation_id:
        raise InvalidRequest("Conversation ID is required")
    orchestrator.clear(conversation_id)
    return {"message": "Conversation cleared successfully"}
