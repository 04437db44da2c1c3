from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from ...domain.models import ConversationSummary, Message, MessageCreate, VisibleMessage
from ...services.turn_orchestrator import TurnOrchestrator, get_turn_orchestrator

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=List[ConversationSummary])
def list_conversations(orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)) -> List[ConversationSummary]:
    return orchestrator.list_conversations()


@router.get("/{conversation_id}/messages", response_model=List[VisibleMessage])
def list_messages(
    conversation_id: str,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> List[VisibleMessage]:
    return orchestrator.visible_messages(conversation_id)


@router.post("/{conversation_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
def create_message(
    conversation_id: str,
    msg: MessageCreate,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> Message:
    return orchestrator.append(conversation_id, msg.role, msg.content)
