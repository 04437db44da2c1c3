from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ...domain.errors import NotFound
from ...domain.models import Assistant, AssistantCreate, AssistantEnvelope, AssistantList
from ...infrastructure.assistant_repository import AssistantRepository, get_assistant_repo

router = APIRouter(prefix="/assistants", tags=["assistants"])


@router.get("", response_model=AssistantList)
def list_assistants(repo: AssistantRepository = Depends(get_assistant_repo)) -> AssistantList:
    return AssistantList(assistants=repo.list())


@router.post("", response_model=AssistantEnvelope, status_code=status.HTTP_201_CREATED)
def create_assistant(
    payload: AssistantCreate,
    repo: AssistantRepository = Depends(get_assistant_repo),
) -> AssistantEnvelope:
    return AssistantEnvelope(assistant=repo.create(payload))


@router.get("/{assistant_id}", response_model=Assistant)
def get_assistant(assistant_id: str, repo: AssistantRepository = Depends(get_assistant_repo)) -> Assistant:
    assistant = repo.get(assistant_id)
    if not assistant:
        raise NotFound("Assistant not found")
    return assistant
