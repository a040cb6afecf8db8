from typing import Optional

from fastapi import APIRouter, Depends

from srcchat.services.chat_service import ChatService
from srcchat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/api/chat/participants", tags=["chat"])


@router.get("")
async def list_participants(department: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    """
    Students see SRC members, SRC members see students (optionally one department).
    Each entry says whether a conversation with the caller already exists.
    """
    participants = await service.list_participants(current_user, department)
    return {"participants": participants, "total": len(participants)}
