from typing import Optional

from fastapi import APIRouter, Depends, Query

from srcchat.schemas.chat import ClearMessagesRequest, SendMessageRequest
from srcchat.services.chat_service import ChatService
from srcchat.utils.dependencies import get_chat_service, get_current_user
from srcchat.utils.errors import BadRequest


router = APIRouter(prefix="/api/chat/messages", tags=["chat"])


@router.get("")
async def list_messages(conversation_id: Optional[str] = None, limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0), current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    if not conversation_id:
        raise BadRequest("Conversation ID is required")
    return await service.get_messages(current_user, conversation_id, limit=limit, offset=offset)


@router.post("", status_code=201)
async def send_message(body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    message = await service.send_message(current_user, body.conversation_id, body.content, body.message_type)
    return {"message": message}


@router.delete("/clear")
async def clear_messages(body: ClearMessagesRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.clear_messages(current_user, body.conversation_id)
    return {"success": True, "message": "All messages cleared successfully"}


@router.put("/{message_id}/read")
async def mark_message_read(message_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.mark_read(current_user, message_id)
    return {"success": True}
