from fastapi import APIRouter, Depends, Query

from srcchat.schemas.chat import CreateConversationRequest
from srcchat.services.chat_service import ChatService
from srcchat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/api/chat/conversations", tags=["chat"])


@router.get("")
async def list_conversations(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversations = await service.list_conversations(current_user)
    return {"conversations": conversations}


@router.post("", status_code=201)
async def create_conversation(body: CreateConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversation = await service.create_conversation(current_user, src_member_id=body.src_member_id, student_id=body.student_id)
    return {"conversation": conversation}


@router.get("/{conversation_id}/messages")
async def list_conversation_messages(conversation_id: str, limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0), current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_conversation_messages(current_user, conversation_id, limit=limit, offset=offset)
