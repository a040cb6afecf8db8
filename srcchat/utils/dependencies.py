from typing import Optional

from fastapi import Depends, Header, HTTPException

from srcchat.config import get_settings
from srcchat.database.connection import mongo_db_dependency
from srcchat.repositories.conversation_repository import ConversationRepository
from srcchat.repositories.message_repository import MessageRepository
from srcchat.repositories.profile_repository import ProfileRepository
from srcchat.services.chat_service import ChatService
from srcchat.utils.realtime_bus import get_bus


async def get_current_user(x_user_id: Optional[str] = Header(None), db = Depends(mongo_db_dependency)) -> dict:
    # identity is established upstream; the header carries the authenticated user id
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    profile = await ProfileRepository(db).get_profile(x_user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


async def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    return ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        ProfileRepository(db),
        await get_bus(),
        preview_limit=get_settings().conversation_preview_limit,
    )
