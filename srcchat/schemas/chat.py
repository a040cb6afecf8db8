from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SenderType = Literal["student", "src_member"]
MessageType = Literal["text", "image", "file"]
ChangeType = Literal["INSERT", "UPDATE", "DELETE"]

MESSAGES_TABLE = "chat_messages"
CONVERSATIONS_TABLE = "chat_conversations"


class ProfileSummary(BaseModel):

    id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    role: Optional[str] = None
    src_department: Optional[str] = None
    department: Optional[str] = None
    year_level: Optional[int] = None


class ChatMessage(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    sender_type: SenderType = "student"
    content: str
    message_type: MessageType = "text"
    created_at: datetime
    is_read: bool = False


class ChatConversation(BaseModel):

    id: str
    student_id: str
    src_member_id: str
    is_active: bool = True
    created_at: datetime
    updated_at: datetime
    last_message_at: Optional[datetime] = None
    messages: Optional[List[ChatMessage]] = None
    student: Optional[ProfileSummary] = None
    src_member: Optional[ProfileSummary] = None

    def last_activity(self) -> datetime:
        if self.messages:
            return self.messages[-1].created_at
        return self.last_message_at or self.updated_at or self.created_at


class MessagesPage(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage] = Field(default_factory=list)
    total: int = 0
    has_more: bool = Field(False, alias="hasMore")
    participants: Optional[Dict[str, ProfileSummary]] = None


class ChatParticipant(ProfileSummary):

    src_member_id: str
    created_at: Optional[datetime] = None
    has_conversation: bool = False
    conversation_id: Optional[str] = None


class SendMessageRequest(BaseModel):

    conversation_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    message_type: MessageType = "text"


class CreateConversationRequest(BaseModel):

    src_member_id: Optional[str] = None
    student_id: Optional[str] = None


class ClearMessagesRequest(BaseModel):

    conversation_id: str = Field(min_length=1)


class ChangeEvent(BaseModel):
    """Row-level change notification carried by the realtime feed."""

    type: ChangeType
    table: str
    record: Dict[str, Any] = Field(default_factory=dict)
    old_record: Optional[Dict[str, Any]] = None
    commit_timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def message(self) -> Optional[ChatMessage]:
        if self.table != MESSAGES_TABLE or not self.record.get("id"):
            return None
        return ChatMessage.model_validate(self.record)

    @property
    def conversation_id(self) -> Optional[str]:
        return self.record.get("conversation_id") or (self.old_record or {}).get("conversation_id")
