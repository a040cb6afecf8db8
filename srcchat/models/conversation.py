from datetime import datetime
from typing import Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    student_id: str
    src_member_id: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    last_message_at: Optional[datetime]
