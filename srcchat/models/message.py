from datetime import datetime
from typing import TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    # "student" | "src_member"
    sender_type: str
    content: str
    # "text" | "image" | "file"
    message_type: str
    created_at: datetime
    # read state only ever moves False -> True
    is_read: bool
