from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from srcchat.models.message import MessageDocument


def _normalize(doc: Dict[str, Any]) -> MessageDocument:
    doc["id"] = str(doc.pop("_id"))
    return doc


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["chat_messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_type: str,
        content: str,
        message_type: str = "text",
    ) -> MessageDocument:
        doc: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "sender_type": sender_type,
            "content": content,
            "message_type": message_type,
            "created_at": datetime.now(timezone.utc),
            "is_read": False,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return _normalize(doc)

    async def get_by_id(self, message_id: str) -> Optional[MessageDocument]:
        try:
            oid = ObjectId(message_id)
        except (InvalidId, TypeError):
            return None
        doc = await self.collection.find_one({"_id": oid})
        return _normalize(doc) if doc else None

    async def list_for_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[MessageDocument], int]:
        query = {"conversation_id": conversation_id}
        total = await self.collection.count_documents(query)
        cur = self.collection.find(query).sort([("created_at", ASCENDING), ("_id", ASCENDING)]).skip(offset).limit(limit)
        items = await cur.to_list(length=limit)
        return [_normalize(it) for it in items], total

    async def list_recent(self, conversation_id: str, limit: int = 100) -> List[MessageDocument]:
        # newest `limit` messages, returned oldest first
        cur = self.collection.find({"conversation_id": conversation_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        items = await cur.to_list(length=limit)
        return [_normalize(it) for it in reversed(items)]

    async def mark_read(self, message_id: str) -> Tuple[Optional[MessageDocument], bool]:
        """Set is_read; returns the message and whether it changed."""
        try:
            oid = ObjectId(message_id)
        except (InvalidId, TypeError):
            return None, False
        before = await self.collection.find_one_and_update(
            {"_id": oid},
            {"$set": {"is_read": True}},
            return_document=ReturnDocument.BEFORE,
        )
        if not before:
            return None, False
        changed = not before.get("is_read", False)
        before["is_read"] = True
        return _normalize(before), changed

    async def delete_for_conversation(self, conversation_id: str) -> int:
        result = await self.collection.delete_many({"conversation_id": conversation_id})
        return result.deleted_count or 0
