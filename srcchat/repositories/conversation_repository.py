from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from srcchat.models.conversation import ConversationDocument


def _normalize(doc: Dict[str, Any]) -> ConversationDocument:
    doc["id"] = str(doc.pop("_id"))
    return doc


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["chat_conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("student_id", ASCENDING), ("src_member_id", ASCENDING)], unique=True)
        await self.collection.create_index([("updated_at", DESCENDING)])

    async def get_by_id(self, conversation_id: str) -> Optional[ConversationDocument]:
        oid = self._to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return _normalize(doc) if doc else None

    async def find_by_participants(self, student_id: str, src_member_id: str) -> Optional[ConversationDocument]:
        doc = await self.collection.find_one({"student_id": student_id, "src_member_id": src_member_id})
        return _normalize(doc) if doc else None

    async def create(self, student_id: str, src_member_id: str) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "student_id": student_id,
            "src_member_id": src_member_id,
            "is_active": True,
            "last_message_at": now,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return _normalize(doc)

    async def list_for_user(self, field: str, user_id: str) -> List[ConversationDocument]:
        # field is "student_id" or "src_member_id"
        cur = self.collection.find({field: user_id}).sort([("updated_at", DESCENDING), ("_id", DESCENDING)])
        items = await cur.to_list(length=None)
        return [_normalize(it) for it in items]

    async def list_ids_for_student(self, student_id: str) -> Dict[str, str]:
        """Map src_member_id -> conversation id for one student."""
        cur = self.collection.find({"student_id": student_id}, {"src_member_id": 1})
        items = await cur.to_list(length=None)
        return {it["src_member_id"]: str(it["_id"]) for it in items}

    async def list_ids_for_src_member(self, src_member_id: str) -> Dict[str, str]:
        cur = self.collection.find({"src_member_id": src_member_id}, {"student_id": 1})
        items = await cur.to_list(length=None)
        return {it["student_id"]: str(it["_id"]) for it in items}

    async def touch_on_message(self, conversation_id: str, at: datetime) -> None:
        oid = self._to_object_id(conversation_id)
        if oid is None:
            return
        await self.collection.update_one({"_id": oid}, {"$set": {"updated_at": at, "last_message_at": at}})

    async def reset_last_message(self, conversation_id: str) -> None:
        oid = self._to_object_id(conversation_id)
        if oid is None:
            return
        await self.collection.update_one(
            {"_id": oid},
            {"$set": {"updated_at": datetime.now(timezone.utc), "last_message_at": None}},
        )

    def _to_object_id(self, oid_hex: str) -> Optional[ObjectId]:
        try:
            return ObjectId(oid_hex)
        except (InvalidId, TypeError):
            return None
