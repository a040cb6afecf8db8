import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from srcchat.repositories.conversation_repository import ConversationRepository
from srcchat.repositories.message_repository import MessageRepository
from srcchat.repositories.profile_repository import ProfileRepository
from srcchat.schemas.chat import CONVERSATIONS_TABLE, MESSAGES_TABLE, ChangeEvent
from srcchat.utils.errors import AccessDenied, BadRequest, ConversationExists, NotFound
from srcchat.utils.realtime_bus import conversation_topic, user_topic

logger = logging.getLogger(__name__)

SUMMARY_FIELDS = ("id", "full_name", "email", "avatar_url", "role", "src_department", "department", "year_level")


def _summary(profile: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not profile:
        return None
    return {k: profile.get(k) for k in SUMMARY_FIELDS if k in profile}


def _sender_type(profile: Dict[str, Any]) -> str:
    return "student" if profile.get("role") == "student" else "src_member"


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        profile_repo: ProfileRepository,
        bus,
        preview_limit: int = 100,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._profile_repo = profile_repo
        self._bus = bus
        self._preview_limit = preview_limit

    async def list_conversations(self, profile: Dict[str, Any]) -> List[Dict[str, Any]]:
        role = profile.get("role")
        if role == "student":
            convos = await self._conversation_repo.list_for_user("student_id", profile["id"])
            other_field, other_key = "src_member_id", "src_member"
        elif role == "src":
            convos = await self._conversation_repo.list_for_user("src_member_id", profile["id"])
            other_field, other_key = "student_id", "student"
        else:
            raise AccessDenied("Invalid role")

        others = await self._profile_repo.get_profiles(c[other_field] for c in convos)
        for convo in convos:
            convo[other_key] = _summary(others.get(convo[other_field]))
            convo["messages"] = await self._message_repo.list_recent(convo["id"], limit=self._preview_limit)
        return convos

    async def create_conversation(self, profile: Dict[str, Any], src_member_id: Optional[str] = None, student_id: Optional[str] = None) -> Dict[str, Any]:
        role = profile.get("role")
        if role == "student":
            if not src_member_id:
                raise BadRequest("SRC member ID is required")
            final_student_id, final_src_member_id = profile["id"], src_member_id
        elif role == "src":
            if not student_id:
                raise BadRequest("Student ID is required")
            final_student_id, final_src_member_id = student_id, profile["id"]
        else:
            raise AccessDenied("Only students and SRC members can create conversations")

        existing = await self._conversation_repo.find_by_participants(final_student_id, final_src_member_id)
        if existing:
            raise ConversationExists(existing["id"])

        convo = await self._conversation_repo.create(final_student_id, final_src_member_id)
        await self._publish(convo, ChangeEvent(type="INSERT", table=CONVERSATIONS_TABLE, record=_jsonable(convo)))
        return convo

    async def get_messages(self, profile: Dict[str, Any], conversation_id: str, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        await self._get_accessible(profile, conversation_id)
        messages, total = await self._message_repo.list_for_conversation(conversation_id, limit=limit, offset=offset)
        return {"messages": messages, "total": total, "hasMore": total > offset + limit}

    async def get_conversation_messages(self, profile: Dict[str, Any], conversation_id: str, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        convo = await self._get_accessible(profile, conversation_id)
        messages, total = await self._message_repo.list_for_conversation(conversation_id, limit=limit, offset=offset)
        people = await self._profile_repo.get_profiles([convo["student_id"], convo["src_member_id"]])
        return {
            "messages": messages,
            "total": total,
            "hasMore": total > offset + limit,
            "participants": {
                "student": _summary(people.get(convo["student_id"])),
                "src_member": _summary(people.get(convo["src_member_id"])),
            },
        }

    async def send_message(self, profile: Dict[str, Any], conversation_id: str, content: str, message_type: str = "text") -> Dict[str, Any]:
        if not content or not content.strip():
            raise BadRequest("Conversation ID and content are required")
        convo = await self._get_accessible(profile, conversation_id)
        saved = await self._message_repo.save_message(
            conversation_id=conversation_id,
            sender_id=profile["id"],
            sender_type=_sender_type(profile),
            content=content,
            message_type=message_type,
        )
        try:
            await self._conversation_repo.touch_on_message(conversation_id, saved["created_at"])
        except Exception:
            # the message is stored; a stale timestamp only affects ordering
            logger.warning("Failed to update timestamps of conversation %s", conversation_id, exc_info=True)
        await self._publish(convo, ChangeEvent(type="INSERT", table=MESSAGES_TABLE, record=_jsonable(saved)))
        return saved

    async def mark_read(self, profile: Dict[str, Any], message_id: str) -> Dict[str, Any]:
        message = await self._message_repo.get_by_id(message_id)
        if not message:
            raise NotFound("Message not found")
        convo = await self._conversation_repo.get_by_id(message["conversation_id"])
        if not convo:
            raise NotFound("Conversation not found")
        user_id = profile["id"]
        if user_id not in (convo["student_id"], convo["src_member_id"]) or message["sender_id"] == user_id:
            raise AccessDenied("Access denied")
        if message.get("is_read"):
            return message

        updated, changed = await self._message_repo.mark_read(message_id)
        if updated is None:
            raise NotFound("Message not found")
        if changed:
            await self._publish(convo, ChangeEvent(
                type="UPDATE",
                table=MESSAGES_TABLE,
                record=_jsonable(updated),
                old_record={"id": updated["id"], "conversation_id": updated["conversation_id"], "is_read": False},
            ))
        return updated

    async def clear_messages(self, profile: Dict[str, Any], conversation_id: str) -> int:
        convo = await self._get_accessible(profile, conversation_id)
        deleted = await self._message_repo.delete_for_conversation(conversation_id)
        try:
            await self._conversation_repo.reset_last_message(conversation_id)
        except Exception:
            logger.warning("Failed to reset timestamps of conversation %s", conversation_id, exc_info=True)
        logger.info("Cleared %d messages from conversation %s", deleted, conversation_id)
        await self._publish(convo, ChangeEvent(type="DELETE", table=MESSAGES_TABLE, old_record={"conversation_id": conversation_id}))
        return deleted

    async def list_participants(self, profile: Dict[str, Any], department: Optional[str] = None) -> List[Dict[str, Any]]:
        role = profile.get("role")
        if role == "student":
            people = await self._profile_repo.list_by_role("src", department)
            existing = await self._conversation_repo.list_ids_for_student(profile["id"])
        elif role == "src":
            people = await self._profile_repo.list_by_role("student", department)
            existing = await self._conversation_repo.list_ids_for_src_member(profile["id"])
        else:
            raise AccessDenied("Only students and SRC members can view participants")

        participants = []
        for person in people:
            item = _summary(person)
            item["src_member_id"] = person["id"]
            item["created_at"] = person.get("created_at")
            item["has_conversation"] = person["id"] in existing
            item["conversation_id"] = existing.get(person["id"])
            participants.append(item)
        return participants

    async def _get_accessible(self, profile: Dict[str, Any], conversation_id: str) -> Dict[str, Any]:
        if not conversation_id:
            raise BadRequest("Conversation ID is required")
        convo = await self._conversation_repo.get_by_id(conversation_id)
        if not convo:
            raise NotFound("Conversation not found")
        role, user_id = profile.get("role"), profile["id"]
        is_student = role == "student" and convo["student_id"] == user_id
        is_src_member = role == "src" and convo["src_member_id"] == user_id
        if not is_student and not is_src_member:
            raise AccessDenied("Access denied")
        return convo

    async def _publish(self, convo: Dict[str, Any], event: ChangeEvent) -> None:
        payload = event.model_dump_json()
        topics = [user_topic(convo["student_id"]), user_topic(convo["src_member_id"])]
        if event.table == MESSAGES_TABLE:
            topics.insert(0, conversation_topic(convo["id"]))
        for topic in topics:
            try:
                await self._bus.publish(topic, payload)
            except Exception:
                # subscribers fall back to polling
                logger.warning("Failed to publish %s %s on %s", event.table, event.type, topic, exc_info=True)


def _jsonable(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in doc.items():
        if key.startswith("_"):
            continue
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            value = value.isoformat()
        out[key] = value
    return out
