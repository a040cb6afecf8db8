import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Dict, List, Optional

import pytest

from srcchat.schemas.chat import ChangeEvent, ChatConversation, ChatMessage, MessagesPage
from srcchat.utils.realtime_bus import ChannelStatus

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

STUDENT = {"id": "stu-1", "full_name": "Ama Mensah", "role": "student", "department": "CS"}
SRC_MEMBER = {"id": "src-1", "full_name": "Kofi Boateng", "role": "src", "src_department": "CS"}
ADMIN = {"id": "adm-1", "full_name": "Admin", "role": "admin"}


def at(seconds: int) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def make_message(message_id: str, conversation_id: str = "c1", sender_id: str = "src-1", seconds: int = 0, is_read: bool = False, content: str = "hello") -> ChatMessage:
    return ChatMessage(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        sender_type="student" if sender_id.startswith("stu") else "src_member",
        content=content,
        created_at=at(seconds),
        is_read=is_read,
    )


def make_conversation(conversation_id: str, messages: Optional[List[ChatMessage]] = None, seconds: int = 0, student_id: str = "stu-1", src_member_id: str = "src-1", **extra) -> ChatConversation:
    return ChatConversation(
        id=conversation_id,
        student_id=student_id,
        src_member_id=src_member_id,
        created_at=at(seconds),
        updated_at=at(seconds),
        last_message_at=messages[-1].created_at if messages else None,
        messages=messages if messages is not None else [],
        **extra,
    )


def insert_event(message: ChatMessage) -> ChangeEvent:
    return ChangeEvent(type="INSERT", table="chat_messages", record=message.model_dump(mode="json"))


def update_event(message: ChatMessage, was_read: bool = False) -> ChangeEvent:
    return ChangeEvent(
        type="UPDATE",
        table="chat_messages",
        record=message.model_dump(mode="json"),
        old_record={"id": message.id, "conversation_id": message.conversation_id, "is_read": was_read},
    )


def delete_event(conversation_id: str) -> ChangeEvent:
    return ChangeEvent(type="DELETE", table="chat_messages", old_record={"conversation_id": conversation_id})


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeBackend:
    """In-memory ChatBackend with call recording and failure switches."""

    def __init__(self) -> None:
        self.messages: Dict[str, List[ChatMessage]] = {}
        self.conversations: List[ChatConversation] = []
        self.total_override: Dict[str, int] = {}
        self.fail_get_messages = False
        self.fail_get_conversations = False
        self.fail_clear = False
        self.read_calls: List[str] = []
        self.clear_calls: List[str] = []
        self.get_messages_calls = 0
        self.get_conversations_calls = 0
        self._ids = count(1000)

    def add(self, message: ChatMessage) -> None:
        self.messages.setdefault(message.conversation_id, []).append(message)

    async def get_conversations(self) -> List[ChatConversation]:
        self.get_conversations_calls += 1
        if self.fail_get_conversations:
            raise RuntimeError("conversations unavailable")
        return [c.model_copy(deep=True) for c in self.conversations]

    async def get_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> MessagesPage:
        self.get_messages_calls += 1
        if self.fail_get_messages:
            raise RuntimeError("messages unavailable")
        items = sorted(self.messages.get(conversation_id, []), key=lambda m: (m.created_at, m.id))
        total = self.total_override.get(conversation_id, len(items))
        page = items[offset:offset + limit]
        return MessagesPage(messages=page, total=total, has_more=total > offset + limit)

    async def send_message(self, conversation_id: str, content: str, message_type: str = "text") -> ChatMessage:
        message = ChatMessage(
            id=f"m{next(self._ids)}",
            conversation_id=conversation_id,
            sender_id="stu-1",
            content=content,
            message_type=message_type,
            created_at=datetime.now(timezone.utc),
        )
        self.add(message)
        return message

    async def mark_message_read(self, message_id: str) -> None:
        self.read_calls.append(message_id)

    async def clear_messages(self, conversation_id: str) -> None:
        self.clear_calls.append(conversation_id)
        if self.fail_clear:
            raise RuntimeError("clear failed")
        self.messages.pop(conversation_id, None)


class FakeHandle:

    def __init__(self, topic: str, on_event, on_status) -> None:
        self.topic = topic
        self.on_event = on_event
        self.on_status = on_status
        self.closed = False


class FakeFeed:
    """RealtimeFeed whose statuses and events are driven by the test."""

    def __init__(self) -> None:
        self.handles: List[FakeHandle] = []
        self.unsubscribed: List[FakeHandle] = []
        self.fail_subscribe = False

    @property
    def latest(self) -> FakeHandle:
        return self.handles[-1]

    @property
    def active(self) -> List[FakeHandle]:
        return [h for h in self.handles if not h.closed]

    async def subscribe(self, topic: str, on_event, on_status) -> FakeHandle:
        if self.fail_subscribe:
            raise ConnectionError("feed unavailable")
        handle = FakeHandle(topic, on_event, on_status)
        self.handles.append(handle)
        return handle

    async def unsubscribe(self, handle: FakeHandle) -> None:
        handle.closed = True
        self.unsubscribed.append(handle)

    def status(self, status: ChannelStatus, handle: Optional[FakeHandle] = None) -> None:
        (handle or self.latest).on_status(status)

    async def emit(self, event: ChangeEvent, handle: Optional[FakeHandle] = None) -> None:
        result = (handle or self.latest).on_event(event)
        if inspect.isawaitable(result):
            await result


class FakeBus:

    def __init__(self, fail: bool = False) -> None:
        self.published: List[tuple] = []
        self.fail = fail

    async def publish(self, channel: str, message: str) -> None:
        if self.fail:
            raise ConnectionError("bus down")
        self.published.append((channel, message))

    def channels(self) -> List[str]:
        return [c for c, _ in self.published]


class _Result:

    def __init__(self, inserted_id: Any = None, deleted_count: int = 0) -> None:
        self.inserted_id = inserted_id
        self.deleted_count = deleted_count


class FakeMessageRepository:

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}
        self._ids = count(1)
        self._clock = count(0)

    async def save_message(self, conversation_id, sender_id, sender_type, content, message_type="text"):
        doc = {
            "id": f"m{next(self._ids)}",
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "sender_type": sender_type,
            "content": content,
            "message_type": message_type,
            "created_at": at(next(self._clock)),
            "is_read": False,
        }
        self.docs[doc["id"]] = doc
        return dict(doc)

    async def get_by_id(self, message_id):
        doc = self.docs.get(message_id)
        return dict(doc) if doc else None

    def _sorted(self, conversation_id):
        items = [d for d in self.docs.values() if d["conversation_id"] == conversation_id]
        return sorted(items, key=lambda d: (d["created_at"], d["id"]))

    async def list_for_conversation(self, conversation_id, limit=50, offset=0):
        items = self._sorted(conversation_id)
        return [dict(d) for d in items[offset:offset + limit]], len(items)

    async def list_recent(self, conversation_id, limit=100):
        return [dict(d) for d in self._sorted(conversation_id)[-limit:]]

    async def mark_read(self, message_id):
        doc = self.docs.get(message_id)
        if doc is None:
            return None, False
        changed = not doc["is_read"]
        doc["is_read"] = True
        return dict(doc), changed

    async def delete_for_conversation(self, conversation_id):
        ids = [i for i, d in self.docs.items() if d["conversation_id"] == conversation_id]
        for i in ids:
            del self.docs[i]
        return len(ids)


class FakeConversationRepository:

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}
        self._ids = count(1)
        self.fail_touch = False

    async def get_by_id(self, conversation_id):
        doc = self.docs.get(conversation_id)
        return dict(doc) if doc else None

    async def find_by_participants(self, student_id, src_member_id):
        for doc in self.docs.values():
            if doc["student_id"] == student_id and doc["src_member_id"] == src_member_id:
                return dict(doc)
        return None

    async def create(self, student_id, src_member_id):
        now = at(0)
        doc = {
            "id": f"c{next(self._ids)}",
            "student_id": student_id,
            "src_member_id": src_member_id,
            "is_active": True,
            "last_message_at": now,
            "created_at": now,
            "updated_at": now,
        }
        self.docs[doc["id"]] = doc
        return dict(doc)

    async def list_for_user(self, field, user_id):
        items = [dict(d) for d in self.docs.values() if d[field] == user_id]
        return sorted(items, key=lambda d: d["updated_at"], reverse=True)

    async def list_ids_for_student(self, student_id):
        return {d["src_member_id"]: d["id"] for d in self.docs.values() if d["student_id"] == student_id}

    async def list_ids_for_src_member(self, src_member_id):
        return {d["student_id"]: d["id"] for d in self.docs.values() if d["src_member_id"] == src_member_id}

    async def touch_on_message(self, conversation_id, when):
        if self.fail_touch:
            raise RuntimeError("write failed")
        doc = self.docs.get(conversation_id)
        if doc:
            doc["updated_at"] = doc["last_message_at"] = when

    async def reset_last_message(self, conversation_id):
        doc = self.docs.get(conversation_id)
        if doc:
            doc["last_message_at"] = None


class FakeProfileRepository:

    def __init__(self, profiles: Optional[List[Dict[str, Any]]] = None) -> None:
        self.profiles = {p["id"]: dict(p) for p in (profiles or [])}

    async def get_profile(self, user_id):
        profile = self.profiles.get(user_id)
        return dict(profile) if profile else None

    async def get_profiles(self, user_ids):
        return {i: dict(self.profiles[i]) for i in set(user_ids) if i in self.profiles}

    async def list_by_role(self, role, department=None):
        people = [dict(p) for p in self.profiles.values() if p.get("role") == role]
        if department:
            key = "src_department" if role == "src" else "department"
            people = [p for p in people if p.get(key) == department]
        return sorted(people, key=lambda p: p.get("full_name") or "")


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def profiles() -> FakeProfileRepository:
    return FakeProfileRepository([
        STUDENT,
        SRC_MEMBER,
        ADMIN,
        {"id": "src-2", "full_name": "Esi Owusu", "role": "src", "src_department": "Law"},
        {"id": "stu-2", "full_name": "Yaw Darko", "role": "student", "department": "Law"},
    ])
