"""Identifier-keyed merge helpers shared by the reconcilers.

Message lists are kept sorted by (created_at, id) with unique ids. The read
flag is merged as a logical OR so it can never go from True back to False.
"""
import bisect
from typing import Dict, Iterable, List, Optional

from srcchat.schemas.chat import ChatMessage


def sort_key(message: ChatMessage):
    return (message.created_at, message.id)


def find_index(messages: List[ChatMessage], message_id: str) -> Optional[int]:
    for i, m in enumerate(messages):
        if m.id == message_id:
            return i
    return None


def merge_read_flag(old: ChatMessage, new: ChatMessage) -> ChatMessage:
    if old.is_read and not new.is_read:
        return new.model_copy(update={"is_read": True})
    return new


def insert_message(messages: List[ChatMessage], message: ChatMessage) -> bool:
    """Insert at the sorted position unless the id is already present."""
    if find_index(messages, message.id) is not None:
        return False
    bisect.insort(messages, message, key=sort_key)
    return True


def replace_message(messages: List[ChatMessage], message: ChatMessage) -> bool:
    i = find_index(messages, message.id)
    if i is None:
        return False
    messages[i] = merge_read_flag(messages[i], message)
    return True


def mark_read(messages: List[ChatMessage], message_ids: Iterable[str]) -> None:
    wanted = set(message_ids)
    for i, m in enumerate(messages):
        if m.id in wanted and not m.is_read:
            messages[i] = m.model_copy(update={"is_read": True})


def merge_lists(local: List[ChatMessage], fetched: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Authoritative fetched list, deduplicated and sorted, keeping local read flags."""
    known: Dict[str, ChatMessage] = {m.id: m for m in local}
    merged: Dict[str, ChatMessage] = {}
    for message in fetched:
        if message.id in merged:
            continue
        old = known.get(message.id)
        merged[message.id] = merge_read_flag(old, message) if old else message
    return sorted(merged.values(), key=sort_key)


def merge_window(local: List[ChatMessage], fetched: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Merge the newest page of a log into the local copy.

    The fetched page is authoritative from its oldest message onwards; local
    messages older than that lie outside the page and are kept.
    """
    window = merge_lists(local, fetched)
    if not window:
        return []
    start = sort_key(window[0])
    older = [m for m in local if sort_key(m) < start]
    return older + window


def unread_count(messages: Optional[List[ChatMessage]], user_id: str) -> int:
    if not messages:
        return 0
    return sum(1 for m in messages if m.sender_id != user_id and not m.is_read)
