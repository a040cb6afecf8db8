import pytest
from conftest import delete_event, insert_event, make_conversation, make_message, settle, update_event

from srcchat.client.conversation_list import ConversationListReconciler
from srcchat.schemas.chat import ChangeEvent
from srcchat.utils.realtime_bus import ChannelStatus


def make_reconciler(backend, feed, **kwargs):
    options = dict(poll_interval=100, retry_delay=100, reconnect_interval=100, subscribe_delay=0)
    options.update(kwargs)
    return ConversationListReconciler(backend, feed, "stu-1", **options)


def three_conversations(backend):
    backend.conversations = [
        make_conversation("C", [make_message("c1", "C", seconds=10)]),
        make_conversation("A", [make_message("a1", "A", seconds=30)]),
        make_conversation("B", [make_message("b1", "B", seconds=20)]),
    ]


@pytest.mark.asyncio
async def test_start_orders_by_recency_and_subscribes(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)

    assert await reconciler.start()
    await settle()

    assert [c.id for c in reconciler.conversations] == ["A", "B", "C"]
    assert feed.latest.topic == "chat_messages:user:stu-1"
    await reconciler.stop()


@pytest.mark.asyncio
async def test_inbound_message_moves_conversation_to_front(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()
    feed.status(ChannelStatus.SUBSCRIBED)

    await feed.emit(insert_event(make_message("c2", "C", seconds=40)))

    assert [c.id for c in reconciler.conversations] == ["C", "A", "B"]
    moved = reconciler.get("C")
    assert [m.id for m in moved.messages] == ["c1", "c2"]
    assert moved.last_message_at == make_message("c2", "C", seconds=40).created_at
    await reconciler.stop()


@pytest.mark.asyncio
async def test_unread_counts_and_select(backend, feed):
    backend.conversations = [
        make_conversation("A", [
            make_message("a1", "A", seconds=1, is_read=True),
            make_message("a2", "A", seconds=2, is_read=True),
            make_message("a3", "A", seconds=3),
        ]),
    ]
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()
    assert reconciler.unread_count("A") == 1

    await feed.emit(insert_event(make_message("a4", "A", seconds=4)))
    assert reconciler.unread_count("A") == 2
    assert reconciler.total_unread() == 2

    marked = await reconciler.select("A")
    await settle()

    assert sorted(marked) == ["a3", "a4"]
    assert reconciler.unread_count("A") == 0
    assert sorted(backend.read_calls) == ["a3", "a4"]
    assert reconciler.selected_id == "A"
    await reconciler.stop()


@pytest.mark.asyncio
async def test_own_and_duplicate_messages_are_ignored(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()

    assert not await reconciler.apply_message(make_message("mine", "C", sender_id="stu-1", seconds=50))
    assert not await reconciler.apply_message(make_message("a1", "A", seconds=30))

    assert [c.id for c in reconciler.conversations] == ["A", "B", "C"]
    await reconciler.stop()


@pytest.mark.asyncio
async def test_message_for_unknown_conversation_refetches(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()
    new_message = make_message("d1", "D", seconds=60)
    backend.conversations.append(make_conversation("D", [new_message]))

    await feed.emit(insert_event(new_message))

    assert backend.get_conversations_calls == 2
    assert [c.id for c in reconciler.conversations] == ["D", "A", "B", "C"]
    await reconciler.stop()


@pytest.mark.asyncio
async def test_new_conversation_event_refetches(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()
    backend.conversations.append(make_conversation("E", [], seconds=99))

    await feed.emit(ChangeEvent(type="INSERT", table="chat_conversations", record={"id": "E"}))
    await feed.emit(ChangeEvent(type="INSERT", table="chat_conversations", record={"id": "E"}))

    assert backend.get_conversations_calls == 2
    assert reconciler.conversations[0].id == "E"
    await reconciler.stop()


@pytest.mark.asyncio
async def test_update_event_marks_message_read(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()
    assert reconciler.unread_count("B") == 1

    await feed.emit(update_event(make_message("b1", "B", seconds=20, is_read=True)))

    assert reconciler.unread_count("B") == 0
    await reconciler.stop()


@pytest.mark.asyncio
async def test_delete_event_reloads(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()
    backend.conversations[0] = make_conversation("C", [])

    await feed.emit(delete_event("C"))

    assert reconciler.get("C").messages == []
    await reconciler.stop()


@pytest.mark.asyncio
async def test_poll_keeps_local_read_flags(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()
    await reconciler.select("A")

    await reconciler.poll_once()

    assert reconciler.unread_count("A") == 0
    assert reconciler.unread_count("B") == 1
    await reconciler.stop()


@pytest.mark.asyncio
async def test_refetch_keeps_local_read_flags(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()
    await reconciler.select("A")
    new_message = make_message("d1", "D", seconds=60)
    backend.conversations.append(make_conversation("D", [new_message]))

    await feed.emit(insert_event(new_message))
    await feed.emit(delete_event("C"))

    assert backend.get_conversations_calls == 3
    assert reconciler.get("A").messages[0].is_read is True
    assert reconciler.unread_count("A") == 0
    assert reconciler.unread_count("D") == 1
    await reconciler.stop()


@pytest.mark.asyncio
async def test_load_error_then_retry(backend, feed):
    three_conversations(backend)
    backend.fail_get_conversations = True
    reconciler = make_reconciler(backend, feed)

    assert not await reconciler.start()
    assert reconciler.error == "Failed to load conversations"
    assert reconciler.supervisor is None
    assert feed.handles == []

    backend.fail_get_conversations = False
    assert await reconciler.retry()
    await settle()

    assert reconciler.error is None
    assert len(reconciler.conversations) == 3
    assert reconciler.supervisor is not None
    assert len(feed.handles) == 1
    await reconciler.stop()


@pytest.mark.asyncio
async def test_events_after_stop_are_ignored(backend, feed):
    three_conversations(backend)
    reconciler = make_reconciler(backend, feed)
    await reconciler.start()
    await settle()
    handle = feed.latest

    await reconciler.stop()
    await feed.emit(insert_event(make_message("c9", "C", seconds=90)), handle=handle)

    assert [c.id for c in reconciler.conversations] == ["A", "B", "C"]
