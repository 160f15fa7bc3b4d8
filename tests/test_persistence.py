"""
Tests for the in-memory persistence backend and its change feed.
"""
import pytest

from ticketsync.models import (
    MESSAGES_TABLE,
    TICKETS_TABLE,
    ChatMode,
    FeedBinding,
    FeedEventType,
    FeedStatus,
    Rating,
    SenderType,
    TicketStatus,
)
from ticketsync.persistence import InMemoryPersistence, create_persistence


# ===========================
# Tickets
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_one_open_ticket_per_user(persistence):
    first = await persistence.create_ticket("user-1")
    again = await persistence.create_ticket("user-1")

    assert again.id == first.id
    assert (await persistence.find_open_ticket("user-1")).id == first.id
    assert await persistence.find_open_ticket("user-2") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_ticket_merges_fields(persistence):
    ticket = await persistence.create_ticket("user-1")

    await persistence.update_ticket(ticket.id, {"user_typing": True})
    updated = await persistence.update_ticket(ticket.id, {"agent_typing": True})

    assert updated.user_typing is True
    assert updated.agent_typing is True
    assert updated.updated_at > ticket.updated_at


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_ticket_rejects_unknown_fields(persistence):
    ticket = await persistence.create_ticket("user-1")

    with pytest.raises(ValueError):
        await persistence.update_ticket(ticket.id, {"user_id": "someone-else"})

    assert await persistence.update_ticket("missing", {"user_typing": True}) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_closed_ticket_refuses_mode_and_presence_changes(persistence):
    ticket = await persistence.create_ticket("user-1")
    closed = await persistence.update_ticket(ticket.id, {"status": TicketStatus.CLOSED, "user_online": False})

    row = await persistence.update_ticket(
        ticket.id,
        {"chat_mode": ChatMode.AGENT, "assigned_agent_id": "agent-7", "agent_online": True}
    )
    assert row.chat_mode == ChatMode.BOT
    assert row.assigned_agent_id is None
    assert row.agent_online is False
    assert row.updated_at == closed.updated_at

    reopened = await persistence.update_ticket(ticket.id, {"status": TicketStatus.OPEN})
    assert reopened.is_closed

    # Unchanged values are not refusals
    again = await persistence.update_ticket(ticket.id, {"status": TicketStatus.CLOSED, "user_online": False})
    assert again.is_closed


@pytest.mark.unit
@pytest.mark.asyncio
async def test_list_tickets_newest_first(persistence):
    first = await persistence.create_ticket("user-1")
    await persistence.update_ticket(first.id, {"status": TicketStatus.CLOSED})
    second = await persistence.create_ticket("user-1")

    assert [t.id for t in await persistence.list_tickets("user-1")] == [second.id, first.id]
    closed = await persistence.list_tickets("user-1", status=TicketStatus.CLOSED)
    assert [t.id for t in closed] == [first.id]
    assert len(await persistence.list_tickets("user-1", limit=1)) == 1


# ===========================
# Messages
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_insert_dedupes_by_correlation_id(persistence):
    ticket = await persistence.create_ticket("user-1")

    first = await persistence.insert_message(ticket.id, SenderType.USER, "Hello", correlation_id="c1")
    retry = await persistence.insert_message(ticket.id, SenderType.USER, "Hello", correlation_id="c1")

    assert retry.id == first.id
    assert len(await persistence.select_messages(ticket.id)) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_insert_unknown_ticket(persistence):
    with pytest.raises(ValueError):
        await persistence.insert_message("missing", SenderType.USER, "Hello")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timestamps_strictly_increase(persistence):
    ticket = await persistence.create_ticket("user-1")

    messages = [
        await persistence.insert_message(ticket.id, SenderType.USER, f"m{i}")
        for i in range(20)
    ]

    stamps = [m.created_at for m in messages]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)
    assert [m.id for m in await persistence.select_messages(ticket.id)] == [m.id for m in messages]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_messages_are_append_only(persistence):
    ticket = await persistence.create_ticket("user-1")
    message = await persistence.insert_message(ticket.id, SenderType.USER, "Hello")

    with pytest.raises(ValueError):
        await persistence.update_message(message.id, {"body": "Edited"})

    updated = await persistence.update_message(message.id, {"is_read": True})
    assert updated.is_read is True
    assert await persistence.update_message("missing", {"is_read": True}) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_mark_read_by_sender(persistence):
    ticket = await persistence.create_ticket("user-1")
    await persistence.insert_message(ticket.id, SenderType.USER, "q1")
    await persistence.insert_message(ticket.id, SenderType.USER, "q2")
    await persistence.insert_message(ticket.id, SenderType.STAFF, "a1")

    assert await persistence.mark_read(ticket.id, [SenderType.USER]) == 2
    assert await persistence.mark_read(ticket.id, [SenderType.USER]) == 0

    rows = await persistence.select_messages(ticket.id)
    assert [(m.sender_type, m.is_read) for m in rows] == [("user", True), ("user", True), ("staff", False)]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_returned_rows_are_copies(persistence):
    ticket = await persistence.create_ticket("user-1")
    message = await persistence.insert_message(ticket.id, SenderType.USER, "Hello")

    message.is_read = True
    assert (await persistence.select_messages(ticket.id))[0].is_read is False


# ===========================
# Ratings
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_rating_only_for_closed_tickets(persistence):
    ticket = await persistence.create_ticket("user-1")
    rating = Rating(ticket_id=ticket.id, user_id="user-1", rating=5, feedback="Quick and helpful")

    with pytest.raises(ValueError):
        await persistence.insert_rating(rating)

    await persistence.update_ticket(ticket.id, {"status": TicketStatus.CLOSED})
    stored = await persistence.insert_rating(rating)

    assert stored.rating == 5
    assert len(persistence.ratings) == 1


# ===========================
# Change Feed
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_feed_delivers_matching_rows_in_order(persistence, eventually):
    ticket = await persistence.create_ticket("user-1")
    other = await persistence.create_ticket("user-2")
    events, statuses = [], []

    subscription = await persistence.subscribe(
        "support-chat-test",
        [
            FeedBinding(table=MESSAGES_TABLE, filter={"ticket_id": ticket.id}),
            FeedBinding(table=TICKETS_TABLE, filter={"id": ticket.id}),
        ],
        events.append,
        statuses.append
    )

    await persistence.insert_message(ticket.id, SenderType.USER, "one")
    await persistence.insert_message(other.id, SenderType.USER, "elsewhere")
    await persistence.update_ticket(ticket.id, {"user_typing": True})
    await persistence.insert_message(ticket.id, SenderType.STAFF, "two")

    await eventually(lambda: len(events) == 3)
    assert statuses[0] == FeedStatus.SUBSCRIBED
    assert [(e.table, e.event_type) for e in events] == [
        (MESSAGES_TABLE, FeedEventType.INSERT),
        (TICKETS_TABLE, FeedEventType.UPDATE),
        (MESSAGES_TABLE, FeedEventType.INSERT),
    ]
    assert events[0].record["message"] == "one"

    await subscription.unsubscribe()
    await subscription.unsubscribe()
    assert persistence.subscriptions == []
    assert not subscription.active


@pytest.mark.unit
@pytest.mark.asyncio
async def test_paused_subscription_drops_events(persistence, eventually):
    ticket = await persistence.create_ticket("user-1")
    events = []
    subscription = await persistence.subscribe(
        "support-chat-test",
        [FeedBinding(table=MESSAGES_TABLE, filter={"ticket_id": ticket.id})],
        events.append,
        lambda status: None
    )

    subscription.paused = True
    await persistence.insert_message(ticket.id, SenderType.USER, "lost")
    subscription.paused = False
    await persistence.insert_message(ticket.id, SenderType.USER, "kept")

    await eventually(lambda: len(events) == 1)
    assert events[0].record["message"] == "kept"
    await subscription.unsubscribe()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_heartbeats_are_emitted(eventually):
    persistence = InMemoryPersistence(heartbeat_interval=0.01)
    statuses = []
    subscription = await persistence.subscribe("hb", [], lambda event: None, statuses.append)

    await eventually(lambda: statuses.count(FeedStatus.HEARTBEAT) >= 2)
    await subscription.unsubscribe()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stats(persistence):
    ticket = await persistence.create_ticket("user-1")
    await persistence.insert_message(ticket.id, SenderType.USER, "Hello")

    stats = await persistence.get_stats()

    assert stats["store_type"] == "in_memory"
    assert stats["tickets"] == 1
    assert stats["open_tickets"] == 1
    assert stats["messages"] == 1


@pytest.mark.unit
def test_factory():
    assert isinstance(create_persistence("in_memory"), InMemoryPersistence)
    with pytest.raises(ValueError):
        create_persistence("postgres")
