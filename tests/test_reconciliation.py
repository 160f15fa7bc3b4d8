"""
Tests for optimistic send reconciliation.
"""
import asyncio
import random

import pytest
import pytest_asyncio

from ticketsync.errors import (
    AuthExpiredError,
    SendFailedError,
    SendValidationError,
    TicketClosedError,
)
from ticketsync.models import (
    Attachment,
    DeliveryState,
    SenderType,
    TicketStatus,
    UserMessage,
)
from ticketsync.persistence import InMemoryPersistence
from ticketsync.store import TicketStore
from ticketsync.sync import ReconciliationEngine


class GatedPersistence(InMemoryPersistence):
    """Stores each insert immediately but holds back the acknowledgment."""

    def __init__(self):
        super().__init__()
        self.gates = {}

    async def insert_message(self, ticket_id, sender_type, body, correlation_id=None, attachment=None):
        record = await super().insert_message(ticket_id, sender_type, body, correlation_id, attachment)
        gate = self.gates.setdefault(correlation_id, asyncio.Event())
        await gate.wait()
        return record


class HeldInsertPersistence(InMemoryPersistence):
    """Holds each customer insert back until released, so other writers land first."""

    def __init__(self):
        super().__init__()
        self.releases = {}

    async def insert_message(self, ticket_id, sender_type, body, correlation_id=None, attachment=None):
        if SenderType(sender_type) == SenderType.USER and correlation_id is not None:
            await self.releases.setdefault(correlation_id, asyncio.Event()).wait()
        return await super().insert_message(ticket_id, sender_type, body, correlation_id, attachment)


class FailingPersistence(InMemoryPersistence):
    """Fails inserts with a configurable error."""

    def __init__(self, error):
        super().__init__()
        self.error = error
        self.insert_calls = 0

    async def insert_message(self, *args, **kwargs):
        self.insert_calls += 1
        if self.error is not None:
            raise self.error
        return await super().insert_message(*args, **kwargs)


async def make_engine(persistence, settings, user_id="user-1"):
    store = await TicketStore.open_or_create(persistence, user_id, settings=settings)
    return store, ReconciliationEngine(store, persistence, SenderType.USER, settings=settings)


@pytest_asyncio.fixture
async def engine_setup(persistence, test_settings):
    store, engine = await make_engine(persistence, test_settings)
    yield store, engine
    engine.shutdown()


# ===========================
# Happy path
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_confirms_in_place(engine_setup, persistence):
    store, engine = engine_setup
    positions = []
    store.subscribe(lambda change: positions.append((change.kind.value, change.index)))

    message = await engine.send("  Hello  ")

    assert message.id is not None
    assert message.body == "Hello"
    assert message.delivery == DeliveryState.CONFIRMED
    assert store.message_ids() == [message.id]
    assert store.pending() == []

    # optimistic append, then replacement at the same index
    assert positions == [("appended", 1), ("replaced", 1)]

    rows = await persistence.select_messages(store.ticket_id)
    assert [r.id for r in rows] == [message.id]
    assert rows[0].correlation_id == message.correlation_id


@pytest.mark.unit
@pytest.mark.asyncio
async def test_feed_echo_after_ack_is_dropped(engine_setup, persistence):
    store, engine = engine_setup
    message = await engine.send("Hello")

    for row in await persistence.select_messages(store.ticket_id):
        assert engine.ingest(row, source="feed") is False

    assert engine.ingest_snapshot(await persistence.select_messages(store.ticket_id)) == 0
    assert store.message_ids() == [message.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_hello_scenario_feed_before_ack(test_settings):
    """Feed delivers {id: s1, correlation_id: c1} while the write is still in flight."""
    persistence = GatedPersistence()
    store, engine = await make_engine(persistence, test_settings)

    send = asyncio.create_task(engine.send("Hello"))
    while not persistence.messages[store.ticket_id]:
        await asyncio.sleep(0)

    pending = store.pending()
    assert len(pending) == 1
    correlation_id = pending[0].correlation_id

    canonical = (await persistence.select_messages(store.ticket_id))[0]
    assert canonical.correlation_id == correlation_id
    assert engine.ingest(canonical, source="feed") is True

    persistence.gates[correlation_id].set()
    result = await send

    assert result.id == canonical.id
    assert store.message_ids() == [canonical.id]
    assert [m.body for m in store.messages if not m.local_only] == ["Hello"]
    engine.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_convergence_under_shuffled_deliveries(test_settings):
    """Any interleaving of acks, feed and poll deliveries yields N messages in canonical order."""
    for seed in range(10):
        rng = random.Random(seed)
        persistence = GatedPersistence()
        store, engine = await make_engine(persistence, test_settings, user_id=f"user-{seed}")
        ticket_id = store.ticket_id

        sends = []
        for i in range(5):
            sends.append(asyncio.create_task(engine.send(f"message {i}")))
            await asyncio.sleep(0.002)
        while len(persistence.messages[ticket_id]) < 5:
            await asyncio.sleep(0)

        canonical = await persistence.select_messages(ticket_id)
        actions = (
            [("ack", m.correlation_id) for m in canonical]
            + [("feed", m) for m in canonical]
            + [("feed", m) for m in rng.sample(canonical, 2)]
            + [("poll", None)] * 3
        )
        rng.shuffle(actions)

        for kind, item in actions:
            if kind == "ack":
                persistence.gates[item].set()
                await asyncio.sleep(0)
            elif kind == "feed":
                engine.ingest(item.model_copy(), source="feed")
            else:
                engine.ingest_snapshot(await persistence.select_messages(ticket_id))

        await asyncio.gather(*sends)

        assert store.message_ids() == [m.id for m in canonical], f"seed {seed}"
        assert [m.body for m in store.messages if not m.local_only] == [f"message {i}" for i in range(5)]
        assert store.pending() == []
        engine.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_convergence_with_a_second_writer(test_settings, eventually):
    """Agent rows stamped between a send and its ack still end up in server order."""
    for seed in range(10):
        rng = random.Random(seed)
        persistence = HeldInsertPersistence()
        store, engine = await make_engine(persistence, test_settings, user_id=f"user-{seed}")
        ticket_id = store.ticket_id

        sends = [asyncio.create_task(engine.send(f"question {i}")) for i in range(3)]
        await eventually(lambda: len(store.pending()) == 3)
        correlation_ids = [m.correlation_id for m in store.pending()]

        actions = (
            [("release", c) for c in correlation_ids]
            + [("agent", i) for i in range(3)]
            + [("poll", None)] * 2
        )
        rng.shuffle(actions)

        for kind, item in actions:
            if kind == "release":
                persistence.releases[item].set()
                await asyncio.sleep(0)
            elif kind == "agent":
                row = await persistence.insert_message(ticket_id, SenderType.STAFF, f"answer {item}")
                engine.ingest(row, source="feed")
            else:
                engine.ingest_snapshot(await persistence.select_messages(ticket_id))

        await asyncio.gather(*sends)

        authoritative = await persistence.select_messages(ticket_id)
        assert store.message_ids() == [m.id for m in authoritative], f"seed {seed}"
        assert store.pending() == []

        # Replaying everything changes nothing
        assert engine.ingest_snapshot(authoritative) == 0
        assert store.message_ids() == [m.id for m in authoritative]
        engine.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_ack_after_other_writers_feed_row(test_settings, eventually):
    persistence = HeldInsertPersistence()
    store, engine = await make_engine(persistence, test_settings)

    send = asyncio.create_task(engine.send("hi"))
    await eventually(lambda: len(store.pending()) == 1)

    reply = await persistence.insert_message(store.ticket_id, SenderType.STAFF, "agent reply")
    engine.ingest(reply, source="feed")

    persistence.releases[store.pending()[0].correlation_id].set()
    mine = await send

    authoritative = await persistence.select_messages(store.ticket_id)
    assert [m.body for m in authoritative] == ["agent reply", "hi"]
    assert store.message_ids() == [reply.id, mine.id]
    engine.shutdown()


# ===========================
# Failures
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_write_failure_removes_optimistic_and_returns_draft(test_settings):
    persistence = FailingPersistence(RuntimeError("insert failed"))
    store, engine = await make_engine(persistence, test_settings)
    before = store.message_ids(include_local=True)

    with pytest.raises(SendFailedError) as exc_info:
        await engine.send("  my draft ")

    assert exc_info.value.draft == "  my draft "
    assert exc_info.value.retryable is True
    assert exc_info.value.user_actionable is True
    assert store.message_ids(include_local=True) == before
    assert store.pending() == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_validation_errors_never_reach_persistence(test_settings):
    persistence = FailingPersistence(None)
    store, engine = await make_engine(persistence, test_settings)

    with pytest.raises(SendValidationError):
        await engine.send("   ")
    with pytest.raises(SendValidationError):
        await engine.send("x" * (test_settings.max_message_length + 1))
    with pytest.raises(SendValidationError):
        await engine.send(
            "file",
            Attachment(file_url="https://files/x", size_bytes=test_settings.max_attachment_bytes + 1)
        )

    assert persistence.insert_calls == 0
    assert store.message_ids() == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_attachment_only_message_gets_placeholder_body(engine_setup):
    store, engine = engine_setup

    message = await engine.send("", Attachment(file_url="https://files/x.pdf", file_name="x.pdf", size_bytes=10))

    assert message.body == "Sent file: x.pdf"
    assert message.attachment.file_name == "x.pdf"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_auth_expired_blocks_until_reauthenticated(test_settings):
    persistence = FailingPersistence(AuthExpiredError("token expired"))
    store, engine = await make_engine(persistence, test_settings)

    with pytest.raises(AuthExpiredError) as exc_info:
        await engine.send("first")
    assert exc_info.value.draft == "first"
    assert engine.auth_expired

    persistence.error = None
    with pytest.raises(AuthExpiredError):
        await engine.send("second")
    assert persistence.insert_calls == 1

    engine.mark_reauthenticated()
    message = await engine.send("third")
    assert store.message_ids() == [message.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_refused_on_closed_ticket(engine_setup):
    store, engine = engine_setup
    store.update_flags(store.ticket_id, {"status": TicketStatus.CLOSED})

    with pytest.raises(TicketClosedError):
        await engine.send("anyone there?")
    assert store.pending() == []


# ===========================
# Pending / retry
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_write_timeout_leaves_message_pending(test_settings, settings_override):
    settings = settings_override({"write_timeout": 0.02, "pending_window": 0.05})
    persistence = GatedPersistence()
    store, engine = await make_engine(persistence, settings)

    result = await engine.send("Hello")

    assert result.is_pending
    assert [m.key for m in store.pending()] == [result.correlation_id]

    await asyncio.sleep(0.1)
    assert store.get(result.correlation_id).overdue
    assert store.get(result.correlation_id).is_pending
    engine.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_manual_retry_reuses_correlation_id(test_settings, settings_override):
    settings = settings_override({"write_timeout": 0.02})
    persistence = GatedPersistence()
    store, engine = await make_engine(persistence, settings)

    pending = await engine.send("Hello")
    persistence.gates[pending.correlation_id].set()

    confirmed = await engine.retry(pending.correlation_id)

    assert confirmed.id is not None
    assert len(persistence.messages[store.ticket_id]) == 1
    assert store.message_ids() == [confirmed.id]

    with pytest.raises(ValueError):
        await engine.retry(pending.correlation_id)
    engine.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_confirmation_cancels_pending_timer(engine_setup):
    store, engine = engine_setup
    await engine.send("Hello")

    assert engine._pending_timers == {}


# ===========================
# Ingestion
# ===========================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_ingest_update_applies_read_receipt(engine_setup, persistence):
    store, engine = engine_setup
    message = await engine.send("Hello")

    updated = await persistence.update_message(message.id, {"is_read": True})
    assert engine.ingest_update(updated) is True
    assert store.get(message.id).is_read


@pytest.mark.unit
@pytest.mark.asyncio
async def test_ingest_update_for_unknown_id_appends(engine_setup):
    store, engine = engine_setup
    missed = UserMessage(id="s9", ticket_id=store.ticket_id, body="missed insert", is_read=True)

    assert engine.ingest_update(missed) is True
    assert store.contains("s9")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_conflicting_canonical_drops_optimistic(engine_setup):
    """A canonical id already held elsewhere never produces a second entry."""
    store, engine = engine_setup
    store.append(UserMessage(id="s1", ticket_id=store.ticket_id, body="Hello"))
    store.append(
        UserMessage(correlation_id="c1", ticket_id=store.ticket_id, body="Hello", delivery=DeliveryState.PENDING),
        source="optimistic"
    )

    duplicate = UserMessage(id="s1", correlation_id="c1", ticket_id=store.ticket_id, body="Hello")
    assert engine.ingest(duplicate) is False
    assert store.message_ids() == ["s1"]
