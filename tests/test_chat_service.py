import asyncio

import pytest

from conftest import (
    AGENT_ID, CUSTOMER_ID, JOB_ID, OTHER_CUSTOMER_ID, T0, admin, agent, customer, seed_job
)
from printchat.models.chat import (
    Audience, CompletedBy, MessageType, SenderType, SessionStatus
)
from printchat.services.chat_service import ChatService
from printchat.services.exceptions import (
    ChatServiceError, InvalidInputError, InvalidStateError, NotFoundError, UnauthorizedError
)
from printchat.services.lock_service import SessionLockManager
from printchat.storage.memory import InMemoryChatStore


async def _assert_counters_match_log(store, session_id):
    session = await store.get_session(session_id)
    messages = await store.list_messages(session_id, 0, 10_000)
    assert session.total_messages == len(messages)
    assert session.unread_by_customer == sum(1 for m in messages if m.is_unread_for(Audience.CUSTOMER))
    assert session.unread_by_agent == sum(1 for m in messages if m.is_unread_for(Audience.AGENT))


def _failing_write(*args, **kwargs):
    raise RuntimeError("database unavailable")


# ============ create_session ============

async def test_create_session_sets_expiry_and_auto_message(service, store, broadcaster):
    session = await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)

    assert session.status == SessionStatus.ACTIVE
    assert session.created_at == T0
    assert (session.expires_at - session.created_at).total_seconds() == 24 * 3600
    assert session.total_messages == 1
    assert session.unread_by_agent == 1
    assert session.unread_by_customer == 0

    messages = await store.list_messages(session.id, 0, 10)
    assert len(messages) == 1
    auto = messages[0]
    assert auto.message_type == MessageType.AUTO
    assert auto.sender_type == SenderType.CUSTOMER
    assert auto.sender_id == CUSTOMER_ID
    assert auto.message_text == "Hi! I have placed an order #abc123 for 12 pages color printing"

    events = broadcaster.of_type("new_chat_session")
    assert len(events) == 1
    assert events[0][1] == AGENT_ID


async def test_create_session_black_and_white_text(service, store):
    seed_job(store, job_id="job-bw-000777", pages=3, is_color=False)
    session = await service.create_session("job-bw-000777", CUSTOMER_ID, AGENT_ID)
    [auto] = await store.list_messages(session.id, 0, 10)
    assert auto.message_text == "Hi! I have placed an order #000777 for 3 pages black & white printing"


async def test_create_session_is_idempotent(service, store):
    first = await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)
    second = await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)

    assert second.id == first.id
    assert await store.count_messages(first.id) == 1
    assert len(await store.list_sessions_created_between(T0, T0.replace(year=2030))) == 1


async def test_concurrent_create_session_yields_one_session(service, store):
    results = await asyncio.gather(*[
        service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID) for _ in range(5)
    ])

    assert len({s.id for s in results}) == 1
    assert await store.count_messages(results[0].id) == 1


async def test_create_session_unknown_job(service):
    with pytest.raises(NotFoundError):
        await service.create_session("missing-job", CUSTOMER_ID, AGENT_ID)


async def test_create_session_requires_ids(service):
    with pytest.raises(InvalidInputError):
        await service.create_session(JOB_ID, "", AGENT_ID)


async def test_failed_creation_writes_nothing_and_can_be_retried(service, store, broadcaster, monkeypatch):
    monkeypatch.setattr(store, "_with_counters", _failing_write)
    with pytest.raises(ChatServiceError):
        await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)
    monkeypatch.undo()

    assert await store.get_session_by_job(JOB_ID) is None
    assert broadcaster.of_type("new_chat_session") == []

    session = await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)
    assert session.total_messages == 1
    [auto] = await store.list_messages(session.id, 0, 10)
    assert auto.message_type == MessageType.AUTO


# ============ send_message ============

async def test_send_message_read_flags_and_sender(service, session, broadcaster):
    message = await service.send_message(session.id, customer(), "  Hello there  ")

    assert message.message_text == "Hello there"
    assert message.read_by_customer is True
    assert message.read_by_agent is False
    assert message.sender.full_name == "Cathy Customer"
    assert broadcaster.of_type("new_message")[0][3]["message"]["id"] == message.id

    reply = await service.send_message(session.id, agent(), "Hi!")
    assert reply.read_by_agent is True
    assert reply.read_by_customer is False
    assert reply.sender.business_name == "Arun Prints"


async def test_admin_message_is_system_and_read_by_both(service, session):
    message = await service.send_message(session.id, admin(), "Moderator note", MessageType.SYSTEM)

    assert message.sender_type == SenderType.SYSTEM
    assert message.sender_id is None
    assert message.read_by_customer is True
    assert message.read_by_agent is True


async def test_send_message_updates_counters(service, session, store):
    await service.send_message(session.id, customer(), "one")
    await service.send_message(session.id, agent(), "two")

    updated = await store.get_session(session.id)
    assert updated.total_messages == 3
    assert updated.unread_by_agent == 2
    assert updated.unread_by_customer == 1
    await _assert_counters_match_log(store, session.id)


async def test_send_message_rejects_non_participant(service, session):
    with pytest.raises(UnauthorizedError):
        await service.send_message(session.id, customer(OTHER_CUSTOMER_ID), "let me in")


async def test_send_message_unknown_session(service):
    with pytest.raises(NotFoundError):
        await service.send_message("nope", customer(), "hello")


@pytest.mark.parametrize("text", ["", "   ", "\n\t", None, 42])
async def test_send_message_rejects_empty_text(service, session, text):
    with pytest.raises(InvalidInputError):
        await service.send_message(session.id, customer(), text)


async def test_send_message_length_bound(service, session):
    ok = await service.send_message(session.id, customer(), " " + "x" * 2000 + " ")
    assert len(ok.message_text) == 2000

    with pytest.raises(InvalidInputError):
        await service.send_message(session.id, customer(), "x" * 2001)


async def test_participants_cannot_send_reserved_types(service, session):
    with pytest.raises(InvalidInputError):
        await service.send_message(session.id, customer(), "fake", MessageType.SYSTEM)
    with pytest.raises(InvalidInputError):
        await service.send_message(session.id, agent(), "fake", "auto")
    with pytest.raises(InvalidInputError):
        await service.send_message(session.id, agent(), "fake", "sticker")


async def test_send_after_expiry_is_invalid_state(service, session, clock):
    clock.advance(hours=25)
    with pytest.raises(InvalidStateError):
        await service.send_message(session.id, customer(), "still there?")


async def test_send_exactly_at_expiry_is_accepted(service, session, clock):
    clock.advance(hours=24)
    message = await service.send_message(session.id, customer(), "just in time")
    assert message.timestamp == session.expires_at


async def test_send_to_completed_session_is_invalid_state(service, session):
    await service.complete_session(session.id, CompletedBy.AGENT, user=agent())
    with pytest.raises(InvalidStateError):
        await service.send_message(session.id, customer(), "hello?")


async def test_concurrent_sends_do_not_lose_updates(service, session, store):
    senders = [customer() if i % 2 == 0 else agent() for i in range(20)]
    await asyncio.gather(*[
        service.send_message(session.id, user, f"message {i}") for i, user in enumerate(senders)
    ])

    updated = await store.get_session(session.id)
    assert updated.total_messages == 21
    assert updated.unread_by_agent == 11
    assert updated.unread_by_customer == 10
    await _assert_counters_match_log(store, session.id)


async def test_store_failure_surfaces_as_internal_error(clock, broadcaster):
    class BrokenStore(InMemoryChatStore):
        async def insert_session_with_message(self, session, message):
            raise RuntimeError("database unavailable")

    store = BrokenStore()
    seed_job(store)
    service = ChatService(store, locks=SessionLockManager(), broadcaster=broadcaster, clock=clock)

    with pytest.raises(ChatServiceError):
        await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)


# ============ mark_read ============

async def test_mark_read_zeroes_until_other_side_sends(service, session, store, broadcaster):
    await service.send_message(session.id, customer(), "one")

    read = await service.mark_read(session.id, agent())
    assert read.unread_by_agent == 0
    assert broadcaster.of_type("messages_read")[0][3]["reader_type"] == "agent"

    await service.send_message(session.id, agent(), "agent reply")
    assert (await store.get_session(session.id)).unread_by_agent == 0

    await service.send_message(session.id, customer(), "customer again")
    assert (await store.get_session(session.id)).unread_by_agent == 1
    await _assert_counters_match_log(store, session.id)


async def test_mark_read_interleaved_with_sends(service, session, store):
    operations = []
    for i in range(10):
        operations.append(service.send_message(session.id, customer(), f"c{i}"))
        operations.append(service.mark_read(session.id, agent()))
    await asyncio.gather(*operations)

    await _assert_counters_match_log(store, session.id)


async def test_mark_read_rejects_non_participant_and_admin(service, session):
    with pytest.raises(UnauthorizedError):
        await service.mark_read(session.id, customer(OTHER_CUSTOMER_ID))
    with pytest.raises(UnauthorizedError):
        await service.mark_read(session.id, admin())


# ============ complete_session ============

async def test_complete_session_twice(service, session, clock, broadcaster, store):
    first = await service.complete_session(session.id, CompletedBy.AGENT, user=agent())
    assert first.status == SessionStatus.COMPLETED
    assert first.completed_by == CompletedBy.AGENT
    assert first.completed_at == T0

    messages = await store.list_messages(session.id, 0, 10)
    assert messages[-1].message_text == "This chat has been marked as completed by the print agent."
    assert messages[-1].sender_type == SenderType.SYSTEM
    assert len(broadcaster.of_type("chat_completed")) == 1

    clock.advance(minutes=5)
    with pytest.raises(InvalidStateError):
        await service.complete_session(session.id, CompletedBy.SYSTEM, user=admin())

    after = await store.get_session(session.id)
    assert after.status == SessionStatus.COMPLETED
    assert after.completed_by == CompletedBy.AGENT
    assert after.completed_at == T0


async def test_only_session_agent_or_admin_completes(service, session, store):
    with pytest.raises(UnauthorizedError):
        await service.complete_session(session.id, CompletedBy.AGENT, user=customer())
    with pytest.raises(UnauthorizedError):
        await service.complete_session(session.id, CompletedBy.AGENT, user=agent("agent-2"))

    completed = await service.complete_session(session.id, CompletedBy.SYSTEM, user=admin())
    assert completed.completed_by == CompletedBy.SYSTEM
    [*_, notice] = await store.list_messages(session.id, 0, 10)
    assert notice.message_text == "This chat has been closed by the system."


async def test_complete_expired_session_is_invalid_state(service, session, clock):
    clock.advance(hours=30)
    with pytest.raises(InvalidStateError):
        await service.complete_session(session.id, CompletedBy.AGENT, user=agent())


async def test_failed_completion_keeps_session_active(service, session, store, broadcaster, monkeypatch):
    monkeypatch.setattr(store, "_with_counters", _failing_write)
    with pytest.raises(ChatServiceError):
        await service.complete_session(session.id, CompletedBy.AGENT, user=agent())
    monkeypatch.undo()

    stored = await store.get_session(session.id)
    assert stored.status == SessionStatus.ACTIVE
    assert stored.completed_at is None
    assert await store.count_messages(session.id) == 1
    assert broadcaster.of_type("chat_completed") == []

    completed = await service.complete_session(session.id, CompletedBy.AGENT, user=agent())
    assert completed.status == SessionStatus.COMPLETED
    assert completed.total_messages == 2
    assert len(broadcaster.of_type("chat_completed")) == 1


async def test_complete_on_job_finish(service, store, clock):
    assert await service.complete_on_job_finish(JOB_ID) is None

    session = await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)
    completed = await service.complete_on_job_finish(JOB_ID)
    assert completed.id == session.id
    assert completed.status == SessionStatus.COMPLETED

    clock.advance(hours=1)
    again = await service.complete_on_job_finish(JOB_ID, CompletedBy.SYSTEM)
    assert again.completed_by == CompletedBy.AGENT
    assert again.completed_at == T0


# ============ sweep_expired ============

async def test_sweep_only_touches_strictly_past_sessions(service, session, store, clock, broadcaster):
    clock.advance(hours=24)
    assert await service.sweep_expired() == []
    assert (await store.get_session(session.id)).status == SessionStatus.ACTIVE

    clock.advance(microseconds=1)
    expired = await service.sweep_expired()
    assert [s.id for s in expired] == [session.id]

    swept = await store.get_session(session.id)
    assert swept.status == SessionStatus.EXPIRED
    assert swept.completed_by == CompletedBy.AUTO_TIMEOUT
    assert swept.completed_at == clock.now
    [*_, notice] = await store.list_messages(session.id, 0, 10)
    assert notice.message_text == "This chat has been automatically closed after 24 hours."
    assert broadcaster.of_type("chat_completed")[-1][3]["completed_by"] == "auto_24h"

    clock.advance(hours=1)
    assert await service.sweep_expired() == []
    assert (await store.get_session(session.id)).completed_at == swept.completed_at


async def test_sweep_skips_completed_sessions(service, session, store, clock):
    await service.complete_session(session.id, CompletedBy.AGENT, user=agent())
    clock.advance(hours=48)

    assert await service.sweep_expired() == []
    assert (await store.get_session(session.id)).status == SessionStatus.COMPLETED


async def test_sweep_posts_a_notice_for_every_expired_session(service, store, clock, broadcaster):
    seed_job(store, "job-b")
    first = await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)
    second = await service.create_session("job-b", CUSTOMER_ID, AGENT_ID)
    clock.advance(hours=25)

    expired = await service.sweep_expired()

    assert {s.id for s in expired} == {first.id, second.id}
    for session in (first, second):
        stored = await store.get_session(session.id)
        assert stored.total_messages == 2
        [*_, notice] = await store.list_messages(session.id, 0, 10)
        assert notice.sender_type == SenderType.SYSTEM
        await _assert_counters_match_log(store, session.id)
    assert {e[1] for e in broadcaster.of_type("chat_completed")} == {first.id, second.id}


async def test_sweep_failing_part_way_is_retried_in_full(service, store, clock, broadcaster, monkeypatch):
    seed_job(store, "job-b")
    first = await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)
    second = await service.create_session("job-b", CUSTOMER_ID, AGENT_ID)
    clock.advance(hours=25)

    real = store._with_counters
    calls = []

    def fail_on_second(session, messages):
        calls.append(session.id)
        if len(calls) == 2:
            raise RuntimeError("database unavailable")
        return real(session, messages)

    monkeypatch.setattr(store, "_with_counters", fail_on_second)
    with pytest.raises(ChatServiceError):
        await service.sweep_expired()
    monkeypatch.undo()

    for session in (first, second):
        assert (await store.get_session(session.id)).status == SessionStatus.ACTIVE
        assert await store.count_messages(session.id) == 1
    assert broadcaster.of_type("chat_completed") == []

    expired = await service.sweep_expired()
    assert {s.id for s in expired} == {first.id, second.id}
    assert len(broadcaster.of_type("chat_completed")) == 2


async def test_lazy_expiry_agrees_with_sweep(service, session, clock):
    clock.advance(hours=25)
    with pytest.raises(InvalidStateError):
        await service.send_message(session.id, customer(), "before sweep")

    await service.sweep_expired()
    with pytest.raises(InvalidStateError):
        await service.send_message(session.id, customer(), "after sweep")


# ============ queries ============

async def test_active_sessions_scenario(service, session, clock):
    clock.advance(hours=1)
    message = await service.send_message(session.id, customer(), "Can you staple it?")

    chats = await service.get_active_sessions_for(AGENT_ID, Audience.AGENT)
    assert len(chats) == 1
    assert chats[0].id == session.id
    assert chats[0].unread_by_agent == 2
    assert chats[0].latest_message.id == message.id


async def test_active_sessions_ordered_by_last_message(service, store, clock):
    seed_job(store, job_id="job-second-000002")
    seed_job(store, job_id="job-third-0000003")
    first = await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)
    clock.advance(minutes=1)
    second = await service.create_session("job-second-000002", CUSTOMER_ID, AGENT_ID)
    clock.advance(minutes=1)
    third = await service.create_session("job-third-0000003", CUSTOMER_ID, AGENT_ID)
    clock.advance(minutes=1)
    await service.send_message(first.id, agent(), "bump")

    chats = await service.get_active_sessions_for(CUSTOMER_ID, Audience.CUSTOMER)
    assert [c.id for c in chats] == [first.id, third.id, second.id]


async def test_active_sessions_exclude_closed(service, session, clock):
    clock.advance(hours=25)
    assert await service.get_active_sessions_for(AGENT_ID, Audience.AGENT) == []


async def test_history_round_trip_for_every_page_size(service, session, clock):
    for i in range(9):
        if i % 3:
            clock.advance(seconds=1)
        user = customer() if i % 2 else agent()
        await service.send_message(session.id, user, f"message {i}")

    full = await service.get_history(session.id, customer(), page=1, limit=200)
    expected = [m.id for m in full.messages]
    assert len(expected) == 10
    assert full.messages[0].message_type == MessageType.AUTO
    timestamps = [m.timestamp for m in full.messages]
    assert timestamps == sorted(timestamps)

    for page_size in range(1, 12):
        collected = []
        page = 1
        while True:
            history = await service.get_history(session.id, customer(), page=page, limit=page_size)
            if not history.messages:
                break
            collected.extend(m.id for m in history.messages)
            assert history.pagination.total == 10
            page += 1
        assert collected == expected
        assert page - 1 == -(-10 // page_size)


async def test_history_validation_and_access(service, session):
    with pytest.raises(InvalidInputError):
        await service.get_history(session.id, customer(), page=0)
    with pytest.raises(InvalidInputError):
        await service.get_history(session.id, customer(), limit=0)
    with pytest.raises(InvalidInputError):
        await service.get_history(session.id, customer(), limit=201)
    with pytest.raises(UnauthorizedError):
        await service.get_history(session.id, customer(OTHER_CUSTOMER_ID))
    with pytest.raises(NotFoundError):
        await service.get_history("unknown", customer())

    history = await service.get_history(session.id, admin())
    assert history.pagination.pages == 1


async def test_session_lookup_distinguishes_missing_from_forbidden(service, session):
    assert (await service.get_session_for_job(JOB_ID, agent())).id == session.id
    with pytest.raises(NotFoundError):
        await service.get_session_for_job("job-without-chat", agent())
    with pytest.raises(UnauthorizedError):
        await service.get_session(session.id, customer(OTHER_CUSTOMER_ID))


async def test_unread_counts(service, session):
    await service.send_message(session.id, customer(), "one")

    agent_counts = await service.get_unread_counts(agent())
    assert agent_counts.total_unread_count == 2
    assert agent_counts.chat_unread_counts[0].chat_session_id == session.id

    customer_counts = await service.get_unread_counts(customer())
    assert customer_counts.total_unread_count == 0
    assert customer_counts.chat_unread_counts == []


async def test_statistics(service, store, clock):
    seed_job(store, job_id="job-second-000002")
    seed_job(store, job_id="job-third-0000003")
    first = await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)
    await service.send_message(first.id, agent(), "hi")
    await service.complete_session(first.id, CompletedBy.AGENT, user=agent())

    clock.advance(hours=1)
    await service.create_session("job-second-000002", CUSTOMER_ID, AGENT_ID)
    clock.advance(hours=1)
    third = await service.create_session("job-third-0000003", CUSTOMER_ID, AGENT_ID)
    clock.advance(minutes=1)

    stats = await service.get_statistics()
    assert stats.total_sessions == 3
    assert stats.completed_sessions == 1
    assert stats.active_sessions == 2
    assert stats.avg_messages == round((3 + 1 + 1) / 3, 2)

    # End is exclusive
    windowed = await service.get_statistics(T0, third.created_at)
    assert windowed.total_sessions == 2

    clock.advance(hours=23, minutes=30)
    later = await service.get_statistics()
    assert later.expired_sessions == 1
    assert later.active_sessions == 1

    with pytest.raises(InvalidInputError):
        await service.get_statistics(clock.now, T0)


async def test_delete_participant_data(service, session, store):
    await service.send_message(session.id, customer(), "bye")

    sessions, messages = await service.delete_participant_data(Audience.CUSTOMER, CUSTOMER_ID)
    assert (sessions, messages) == (1, 2)
    assert await store.get_session(session.id) is None
    assert await store.get_print_job(JOB_ID) is not None
