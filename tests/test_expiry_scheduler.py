import asyncio

from printchat.models.chat import SessionStatus
from printchat.services.expiry_scheduler import ExpirySweeper


async def test_run_once_expires_due_sessions(service, session, store, clock):
    sweeper = ExpirySweeper(service, interval_seconds=60)
    assert await sweeper.run_once() == 0

    clock.advance(hours=25)
    assert await sweeper.run_once() == 1
    assert (await store.get_session(session.id)).status == SessionStatus.EXPIRED


async def test_run_once_survives_store_failure(service, monkeypatch):
    async def broken(now, notice_text):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(service.store, "expire_sessions", broken)
    assert await ExpirySweeper(service).run_once() == 0


async def test_start_and_stop(service, session, store, clock):
    clock.advance(hours=25)
    sweeper = ExpirySweeper(service, interval_seconds=3600)

    sweeper.start()
    assert sweeper.is_running
    for _ in range(20):
        if (await store.get_session(session.id)).status == SessionStatus.EXPIRED:
            break
        await asyncio.sleep(0)

    await sweeper.stop()
    assert not sweeper.is_running
    assert (await store.get_session(session.id)).status == SessionStatus.EXPIRED
