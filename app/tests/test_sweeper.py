"""Tests for ExpirySweeper — periodic cleanup driven by an injected ticker."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from coderelay.session.models import SessionStatus
from coderelay.session.sweeper import ExpirySweeper

from conftest import ManualTicker, wait_for


@pytest.mark.asyncio
async def test_tick_removes_expired_session(manager, store, clock):
    session = await manager.create_session()
    ticker = ManualTicker()
    sweeper = ExpirySweeper(manager, ticker=ticker)
    await sweeper.start()
    try:
        clock.advance(3601)
        ticker.tick()
        assert await wait_for(lambda: sweeper.cycles == 1)

        for _ in range(200):
            if await store.get_session(session.session_id) is None:
                break
            await asyncio.sleep(0.01)
        assert await store.get_session(session.session_id) is None
        assert sweeper.running
    finally:
        await sweeper.stop()


@pytest.mark.asyncio
async def test_no_tick_no_sweep(manager, store, clock):
    session = await manager.create_session()
    sweeper = ExpirySweeper(manager, ticker=ManualTicker())
    await sweeper.start()
    try:
        clock.advance(3601)
        await wait_for(lambda: False, attempts=5)
        assert sweeper.cycles == 0
        assert await store.get_session(session.session_id) is not None
    finally:
        await sweeper.stop()


@pytest.mark.asyncio
async def test_ended_sessions_untouched(manager, store, clock):
    session = await manager.create_session()
    await store.update_session(session.session_id, status=SessionStatus.ENDED.value)
    clock.advance(3601)

    sweeper = ExpirySweeper(manager, ticker=ManualTicker())
    assert await sweeper.run_cycle() == 0
    assert await store.get_session(session.session_id) is not None


@pytest.mark.asyncio
async def test_failed_cycle_does_not_stop_loop():
    manager = MagicMock()
    manager.sweep_once = AsyncMock(side_effect=[RuntimeError("db locked"), 2])
    ticker = ManualTicker()
    sweeper = ExpirySweeper(manager, ticker=ticker)
    await sweeper.start()
    try:
        ticker.tick()
        assert await wait_for(lambda: sweeper.cycles == 1)
        ticker.tick()
        assert await wait_for(lambda: manager.sweep_once.await_count == 2)

        assert sweeper.failures == 1
        assert sweeper.running
    finally:
        await sweeper.stop()

    assert not sweeper.running


@pytest.mark.asyncio
async def test_start_is_idempotent(manager):
    sweeper = ExpirySweeper(manager, ticker=ManualTicker())
    await sweeper.start()
    first = sweeper._task
    await sweeper.start()
    assert sweeper._task is first
    await sweeper.stop()
