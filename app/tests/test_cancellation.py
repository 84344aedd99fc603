"""Tests for CancellationToken — first reason wins, callbacks fire once."""

import asyncio

import pytest

from coderelay.query.cancellation import CancellationToken, CancelReason


def test_first_reason_wins():
    token = CancellationToken()
    assert not token.cancelled
    assert token.reason is None

    assert token.cancel(CancelReason.TIMEOUT) is True
    assert token.cancel(CancelReason.CLIENT_DISCONNECT) is False
    assert token.cancel(CancelReason.ABORTED) is False

    assert token.cancelled
    assert token.reason is CancelReason.TIMEOUT


def test_callbacks_fire_exactly_once():
    token = CancellationToken()
    seen = []
    token.add_callback(seen.append)

    token.cancel(CancelReason.ABORTED)
    token.cancel(CancelReason.TIMEOUT)

    assert seen == [CancelReason.ABORTED]


def test_callback_added_after_cancel_runs_immediately():
    token = CancellationToken()
    token.cancel(CancelReason.CLIENT_DISCONNECT)

    seen = []
    token.add_callback(seen.append)
    assert seen == [CancelReason.CLIENT_DISCONNECT]


def test_failing_callback_does_not_block_others():
    token = CancellationToken()
    seen = []

    def boom(reason):
        raise RuntimeError("nope")

    token.add_callback(boom)
    token.add_callback(seen.append)

    assert token.cancel(CancelReason.ABORTED) is True
    assert seen == [CancelReason.ABORTED]


def test_removed_callback_not_called():
    token = CancellationToken()
    seen = []
    token.add_callback(seen.append)
    token.remove_callback(seen.append)
    token.remove_callback(seen.append)

    token.cancel(CancelReason.ABORTED)
    assert seen == []


def test_link_forwards_reason():
    outer = CancellationToken()
    inner = CancellationToken()
    inner.link(outer)

    outer.cancel(CancelReason.CLIENT_DISCONNECT)
    assert inner.reason is CancelReason.CLIENT_DISCONNECT


def test_unlink_stops_forwarding():
    outer = CancellationToken()
    inner = CancellationToken()
    unlink = inner.link(outer)
    unlink()

    outer.cancel(CancelReason.ABORTED)
    assert not inner.cancelled


def test_linked_token_keeps_its_own_first_reason():
    outer = CancellationToken()
    inner = CancellationToken()
    inner.link(outer)

    inner.cancel(CancelReason.TIMEOUT)
    outer.cancel(CancelReason.ABORTED)
    assert inner.reason is CancelReason.TIMEOUT


@pytest.mark.asyncio
async def test_wait_returns_reason():
    token = CancellationToken()
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    token.cancel(CancelReason.TIMEOUT)
    assert await asyncio.wait_for(waiter, 1) is CancelReason.TIMEOUT
