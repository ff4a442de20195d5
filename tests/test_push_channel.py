'''
Tests for ledgerline.infrastructure.push_channel.InMemoryPushChannel.
'''

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from ledgerline.core.domain.events import PositionRemoved, PushEvent
from ledgerline.infrastructure.push_channel import InMemoryPushChannel, PushChannel

_TS = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _removed(portfolio_id: str, position_id: str) -> PositionRemoved:

    return PositionRemoved(portfolio_id=portfolio_id, timestamp=_TS, position_id=position_id)


async def _drain() -> None:

    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_satisfies_protocol() -> None:

    assert isinstance(InMemoryPushChannel(), PushChannel)


@pytest.mark.asyncio
async def test_delivery_is_scoped_and_deferred() -> None:

    channel = InMemoryPushChannel()
    seen: list[PushEvent] = []
    await channel.subscribe('pf-1', seen.append)

    channel.publish(_removed('pf-1', 'pos-1'))
    channel.publish(_removed('pf-2', 'pos-2'))
    assert seen == []

    await _drain()
    assert [e.position_id for e in seen] == ['pos-1']


@pytest.mark.asyncio
async def test_unsubscribe() -> None:

    channel = InMemoryPushChannel()
    seen: list[PushEvent] = []
    unsubscribe = await channel.subscribe('pf-1', seen.append)
    assert channel.subscriber_count('pf-1') == 1

    await unsubscribe()
    await unsubscribe()
    channel.publish(_removed('pf-1', 'pos-1'))
    await _drain()

    assert seen == []
    assert channel.subscriber_count('pf-1') == 0


@pytest.mark.asyncio
async def test_pause_holds_events_in_order() -> None:

    channel = InMemoryPushChannel()
    seen: list[PushEvent] = []
    await channel.subscribe('pf-1', seen.append)

    channel.pause()
    channel.publish(_removed('pf-1', 'pos-1'))
    channel.publish(_removed('pf-1', 'pos-2'))
    await _drain()
    assert seen == []

    channel.resume()
    await _drain()
    assert [e.position_id for e in seen] == ['pos-1', 'pos-2']


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others() -> None:

    channel = InMemoryPushChannel()
    seen: list[PushEvent] = []

    def broken(event: PushEvent) -> None:
        msg = 'handler bug'
        raise RuntimeError(msg)

    await channel.subscribe('pf-1', broken)
    await channel.subscribe('pf-1', seen.append)

    channel.publish(_removed('pf-1', 'pos-1'))
    await _drain()

    assert len(seen) == 1
