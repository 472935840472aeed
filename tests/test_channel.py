"""Tests for EventChannel ordered, single-pass delivery."""

from __future__ import annotations

import asyncio

import pytest

from oac.execution.channel import EventChannel


async def _collect(channel: EventChannel[int]) -> list[int]:
    return [item async for item in channel]


class TestEventChannel:
    """Buffered and waiting-reader delivery."""

    @pytest.mark.asyncio
    async def test_buffered_items_then_close(self):
        """Items pushed before iteration are delivered in order, then iteration stops."""
        channel: EventChannel[int] = EventChannel()
        for i in range(3):
            channel.push(i)
        channel.close()

        assert await _collect(channel) == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_waiting_reader_receives_push(self):
        """A reader blocked on an empty channel wakes up on push."""
        channel: EventChannel[str] = EventChannel()
        reader = asyncio.ensure_future(_collect(channel))
        await asyncio.sleep(0)

        channel.push("a")
        channel.push("b")
        channel.close()

        assert await asyncio.wait_for(reader, timeout=1.0) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_reader(self):
        """close() ends iteration for a reader that is waiting."""
        channel: EventChannel[int] = EventChannel()
        reader = asyncio.ensure_future(_collect(channel))
        await asyncio.sleep(0)

        channel.close()

        assert await asyncio.wait_for(reader, timeout=1.0) == []

    @pytest.mark.asyncio
    async def test_push_after_close_is_dropped(self):
        """Items pushed after close never reach the reader."""
        channel: EventChannel[int] = EventChannel()
        channel.push(1)
        channel.close()
        channel.push(2)

        assert await _collect(channel) == [1]
        assert channel.closed

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        """Closing twice has no extra effect."""
        channel: EventChannel[int] = EventChannel()
        channel.close()
        channel.close()

        assert await _collect(channel) == []


class TestEventChannelFail:
    """fail() delivers buffered items, then raises."""

    @pytest.mark.asyncio
    async def test_fail_after_buffered_items(self):
        """Buffered items come first, then the failure is raised."""
        channel: EventChannel[int] = EventChannel()
        channel.push(1)
        channel.push(2)
        channel.fail(RuntimeError("boom"))

        received = []
        with pytest.raises(RuntimeError, match="boom"):
            async for item in channel:
                received.append(item)
        assert received == [1, 2]

    @pytest.mark.asyncio
    async def test_fail_wakes_waiting_reader(self):
        """A waiting reader gets the error raised."""
        channel: EventChannel[int] = EventChannel()
        reader = asyncio.ensure_future(_collect(channel))
        await asyncio.sleep(0)

        channel.fail(ValueError("bad"))

        with pytest.raises(ValueError, match="bad"):
            await asyncio.wait_for(reader, timeout=1.0)

    @pytest.mark.asyncio
    async def test_fail_after_close_is_ignored(self):
        """Once closed, a later fail() does not turn the end into an error."""
        channel: EventChannel[int] = EventChannel()
        channel.close()
        channel.fail(RuntimeError("late"))

        assert await _collect(channel) == []
