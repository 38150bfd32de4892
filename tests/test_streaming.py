"""Tests for the checkout event stream."""

import asyncio

from artisan_checkout.streaming import (
    EVENT_ADDRESS_CHANGED,
    EVENT_COMPLETED,
    EVENT_DELIVERY_CONFIRMED,
    CheckoutEventStream,
)


async def collect(stream, session_id):
    return [event.event_type async for event in stream.subscribe(session_id)]


class TestCheckoutEventStream:
    async def test_history_replay_stops_at_terminal_event(self, stream):
        await stream.emit("chk_1", EVENT_ADDRESS_CHANGED)
        await stream.emit("chk_1", EVENT_COMPLETED, data={"order_ref": "ord_1"})

        assert await collect(stream, "chk_1") == [EVENT_ADDRESS_CHANGED, EVENT_COMPLETED]

    async def test_live_events_after_replay(self, stream):
        await stream.emit("chk_1", EVENT_ADDRESS_CHANGED)
        consumer = asyncio.create_task(collect(stream, "chk_1"))
        await asyncio.sleep(0)

        await stream.emit("chk_1", EVENT_DELIVERY_CONFIRMED)
        await stream.emit("chk_1", EVENT_COMPLETED)

        assert await asyncio.wait_for(consumer, timeout=1) == [
            EVENT_ADDRESS_CHANGED,
            EVENT_DELIVERY_CONFIRMED,
            EVENT_COMPLETED,
        ]

    async def test_close_ends_subscribers(self, stream):
        consumer = asyncio.create_task(collect(stream, "chk_1"))
        await asyncio.sleep(0)

        stream.close("chk_1")

        assert await asyncio.wait_for(consumer, timeout=1) == []

    async def test_sessions_are_isolated(self, stream):
        await stream.emit("chk_1", EVENT_ADDRESS_CHANGED)
        await stream.emit("chk_2", EVENT_COMPLETED)

        assert [e.event_type for e in stream.get_history("chk_1")] == [EVENT_ADDRESS_CHANGED]
        stream.clear("chk_1")
        assert stream.get_history("chk_1") == []
        assert len(stream.get_history("chk_2")) == 1

    async def test_full_queue_drops_event(self):
        stream = CheckoutEventStream(max_queue_size=1)
        consumer = asyncio.create_task(collect(stream, "chk_1"))
        await asyncio.sleep(0)

        await stream.emit("chk_1", EVENT_ADDRESS_CHANGED)
        await stream.emit("chk_1", EVENT_DELIVERY_CONFIRMED)
        await asyncio.sleep(0)
        stream.close("chk_1")

        assert await asyncio.wait_for(consumer, timeout=1) == [EVENT_ADDRESS_CHANGED]
