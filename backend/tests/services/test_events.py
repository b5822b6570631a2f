"""Tests for the in-process event bus."""

import pytest

from perfwatch.services.events import ConfigChanged, EventBus, StoreWriteFailed


class TestEventBus:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        async def async_handler(event):
            seen.append(("async", event.new))

        bus.subscribe(ConfigChanged, lambda event: seen.append(("sync", event.new)))
        bus.subscribe(ConfigChanged, async_handler)

        await bus.publish(ConfigChanged(old=1, new=2))

        assert seen == [("sync", 2), ("async", 2)]

    @pytest.mark.asyncio
    async def test_delivery_is_by_exact_type(self):
        bus = EventBus()
        seen = []
        bus.subscribe(StoreWriteFailed, seen.append)

        await bus.publish(ConfigChanged(old=1, new=2))

        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, caplog):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(ConfigChanged, broken)
        bus.subscribe(ConfigChanged, seen.append)

        await bus.publish(ConfigChanged(old=1, new=2))

        assert len(seen) == 1
        assert "handler bug" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(ConfigChanged, seen.append)

        unsubscribe()
        unsubscribe()
        await bus.publish(ConfigChanged(old=1, new=2))

        assert seen == []
        assert bus.subscriber_count(ConfigChanged) == 0
