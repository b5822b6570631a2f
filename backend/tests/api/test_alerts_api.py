"""Tests for the alert views."""

import pytest

from conftest import T0
from perfwatch.collectors.base import RawSample


class TestAlertsApi:
    @pytest.mark.asyncio
    async def test_active_and_history(self, client, runtime):
        await runtime.alerts.evaluate_cycle(
            1, [], [RawSample(1, "cpu_utilization", T0, {"cpu_percent": 97.0})], T0
        )
        await runtime.dispatcher.drain()

        active = (await client.get("/alerts/active")).json()
        history = (await client.get("/alerts/history", params={"kind": "CPU"})).json()
        other_server = (await client.get("/alerts/active", params={"server_id": 2})).json()

        assert [a["dedup_key"] for a in active] == ["1:CPU:"]
        assert active[0]["details"]["cpu_percent"] == 97.0
        assert len(history) == 1
        assert history[0]["notification_status"] == "sent"
        assert other_server == []
