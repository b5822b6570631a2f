"""Tests for the runtime configuration endpoints."""

import pytest


class TestConfigApi:
    @pytest.mark.asyncio
    async def test_get_config(self, client):
        config = (await client.get("/config")).json()

        assert config["collectors"]["wait_stats"]["counter_kind"] == "monotonic"
        assert config["alert_rules"]["CPU"]["threshold"] == 80
        assert config["retention"]["raw_samples"]["max_age_days"] == 7

    @pytest.mark.asyncio
    async def test_update_collector_interval(self, client, runtime):
        response = await client.patch("/config/collectors/blocking", json={"interval_minutes": 3})

        assert response.status_code == 200
        assert response.json()["interval_minutes"] == 3
        assert runtime.config.current.collector("blocking").interval_minutes == 3

    @pytest.mark.asyncio
    async def test_invalid_interval_is_rejected(self, client, runtime):
        response = await client.patch("/config/collectors/blocking", json={"interval_minutes": 0})

        assert response.status_code == 422
        assert runtime.config.current.collector("blocking").interval_minutes == 1

    @pytest.mark.asyncio
    async def test_unknown_collector_is_404(self, client):
        response = await client.patch("/config/collectors/perf_counters", json={"enabled": False})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_alert_rule_and_retention(self, client):
        rule = await client.patch("/config/alert-rules/CPU", json={"threshold": 90})
        retention = await client.patch("/config/retention/metric_deltas", json={"max_age_days": 30})
        unknown = await client.patch("/config/alert-rules/DiskSpace", json={"threshold": 90})

        assert rule.json()["threshold"] == 90
        assert retention.json()["max_age_days"] == 30
        assert unknown.status_code == 404

    @pytest.mark.asyncio
    async def test_scheduler_update_resizes(self, client, runtime):
        response = await client.patch("/config/scheduler", json={"max_concurrency": 2})

        assert response.json()["max_concurrency"] == 2
        assert runtime.config.current.scheduler.max_concurrency == 2

    @pytest.mark.asyncio
    async def test_silence_server(self, client, runtime):
        server = (await client.post("/servers", json={"name": "sql01", "connection_ref": "a"})).json()

        silenced = await client.put(f"/config/servers/{server['id']}/silence")
        unsilenced = await client.delete(f"/config/servers/{server['id']}/silence")
        missing = await client.put("/config/servers/999/silence")

        assert silenced.json()["silenced_server_ids"] == [server["id"]]
        assert unsilenced.status_code == 204
        assert runtime.config.current.alerting.silenced_server_ids == frozenset()
        assert missing.status_code == 404
