"""
Synthetic collector adapter.

Produces plausible counters for every default category so the service can be
run end to end (demo, API tests) without a real database server. Cumulative
categories keep growing per server; gauges wander around a baseline.
"""

import asyncio
import random
from collections import defaultdict
from datetime import UTC, datetime

from perfwatch.collectors.base import RawSample, ServerHandle
from perfwatch.core.exceptions import ConnectivityError, UnsupportedOnThisServerVersion

WAIT_TYPES = (
    "THREADPOOL",
    "RESOURCE_SEMAPHORE",
    "RESOURCE_SEMAPHORE_QUERY_COMPILE",
    "PAGEIOLATCH_SH",
    "CXPACKET",
    "WRITELOG",
    "LCK_M_X",
)

DATABASE_FILES = ("master.data", "tempdb.data", "tempdb.log", "app.data", "app.log")

JOBS = ("nightly_backup", "index_maintenance", "etl_load")


class SimulatedAdapter:
    def __init__(
        self,
        seed: int | None = None,
        failure_rate: float = 0.0,
        latency_seconds: float = 0.0,
        unsupported: frozenset[str] = frozenset(),
    ):
        self._random = random.Random(seed)
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self.unsupported = unsupported
        self._cumulative: dict[tuple[int, str], dict[str, float]] = defaultdict(dict)

    async def collect(self, server: ServerHandle, category: str) -> RawSample:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if category in self.unsupported:
            raise UnsupportedOnThisServerVersion(f"{category} is not available on {server.name}")
        if self._random.random() < self.failure_rate:
            raise ConnectivityError(f"simulated network error talking to {server.name}")

        generator = getattr(self, f"_{category}", None)
        counters = generator(server) if generator else {}
        return RawSample(
            server_id=server.id,
            category=category,
            collected_at=datetime.now(UTC),
            counters=counters,
        )

    def _grow(self, server: ServerHandle, category: str, increments: dict[str, float]) -> dict[str, float]:
        totals = self._cumulative[(server.id, category)]
        for name, increment in increments.items():
            totals[name] = totals.get(name, 0.0) + max(increment, 0.0)
        return dict(totals)

    def _wait_stats(self, server: ServerHandle) -> dict[str, float]:
        increments = {}
        for wait_type in WAIT_TYPES:
            tasks = self._random.randint(0, 500)
            increments[f"{wait_type}.waiting_tasks_count"] = tasks
            increments[f"{wait_type}.wait_time_ms"] = tasks * self._random.uniform(0.5, 40.0)
            increments[f"{wait_type}.signal_wait_time_ms"] = tasks * self._random.uniform(0.0, 2.0)
        return self._grow(server, "wait_stats", increments)

    def _cpu_utilization(self, server: ServerHandle) -> dict[str, float]:
        sql_cpu = self._random.uniform(5, 70)
        other_cpu = self._random.uniform(0, 15)
        return {
            "sql_cpu_percent": round(sql_cpu, 1),
            "other_cpu_percent": round(other_cpu, 1),
            "cpu_percent": round(min(sql_cpu + other_cpu, 100.0), 1),
        }

    def _memory_stats(self, server: ServerHandle) -> dict[str, float]:
        target = 16384.0
        return {
            "target_server_memory_mb": target,
            "total_server_memory_mb": round(target * self._random.uniform(0.85, 1.0)),
            "buffer_pool_mb": round(target * self._random.uniform(0.6, 0.8)),
            "page_life_expectancy": self._random.randint(300, 5000),
        }

    def _file_io_stats(self, server: ServerHandle) -> dict[str, float]:
        increments = {}
        for file_name in DATABASE_FILES:
            reads = self._random.randint(0, 2000)
            writes = self._random.randint(0, 800)
            increments[f"{file_name}.num_of_reads"] = reads
            increments[f"{file_name}.num_of_writes"] = writes
            increments[f"{file_name}.io_stall_read_ms"] = reads * self._random.uniform(0.1, 8.0)
            increments[f"{file_name}.io_stall_write_ms"] = writes * self._random.uniform(0.1, 4.0)
        return self._grow(server, "file_io_stats", increments)

    def _perfmon_stats(self, server: ServerHandle) -> dict[str, float]:
        batches = self._random.randint(1000, 20000)
        return self._grow(
            server,
            "perfmon_stats",
            {
                "batch_requests": batches,
                "sql_compilations": batches * self._random.uniform(0.01, 0.1),
                "sql_recompilations": batches * self._random.uniform(0.0, 0.01),
            },
        )

    def _query_snapshots(self, server: ServerHandle) -> dict[str, float]:
        counters: dict[str, float] = {}
        for _ in range(self._random.randint(0, 6)):
            session_id = self._random.randint(51, 400)
            counters[f"session:{session_id}.elapsed_seconds"] = round(self._random.expovariate(1 / 30), 1)
        counters["active_requests"] = len(counters)
        return counters

    def _blocking(self, server: ServerHandle) -> dict[str, float]:
        blocked = self._random.choice((0, 0, 0, 0, 1, 2))
        return {
            "blocked_sessions": blocked,
            "longest_wait_ms": blocked * self._random.randint(1000, 60000),
        }

    def _deadlocks(self, server: ServerHandle) -> dict[str, float]:
        return self._grow(server, "deadlocks", {"deadlock_count": self._random.choice((0, 0, 0, 0, 0, 1))})

    def _tempdb_stats(self, server: ServerHandle) -> dict[str, float]:
        user_objects = self._random.uniform(50, 2000)
        internal_objects = self._random.uniform(10, 800)
        version_store = self._random.uniform(0, 500)
        capacity = 8192.0
        used = user_objects + internal_objects + version_store
        return {
            "user_object_mb": round(user_objects, 1),
            "internal_object_mb": round(internal_objects, 1),
            "version_store_mb": round(version_store, 1),
            "used_percent": round(100 * used / capacity, 1),
        }

    def _running_jobs(self, server: ServerHandle) -> dict[str, float]:
        counters: dict[str, float] = {}
        for job in JOBS:
            if self._random.random() < 0.3:
                average = self._random.uniform(60, 1800)
                counters[f"{job}.average_seconds"] = round(average)
                counters[f"{job}.current_seconds"] = round(average * self._random.uniform(0.1, 2.0))
        return counters

    def _server_config(self, server: ServerHandle) -> dict[str, float]:
        return {
            "max_degree_of_parallelism": 8,
            "cost_threshold_for_parallelism": 50,
            "max_server_memory_mb": 16384,
        }
