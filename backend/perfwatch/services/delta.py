"""
Delta engine.

Turns consecutive raw samples of the same (server, category) into
per-interval MetricDelta rows.

- Point-in-time counters pass through unchanged.
- Monotonic counters emit current - previous. The first observation of a
  counter emits nothing and becomes the baseline.
- A monotonic counter that went down was reset (service restart,
  wraparound): the row is written with delta 0 and is_valid False, and the
  new value becomes the baseline.

Interval bounds are the two samples' collection times. Cadence drifts, so
consumers should divide by the elapsed seconds rather than assume a window.
"""

import logging
from collections.abc import Iterable

from perfwatch.collectors.base import CounterKind, RawSample
from perfwatch.models.metrics import MetricDelta, RawSampleRow

logger = logging.getLogger(__name__)


def compute_delta(
    previous: RawSample | None,
    current: RawSample,
    counter_kind: CounterKind,
) -> list[MetricDelta]:
    """Deltas for one sample against the previous sample of the same server and category."""
    if counter_kind == CounterKind.POINT_IN_TIME:
        interval_start = previous.collected_at if previous is not None else None
        return [
            MetricDelta(
                server_id=current.server_id,
                category=current.category,
                counter_name=name,
                interval_start=interval_start,
                interval_end=current.collected_at,
                delta_value=float(value),
                is_valid=True,
            )
            for name, value in current.counters.items()
        ]

    if previous is None:
        return []

    deltas = []
    for name, value in current.counters.items():
        if name not in previous.counters:
            # New counter (e.g. a wait type seen for the first time): baseline only
            continue

        before = previous.counters[name]
        if value >= before:
            delta_value = float(value - before)
            is_valid = True
        else:
            logger.info(
                "Counter reset on server %s %s/%s: %s -> %s",
                current.server_id,
                current.category,
                name,
                before,
                value,
            )
            delta_value = 0.0
            is_valid = False

        deltas.append(
            MetricDelta(
                server_id=current.server_id,
                category=current.category,
                counter_name=name,
                interval_start=previous.collected_at,
                interval_end=current.collected_at,
                delta_value=delta_value,
                is_valid=is_valid,
            )
        )
    return deltas


class DeltaEngine:
    """
    Owns the last-sample cache, keyed by (server_id, category).

    compute() reads the cached baseline without touching it; the caller
    calls advance() once the resulting rows are durably stored, so a failed
    write leaves the old baseline in place and the next interval covers the
    gap instead of losing it.
    """

    def __init__(self):
        self._last: dict[tuple[int, str], RawSample] = {}

    def __len__(self) -> int:
        return len(self._last)

    def baseline(self, server_id: int, category: str) -> RawSample | None:
        return self._last.get((server_id, category))

    def compute(self, sample: RawSample, counter_kind: CounterKind) -> list[MetricDelta]:
        return compute_delta(self.baseline(sample.server_id, sample.category), sample, counter_kind)

    def advance(self, sample: RawSample) -> None:
        key = (sample.server_id, sample.category)
        previous = self._last.get(key)
        if previous is not None and previous.collected_at > sample.collected_at:
            logger.warning(
                "Ignoring out-of-order sample for server %s %s (%s older than baseline %s)",
                sample.server_id,
                sample.category,
                sample.collected_at.isoformat(),
                previous.collected_at.isoformat(),
            )
            return
        self._last[key] = sample

    def evict_server(self, server_id: int) -> int:
        keys = [key for key in self._last if key[0] == server_id]
        for key in keys:
            del self._last[key]
        if keys:
            logger.debug("Evicted %d cached baselines for server %s", len(keys), server_id)
        return len(keys)

    def seed(self, rows: Iterable[RawSampleRow]) -> int:
        """Restore baselines from persisted samples so a restart costs no interval."""
        count = 0
        for row in rows:
            self.advance(
                RawSample(
                    server_id=row.server_id,
                    category=row.category,
                    collected_at=row.collection_time,
                    counters=dict(row.counters or {}),
                )
            )
            count += 1
        if count:
            logger.info("Seeded %d delta baselines from the store", count)
        return count
