"""
Collector adapter boundary.

An adapter turns one (server, category) pair into a RawSample of named
numeric counters. Everything vendor specific lives behind this interface;
the rest of perfwatch only sees RawSample values and the CollectorError
hierarchy from perfwatch.core.exceptions.
"""

import importlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol, runtime_checkable


class CounterKind(str, Enum):
    MONOTONIC = "monotonic"  # cumulative since server start, delta is meaningful
    POINT_IN_TIME = "point_in_time"  # a gauge, stored as-is


@dataclass(frozen=True)
class ServerHandle:
    """What an adapter is told about a server. Never the ORM row."""

    id: int
    name: str
    connection_ref: str


@dataclass(frozen=True)
class RawSample:
    server_id: int
    category: str
    collected_at: datetime
    counters: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if self.collected_at.tzinfo is None:
            raise ValueError("RawSample.collected_at must be timezone-aware")


@runtime_checkable
class CollectorAdapter(Protocol):
    async def collect(self, server: ServerHandle, category: str) -> RawSample:
        """
        Take one snapshot of a category's counters.

        Raises:
            ConnectivityError, CollectorPermissionError, QueryTimeoutError,
            UnsupportedOnThisServerVersion
        """
        ...


def load_adapter(path: str) -> CollectorAdapter:
    """
    Build the adapter named by a "module:attribute" import path.

    The attribute may be a class or a zero-argument factory function.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Collector adapter path must look like 'module:attribute', got '{path}'")

    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    adapter = factory()
    if not isinstance(adapter, CollectorAdapter):
        raise TypeError(f"{path} did not produce an object with an async collect() method")
    return adapter
