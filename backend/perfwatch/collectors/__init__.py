from perfwatch.collectors.base import (
    CollectorAdapter,
    CounterKind,
    RawSample,
    ServerHandle,
    load_adapter,
)

__all__ = [
    "CollectorAdapter",
    "CounterKind",
    "RawSample",
    "ServerHandle",
    "load_adapter",
]
