"""Metric descriptors, samples, and the channel that carries them."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Literal, Tuple

NAMESPACE = "tf"

ValueType = Literal["gauge", "counter"]


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join non-empty name parts with underscores."""
    return "_".join(part for part in (namespace, subsystem, name) if part)


@dataclass(frozen=True)
class MetricDescriptor:
    """Name, help text, and ordered label schema of a metric."""

    name: str
    help: str
    labels: Tuple[str, ...] = ()
    value_type: ValueType = "gauge"


@dataclass(frozen=True)
class MetricSample:
    """A single data point for a descriptor."""

    descriptor: MetricDescriptor
    value: float
    label_values: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Reject samples whose labels do not match the descriptor."""
        expected = len(self.descriptor.labels)
        if len(self.label_values) != expected:
            raise ValueError(
                f"{self.descriptor.name}: expected {expected} label values, "
                f"got {len(self.label_values)}"
            )
        for label, value in zip(self.descriptor.labels, self.label_values):
            if value is None:
                raise ValueError(f"{self.descriptor.name}: label {label} is unset")


_CLOSED = object()


class SampleChannel:
    """Many-producer, single-consumer queue of metric samples.

    ``send`` blocks while the channel is full, so a cancelled producer unwinds
    at its next send. ``close`` marks the end of the stream; the consumer
    still receives everything queued before it.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, sample: MetricSample) -> None:
        if self._closed:
            raise RuntimeError("send on closed channel")
        await self._queue.put(sample)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # A full queue wakes no waiting consumer; it sees _closed after draining.
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[MetricSample]:
        return self

    async def __anext__(self) -> MetricSample:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item
