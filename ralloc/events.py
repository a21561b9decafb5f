"""Allocation lifecycle events.

Delivery is at-least-once: the engine hands events to a publisher after the
ledger commit, and ``RetryingEventPublisher`` keeps retrying a failing
delegate with exponential back-off. Consumers de-duplicate on
``AllocationEvent.dedupe_key``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum

import httpx
from pydantic import BaseModel, Field

from ralloc.db.models import AllocationState
from ralloc.logging import get_logger
from ralloc.metrics import record_event_delivery

logger = get_logger(__name__)


class EventType(str, Enum):
    """Lifecycle event emitted for every ledger change."""

    PROPOSED = "PROPOSED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AMENDED = "AMENDED"
    CANCELLED = "CANCELLED"
    ACTIVATED = "ACTIVATED"
    COMPLETED = "COMPLETED"


class AllocationEvent(BaseModel):
    """Event payload sent to downstream consumers (reporting, analytics)."""

    event_type: EventType
    allocation_id: str
    resource_id: str
    project_id: str
    timestamp: datetime
    actor: str
    state: AllocationState
    prior_state: AllocationState | None = None
    # True only when an allocation that had started is cancelled
    reversal: bool = False
    version: int = Field(default=1, ge=1)

    @property
    def dedupe_key(self) -> tuple[str, str, str]:
        return (self.allocation_id, self.event_type.value, self.timestamp.isoformat())


class EventPublisher(ABC):
    """Sink for lifecycle events."""

    @abstractmethod
    async def publish(self, event: AllocationEvent) -> None:
        """Hand over one event. May raise when the sink is unavailable."""

    async def start(self) -> None:
        """Start background delivery, if any."""

    async def stop(self) -> None:
        """Flush and stop background delivery, if any."""


class InMemoryEventPublisher(EventPublisher):
    """Keeps every published event in memory.

    ``fail_times`` makes the next N publishes raise, to exercise retries.
    """

    def __init__(self, fail_times: int = 0) -> None:
        self.events: list[AllocationEvent] = []
        self.fail_times = fail_times

    async def publish(self, event: AllocationEvent) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("event sink unavailable")
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[AllocationEvent]:
        return [e for e in self.events if e.event_type is event_type]


class WebhookEventPublisher(EventPublisher):
    """POSTs each event as JSON to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def publish(self, event: AllocationEvent) -> None:
        response = await self._client.post(self.url, json=event.model_dump(mode="json"))
        response.raise_for_status()

    async def stop(self) -> None:
        await self._client.aclose()


class RetryingEventPublisher(EventPublisher):
    """Queue in front of a delegate publisher with retry and dead-lettering.

    ``publish`` never blocks on the delegate and never raises; delivery happens
    on a background worker started with ``start``.
    """

    def __init__(
        self,
        delegate: EventPublisher,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.delegate = delegate
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self._queue: asyncio.Queue[AllocationEvent] | None = None
        self._worker: asyncio.Task[None] | None = None
        self.dead_letters: list[AllocationEvent] = []

    @property
    def queue(self) -> asyncio.Queue[AllocationEvent]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    @property
    def pending(self) -> int:
        return self.queue.qsize()

    async def publish(self, event: AllocationEvent) -> None:
        self.queue.put_nowait(event)

    async def start(self) -> None:
        await self.delegate.start()
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="ralloc-event-publisher")

    async def flush(self) -> None:
        """Wait until every queued event was delivered or dead-lettered."""
        await self.queue.join()

    async def stop(self) -> None:
        if self._worker is not None:
            await self.flush()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.delegate.stop()

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self._deliver(event)
            finally:
                self.queue.task_done()

    async def _deliver(self, event: AllocationEvent) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.delegate.publish(event)
            except Exception as exc:
                record_event_delivery(event.event_type.value, "error")
                logger.warning(
                    "event_delivery_failed",
                    event_type=event.event_type.value,
                    allocation_id=event.allocation_id,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.base_delay * 2 ** (attempt - 1))
            else:
                record_event_delivery(event.event_type.value, "delivered")
                return

        self.dead_letters.append(event)
        record_event_delivery(event.event_type.value, "dead_letter")
        logger.error(
            "event_dead_lettered",
            event_type=event.event_type.value,
            allocation_id=event.allocation_id,
            attempts=self.max_attempts,
        )
