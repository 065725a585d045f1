"""
Event sources feeding a job's reducer.

A job reads its events through one EventSource, chosen once when the job
starts: WireEventSource when the channel is connected, otherwise
SimulatedEventSource. Both yield the same ProgressEvent / CompleteEvent /
ErrorEvent shapes, so whoever folds them cannot tell the sources apart.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Optional, Sequence

from pydantic import ValidationError

from audit_pulse.dispatcher import EventDispatcher
from audit_pulse.events import (
    JOB_EVENT_TYPES,
    AuditEvent,
    CompleteEvent,
    ErrorEvent,
    InboundMessage,
    MessageType,
    event_from_message,
)
from audit_pulse.reducer import simulated_events, simulated_tick_count
from audit_pulse.stages import AUDIT_STAGES, StageDescriptor

logger = logging.getLogger(__name__)

CONNECTION_LOST = "connection lost"


class EventSource(ABC):
    """
    Lazy, finite sequence of reducer events for one job.

    open() acquires whatever the source needs, close() releases it
    synchronously and is safe to call more than once. Iterate with
    `async for event in source`.
    """

    kind: str = "abstract"

    def open(self) -> None:
        """Acquire resources. Called once before iteration."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release resources and end any iteration in progress."""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[AuditEvent]:
        """Yield events until a terminal event or close()."""


class WireEventSource(EventSource):
    """Events received over the notification channel for one job."""

    kind = "wire"

    def __init__(self, dispatcher: EventDispatcher, job_id: str):
        self.job_id = job_id
        self._dispatcher = dispatcher
        self._queue: asyncio.Queue[Optional[AuditEvent]] = asyncio.Queue()
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def is_open(self) -> bool:
        return bool(self._unsubscribers)

    def open(self) -> None:
        if self._unsubscribers:
            return
        self._queue = asyncio.Queue()
        for message_type in JOB_EVENT_TYPES:
            self._unsubscribers.append(
                self._dispatcher.subscribe_scoped(message_type, self.job_id, self._on_job_message)
            )
        self._unsubscribers.append(
            self._dispatcher.subscribe(MessageType.CONNECTION.value, self._on_connection_message)
        )

    def close(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()
        if unsubscribers:
            self._queue.put_nowait(None)

    def _on_job_message(self, message: InboundMessage) -> None:
        try:
            event = event_from_message(message)
        except ValidationError as e:
            logger.error(f"Dropping malformed '{message.type}' message for job {self.job_id}: {e}")
            return
        if event is not None:
            self._queue.put_nowait(event)

    def _on_connection_message(self, message: InboundMessage) -> None:
        # Unclean drops are retried by the connection layer. A clean close or
        # manual disconnect is never followed by a reconnect, so it ends the job
        # just like an exhausted retry budget.
        status = message.data.get("status")
        if status == "failed" or (status == "disconnected" and message.data.get("clean")):
            self._queue.put_nowait(ErrorEvent(error=CONNECTION_LOST))

    async def __aiter__(self) -> AsyncIterator[AuditEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if isinstance(event, (CompleteEvent, ErrorEvent)):
                return


class SimulatedEventSource(EventSource):
    """
    Timer-driven stand-in for the channel.

    Emits one event from simulated_events() per tick. Every iteration
    restarts the schedule from stage 0. Once closed, a tick that was
    already sleeping yields nothing.
    """

    kind = "simulated"

    def __init__(
        self,
        descriptors: Sequence[StageDescriptor] = AUDIT_STAGES,
        tick_interval: float = 0.2,
        step: int = 10,
        result: Optional[dict[str, Any]] = None,
    ):
        self.descriptors = tuple(descriptors)
        self.tick_interval = tick_interval
        self.step = step
        self.result = result
        self.ticks = 0
        self._closed = False

    @property
    def expected_ticks(self) -> int:
        return simulated_tick_count(self.descriptors, self.step)

    def open(self) -> None:
        self._closed = False

    def close(self) -> None:
        self._closed = True

    async def __aiter__(self) -> AsyncIterator[AuditEvent]:
        self.ticks = 0
        for event in simulated_events(self.descriptors, self.step, self.result):
            await asyncio.sleep(self.tick_interval)
            if self._closed:
                return
            self.ticks += 1
            yield event
