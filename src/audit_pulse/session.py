"""
Per-job coordination façade.

A JobSession binds one audit job to its lifecycle:

    idle -> starting -> in_progress -> completed | errored
                  \\-----------------\\-> cancelled

It issues the start call, picks the event source once (wire when the
channel is connected, simulated otherwise), folds every event through the
reducer and releases the source exactly once when the job ends.
"""

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from audit_pulse.api import AuditApiClient, StartAuditRequest
from audit_pulse.config import SimulationConfig
from audit_pulse.connection import ConnectionManager
from audit_pulse.dispatcher import EventDispatcher
from audit_pulse.events import AuditEvent, CompleteEvent, ErrorEvent, InboundMessage, MessageType
from audit_pulse.reducer import JobProgressView, Stages, apply, initial_stages
from audit_pulse.sources import EventSource, SimulatedEventSource, WireEventSource
from audit_pulse.stages import AUDIT_STAGES, StageDescriptor

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL_STATES = (JobState.COMPLETED, JobState.ERRORED, JobState.CANCELLED)

UpdateListener = Callable[[JobProgressView], Any]


def local_job_id() -> str:
    """Job id minted client-side when no backend is configured."""
    return f"audit_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class JobSession:
    """
    Lifecycle of one audit job.

    Usage:
        session = JobSession(connection, dispatcher, api=client)
        session.on_update(render)
        await session.start(StartAuditRequest.for_url("https://example.com"))
        view = await session.wait()
    """

    def __init__(
        self,
        connection: ConnectionManager,
        dispatcher: EventDispatcher,
        api: Optional[AuditApiClient] = None,
        simulation: Optional[SimulationConfig] = None,
        descriptors: Sequence[StageDescriptor] = AUDIT_STAGES,
    ):
        self._connection = connection
        self._dispatcher = dispatcher
        self._api = api
        self._simulation = simulation or SimulationConfig()
        self._descriptors = tuple(descriptors)

        self.state = JobState.IDLE
        self.job_id: Optional[str] = None
        self.stages: Stages = initial_stages(self._descriptors)
        self.result: Optional[dict[str, Any]] = None
        self.error: Optional[str] = None
        self.source: Optional[EventSource] = None

        self._task: Optional[asyncio.Task] = None
        self._listeners: list[UpdateListener] = []
        self._logger = logger

    @property
    def view(self) -> JobProgressView:
        return JobProgressView.from_stages(self.stages)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def source_kind(self) -> Optional[str]:
        return self.source.kind if self.source is not None else None

    def on_update(self, listener: UpdateListener) -> Callable[[], None]:
        """Register a listener for the view after every accepted event."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def start(self, request: StartAuditRequest) -> str:
        """
        Start the job and begin following its progress.

        Returns:
            The job id.

        Raises:
            AuditStartError: If the backend refuses the start call. The
                session returns to idle and may be started again.
            RuntimeError: If the session was already started.
        """
        if self.state != JobState.IDLE:
            raise RuntimeError(f"Session already {self.state.value}")

        self.state = JobState.STARTING
        try:
            job_id = await self._obtain_job_id(request)
        except BaseException:
            if self.state == JobState.STARTING:
                self.state = JobState.IDLE
            raise

        if self.state != JobState.STARTING:
            # Cancelled while the start call was in flight
            return job_id

        self.job_id = job_id
        self._logger = logger.getChild(f"job.{job_id}")
        self.source = self._select_source(job_id)
        self.source.open()
        self.state = JobState.IN_PROGRESS
        self._task = asyncio.create_task(self._drive(self.source), name=f"audit-{job_id}")
        self._notify()

        if isinstance(self.source, WireEventSource):
            await self._connection.send_message(
                InboundMessage(type=MessageType.SUBSCRIBE_AUDIT.value, job_id=job_id)
            )
        return job_id

    async def wait(self) -> JobProgressView:
        """Wait for the job to reach a terminal state and return the final view."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                if self.state != JobState.CANCELLED:
                    raise
        return self.view

    def cancel(self) -> bool:
        """
        Cancel the job.

        Subscriptions and timers are released before this returns; any
        event or tick arriving afterwards is ignored.

        Returns:
            False if the job had already reached a terminal state.
        """
        if self.is_terminal:
            return False
        self.state = JobState.CANCELLED
        self._release()

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._logger.info(f"Cancelled audit {self.job_id}")
        return True

    async def _obtain_job_id(self, request: StartAuditRequest) -> str:
        if self._api is None:
            job_id = local_job_id()
            logger.info(f"No audit backend configured, using local job id {job_id}")
            return job_id
        return await self._api.start_audit(request)

    def _select_source(self, job_id: str) -> EventSource:
        if self._connection.is_connected:
            self._logger.info("Following progress over the notification channel")
            return WireEventSource(self._dispatcher, job_id)

        self._logger.info("Channel not connected, simulating progress")
        return SimulatedEventSource(
            self._descriptors,
            tick_interval=self._simulation.tick_interval,
            step=self._simulation.step,
            result={"jobId": job_id, "simulated": True},
        )

    async def _drive(self, source: EventSource) -> None:
        try:
            async for event in source:
                self._apply(event)
                if self.is_terminal:
                    break
        finally:
            self._release()

    def _apply(self, event: AuditEvent) -> None:
        if self.state != JobState.IN_PROGRESS:
            return

        stages = apply(self.stages, event)
        if isinstance(event, CompleteEvent):
            self.result = event.result
            self.state = JobState.COMPLETED
            self._logger.info("Audit completed")
        elif isinstance(event, ErrorEvent):
            self.error = event.error
            self.state = JobState.ERRORED
            self._logger.warning(f"Audit failed: {event.error}")
        elif stages is self.stages:
            return

        self.stages = stages
        if self.is_terminal:
            self._release()
        self._notify()

    def _release(self) -> None:
        if self.source is not None:
            self.source.close()

    def _notify(self) -> None:
        view = self.view
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                self._logger.exception("Progress listener raised")
