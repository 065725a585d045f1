"""
Application-scoped realtime context.

Created once at startup, torn down explicitly. Owns the single shared
connection and its dispatcher, and exposes the subscription API that
consumers (UIs, CLIs) use instead of touching either directly.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional, Union

from audit_pulse.api import AuditApiClient, StartAuditRequest
from audit_pulse.config import Config
from audit_pulse.connection import ConnectionManager, ConnectionState, Opener
from audit_pulse.dispatcher import Callback, EventDispatcher, Unsubscribe
from audit_pulse.events import ErrorData, InboundMessage, MessageType, ProgressData
from audit_pulse.session import JobSession, UpdateListener

logger = logging.getLogger(__name__)


class RealtimeContext:
    """
    Shared connection, dispatcher and job factory.

    Usage:
        async with realtime_context(config) as context:
            unsubscribe = context.subscribe_to_progress(job_id, on_progress)
            session = context.session()
            await session.start(request)
    """

    def __init__(
        self,
        config: Config,
        opener: Optional[Opener] = None,
        api: Optional[AuditApiClient] = None,
    ):
        self.config = config
        self.dispatcher = EventDispatcher()
        self.connection = ConnectionManager(config.connection, self.dispatcher, opener=opener)
        if api is None and config.api.base_url:
            api = AuditApiClient(config.api.base_url, token=config.api.token, timeout=config.api.timeout)
        self.api = api
        self._sessions: list[JobSession] = []

    async def start(self) -> None:
        """Open the channel. Failure degrades to simulated progress, it does not raise."""
        await self.connection.connect()

    async def close(self) -> None:
        """Cancel live sessions, release the connection and drop every listener."""
        for session in self._sessions:
            session.cancel()
        self._sessions.clear()
        await self.connection.disconnect()
        self.dispatcher.clear()

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def connection_error(self) -> Optional[str]:
        if self.connection.state == ConnectionState.FAILED:
            return self.connection.last_error or "Unable to establish connection"
        return self.connection.last_error

    @property
    def last_message(self) -> Optional[InboundMessage]:
        return self.dispatcher.last_message

    def subscribe(self, message_type: str, callback: Callback) -> Unsubscribe:
        """Listen to every message of a type ("*" for all messages)."""
        return self.dispatcher.subscribe(message_type, callback)

    def subscribe_to_progress(self, job_id: str, callback: Callable[[ProgressData], Any]) -> Unsubscribe:
        def handler(message: InboundMessage) -> None:
            callback(ProgressData.model_validate(message.data))

        return self.dispatcher.subscribe_scoped(MessageType.AUDIT_PROGRESS.value, job_id, handler)

    def subscribe_to_complete(self, job_id: str, callback: Callable[[dict[str, Any]], Any]) -> Unsubscribe:
        def handler(message: InboundMessage) -> None:
            callback(message.data)

        return self.dispatcher.subscribe_scoped(MessageType.AUDIT_COMPLETE.value, job_id, handler)

    def subscribe_to_error(self, job_id: str, callback: Callable[[ErrorData], Any]) -> Unsubscribe:
        def handler(message: InboundMessage) -> None:
            callback(ErrorData.model_validate(message.data))

        return self.dispatcher.subscribe_scoped(MessageType.AUDIT_ERROR.value, job_id, handler)

    async def send_message(self, message: Union[InboundMessage, dict[str, Any]]) -> bool:
        """Send over the channel; False when not connected."""
        return await self.connection.send_message(message)

    def session(self) -> JobSession:
        """Create a JobSession bound to this context."""
        self._sessions = [s for s in self._sessions if not s.is_terminal]
        session = JobSession(
            self.connection,
            self.dispatcher,
            api=self.api,
            simulation=self.config.simulation,
        )
        self._sessions.append(session)
        return session

    async def run_audit(
        self,
        request: StartAuditRequest,
        on_update: Optional[UpdateListener] = None,
    ) -> JobSession:
        """Start a job and wait for it to finish."""
        session = self.session()
        if on_update is not None:
            session.on_update(on_update)
        await session.start(request)
        await session.wait()
        return session


@asynccontextmanager
async def realtime_context(
    config: Config,
    opener: Optional[Opener] = None,
    api: Optional[AuditApiClient] = None,
) -> AsyncIterator[RealtimeContext]:
    """
    Context manager owning a RealtimeContext for its whole lifetime.

    The connection is opened on entry and torn down on exit, whatever
    the exit path.
    """
    context = RealtimeContext(config, opener=opener, api=api)
    await context.start()
    try:
        yield context
    finally:
        await context.close()
