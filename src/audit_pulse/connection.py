"""
Persistent notification channel with reconnection.

ConnectionManager owns one duplex channel to the notification endpoint.
It reconnects with a fixed or exponential delay until the attempt budget
is spent, keeps the channel alive with heartbeats, and hands every inbound
frame to an EventDispatcher. Lifecycle changes are dispatched as
"connection" messages so sessions can react without knowing about sockets.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import aiohttp
from pydantic import BaseModel, ValidationError

from audit_pulse.config import BackoffPolicy, ConnectionConfig
from audit_pulse.dispatcher import EventDispatcher
from audit_pulse.events import InboundMessage, MessageType, parse_message

logger = logging.getLogger(__name__)


class ConnectionClosed(Exception):
    """The channel failed while reading or writing."""
    pass


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class Connection(BaseModel):
    """Observable connection record. Mutated only by ConnectionManager."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    attempt: int = 0
    last_error: Optional[str] = None


class Channel(Protocol):
    """Minimal duplex text channel."""

    async def send(self, text: str) -> None: ...

    async def receive(self) -> Optional[str]:
        """Next text frame, or None once the peer has closed."""
        ...

    async def close(self) -> None: ...

    @property
    def closed_cleanly(self) -> bool: ...


Opener = Callable[[str], Awaitable[Channel]]


class AiohttpChannel:
    """Channel backed by an aiohttp websocket client."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws
        self._close_code: Optional[int] = None

    @classmethod
    async def open(cls, url: str, timeout: float = 10.0) -> "AiohttpChannel":
        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(session.ws_connect(url), timeout=timeout)
        except BaseException:
            await session.close()
            raise
        return cls(session, ws)

    async def send(self, text: str) -> None:
        await self._ws.send_str(text)

    async def receive(self) -> Optional[str]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8")
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionClosed(str(self._ws.exception() or "websocket error"))
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                self._close_code = msg.data if msg.type == aiohttp.WSMsgType.CLOSE else self._ws.close_code
                return None

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            await self._session.close()

    @property
    def closed_cleanly(self) -> bool:
        return self._close_code == aiohttp.WSCloseCode.OK


class ScheduledTask:
    """
    One-shot delayed coroutine with guaranteed cancellation.

    Rescheduling replaces any pending run. Cancelling from inside the
    callback itself is a no-op, so a callback may safely reschedule.
    """

    def __init__(self, name: str):
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, delay: float, callback: Callable[[], Awaitable[Any]]) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run(delay, callback), name=self.name)

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, delay: float, callback: Callable[[], Awaitable[Any]]) -> None:
        try:
            await asyncio.sleep(delay)
            await callback()
        finally:
            if self._task is asyncio.current_task():
                self._task = None


class ConnectionManager:
    """
    Connects, monitors and recovers the notification channel.

    Usage:
        manager = ConnectionManager(config.connection, dispatcher)
        await manager.connect()
        ...
        await manager.disconnect()  # releases socket, timers and tasks
    """

    def __init__(
        self,
        config: ConnectionConfig,
        dispatcher: EventDispatcher,
        opener: Optional[Opener] = None,
    ):
        self.config = config
        self.connection = Connection()
        self._dispatcher = dispatcher
        self._opener = opener or self._open_aiohttp
        self._channel: Optional[Channel] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_timer = ScheduledTask("reconnect")
        self._closing = False
        # Bumped by disconnect() so an open still in flight knows it is stale
        self._generation = 0

    async def _open_aiohttp(self, url: str) -> Channel:
        return await AiohttpChannel.open(url, timeout=self.config.open_timeout)

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def attempt(self) -> int:
        return self.connection.attempt

    @property
    def last_error(self) -> Optional[str]:
        return self.connection.last_error

    @property
    def is_connected(self) -> bool:
        return self.connection.state == ConnectionState.CONNECTED

    async def connect(self) -> None:
        """
        Open the channel. No-op while connected or connecting.

        A manual call cancels any pending reconnect and resets the attempt
        counter, so it also revives a manager in the failed state.
        """
        if self.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return
        if not self.config.url:
            logger.info("Channel URL not configured, skipping connection")
            return

        self._reconnect_timer.cancel()
        self._closing = False
        self.connection.attempt = 0
        await self._open(ConnectionState.CONNECTING)

    async def disconnect(self) -> None:
        """Tear down the channel and release every timer and task."""
        self._closing = True
        self._generation += 1
        self._reconnect_timer.cancel()

        await self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        reader, self._reader_task = self._reader_task, None
        await self._cancel_task(reader)

        channel, self._channel = self._channel, None
        if channel is not None:
            await self._close_quietly(channel)

        previous = self.state
        self.connection.attempt = 0
        self._set_state(ConnectionState.DISCONNECTED)
        if previous != ConnectionState.DISCONNECTED:
            logger.info("Channel disconnected (manual)")
            self._notify("disconnected", clean=True)

    async def send_message(self, message: Union[InboundMessage, dict[str, Any]]) -> bool:
        """
        Send a message, filling in the timestamp.

        Returns:
            False if the channel is not connected or the send failed.
        """
        channel = self._channel
        if channel is None or not self.is_connected:
            return False
        if not isinstance(message, InboundMessage):
            message = InboundMessage.model_validate(message)
        try:
            await channel.send(json.dumps(message.to_wire()))
        except Exception as e:
            logger.warning(f"Failed to send '{message.type}' message: {e}")
            return False
        return True

    async def _open(self, state: ConnectionState) -> None:
        self._set_state(state)
        generation = self._generation
        logger.info(f"Attempting channel connection to {self.config.url}")

        try:
            channel = await self._opener(self.config.url)
        except Exception as e:
            if generation != self._generation:
                return
            self._record_error(e)
            self._schedule_reconnect()
            return

        if generation != self._generation:
            await self._close_quietly(channel)
            return

        self._channel = channel
        self.connection.attempt = 0
        self.connection.last_error = None
        self._set_state(ConnectionState.CONNECTED)
        self._reader_task = asyncio.create_task(self._read_loop(channel), name="channel-reader")
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(channel), name="channel-heartbeat")
        logger.info("Channel connected")
        self._notify("connected")

    async def _reconnect(self) -> None:
        logger.info(
            f"Attempting to reconnect... ({self.connection.attempt}/{self.config.max_reconnect_attempts})"
        )
        await self._open(ConnectionState.RECONNECTING)

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return

        if self.config.auto_reconnect and self.connection.attempt < self.config.max_reconnect_attempts:
            self.connection.attempt += 1
            delay = self._delay_for(self.connection.attempt)
            self._set_state(ConnectionState.RECONNECTING)
            logger.warning(
                f"Reconnecting in {delay:.1f}s "
                f"(attempt {self.connection.attempt}/{self.config.max_reconnect_attempts})"
            )
            self._notify("reconnecting", delay=delay)
            self._reconnect_timer.schedule(delay, self._reconnect)
            return

        self._set_state(ConnectionState.FAILED)
        if self.config.auto_reconnect:
            logger.warning("Max reconnection attempts reached, giving up")
        self._notify("failed")

    def _delay_for(self, attempt: int) -> float:
        if self.config.backoff == BackoffPolicy.EXPONENTIAL:
            return min(self.config.max_reconnect_delay, self.config.reconnect_delay * 2 ** (attempt - 1))
        return self.config.reconnect_delay

    async def _read_loop(self, channel: Channel) -> None:
        clean = False
        try:
            while True:
                raw = await channel.receive()
                if raw is None:
                    clean = channel.closed_cleanly
                    break
                self._handle_frame(raw)
        except Exception as e:
            self._record_error(e)
        await self._on_channel_lost(channel, clean)

    def _handle_frame(self, raw: str) -> None:
        try:
            message = parse_message(raw)
        except ValidationError as e:
            logger.error(f"Failed to parse channel message: {e}")
            return
        self._dispatcher.dispatch(message)

    async def _on_channel_lost(self, channel: Channel, clean: bool) -> None:
        if channel is not self._channel:
            return
        self._channel = None
        self._reader_task = None
        await self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        await self._close_quietly(channel)

        logger.info(f"Channel disconnected ({'clean' if clean else 'unclean'} close)")
        self._set_state(ConnectionState.DISCONNECTED)
        self._notify("disconnected", clean=clean)
        if not clean:
            self._schedule_reconnect()

    async def _heartbeat_loop(self, channel: Channel) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            heartbeat = InboundMessage(type=MessageType.HEARTBEAT.value)
            try:
                await channel.send(json.dumps(heartbeat.to_wire()))
            except Exception as e:
                logger.warning(f"Heartbeat failed: {e}")
                return

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    @staticmethod
    async def _close_quietly(channel: Channel) -> None:
        try:
            await channel.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing channel: {e}")

    def _record_error(self, error: Exception) -> None:
        self.connection.last_error = str(error) or type(error).__name__
        logger.warning(f"Channel error: {self.connection.last_error}")
        self._notify("error", error=self.connection.last_error)

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.connection.state:
            logger.debug(f"Connection state {self.connection.state.value} -> {state.value}")
        self.connection.state = state

    def _notify(self, status: str, **extra: Any) -> None:
        data = {
            "status": status,
            "state": self.connection.state.value,
            "attempt": self.connection.attempt,
            **extra,
        }
        self._dispatcher.dispatch(InboundMessage(type=MessageType.CONNECTION.value, data=data))
