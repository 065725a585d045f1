"""Shared fixtures: an in-memory channel standing in for the websocket."""

import asyncio
import json
from typing import Any, Callable, Optional, Union

import pytest

from audit_pulse.config import ConnectionConfig
from audit_pulse.connection import ConnectionClosed


class FakeChannel:
    """In-memory duplex channel. Tests push frames in and read `sent` out."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._clean = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionClosed("channel closed")
        self.sent.append(json.loads(text))

    async def receive(self) -> Optional[str]:
        item = await self._incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    @property
    def closed_cleanly(self) -> bool:
        return self._clean

    def push(self, payload: Union[dict[str, Any], str]) -> None:
        self._incoming.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def drop(self, clean: bool = False) -> None:
        self._clean = clean
        self._incoming.put_nowait(None)

    def fail(self, error: Exception) -> None:
        self._incoming.put_nowait(error)


class FakeOpener:
    """Opener that fails a configured number of times before succeeding."""

    def __init__(self, failures: int = 0, always_fail: bool = False):
        self.failures = failures
        self.always_fail = always_fail
        self.calls = 0
        self.channels: list[FakeChannel] = []

    async def __call__(self, url: str) -> FakeChannel:
        self.calls += 1
        if self.always_fail or self.calls <= self.failures:
            raise OSError("connection refused")
        channel = FakeChannel()
        self.channels.append(channel)
        return channel

    @property
    def channel(self) -> FakeChannel:
        return self.channels[-1]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def wait_until():
    """Async helper: await wait_until(lambda: condition)."""
    return _wait_until


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def connection_config():
    """Fast connection settings: no reconnect delay, long heartbeat."""
    return ConnectionConfig(
        url="ws://test/ws",
        reconnect_delay=0,
        max_reconnect_attempts=3,
        heartbeat_interval=3600,
    )


@pytest.fixture
def make_opener():
    """Build a FakeOpener with custom failure behaviour."""
    return FakeOpener
