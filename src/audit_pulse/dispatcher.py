"""
Publish/subscribe dispatch of inbound messages.

Listeners register under a bare message type, a (type, job id) pair, or
the wildcard key. Dispatch is synchronous and iterates over a snapshot of
the registry, so listeners may subscribe or unsubscribe from inside a
callback without affecting the pass in flight.
"""

import itertools
import logging
from typing import Callable, Optional

from audit_pulse.events import InboundMessage

logger = logging.getLogger(__name__)

Callback = Callable[[InboundMessage], object]
Unsubscribe = Callable[[], None]

WILDCARD = "*"


def event_key(message_type: str, job_id: Optional[str] = None) -> str:
    """Registry key for a bare type or a job-scoped type."""
    if job_id is None:
        return message_type
    return f"{message_type}:{job_id}"


class _Subscription:
    __slots__ = ("key", "callback", "seq", "active")

    def __init__(self, key: str, callback: Callback, seq: int):
        self.key = key
        self.callback = callback
        self.seq = seq
        self.active = True


class EventDispatcher:
    """
    Routes messages to listeners keyed by type and, optionally, job id.

    Usage:
        dispatcher = EventDispatcher()
        unsubscribe = dispatcher.subscribe_scoped("audit_progress", "42", on_progress)
        dispatcher.dispatch(message)
        unsubscribe()  # safe to call again
    """

    def __init__(self):
        self._registry: dict[str, list[_Subscription]] = {}
        self._seq = itertools.count()
        self.last_message: Optional[InboundMessage] = None

    def subscribe(self, message_type: str, callback: Callback) -> Unsubscribe:
        """Register callback for every message of message_type ("*" for all)."""
        return self._add(event_key(message_type), callback)

    def subscribe_scoped(self, message_type: str, job_id: str, callback: Callback) -> Unsubscribe:
        """Register callback for messages matching both message_type and job_id."""
        return self._add(event_key(message_type, job_id), callback)

    def _add(self, key: str, callback: Callback) -> Unsubscribe:
        subscription = _Subscription(key, callback, next(self._seq))
        self._registry.setdefault(key, []).append(subscription)

        def unsubscribe() -> None:
            self._remove(subscription)

        return unsubscribe

    def _remove(self, subscription: _Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        # Replace rather than mutate so snapshots held by a dispatch pass stay intact
        remaining = [s for s in self._registry.get(subscription.key, []) if s is not subscription]
        if remaining:
            self._registry[subscription.key] = remaining
        else:
            self._registry.pop(subscription.key, None)

    def dispatch(self, message: InboundMessage) -> int:
        """
        Deliver message to every matching listener.

        Listeners run in registration order. A listener that raises is
        logged and skipped; the remaining listeners still run.

        Returns:
            Number of listeners that completed without raising.
        """
        self.last_message = message

        keys = [event_key(message.type)]
        if message.job_id is not None:
            keys.append(event_key(message.type, message.job_id))
        if message.type != WILDCARD:
            keys.append(WILDCARD)

        snapshot: list[_Subscription] = []
        for key in keys:
            snapshot.extend(self._registry.get(key, ()))
        snapshot.sort(key=lambda s: s.seq)

        delivered = 0
        for subscription in snapshot:
            try:
                subscription.callback(message)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Listener for '{subscription.key}' raised while handling '{message.type}'"
                )
        return delivered

    def subscriber_count(self, key: Optional[str] = None) -> int:
        """Number of active subscriptions, overall or for one registry key."""
        if key is not None:
            return len(self._registry.get(key, ()))
        return sum(len(entries) for entries in self._registry.values())

    def clear(self) -> None:
        """Drop every subscription."""
        for entries in self._registry.values():
            for subscription in entries:
                subscription.active = False
        self._registry.clear()
