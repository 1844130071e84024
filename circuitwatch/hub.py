#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Fan-out of pipeline events to any number of subscribers.

The hub owns the subscriber registry and starts its transport lazily, once,
on first use. LogHistory is the bounded, de-duplicated per-mode log view
that UI layers keep.
"""

from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from circuitwatch.debug_logger import DebugLogger, get_logger
from circuitwatch.models import MAX_LOG_HISTORY, HubEvent, LogEntry, Mode
from circuitwatch.transport import LocalEventBus, Transport


Subscriber = Callable[[str, Any], None]
Unsubscribe = Callable[[], None]


class DistributionHub:
    """
    Broadcasts events to subscribers in subscription order.

    Delivery is synchronous. A subscriber that raises is logged and
    skipped; the remaining subscribers still receive the event.

    Attributes:
        transport: The active delivery transport
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        logger: Optional[DebugLogger] = None,
    ) -> None:
        self.transport = transport or LocalEventBus()
        self._logger = logger or get_logger()
        self._subscribers: Dict[int, Subscriber] = {}
        self._next_token = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _ensure_transport(self) -> None:
        if not self.transport.started:
            self.transport.start(self._dispatch)

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """
        Register a callback for every published event.

        Args:
            callback: Called as ``callback(event_name, payload)``

        Returns:
            Function that removes this subscription; safe to call repeatedly
        """
        self._ensure_transport()
        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    def publish(self, event_name: str, payload: Any) -> None:
        """Send an event through the transport to all live subscribers."""
        self._ensure_transport()
        self.transport.send(event_name, payload)

    def _dispatch(self, event_name: str, payload: Any) -> None:
        for token, callback in list(self._subscribers.items()):
            # Skip subscribers removed earlier in this same dispatch
            if token not in self._subscribers:
                continue
            try:
                callback(event_name, payload)
            except Exception as e:
                self._logger.subscriber_error(event_name, f"{type(e).__name__}: {e}")

    async def shutdown(self) -> None:
        """Drop all subscribers and tear down the transport."""
        self._subscribers.clear()
        if self.transport.started:
            await self.transport.close()


class LogHistory:
    """
    Bounded per-mode log view with duplicate suppression.

    An entry whose timestamp and message both match an entry currently
    held for the same mode is dropped. Beyond ``limit`` entries per mode,
    the oldest are evicted.
    """

    def __init__(self, limit: int = MAX_LOG_HISTORY) -> None:
        self.limit = limit
        self._entries: Dict[str, Deque[LogEntry]] = {mode: deque() for mode in Mode.ALL}
        self._keys: Dict[str, Set[tuple]] = {mode: set() for mode in Mode.ALL}

    def add(self, entry: LogEntry) -> bool:
        """
        Record an entry.

        Returns:
            True if stored, False if it was a duplicate
        """
        entries = self._entries.setdefault(entry.mode, deque())
        keys = self._keys.setdefault(entry.mode, set())
        key = entry.dedup_key
        if key in keys:
            return False

        entries.append(entry)
        keys.add(key)
        while len(entries) > self.limit:
            evicted = entries.popleft()
            keys.discard(evicted.dedup_key)
        return True

    def entries(self, mode: str) -> List[LogEntry]:
        """Return entries for a mode, oldest first."""
        return list(self._entries.get(mode, ()))

    def count(self, mode: str) -> int:
        return len(self._entries.get(mode, ()))

    def clear(self, mode: Optional[str] = None) -> None:
        modes = [mode] if mode else list(self._entries)
        for m in modes:
            self._entries.get(m, deque()).clear()
            self._keys.get(m, set()).clear()

    def attach(self, hub: DistributionHub) -> Unsubscribe:
        """Subscribe to a hub's ``log`` events."""

        def on_event(event_name: str, payload: Any) -> None:
            if event_name == HubEvent.LOG and isinstance(payload, LogEntry):
                self.add(payload)

        return hub.subscribe(on_event)
