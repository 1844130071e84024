#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Delivery transports behind the distribution hub.

A transport is started once with a ``deliver`` callback, carries events
to it, and is closed on shutdown:

- LocalEventBus: in-process bus for a desktop shell; whatever is sent is
  delivered synchronously on the calling thread.
- PushStreamTransport: network client for the daemon's HTTP backend.
  Consumes its per-mode Server-Sent Events log streams and serves the
  recent-history endpoint used to prime state after (re)connecting.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import httpx

from circuitwatch.debug_logger import DebugLogger, get_logger
from circuitwatch.models import (
    HubEvent,
    LogEntry,
    SourceUnavailableError,
    TransportError,
)
from circuitwatch.parsing import entry_from_payload


DeliverCallback = Callable[[str, Any], None]

STREAM_PATH = "/api/eltord/logs/stream/{mode}"
HISTORY_PATH = "/api/eltord/logs/{mode}"
LOG_SSE_EVENTS = ("log", "message")
STREAM_LAGGED = "stream_lagged"


class Transport(ABC):
    """
    Event delivery capability used by the hub.

    Attributes:
        name: Short transport name for display and logging
        remote: Whether log lines arrive over the network rather than
            from local files
    """

    name = "abstract"
    remote = False

    def __init__(self) -> None:
        self._deliver: Optional[DeliverCallback] = None

    @property
    def started(self) -> bool:
        return self._deliver is not None

    def start(self, deliver: DeliverCallback) -> None:
        """Set up the transport; ``deliver`` receives every event."""
        if self._deliver is not None:
            raise TransportError(f"{self.name} transport already started")
        self._deliver = deliver

    @abstractmethod
    def send(self, event_name: str, payload: Any) -> None:
        """Publish an event through the transport."""

    def open_stream(self, mode: str) -> None:
        """Begin receiving pushed log lines for a mode."""

    def close_stream(self, mode: str) -> None:
        """Stop receiving pushed log lines for a mode."""

    async def fetch_recent(self, mode: str) -> List[LogEntry]:
        """Return the daemon's recent log entries for a mode."""
        return []

    async def close(self) -> None:
        self._deliver = None


class LocalEventBus(Transport):
    """In-process event bus; delivery is synchronous."""

    name = "local"

    def send(self, event_name: str, payload: Any) -> None:
        if self._deliver is None:
            raise TransportError("local event bus is not started")
        self._deliver(event_name, payload)


# =============================================================================
# Server-Sent Events
# =============================================================================


@dataclass
class SSEEvent:
    """One dispatched Server-Sent Event."""

    event: str = "message"
    data: str = ""
    id: Optional[str] = None


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    """
    Group a stream of text lines into Server-Sent Events.

    Comment lines (``:keep-alive``) are skipped. An event is dispatched on
    a blank line; a trailing event with no terminating blank line is
    dropped, as the SSE format requires.
    """
    event_name: Optional[str] = None
    event_id: Optional[str] = None
    data_lines: List[str] = []

    async for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if data_lines:
                yield SSEEvent(event=event_name or "message", data="\n".join(data_lines), id=event_id)
            event_name = None
            data_lines = []
            continue
        if line.startswith(":"):
            continue

        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "event":
            event_name = value
        elif field_name == "data":
            data_lines.append(value)
        elif field_name == "id":
            event_id = value


class PushStreamTransport(Transport):
    """
    Network transport for the daemon's HTTP backend.

    A mode's streaming GET runs only between ``open_stream`` and
    ``close_stream``. Pushed log entries are delivered as ``daemon-log``
    events; a failed or ended stream is delivered once as a
    ``stream-error`` event. There is no automatic reconnect: the stream
    is requested again on the next ``open_stream``.
    """

    name = "stream"
    remote = True

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[DebugLogger] = None,
    ) -> None:
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._logger = logger or get_logger()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closing: Set[asyncio.Task] = set()

    def stream_url(self, mode: str) -> str:
        return self.base_url + STREAM_PATH.format(mode=mode)

    def history_url(self, mode: str) -> str:
        return self.base_url + HISTORY_PATH.format(mode=mode)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # No read timeout: the stream idles between log lines
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
            self._owns_client = True
        return self._client

    def stream_open(self, mode: str) -> bool:
        """Whether a stream request for the mode is still running."""
        task = self._tasks.get(mode)
        return task is not None and not task.done()

    def open_stream(self, mode: str) -> None:
        """
        Request the mode's log stream unless one is already running.

        Raises:
            TransportError: If not started or no event loop is running
        """
        if self._deliver is None:
            raise TransportError("push stream transport is not started")
        if self.stream_open(mode):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise TransportError("push stream transport needs a running event loop") from e
        self._tasks[mode] = loop.create_task(self._consume(mode))

    def close_stream(self, mode: str) -> None:
        """Cancel the mode's stream request; no ``stream-error`` follows."""
        task = self._tasks.pop(mode, None)
        if task is not None and not task.done():
            task.cancel()
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    def send(self, event_name: str, payload: Any) -> None:
        # Outbound events go to local subscribers only
        if self._deliver is None:
            raise TransportError("push stream transport is not started")
        self._deliver(event_name, payload)

    async def _consume(self, mode: str) -> None:
        url = self.stream_url(mode)
        try:
            async with self._get_client().stream(
                "GET", url, headers={"Accept": "text/event-stream"}
            ) as response:
                response.raise_for_status()
                async for sse in iter_sse_events(response.aiter_lines()):
                    self._handle_sse(mode, sse)
            detail = "stream closed by server"
        except httpx.HTTPError as e:
            detail = f"{type(e).__name__}: {e}"

        self._logger.error("log_stream", detail, {"mode": mode, "url": url})
        if self._deliver is not None:
            self._deliver(HubEvent.STREAM_ERROR, SourceUnavailableError(mode, detail))

    def _handle_sse(self, mode: str, sse: SSEEvent) -> None:
        if sse.event not in LOG_SSE_EVENTS or self._deliver is None:
            return
        if STREAM_LAGGED in sse.data:
            self._logger.error("log_stream", STREAM_LAGGED, {"mode": mode})
            return
        entry = entry_from_payload(sse.data, default_mode=mode)
        if entry is not None:
            self._deliver(HubEvent.DAEMON_LOG, entry)

    async def fetch_recent(self, mode: str) -> List[LogEntry]:
        """
        Fetch the daemon's buffered recent log entries for a mode.

        Raises:
            SourceUnavailableError: If the backend cannot be reached or
                answers with an error status
        """
        url = self.history_url(mode)
        try:
            response = await self._get_client().get(url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SourceUnavailableError(mode, f"{type(e).__name__}: {e}") from e

        raw_entries = data.get("logs", []) if isinstance(data, dict) else data
        if not isinstance(raw_entries, list):
            return []
        entries = []
        for raw in raw_entries:
            entry = entry_from_payload(raw, default_mode=mode)
            if entry is not None:
                entries.append(entry)
        return entries

    async def close(self) -> None:
        tasks = list(self._tasks.values()) + list(self._closing)
        self._tasks.clear()
        self._closing.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        await super().close()
