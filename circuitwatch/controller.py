#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Mode controller for the client and relay pipelines.

Each mode runs its own chain (reader -> parser -> store -> hub) and can be
paused and resumed without touching the other. Both start paused.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from circuitwatch.config import TRANSPORT_STREAM, WatchConfig
from circuitwatch.debug_logger import DebugLogger, get_logger
from circuitwatch.hub import DistributionHub, Unsubscribe
from circuitwatch.models import (
    ApplyResult,
    HubEvent,
    LogEntry,
    Mode,
    SourceUnavailableError,
)
from circuitwatch.parsing import ParserState, entry_from_line, parse_line
from circuitwatch.store import CircuitStore
from circuitwatch.tail import StreamReader, TailReader
from circuitwatch.transport import LocalEventBus, PushStreamTransport


class ModePipeline:
    """
    The pipeline for one mode.

    File-backed when ``log_path`` is set, otherwise fed by ``daemon-log``
    events arriving through the hub's transport.

    Attributes:
        mode: 'client' or 'relay'
        store: Circuit records for this mode
        active: Whether lines are currently being processed
        connected: Connection indicator for the source
    """

    def __init__(
        self,
        mode: str,
        hub: DistributionHub,
        log_path: Optional[Path] = None,
        hop_count: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[DebugLogger] = None,
    ) -> None:
        self.mode = mode
        self.hub = hub
        self.log_path = log_path
        self._logger = logger or get_logger()
        self.store = CircuitStore(mode=mode, hop_count=hop_count, clock=clock, logger=self._logger)
        self.parser_state = ParserState()
        self.active = False
        self.connected = False
        self.reader: Optional[TailReader] = None
        self.stream_reader: Optional[StreamReader] = None
        self._generation = 0

    @property
    def file_backed(self) -> bool:
        return self.log_path is not None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, from_start: bool = False) -> None:
        """Set up the reader and begin forwarding. No-op if already active."""
        if self.active:
            return
        self.active = True
        self._generation += 1
        generation = self._generation
        self.parser_state.reset()

        if self.file_backed:
            reader = TailReader(
                self.log_path,
                on_line=self.handle_line,
                on_error=self.on_source_error,
                mode=self.mode,
                logger=self._logger,
            )
            try:
                reader.start(from_start=from_start)
            except SourceUnavailableError as e:
                self.on_source_error(e)
                return
            self.reader = reader
            self._logger.mode_change(self.mode, "resumed", str(self.log_path))
            self.set_connected(True, str(self.log_path))
            return

        self.stream_reader = StreamReader(self.handle_entry, mode=self.mode)
        # A stream that ended while paused is requested again here
        self.hub.transport.open_stream(self.mode)
        try:
            with self._logger.timer("fetch_recent", {"mode": self.mode}):
                recent = await self.hub.transport.fetch_recent(self.mode)
        except SourceUnavailableError as e:
            if generation == self._generation:
                self.on_source_error(e)
            return

        if generation != self._generation:
            # Paused while the history request was in flight
            return

        self.stream_reader.open()
        self._logger.mode_change(self.mode, "resumed", self.hub.transport.name)
        self.set_connected(True, self.hub.transport.name)
        for entry in recent:
            self.handle_entry(entry)

    def stop(self, detail: str = "paused") -> None:
        """Tear down the reader. Safe to call when already stopped."""
        self._generation += 1
        if self.reader is not None:
            self.reader.stop()
            self.reader = None
        if self.stream_reader is not None:
            self.stream_reader.close()
            self.stream_reader = None
            self.hub.transport.close_stream(self.mode)
        if self.active:
            self.active = False
            self._logger.mode_change(self.mode, "paused", detail)
        self.set_connected(False, detail)

    def on_source_error(self, error: SourceUnavailableError) -> None:
        """Mark the source disconnected; reconnecting is up to the caller."""
        self._logger.error("source", error.detail, {"mode": self.mode})
        was_connected = self.connected
        self.stop(detail=error.detail)
        if not was_connected:
            # Never connected; still surface why
            self.hub.publish(
                HubEvent.CONNECTION_CHANGED,
                {"mode": self.mode, "connected": False, "detail": error.detail},
            )

    def set_connected(self, connected: bool, detail: str = "") -> None:
        if connected == self.connected:
            return
        self.connected = connected
        self._logger.connection_change(self.mode, connected, detail)
        self.hub.publish(
            HubEvent.CONNECTION_CHANGED,
            {"mode": self.mode, "connected": connected, "detail": detail},
        )

    # -------------------------------------------------------------------------
    # Line processing
    # -------------------------------------------------------------------------

    def feed_stream(self, entry: LogEntry) -> None:
        """Offer a pushed entry to this mode's stream reader."""
        if self.stream_reader is not None:
            self.stream_reader.feed(entry)

    def handle_line(self, line: str) -> None:
        """Process one raw line read from the log file."""
        if not self.active:
            return
        self.handle_entry(entry_from_line(line, self.mode))

    def handle_entry(self, entry: LogEntry) -> None:
        """Publish the entry, then fold any signal it carries into the store."""
        if not self.active:
            return
        self.hub.publish(HubEvent.LOG, entry)

        signal = parse_line(entry.message, self.parser_state, entry.timestamp_dt, self._logger)
        if signal is None:
            return
        self._notify(self.store.apply(signal))

    def _notify(self, result: ApplyResult) -> None:
        if result.announced:
            self.hub.publish(
                HubEvent.CIRCUITS_UPDATED,
                {"mode": self.mode, "circuits": self.store.ready_circuits()},
            )
        if result.in_use_changed:
            self.hub.publish(
                HubEvent.CIRCUIT_IN_USE_CHANGED,
                {"mode": self.mode, "circuit": self.store.circuit_in_use()},
            )


class ModeController:
    """
    Supervises the client and relay pipelines.

    Log files are only used with a local transport; with a remote one
    both modes read the pushed stream.
    """

    def __init__(
        self,
        hub: DistributionHub,
        config: Optional[WatchConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[DebugLogger] = None,
    ) -> None:
        self.hub = hub
        self.config = config or WatchConfig()
        self._logger = logger or get_logger()
        self._pipelines: Dict[str, ModePipeline] = {}
        for mode in Mode.ALL:
            log_path = None if hub.transport.remote else self.config.log_path(mode)
            self._pipelines[mode] = ModePipeline(
                mode,
                hub,
                log_path=log_path,
                hop_count=self.config.hop_count,
                clock=clock,
                logger=self._logger,
            )
        self._unsubscribe: Optional[Unsubscribe] = None

    def pipeline(self, mode: str) -> ModePipeline:
        try:
            return self._pipelines[mode]
        except KeyError:
            raise ValueError(f"Unknown mode: {mode!r} (expected one of {Mode.ALL})") from None

    def is_active(self, mode: str) -> bool:
        return self.pipeline(mode).active

    def is_connected(self, mode: str) -> bool:
        return self.pipeline(mode).connected

    def _ensure_routing(self) -> None:
        """Route transport-level events to the pipelines (once)."""
        if self._unsubscribe is None:
            self._unsubscribe = self.hub.subscribe(self._route)

    def _route(self, event_name: str, payload: Any) -> None:
        if event_name == HubEvent.DAEMON_LOG and isinstance(payload, LogEntry):
            pipeline = self._pipelines.get(payload.mode)
            if pipeline is not None:
                pipeline.feed_stream(payload)
        elif event_name == HubEvent.STREAM_ERROR and isinstance(payload, SourceUnavailableError):
            pipeline = self._pipelines.get(payload.mode)
            if pipeline is not None and pipeline.active:
                pipeline.on_source_error(payload)

    async def resume(self, mode: str, from_start: bool = False) -> None:
        """
        Start delivering events for a mode.

        Re-entrant calls while the mode is active are no-ops.

        Args:
            mode: 'client' or 'relay'
            from_start: Read a log file from its beginning instead of its end
        """
        pipeline = self.pipeline(mode)
        if pipeline.active:
            return
        self._ensure_routing()
        await pipeline.start(from_start=from_start)

    def pause(self, mode: str) -> None:
        """Stop delivering events for a mode; the other mode is unaffected."""
        self.pipeline(mode).stop()

    async def shutdown(self) -> None:
        """Pause both modes and tear down the hub."""
        for mode in Mode.ALL:
            self.pause(mode)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.hub.shutdown()


def build_hub(config: WatchConfig, logger: Optional[DebugLogger] = None) -> DistributionHub:
    """Create a hub with the transport selected by ``config.transport``."""
    if config.transport == TRANSPORT_STREAM:
        transport = PushStreamTransport(config.api_url, logger=logger)
    else:
        transport = LocalEventBus()
    return DistributionHub(transport=transport, logger=logger)
