#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Main TUI application for the circuit monitor.

Provides live monitoring of both operating modes with:
- Connection status per mode
- Circuit table (status, path, expiry, in-use marker)
- Live log with color-coded levels and duplicate suppression
"""

from datetime import datetime, timezone
from typing import Any, Optional

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import (
    DataTable,
    Footer,
    Header,
    RichLog,
    Static,
    TabbedContent,
    TabPane,
)

from circuitwatch.config import WatchConfig, load_config
from circuitwatch.controller import ModeController, build_hub
from circuitwatch.hub import DistributionHub, LogHistory, Unsubscribe
from circuitwatch.models import Circuit, HubEvent, LogEntry, Mode


# Textual Rich markup colors for log levels
LEVEL_COLORS = {
    "debug": "dim",
    "notice": "cyan",
    "warn": "yellow",
    "error": "bold red",
}

CIRCUIT_COLUMNS = ("Circuit", "Status", "Path", "Expires", "In use")


def format_entry_rich(entry: LogEntry) -> str:
    """
    Format a log entry as a Rich-markup string for Textual widgets.

    The message is escaped; daemon lines contain ``[notice]``-style
    markers that would otherwise be read as markup.
    """
    ts = entry.timestamp
    time_part = ts.split("T")[1][:8] if "T" in ts else ts[:8]
    text = f"[{time_part}] {entry.level[:6].ljust(6)} {entry.message}"
    color = LEVEL_COLORS.get(entry.level, "")
    if color:
        return f"[{color}]{escape(text)}[/{color}]"
    return escape(text)


def _format_path(circuit: Circuit) -> str:
    hops = []
    for i, fingerprint in enumerate(circuit.relay_fingerprints):
        relay = circuit.relays[i] if i < len(circuit.relays) else None
        label = relay.nickname if relay is not None and relay.nickname else fingerprint[:8]
        hops.append(label)
    return " > ".join(hops) or "-"


def _format_expiry(circuit: Circuit) -> str:
    if circuit.expires_at is None:
        return "-"
    if circuit.is_expired:
        return "[dim]expired[/dim]"
    return circuit.expires_at.astimezone().strftime("%H:%M:%S")


class CircuitMonitorApp(App):
    """
    Textual application showing circuits and logs for both modes.

    Client mode is resumed on mount; relay mode starts paused.
    """

    TITLE = "Circuit Monitor"
    CSS_PATH = "styles/app.tcss"

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("f1", "switch_tab('client')", "Client"),
        Binding("f2", "switch_tab('relay')", "Relay"),
        Binding("c", "toggle_mode('client')", "Pause/resume client"),
        Binding("r", "toggle_mode('relay')", "Pause/resume relay"),
    ]

    def __init__(
        self,
        config: Optional[WatchConfig] = None,
        hub: Optional[DistributionHub] = None,
        controller: Optional[ModeController] = None,
        resume_on_mount: bool = True,
    ) -> None:
        """
        Initialize the app.

        Args:
            config: Resolved configuration (loaded from env/settings if None)
            hub: Distribution hub (built from config if None)
            controller: Mode controller (built around the hub if None)
            resume_on_mount: Resume client mode once mounted
        """
        super().__init__()
        self.config = config or load_config()
        self.hub = hub or (controller.hub if controller is not None else build_hub(self.config))
        self.controller = controller or ModeController(self.hub, config=self.config)
        self.history = LogHistory(limit=self.config.history_limit)
        self.resume_on_mount = resume_on_mount
        self._unsubscribe: Optional[Unsubscribe] = None
        self._refresh_timer = None

    def compose(self) -> ComposeResult:
        """Compose the app layout."""
        yield Header()

        with TabbedContent(initial=Mode.CLIENT):
            for mode in Mode.ALL:
                with TabPane(mode.capitalize(), id=mode):
                    yield Static("paused", id=f"{mode}-status", classes="mode-status disconnected")
                    yield DataTable(id=f"{mode}-circuits", classes="circuit-table")
                    yield RichLog(id=f"{mode}-log", classes="mode-log", highlight=False, markup=True)

        yield Footer()

    async def on_mount(self) -> None:
        """Wire up the hub and resume client mode."""
        for mode in Mode.ALL:
            table = self.query_one(f"#{mode}-circuits", DataTable)
            table.add_columns(*CIRCUIT_COLUMNS)
            self._update_status(mode)

        self._unsubscribe = self.hub.subscribe(self._on_hub_event)
        if self.resume_on_mount:
            await self.controller.resume(Mode.CLIENT)
        self._update_subtitle()

        # Expiry is derived from the clock, so redraw periodically
        self._refresh_timer = self.set_interval(5.0, self._on_refresh_timer)

    async def on_unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.controller.shutdown()

    # -------------------------------------------------------------------------
    # Hub events
    # -------------------------------------------------------------------------

    def _on_hub_event(self, event_name: str, payload: Any) -> None:
        if event_name == HubEvent.LOG:
            if self.history.add(payload):
                self.query_one(f"#{payload.mode}-log", RichLog).write(format_entry_rich(payload))

        elif event_name == HubEvent.CIRCUITS_UPDATED:
            self._refresh_circuits(payload["mode"])

        elif event_name == HubEvent.CIRCUIT_IN_USE_CHANGED:
            self._refresh_circuits(payload["mode"])

        elif event_name == HubEvent.CONNECTION_CHANGED:
            detail = payload.get("detail", "")
            self._update_status(payload["mode"], detail)
            if not payload["connected"] and detail not in ("", "paused"):
                self.notify(f"{payload['mode']}: {detail}", severity="warning")
            self._update_subtitle()

    def _refresh_circuits(self, mode: str) -> None:
        """Redraw a mode's circuit table from its store."""
        table = self.query_one(f"#{mode}-circuits", DataTable)
        store = self.controller.pipeline(mode).store
        now = datetime.now(timezone.utc)
        in_use = store.circuit_in_use(now)
        in_use_id = in_use.id if in_use is not None else None

        table.clear()
        for circuit in store.ready_circuits(now):
            table.add_row(
                str(circuit.id),
                circuit.status.value,
                _format_path(circuit),
                _format_expiry(circuit),
                "[bold green]*[/bold green]" if circuit.id == in_use_id else "",
                key=str(circuit.id),
            )

    def _update_status(self, mode: str, detail: str = "") -> None:
        status = self.query_one(f"#{mode}-status", Static)
        pipeline = self.controller.pipeline(mode)
        if pipeline.connected:
            source = str(pipeline.log_path) if pipeline.file_backed else self.hub.transport.name
            status.update(f"connected: {source}")
            status.set_class(True, "connected")
            status.set_class(False, "disconnected")
        else:
            status.update(f"disconnected: {detail}" if detail and detail != "paused" else "paused")
            status.set_class(False, "connected")
            status.set_class(True, "disconnected")

    def _on_refresh_timer(self) -> None:
        for mode in Mode.ALL:
            self._refresh_circuits(mode)
        self._update_subtitle()

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def action_switch_tab(self, tab_id: str) -> None:
        """Switch to a specific tab."""
        tabbed = self.query_one(TabbedContent)
        tabbed.active = tab_id

    async def action_toggle_mode(self, mode: str) -> None:
        """Pause an active mode, or resume a paused one."""
        if self.controller.is_active(mode):
            self.controller.pause(mode)
            self.notify(f"{mode}: paused")
        else:
            await self.controller.resume(mode)
            if self.controller.is_active(mode):
                self.notify(f"{mode}: resumed")
        self._update_status(mode)
        self._update_subtitle()

    def _get_dynamic_subtitle(self) -> str:
        """Build dynamic subtitle showing mode states."""
        parts = []
        for mode in Mode.ALL:
            state = "on" if self.controller.is_active(mode) else "paused"
            parts.append(f"{mode}: {state}")
        parts.append(datetime.now().strftime("%H:%M:%S"))
        return " | ".join(parts)

    def _update_subtitle(self) -> None:
        """Update the app subtitle with current status."""
        self.sub_title = self._get_dynamic_subtitle()


def run_app(config: Optional[WatchConfig] = None) -> None:
    """
    Run the TUI application.

    Args:
        config: Resolved configuration (loaded from env/settings if None)
    """
    app = CircuitMonitorApp(config=config)
    app.run()


if __name__ == "__main__":
    run_app()
