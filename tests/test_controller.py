#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Tests for the mode controller and per-mode pipelines.

Run with: pytest tests/test_controller.py -v
"""

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from circuitwatch.config import TRANSPORT_STREAM, WatchConfig
from circuitwatch.controller import ModeController, build_hub
from circuitwatch.hub import DistributionHub
from circuitwatch.models import Circuit, HubEvent, LogEntry, Mode, SourceUnavailableError
from circuitwatch.transport import LocalEventBus, PushStreamTransport

from conftest import built_envelope


class ScriptedBus(LocalEventBus):
    """Local bus whose recent history is scripted per mode."""

    def __init__(self, recent=None, gate: asyncio.Event = None):
        super().__init__()
        self.recent = recent or {}
        self.gate = gate
        self.fetches = 0

    async def fetch_recent(self, mode):
        self.fetches += 1
        if self.gate is not None:
            await self.gate.wait()
        return list(self.recent.get(mode, []))


class FailingBus(LocalEventBus):
    async def fetch_recent(self, mode):
        raise SourceUnavailableError(mode, "backend unreachable")


def _entry(message: str, mode: str = Mode.CLIENT, timestamp: str = "2026-01-06T10:00:00Z") -> LogEntry:
    return LogEntry(timestamp=timestamp, level="info", message=message, source="stdout", mode=mode)


async def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.02)
    return True


@pytest.fixture
def hub() -> DistributionHub:
    return DistributionHub(transport=ScriptedBus())


@pytest.fixture
def controller(hub, clock) -> ModeController:
    return ModeController(hub, config=WatchConfig(), clock=clock)


# =============================================================================
# Pushed log entries (local bus)
# =============================================================================


class TestEndToEnd:
    """Envelope line in, circuit notifications out."""

    @pytest.mark.asyncio
    async def test_circuit_built_envelope(self, hub, controller, recorder):
        hub.subscribe(recorder)
        await controller.resume(Mode.CLIENT)

        hub.publish(HubEvent.DAEMON_LOG, _entry(built_envelope()))

        updates = recorder.of(HubEvent.CIRCUITS_UPDATED)
        assert len(updates) == 1
        assert updates[0]["mode"] == Mode.CLIENT
        (circuit,) = updates[0]["circuits"]
        assert isinstance(circuit, Circuit)
        assert circuit.id == 42
        assert circuit.relay_fingerprints == ["F1", "F2", "F3"]
        assert [r.ip for r in circuit.relays] == ["1.1.1.1", "2.2.2.2", "3.3.3.3"]

        in_use = recorder.of(HubEvent.CIRCUIT_IN_USE_CHANGED)
        assert len(in_use) == 1
        assert in_use[0]["circuit"].id == 42

    @pytest.mark.asyncio
    async def test_replayed_envelope_not_renotified(self, hub, controller, recorder):
        hub.subscribe(recorder)
        await controller.resume(Mode.CLIENT)

        hub.publish(HubEvent.DAEMON_LOG, _entry(built_envelope()))
        hub.publish(HubEvent.DAEMON_LOG, _entry(built_envelope()))

        assert len(recorder.of(HubEvent.CIRCUITS_UPDATED)) == 1
        assert len(recorder.of(HubEvent.CIRCUIT_IN_USE_CHANGED)) == 1
        assert len(recorder.of(HubEvent.LOG)) == 2

    @pytest.mark.asyncio
    async def test_heuristic_lines(self, hub, controller, recorder):
        hub.subscribe(recorder)
        await controller.resume(Mode.CLIENT)

        lines = [
            "Circuit 5 chose an idle timeout of 60 based on 58 seconds of predictive building remaining.",
            "extend_info_from_node: Including Ed25519 ID for $" + "A" * 40 + "~guard [id1] at 10.0.0.1",
            "extend_info_from_node: Including Ed25519 ID for $" + "B" * 40 + "~middle [id2] at 10.0.0.2",
            "extend_info_from_node: Including Ed25519 ID for $" + "C" * 40 + "~exit [id3] at 10.0.0.3",
            "Circuit 5 BUILT",
        ]
        for line in lines:
            hub.publish(HubEvent.DAEMON_LOG, _entry(line))

        (update,) = recorder.of(HubEvent.CIRCUITS_UPDATED)
        (circuit,) = update["circuits"]
        assert circuit.id == 5
        assert [r.nickname for r in circuit.relays] == ["guard", "middle", "exit"]
        assert circuit.relay_ips == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        assert circuit.idle_timeout_seconds == 60

    @pytest.mark.asyncio
    async def test_every_line_published_as_log(self, hub, controller, recorder):
        hub.subscribe(recorder)
        await controller.resume(Mode.CLIENT)

        hub.publish(HubEvent.DAEMON_LOG, _entry("Bootstrapped 100%"))

        (entry,) = recorder.of(HubEvent.LOG)
        assert entry.message == "Bootstrapped 100%"
        assert entry.mode == Mode.CLIENT

    @pytest.mark.asyncio
    async def test_primed_from_recent_history(self, clock, recorder):
        bus = ScriptedBus(recent={Mode.CLIENT: [_entry(built_envelope())]})
        hub = DistributionHub(transport=bus)
        hub.subscribe(recorder)
        controller = ModeController(hub, config=WatchConfig(), clock=clock)

        await controller.resume(Mode.CLIENT)

        assert len(recorder.of(HubEvent.CIRCUITS_UPDATED)) == 1
        assert bus.fetches == 1


# =============================================================================
# Pause / resume
# =============================================================================


class TestPauseResume:
    """Modes start paused and toggle independently."""

    def test_both_start_paused(self, controller):
        assert not controller.is_active(Mode.CLIENT)
        assert not controller.is_active(Mode.RELAY)
        assert not controller.is_connected(Mode.CLIENT)

    @pytest.mark.asyncio
    async def test_resume_is_reentrant(self, hub, controller):
        await controller.resume(Mode.CLIENT)
        await controller.resume(Mode.CLIENT)

        assert hub.transport.fetches == 1
        assert controller.is_active(Mode.CLIENT)

    @pytest.mark.asyncio
    async def test_resume_publishes_connected(self, hub, controller, recorder):
        hub.subscribe(recorder)
        await controller.resume(Mode.CLIENT)

        (change,) = recorder.of(HubEvent.CONNECTION_CHANGED)
        assert change == {"mode": Mode.CLIENT, "connected": True, "detail": "local"}

    @pytest.mark.asyncio
    async def test_pause_stops_delivery(self, hub, controller, recorder):
        hub.subscribe(recorder)
        await controller.resume(Mode.CLIENT)
        controller.pause(Mode.CLIENT)

        hub.publish(HubEvent.DAEMON_LOG, _entry(built_envelope()))

        assert recorder.of(HubEvent.LOG) == []
        assert not controller.is_active(Mode.CLIENT)
        assert recorder.of(HubEvent.CONNECTION_CHANGED)[-1]["connected"] is False

    def test_pause_when_paused(self, hub, controller, recorder):
        hub.subscribe(recorder)
        controller.pause(Mode.CLIENT)
        controller.pause(Mode.CLIENT)

        assert recorder.of(HubEvent.CONNECTION_CHANGED) == []

    @pytest.mark.asyncio
    async def test_modes_independent(self, hub, controller, recorder):
        hub.subscribe(recorder)
        await controller.resume(Mode.CLIENT)
        await controller.resume(Mode.RELAY)
        controller.pause(Mode.RELAY)

        hub.publish(HubEvent.DAEMON_LOG, _entry(built_envelope(), mode=Mode.CLIENT))
        hub.publish(HubEvent.DAEMON_LOG, _entry(built_envelope(), mode=Mode.RELAY))

        assert [u["mode"] for u in recorder.of(HubEvent.CIRCUITS_UPDATED)] == [Mode.CLIENT]
        assert len(controller.pipeline(Mode.RELAY).store) == 0
        assert controller.is_active(Mode.CLIENT)

    @pytest.mark.asyncio
    async def test_pause_during_history_fetch(self, clock, recorder):
        gate = asyncio.Event()
        bus = ScriptedBus(recent={Mode.CLIENT: [_entry(built_envelope())]}, gate=gate)
        hub = DistributionHub(transport=bus)
        hub.subscribe(recorder)
        controller = ModeController(hub, config=WatchConfig(), clock=clock)

        task = asyncio.ensure_future(controller.resume(Mode.CLIENT))
        await wait_for(lambda: bus.fetches == 1)
        controller.pause(Mode.CLIENT)
        gate.set()
        await task

        assert not controller.is_active(Mode.CLIENT)
        assert recorder.of(HubEvent.CIRCUITS_UPDATED) == []
        assert recorder.of(HubEvent.CONNECTION_CHANGED) == []

    def test_unknown_mode(self, controller):
        with pytest.raises(ValueError):
            controller.pause("bridge")


# =============================================================================
# Source errors
# =============================================================================


class TestSourceErrors:
    """Unavailable sources mark the mode disconnected; no auto-retry."""

    @pytest.mark.asyncio
    async def test_missing_log_file(self, tmp_path, recorder):
        hub = DistributionHub()
        hub.subscribe(recorder)
        config = WatchConfig(client_log_path=tmp_path / "missing.log")
        controller = ModeController(hub, config=config)

        await controller.resume(Mode.CLIENT)

        assert not controller.is_active(Mode.CLIENT)
        assert not controller.is_connected(Mode.CLIENT)
        (change,) = recorder.of(HubEvent.CONNECTION_CHANGED)
        assert change["connected"] is False
        assert "missing.log" in change["detail"]

    @pytest.mark.asyncio
    async def test_history_unavailable(self, recorder):
        hub = DistributionHub(transport=FailingBus())
        hub.subscribe(recorder)
        controller = ModeController(hub, config=WatchConfig())

        await controller.resume(Mode.RELAY)

        assert not controller.is_active(Mode.RELAY)
        (change,) = recorder.of(HubEvent.CONNECTION_CHANGED)
        assert change == {"mode": Mode.RELAY, "connected": False, "detail": "backend unreachable"}

    @pytest.mark.asyncio
    async def test_stream_error_disconnects_mode(self, hub, controller, recorder):
        hub.subscribe(recorder)
        await controller.resume(Mode.CLIENT)
        await controller.resume(Mode.RELAY)

        hub.publish(HubEvent.STREAM_ERROR, SourceUnavailableError(Mode.CLIENT, "stream closed by server"))

        assert not controller.is_active(Mode.CLIENT)
        assert controller.is_active(Mode.RELAY)
        change = recorder.of(HubEvent.CONNECTION_CHANGED)[-1]
        assert change == {"mode": Mode.CLIENT, "connected": False, "detail": "stream closed by server"}

    @pytest.mark.asyncio
    async def test_resume_after_error(self, recorder):
        """Resuming after a failed stream requests the stream again."""
        stream_requests = []
        gate = asyncio.Event()
        live = {"timestamp": "2026-01-06T10:00:05Z", "level": "info", "message": "live again", "source": "stdout"}

        async def handler(request):
            if "/stream/" not in request.url.path:
                return httpx.Response(200, json={"logs": []})
            stream_requests.append(request.url.path)
            if len(stream_requests) == 1:
                return httpx.Response(503)
            await gate.wait()
            body = f"event: log\ndata: {json.dumps(live)}\n\n".encode()
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            hub = DistributionHub(transport=PushStreamTransport("http://daemon.test", client=client))
            hub.subscribe(recorder)
            controller = ModeController(hub, config=WatchConfig())
            try:
                await controller.resume(Mode.CLIENT)
                assert await wait_for(lambda: not controller.is_active(Mode.CLIENT))
                assert not controller.is_connected(Mode.CLIENT)

                await controller.resume(Mode.CLIENT)
                assert await wait_for(lambda: len(stream_requests) == 2)
                assert controller.is_connected(Mode.CLIENT)

                gate.set()
                assert await wait_for(lambda: recorder.of(HubEvent.LOG))
                assert [e.message for e in recorder.of(HubEvent.LOG)] == ["live again"]
            finally:
                await controller.shutdown()

    @pytest.mark.asyncio
    async def test_pause_cancels_stream(self, recorder):
        gate = asyncio.Event()

        async def handler(request):
            if "/stream/" not in request.url.path:
                return httpx.Response(200, json={"logs": []})
            await gate.wait()
            return httpx.Response(200, content=b"")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = PushStreamTransport("http://daemon.test", client=client)
            hub = DistributionHub(transport=transport)
            hub.subscribe(recorder)
            controller = ModeController(hub, config=WatchConfig())
            try:
                await controller.resume(Mode.RELAY)
                assert transport.stream_open(Mode.RELAY)
                assert not transport.stream_open(Mode.CLIENT)

                controller.pause(Mode.RELAY)
                await asyncio.sleep(0.05)

                assert not transport.stream_open(Mode.RELAY)
                assert recorder.of(HubEvent.STREAM_ERROR) == []
            finally:
                await controller.shutdown()


# =============================================================================
# File-backed pipelines
# =============================================================================


class TestFileBacked:
    """Local transport with configured log files."""

    @pytest.mark.asyncio
    async def test_appended_envelope(self, tmp_path: Path, recorder):
        log_path = tmp_path / "info.log"
        log_path.write_text("Jan 06 [notice] old line before resume\n")
        hub = DistributionHub()
        hub.subscribe(recorder)
        controller = ModeController(hub, config=WatchConfig(client_log_path=log_path))

        await controller.resume(Mode.CLIENT)
        try:
            with open(log_path, "a", encoding="utf-8") as f:
                f.write(built_envelope() + "\n")
            controller.pipeline(Mode.CLIENT).reader.notify()

            assert await wait_for(lambda: recorder.of(HubEvent.CIRCUITS_UPDATED))
            messages = [e.message for e in recorder.of(HubEvent.LOG)]
            assert messages == [built_envelope()]
            (circuit,) = recorder.of(HubEvent.CIRCUITS_UPDATED)[0]["circuits"]
            assert circuit.id == 42
        finally:
            await controller.shutdown()

    @pytest.mark.asyncio
    async def test_from_start(self, tmp_path: Path, recorder):
        log_path = tmp_path / "info.log"
        log_path.write_text(built_envelope() + "\n")
        hub = DistributionHub()
        hub.subscribe(recorder)
        controller = ModeController(hub, config=WatchConfig(client_log_path=log_path))

        await controller.resume(Mode.CLIENT, from_start=True)
        try:
            assert await wait_for(lambda: recorder.of(HubEvent.CIRCUITS_UPDATED))
        finally:
            await controller.shutdown()

    @pytest.mark.asyncio
    async def test_paused_content_skipped(self, tmp_path: Path, recorder):
        log_path = tmp_path / "info.log"
        log_path.write_text("")
        hub = DistributionHub()
        hub.subscribe(recorder)
        controller = ModeController(hub, config=WatchConfig(client_log_path=log_path))

        await controller.resume(Mode.CLIENT)
        controller.pause(Mode.CLIENT)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write("written while paused\n")
        await controller.resume(Mode.CLIENT)
        try:
            with open(log_path, "a", encoding="utf-8") as f:
                f.write("written after resume\n")
            controller.pipeline(Mode.CLIENT).reader.notify()

            assert await wait_for(lambda: recorder.of(HubEvent.LOG))
            await asyncio.sleep(0.1)
            assert [e.message for e in recorder.of(HubEvent.LOG)] == ["written after resume"]
        finally:
            await controller.shutdown()

    @pytest.mark.asyncio
    async def test_deleted_log_disconnects(self, tmp_path: Path, recorder):
        log_path = tmp_path / "info.log"
        log_path.write_text("")
        hub = DistributionHub()
        hub.subscribe(recorder)
        controller = ModeController(hub, config=WatchConfig(client_log_path=log_path))

        await controller.resume(Mode.CLIENT)
        try:
            assert controller.is_connected(Mode.CLIENT)
            log_path.unlink()

            assert await wait_for(lambda: not controller.is_connected(Mode.CLIENT))
            change = recorder.of(HubEvent.CONNECTION_CHANGED)[-1]
            assert change["connected"] is False
            assert "info.log" in change["detail"]
            assert not controller.is_active(Mode.CLIENT)
        finally:
            await controller.shutdown()


class TestTransportSelection:
    def test_remote_transport_ignores_log_paths(self, tmp_path):
        hub = DistributionHub(transport=PushStreamTransport("http://daemon.test"))
        controller = ModeController(hub, config=WatchConfig(client_log_path=tmp_path / "info.log"))

        assert not controller.pipeline(Mode.CLIENT).file_backed

    def test_build_hub(self):
        assert isinstance(build_hub(WatchConfig()).transport, LocalEventBus)

        hub = build_hub(WatchConfig(transport=TRANSPORT_STREAM, api_url="http://daemon.test"))
        assert isinstance(hub.transport, PushStreamTransport)
        assert hub.transport.base_url == "http://daemon.test"
