#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Shared fixtures for the circuit watcher test suite.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from circuitwatch.debug_logger import reset_logger


ENV_VARS = (
    "ELTOR_DEBUG",
    "CIRCUITWATCH_DEBUG",
    "ELTOR_CLIENT_LOG",
    "TOR_BROWSER_INFO_LOG_FILE_PATH",
    "ELTOR_RELAY_LOG",
    "ELTOR_API_URL",
    "ELTOR_TRANSPORT",
    "ELTOR_HOP_COUNT",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    """Point state and config dirs at tmp_path and clear watcher env vars."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ELTOR_STATE", str(tmp_path / "state"))
    monkeypatch.setenv("ELTOR_CONFIG_DIR", str(tmp_path / "config"))
    reset_logger()
    yield
    reset_logger()


class FakeClock:
    """Settable clock for stores and pipelines."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 6, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder():
    """Subscriber that records every (event_name, payload) it receives."""

    class Recorder:
        def __init__(self):
            self.events = []

        def __call__(self, event_name, payload):
            self.events.append((event_name, payload))

        def of(self, event_name):
            return [payload for name, payload in self.events if name == event_name]

    return Recorder()


FP1 = "A" * 40
FP2 = "B" * 40
FP3 = "C" * 40


def built_envelope(circuit_id=42, relays=None) -> str:
    """A CIRCUIT_BUILT envelope line as the daemon prints it."""
    if relays is None:
        relays = [
            {"fingerprint": "F1", "ip": "1.1.1.1"},
            {"fingerprint": "F2", "ip": "2.2.2.2"},
            {"fingerprint": "F3", "ip": "3.3.3.3"},
        ]
    payload = {"event": "CIRCUIT_BUILT", "circuit_id": circuit_id, "relays": relays}
    return f"EVENT:{json.dumps(payload)}:ENDEVENT"
