#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Circuit watcher - circuit lifecycle events from daemon diagnostic logs.

Follows the client and relay logs of a payment-enabled onion-routing
daemon, reconstructs circuits (hops, addresses, status, expiry, usage)
and distributes lifecycle events to subscribers.

Usage:
    from circuitwatch import DistributionHub, ModeController

    hub = DistributionHub()
    controller = ModeController(hub, load_config())
    hub.subscribe(lambda event, payload: print(event, payload))
    await controller.resume("client")
"""

from circuitwatch.config import WatchConfig, load_config
from circuitwatch.controller import ModeController, ModePipeline, build_hub
from circuitwatch.hub import DistributionHub, LogHistory
from circuitwatch.models import (
    Circuit,
    CircuitStatus,
    CircuitWatchError,
    HubEvent,
    LogEntry,
    Mode,
    Relay,
    SourceUnavailableError,
    TransportError,
)
from circuitwatch.parsing import ParserState, parse_line
from circuitwatch.store import CircuitStore
from circuitwatch.tail import StreamReader, TailReader
from circuitwatch.transport import LocalEventBus, PushStreamTransport, Transport

__all__ = [
    # Config
    "WatchConfig",
    "load_config",
    # Models
    "Circuit",
    "CircuitStatus",
    "HubEvent",
    "LogEntry",
    "Mode",
    "Relay",
    # Exceptions
    "CircuitWatchError",
    "SourceUnavailableError",
    "TransportError",
    # Pipeline
    "ParserState",
    "parse_line",
    "CircuitStore",
    "TailReader",
    "StreamReader",
    "ModeController",
    "ModePipeline",
    "build_hub",
    # Distribution
    "DistributionHub",
    "LogHistory",
    "Transport",
    "LocalEventBus",
    "PushStreamTransport",
]
