#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
CLI interface for the circuit watcher.

Usage:
    circuitwatch tail [--mode client|relay] [--from-start]
    circuitwatch snapshot LOG_FILE [--mode client|relay] [--json]
    circuitwatch monitor
    python3 -m circuitwatch.cli <command> [args]
"""

import argparse
import asyncio
import json as json_module
import sys
from pathlib import Path
from typing import Any, List, Optional

from circuitwatch.config import TRANSPORT_LOCAL, TRANSPORT_STREAM, WatchConfig, load_config
from circuitwatch.controller import ModeController, build_hub
from circuitwatch.models import Circuit, HubEvent, LogEntry, Mode, SourceUnavailableError
from circuitwatch.parsing import ParserState, parse_line
from circuitwatch.store import CircuitStore
from circuitwatch.tail import TailReader


# ANSI color codes for terminal output
COLORS = {
    "debug": "\033[2m",        # dim
    "info": "",
    "notice": "\033[36m",      # cyan
    "warn": "\033[33m",        # yellow
    "error": "\033[1;31m",     # bold red
    "circuit": "\033[32m",     # green
    "in_use": "\033[35m",      # magenta
    "reset": "\033[0m",
}


def _time_part(timestamp: str) -> str:
    if "T" in timestamp:
        return timestamp.split("T")[1][:8]
    return timestamp[:8] if len(timestamp) >= 8 else timestamp


def format_entry_line(entry: LogEntry, color: bool = True) -> str:
    """
    Format a log entry as a single line for tail output.

    Args:
        entry: The log entry to format
        color: Whether to use ANSI colors (default True)

    Returns:
        Formatted string for terminal display
    """
    level_color = COLORS.get(entry.level, "") if color else ""
    reset = COLORS["reset"] if color and level_color else ""
    level = entry.level[:6].ljust(6)
    return f"{level_color}[{_time_part(entry.timestamp)}] {entry.mode[:6].ljust(6)} {level} {entry.message}{reset}"


def format_circuit_line(circuit: Circuit, color: bool = True) -> str:
    """Format a circuit as one line: id, status, path and expiry."""
    path = " -> ".join(
        f"{fp[:8]}@{circuit.relay_ips[i]}" if i < len(circuit.relay_ips) else fp[:8]
        for i, fp in enumerate(circuit.relay_fingerprints)
    )
    expiry = ""
    if circuit.expires_at is not None:
        expiry = " (expired)" if circuit.is_expired else f" expires {circuit.expires_at.strftime('%H:%M:%S')}"
    line = f"Circuit {circuit.id} [{circuit.status.value}] {path or '(no hops)'}{expiry}"
    if color:
        return f"{COLORS['circuit']}{line}{COLORS['reset']}"
    return line


def replay_log(path: Path, mode: str = Mode.CLIENT, hop_count: Optional[int] = None) -> CircuitStore:
    """
    Read a whole log file once and fold it into a fresh store.

    Raises:
        SourceUnavailableError: If the file cannot be read
    """
    store = CircuitStore(mode=mode, hop_count=hop_count or WatchConfig().hop_count)
    state = ParserState()
    reader = TailReader(path, on_line=lambda line: None, mode=mode)
    reader.seek(from_start=True)
    # A log cut mid-write still ends with a usable last line
    for line in reader.read_new() + reader.flush():
        signal = parse_line(line, state)
        if signal is not None:
            store.apply(signal)
    return store


async def _run_tail(config: WatchConfig, modes: List[str], from_start: bool, color: bool) -> int:
    hub = build_hub(config)
    controller = ModeController(hub, config=config)
    stopped = asyncio.Event()

    def on_event(event_name: str, payload: Any) -> None:
        if event_name == HubEvent.LOG and payload.mode in modes:
            print(format_entry_line(payload, color=color), flush=True)
        elif event_name == HubEvent.CIRCUITS_UPDATED and payload["mode"] in modes:
            for circuit in payload["circuits"]:
                print(format_circuit_line(circuit, color=color), flush=True)
        elif event_name == HubEvent.CIRCUIT_IN_USE_CHANGED and payload["mode"] in modes:
            circuit = payload["circuit"]
            if circuit is not None:
                prefix = f"{COLORS['in_use']}" if color else ""
                suffix = COLORS["reset"] if color else ""
                print(f"{prefix}In use: circuit {circuit.id}{suffix}", flush=True)
        elif event_name == HubEvent.CONNECTION_CHANGED and payload["mode"] in modes:
            if not payload["connected"]:
                print(f"Disconnected ({payload['mode']}): {payload['detail']}", file=sys.stderr)
                if not any(controller.is_active(m) for m in modes):
                    stopped.set()

    hub.subscribe(on_event)
    try:
        for mode in modes:
            await controller.resume(mode, from_start=from_start)
        for mode in modes:
            if not controller.is_active(mode):
                print(f"Error: {mode} source unavailable (see debug log)", file=sys.stderr)
        if not any(controller.is_active(m) for m in modes):
            return 1
        await stopped.wait()
        return 1
    finally:
        await controller.shutdown()


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Circuit watcher - follow circuit lifecycle events from daemon logs"
    )
    parser.add_argument(
        "--transport",
        choices=[TRANSPORT_LOCAL, TRANSPORT_STREAM],
        help="Override the configured transport",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # tail command
    tail_parser = subparsers.add_parser("tail", help="Follow log lines and circuit events")
    tail_parser.add_argument(
        "--mode", "-m", choices=list(Mode.ALL), action="append", help="Mode(s) to follow (default: client)"
    )
    tail_parser.add_argument("--from-start", action="store_true", help="Read log files from the beginning")
    tail_parser.add_argument("--no-color", action="store_true", help="Disable ANSI colors")

    # snapshot command
    snapshot_parser = subparsers.add_parser("snapshot", help="Print circuits reconstructed from a log file")
    snapshot_parser.add_argument("log_file", help="Log file to read")
    snapshot_parser.add_argument("--mode", "-m", choices=list(Mode.ALL), default=Mode.CLIENT)
    snapshot_parser.add_argument("--ready", action="store_true", help="Only circuits with a full path")
    snapshot_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # monitor command
    subparsers.add_parser("monitor", help="Launch the interactive circuit monitor")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = load_config()
    if args.transport:
        config.transport = args.transport

    try:
        if args.command == "tail":
            modes = args.mode or [Mode.CLIENT]
            color = not args.no_color and sys.stdout.isatty()
            try:
                code = asyncio.run(_run_tail(config, modes, args.from_start, color))
            except KeyboardInterrupt:
                code = 0
            sys.exit(code)

        elif args.command == "snapshot":
            store = replay_log(Path(args.log_file), mode=args.mode, hop_count=config.hop_count)
            circuits = store.ready_circuits() if args.ready else store.snapshot()
            if args.json:
                in_use = store.circuit_in_use()
                print(json_module.dumps(
                    {
                        "mode": args.mode,
                        "circuits": [c.to_dict() for c in circuits],
                        "in_use": in_use.id if in_use is not None else None,
                    },
                    indent=2,
                ))
            elif not circuits:
                print("(no circuits)")
            else:
                for circuit in circuits:
                    print(format_circuit_line(circuit, color=False))
                print(f"\nTotal: {len(circuits)} circuit(s)")

        elif args.command == "monitor":
            try:
                from circuitwatch.tui import run_app
            except ImportError as e:
                print(f"Error: monitor requires textual: {e}", file=sys.stderr)
                sys.exit(1)
            run_app(config=config)

    except SourceUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
