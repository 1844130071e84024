#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Line parsing for daemon diagnostic output.

Turns one raw log line into at most one typed signal. Structured
``EVENT:<json>:ENDEVENT`` envelopes are authoritative; everything else is
matched heuristically against the daemon's log wording. The only state
carried between lines is the most recently opened circuit id, held in an
explicit ParserState.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from circuitwatch.debug_logger import DebugLogger, get_logger
from circuitwatch.models import (
    CircuitCreated,
    CircuitId,
    CircuitSeen,
    CircuitStatus,
    CircuitUsed,
    EnvelopeEvent,
    HopExtended,
    LogEntry,
    Mode,
    Relay,
    RelayIpSeen,
    Signal,
    StatusChanged,
)


# =============================================================================
# Regex patterns
# =============================================================================

ENVELOPE_PATTERN = re.compile(r"EVENT:(.*):ENDEVENT")
CREATION_PATTERN = re.compile(
    r"Circuit (\d+) chose an idle timeout of (\d+) based on (\d+) seconds"
)
STATUS_PATTERN = re.compile(
    r"\b(?:Circuit|CIRC) (\d+) (LAUNCHED|BUILT|EXTENDED|FAILED|CLOSED)\b"
)
USAGE_PATTERNS = (
    re.compile(r"'connected' received for circid (\d+)"),
    re.compile(r"\battached to circuit (\d+)"),
)
EXTEND_INFO_PATTERN = re.compile(
    r"extend_info_from_node: Including Ed25519 ID for "
    r"\$([A-Fa-f0-9]{40})~([^\s]+) \[([^\]]+)\] at ([\d.]+)"
)
FINGERPRINT_PATTERN = re.compile(r"\$([A-Fa-f0-9]{40})(?![A-Fa-f0-9])")
CIRCUIT_TOKEN_PATTERN = re.compile(r"\bCircuit (\d+)\b")
IPV4_PATTERN = re.compile(r"(?<![\d.])((?:\d{1,3}\.){3}\d{1,3})(?![\d.])")
LEVEL_PATTERN = re.compile(r"\[(debug|info|notice|warn|warning|err|error)\]", re.IGNORECASE)

LEVEL_ALIASES = {"warning": "warn", "err": "error"}

# Descriptor keys that say how a hop gets paid, in preference order
PAYMENT_TAG_KEYS = (
    "payment_bolt12_offer",
    "payment_bip353",
    "payment_bolt11_lnurl",
    "payment_bolt11_lightning_address",
)
PAYMENT_RATE_KEYS = ("payment_rate_msats", "payment_rate")


@dataclass
class ParserState:
    """Cursor threaded through consecutive lines of one source."""

    current_circuit_id: Optional[CircuitId] = None

    def reset(self) -> None:
        self.current_circuit_id = None


def normalize_circuit_id(value: Any) -> Optional[CircuitId]:
    """Coerce a circuit id to int when numeric, else a stripped string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    # isdigit also accepts superscripts, which int() rejects
    return int(text) if text.isdecimal() else text


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _valid_ipv4(candidate: str) -> bool:
    return all(0 <= int(octet) <= 255 for octet in candidate.split("."))


def find_ipv4(line: str) -> Optional[str]:
    """Return the first valid dotted-quad address in a line, if any."""
    for match in IPV4_PATTERN.finditer(line):
        if _valid_ipv4(match.group(1)):
            return match.group(1)
    return None


def relay_from_descriptor(data: Dict[str, Any]) -> Relay:
    """Build a Relay from an envelope hop descriptor."""
    payment_tag = None
    for key in PAYMENT_TAG_KEYS:
        if data.get(key):
            payment_tag = str(data[key])
            break

    payment_rate = None
    for key in PAYMENT_RATE_KEYS:
        payment_rate = _as_int(data.get(key))
        if payment_rate is not None:
            break

    return Relay(
        fingerprint=str(data.get("fingerprint") or ""),
        nickname=str(data.get("nickname") or ""),
        ip=str(data.get("ip") or ""),
        identity=str(data.get("identity") or ""),
        hop=_as_int(data.get("hop")),
        payment_tag=payment_tag,
        payment_rate_msats=payment_rate,
        raw=dict(data),
    )


def extract_envelope(
    line: str,
    observed_at: Optional[datetime] = None,
    logger: Optional[DebugLogger] = None,
) -> Optional[EnvelopeEvent]:
    """
    Decode an ``EVENT:<json>:ENDEVENT`` payload embedded in a line.

    Args:
        line: Raw log line
        observed_at: Timestamp to stamp on the signal
        logger: Logger for parse warnings (defaults to global)

    Returns:
        EnvelopeEvent, or None if the line has no envelope or it is malformed
    """
    match = ENVELOPE_PATTERN.search(line)
    if not match:
        return None

    logger = logger or get_logger()
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        logger.parse_warning(line, f"invalid envelope JSON: {e}")
        return None

    if not isinstance(data, dict) or not isinstance(data.get("event"), str):
        logger.parse_warning(line, "envelope is not an object with an 'event' field")
        return None

    raw_relays = data.get("relays") or []
    if not isinstance(raw_relays, list):
        logger.parse_warning(line, "envelope 'relays' is not a list")
        raw_relays = []

    return EnvelopeEvent(
        event=data["event"],
        circuit_id=normalize_circuit_id(data.get("circuit_id")),
        relays=[relay_from_descriptor(r) for r in raw_relays if isinstance(r, dict)],
        payload=data,
        observed_at=observed_at,
    )


def parse_line(
    line: str,
    state: ParserState,
    observed_at: Optional[datetime] = None,
    logger: Optional[DebugLogger] = None,
) -> Optional[Signal]:
    """
    Parse a single log line into a signal.

    An envelope, when present, is authoritative for the line. Lines that
    match nothing produce None; that is not an error.

    Args:
        line: Raw log line (trailing newline allowed)
        state: Parser cursor, updated in place when a circuit is opened
        observed_at: Timestamp for the signal (store clock if None)
        logger: Logger for parse warnings (defaults to global)

    Returns:
        A signal dataclass, or None
    """
    line = line.rstrip("\r\n")
    if not line.strip():
        return None

    if ENVELOPE_PATTERN.search(line):
        envelope = extract_envelope(line, observed_at, logger)
        if envelope is not None and envelope.circuit_id is not None:
            state.current_circuit_id = envelope.circuit_id
        return envelope

    match = CREATION_PATTERN.search(line)
    if match:
        circuit_id = int(match.group(1))
        state.current_circuit_id = circuit_id
        return CircuitCreated(
            circuit_id=circuit_id,
            idle_timeout_seconds=int(match.group(2)),
            predictive_build_time_seconds=int(match.group(3)),
            observed_at=observed_at,
        )

    match = STATUS_PATTERN.search(line)
    if match:
        circuit_id = int(match.group(1))
        state.current_circuit_id = circuit_id
        return StatusChanged(
            circuit_id=circuit_id,
            status=CircuitStatus.from_token(match.group(2)),
            observed_at=observed_at,
        )

    for pattern in USAGE_PATTERNS:
        match = pattern.search(line)
        if match:
            return CircuitUsed(circuit_id=int(match.group(1)), observed_at=observed_at)

    token = CIRCUIT_TOKEN_PATTERN.search(line)
    if token:
        state.current_circuit_id = int(token.group(1))

    current = state.current_circuit_id

    match = EXTEND_INFO_PATTERN.search(line)
    if match and current is not None:
        return HopExtended(
            circuit_id=current,
            fingerprint=match.group(1).upper(),
            nickname=match.group(2),
            identity=match.group(3),
            ip=match.group(4) if _valid_ipv4(match.group(4)) else "",
            observed_at=observed_at,
        )

    match = FINGERPRINT_PATTERN.search(line)
    if match and current is not None:
        return HopExtended(
            circuit_id=current,
            fingerprint=match.group(1).upper(),
            ip=find_ipv4(line) or "",
            observed_at=observed_at,
        )

    ip = find_ipv4(line)
    if ip and current is not None:
        return RelayIpSeen(circuit_id=current, ip=ip, observed_at=observed_at)

    if token:
        return CircuitSeen(circuit_id=current, observed_at=observed_at)

    return None


# =============================================================================
# Log entries
# =============================================================================


def parse_log_level(line: str, default: str = "info") -> str:
    """Extract a tor-style ``[notice]`` level marker from a line."""
    match = LEVEL_PATTERN.search(line)
    if not match:
        return default
    level = match.group(1).lower()
    return LEVEL_ALIASES.get(level, level)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def entry_from_line(
    line: str,
    mode: str,
    source: str = "file",
    timestamp: Optional[str] = None,
) -> LogEntry:
    """Wrap a raw file line as a LogEntry stamped with the read time."""
    line = line.rstrip("\r\n")
    return LogEntry(
        timestamp=timestamp or _now_iso(),
        level=parse_log_level(line),
        message=line,
        source=source,
        mode=mode,
    )


def entry_from_payload(payload: Any, default_mode: str = Mode.CLIENT) -> Optional[LogEntry]:
    """
    Build a LogEntry from a pushed message.

    Accepts a JSON object (already decoded or as text) with timestamp,
    level, message, source and optional mode fields, or a plain text
    line. Entries with no mode go to relay only when their source says
    so, otherwise to ``default_mode``.

    Returns:
        LogEntry, or None for empty payloads and stream error markers
    """
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            return None
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = None
        if not isinstance(decoded, dict):
            return entry_from_line(text, default_mode, source="stream")
        payload = decoded

    if not isinstance(payload, dict) or "error" in payload:
        return None

    message = str(payload.get("message", ""))
    source = str(payload.get("source", ""))
    mode = payload.get("mode")
    if mode not in Mode.ALL:
        mode = Mode.RELAY if source == Mode.RELAY else default_mode

    return LogEntry(
        timestamp=str(payload.get("timestamp") or _now_iso()),
        level=str(payload.get("level") or parse_log_level(message)).lower(),
        message=message,
        source=source,
        mode=mode,
    )
