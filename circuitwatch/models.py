#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Data models for the circuit watcher.

Contains the circuit and relay records, the typed signals produced by the
line parser, log entries, and the exception hierarchy.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# =============================================================================
# Constants
# =============================================================================

DEFAULT_HOP_COUNT = 3  # Guard, middle, exit
MAX_LOG_HISTORY = 2000  # Per-mode visible log entries

CircuitId = Union[int, str]


class Mode:
    """Constants for the two independent operating modes."""

    CLIENT = "client"
    RELAY = "relay"
    ALL = (CLIENT, RELAY)


class HubEvent:
    """Constants for event names published on the distribution hub."""

    LOG = "log"
    CIRCUITS_UPDATED = "circuits-updated"
    CIRCUIT_IN_USE_CHANGED = "circuit-in-use-changed"
    CONNECTION_CHANGED = "connection-changed"
    DAEMON_LOG = "daemon-log"
    STREAM_ERROR = "stream-error"


# =============================================================================
# Enums
# =============================================================================


class CircuitStatus(str, Enum):
    """Lifecycle status of a circuit."""

    UNKNOWN = "unknown"
    BUILDING = "building"
    BUILT = "built"
    EXTENDED = "extended"
    FAILED = "failed"
    CLOSED = "closed"

    @classmethod
    def from_token(cls, token: str) -> "CircuitStatus":
        """Map a daemon status token (BUILT, LAUNCHED, ...) to a status."""
        token = token.strip().upper()
        if token == "LAUNCHED":
            return cls.BUILDING
        try:
            return cls(token.lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_usable(self) -> bool:
        return self in (CircuitStatus.BUILT, CircuitStatus.EXTENDED)


# =============================================================================
# Exceptions
# =============================================================================


class CircuitWatchError(Exception):
    """Base class for circuit watcher errors."""


class SourceUnavailableError(CircuitWatchError):
    """A diagnostic source (file or push stream) could not be read."""

    def __init__(self, mode: str, detail: str):
        super().__init__(f"{mode} source unavailable: {detail}")
        self.mode = mode
        self.detail = detail


class TransportError(CircuitWatchError):
    """A transport was used in a way it cannot support."""


# =============================================================================
# Records
# =============================================================================


@dataclass
class Relay:
    """
    One hop of a circuit.

    Attributes:
        fingerprint: Relay identity fingerprint
        nickname: Relay nickname, when known
        ip: Relay address, when known
        identity: Ed25519 identity, when reported
        hop: 1-based position in the path, when reported
        payment_tag: How this hop is paid (offer, lightning address, ...)
        payment_rate_msats: Advertised rate for the hop
        raw: Full descriptor as received
    """

    fingerprint: str
    nickname: str = ""
    ip: str = ""
    identity: str = ""
    hop: Optional[int] = None
    payment_tag: Optional[str] = None
    payment_rate_msats: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.raw)
        data.update(
            {
                "fingerprint": self.fingerprint,
                "nickname": self.nickname,
                "ip": self.ip,
                "identity": self.identity,
                "hop": self.hop,
                "payment_tag": self.payment_tag,
                "payment_rate_msats": self.payment_rate_msats,
            }
        )
        return data


@dataclass
class Circuit:
    """
    A reconstructed path through the network.

    Fingerprints and IPs are kept in hop order. ``relay_ips`` may lag
    behind ``relay_fingerprints`` when address lines arrive later.

    ``expires_at`` and ``is_expired`` are derived; they are only filled
    in on copies returned by ``derive()`` and never compared.
    """

    id: CircuitId
    relay_fingerprints: List[str] = field(default_factory=list)
    relay_ips: List[str] = field(default_factory=list)
    relays: List[Relay] = field(default_factory=list)
    status: CircuitStatus = CircuitStatus.UNKNOWN
    idle_timeout_seconds: Optional[int] = None
    predictive_build_time_seconds: Optional[int] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = field(default=None, compare=False)
    is_expired: bool = field(default=False, compare=False)

    def is_ready(self, hop_count: int = DEFAULT_HOP_COUNT) -> bool:
        """Check if the full path is known and the circuit is usable."""
        return (
            self.status.is_usable
            and len(self.relay_fingerprints) >= hop_count
            and len(self.relay_ips) >= hop_count
        )

    def derive(self, now: datetime) -> "Circuit":
        """Return a copy with expiry fields computed for ``now``."""
        view = copy.deepcopy(self)
        if self.created_at is not None and self.idle_timeout_seconds is not None:
            view.expires_at = self.created_at + timedelta(seconds=self.idle_timeout_seconds)
            view.is_expired = now > view.expires_at
        else:
            view.expires_at = None
            view.is_expired = False
        return view

    def to_dict(self) -> Dict[str, Any]:
        def _iso(dt: Optional[datetime]) -> Optional[str]:
            return dt.isoformat() if dt is not None else None

        return {
            "id": self.id,
            "relay_fingerprints": list(self.relay_fingerprints),
            "relay_ips": list(self.relay_ips),
            "relays": [r.to_dict() for r in self.relays],
            "status": self.status.value,
            "idle_timeout_seconds": self.idle_timeout_seconds,
            "predictive_build_time_seconds": self.predictive_build_time_seconds,
            "created_at": _iso(self.created_at),
            "last_used_at": _iso(self.last_used_at),
            "expires_at": _iso(self.expires_at),
            "is_expired": self.is_expired,
        }


@dataclass
class LogEntry:
    """
    A single diagnostic line as shown to the user.

    Attributes:
        timestamp: ISO timestamp string
        level: Log level ('info', 'notice', 'warn', 'error', ...)
        message: The line text
        source: Where the line came from ('file', 'stdout', 'stderr', ...)
        mode: 'client' or 'relay'
    """

    timestamp: str
    level: str
    message: str
    source: str = ""
    mode: str = Mode.CLIENT

    @property
    def timestamp_dt(self) -> Optional[datetime]:
        """Parse timestamp string to datetime object."""
        if not self.timestamp:
            return None
        try:
            return datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None

    @property
    def dedup_key(self) -> tuple:
        return (self.timestamp, self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
            "source": self.source,
            "mode": self.mode,
        }


# =============================================================================
# Signals
# =============================================================================


@dataclass
class CircuitSeen:
    """A line mentioned a circuit id; opens it as the current circuit."""

    circuit_id: CircuitId
    observed_at: Optional[datetime] = None


@dataclass
class CircuitCreated:
    """The daemon chose an idle timeout for a new circuit."""

    circuit_id: CircuitId
    idle_timeout_seconds: int
    predictive_build_time_seconds: Optional[int] = None
    observed_at: Optional[datetime] = None


@dataclass
class HopExtended:
    """A hop fingerprint (and possibly its detail) for a circuit."""

    circuit_id: CircuitId
    fingerprint: str
    nickname: str = ""
    identity: str = ""
    ip: str = ""
    observed_at: Optional[datetime] = None


@dataclass
class RelayIpSeen:
    """A dotted-quad address contributed to a circuit."""

    circuit_id: CircuitId
    ip: str
    observed_at: Optional[datetime] = None


@dataclass
class StatusChanged:
    circuit_id: CircuitId
    status: CircuitStatus
    observed_at: Optional[datetime] = None


@dataclass
class CircuitUsed:
    """Traffic flowed on a circuit."""

    circuit_id: CircuitId
    observed_at: Optional[datetime] = None


@dataclass
class EnvelopeEvent:
    """
    A structured ``EVENT:<json>:ENDEVENT`` payload.

    Attributes:
        event: Event name (e.g. 'CIRCUIT_BUILT')
        circuit_id: Referenced circuit, if the payload has one
        relays: Ordered hop descriptors
        payload: The full decoded JSON object
    """

    event: str
    circuit_id: Optional[CircuitId] = None
    relays: List[Relay] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)
    observed_at: Optional[datetime] = None


Signal = Union[
    CircuitSeen,
    CircuitCreated,
    HopExtended,
    RelayIpSeen,
    StatusChanged,
    CircuitUsed,
    EnvelopeEvent,
]


@dataclass
class ApplyResult:
    """
    Outcome of folding one signal into the circuit store.

    Attributes:
        circuit: The record the signal touched (None if ignored)
        changed: Whether the record was mutated
        announced: Whether the circuit just became ready for the first time
        in_use_changed: Whether the circuit in use is now a different one
    """

    circuit: Optional[Circuit] = None
    changed: bool = False
    announced: bool = False
    in_use_changed: bool = False
