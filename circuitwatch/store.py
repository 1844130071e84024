#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
In-memory circuit state for one operating mode.

Folds parser signals into Circuit records keyed by id, tracks which
circuits have been announced as ready, and derives the circuit in use.
Records are never deleted; the store lives as long as its pipeline.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from circuitwatch.debug_logger import DebugLogger, get_logger
from circuitwatch.models import (
    DEFAULT_HOP_COUNT,
    ApplyResult,
    Circuit,
    CircuitCreated,
    CircuitId,
    CircuitSeen,
    CircuitStatus,
    CircuitUsed,
    EnvelopeEvent,
    HopExtended,
    Mode,
    Relay,
    RelayIpSeen,
    Signal,
    StatusChanged,
)


# Envelope events that only carry a status for their circuit
ENVELOPE_STATUS_EVENTS = {
    "CIRCUIT_EXTENDED": CircuitStatus.EXTENDED,
    "CIRCUIT_FAILED": CircuitStatus.FAILED,
    "CIRCUIT_CLOSED": CircuitStatus.CLOSED,
}
CIRCUIT_BUILT_EVENT = "CIRCUIT_BUILT"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    """Treat naive timestamps as UTC so they compare with aware ones."""
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


class CircuitStore:
    """
    Circuit records for a single mode.

    Single-writer: only the pipeline for this mode calls ``apply``.

    Attributes:
        mode: Mode this store belongs to (used for logging)
        hop_count: Hops required before a circuit counts as ready
    """

    def __init__(
        self,
        mode: str = Mode.CLIENT,
        hop_count: int = DEFAULT_HOP_COUNT,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[DebugLogger] = None,
    ) -> None:
        self.mode = mode
        self.hop_count = hop_count
        self._clock = clock or _utc_now
        self._logger = logger or get_logger()
        self._circuits: Dict[CircuitId, Circuit] = {}
        self._announced: Set[CircuitId] = set()
        self._last_announced_id: Optional[CircuitId] = None
        self._in_use_id: Optional[CircuitId] = None

    def __len__(self) -> int:
        return len(self._circuits)

    def __contains__(self, circuit_id: CircuitId) -> bool:
        return circuit_id in self._circuits

    @property
    def last_announced_id(self) -> Optional[CircuitId]:
        """Id of the most recent circuit announced as ready."""
        return self._last_announced_id

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def apply(self, signal: Signal) -> ApplyResult:
        """
        Fold one signal into the store.

        Replaying a signal is harmless: hops and IPs are only appended
        when not already present, and a circuit is announced at most once.

        Returns:
            ApplyResult describing what changed
        """
        if isinstance(signal, EnvelopeEvent):
            if signal.circuit_id is None:
                self._logger.unhandled_event(signal.event)
                return ApplyResult()
            if signal.event != CIRCUIT_BUILT_EVENT and signal.event not in ENVELOPE_STATUS_EVENTS:
                self._logger.unhandled_event(signal.event)
                return ApplyResult()

        observed = _aware(signal.observed_at or self._clock())
        circuit, changed = self._get_or_create(signal.circuit_id, observed)
        previous_in_use = self._in_use_id

        if isinstance(signal, CircuitCreated):
            changed |= self._set_creation(circuit, signal, observed)
        elif isinstance(signal, HopExtended):
            relay = Relay(
                fingerprint=signal.fingerprint,
                nickname=signal.nickname,
                ip=signal.ip,
                identity=signal.identity,
            )
            changed |= self._add_hop(circuit, relay)
        elif isinstance(signal, RelayIpSeen):
            changed |= self._add_ip(circuit, signal.ip)
        elif isinstance(signal, StatusChanged):
            changed |= self._set_status(circuit, signal.status)
        elif isinstance(signal, CircuitUsed):
            changed |= self._mark_used(circuit, observed)
        elif isinstance(signal, EnvelopeEvent):
            changed |= self._apply_envelope(circuit, signal, observed)
        elif not isinstance(signal, CircuitSeen):
            raise TypeError(f"Unknown signal type: {type(signal).__name__}")

        announced = False
        if circuit.id not in self._announced and circuit.is_ready(self.hop_count):
            self._announced.add(circuit.id)
            self._last_announced_id = circuit.id
            announced = True
            self._logger.circuit_announced(self.mode, circuit.id, circuit.relay_fingerprints)

        in_use_changed = self._in_use_id != previous_in_use
        if in_use_changed:
            self._logger.in_use_changed(self.mode, self._in_use_id)

        self._logger.signal_applied(self.mode, type(signal).__name__, circuit.id, changed)
        return ApplyResult(
            circuit=circuit.derive(self._clock()),
            changed=changed,
            announced=announced,
            in_use_changed=in_use_changed,
        )

    def _get_or_create(self, circuit_id: CircuitId, observed: datetime):
        circuit = self._circuits.get(circuit_id)
        if circuit is not None:
            return circuit, False
        circuit = Circuit(id=circuit_id, created_at=observed)
        self._circuits[circuit_id] = circuit
        return circuit, True

    def _set_creation(self, circuit: Circuit, signal: CircuitCreated, observed: datetime) -> bool:
        before = (
            circuit.idle_timeout_seconds,
            circuit.predictive_build_time_seconds,
            circuit.created_at,
        )
        circuit.idle_timeout_seconds = signal.idle_timeout_seconds
        circuit.predictive_build_time_seconds = signal.predictive_build_time_seconds
        circuit.created_at = observed
        if circuit.status == CircuitStatus.UNKNOWN:
            circuit.status = CircuitStatus.BUILDING
        return before != (
            circuit.idle_timeout_seconds,
            circuit.predictive_build_time_seconds,
            circuit.created_at,
        )

    def _add_hop(self, circuit: Circuit, relay: Relay) -> bool:
        changed = False
        fingerprint = relay.fingerprint
        if (
            fingerprint
            and fingerprint not in circuit.relay_fingerprints
            and len(circuit.relay_fingerprints) < self.hop_count
        ):
            circuit.relay_fingerprints.append(fingerprint)
            circuit.relays.append(relay)
            changed = True
        if relay.ip:
            changed |= self._add_ip(circuit, relay.ip)
        return changed

    def _add_ip(self, circuit: Circuit, ip: str) -> bool:
        if ip in circuit.relay_ips or len(circuit.relay_ips) >= self.hop_count:
            return False
        circuit.relay_ips.append(ip)
        return True

    def _set_status(self, circuit: Circuit, status: CircuitStatus) -> bool:
        # Last write wins; upstream lines carry no sequence numbers.
        if circuit.status == status:
            return False
        circuit.status = status
        return True

    def _mark_used(self, circuit: Circuit, observed: datetime) -> bool:
        if circuit.last_used_at == observed:
            return False
        circuit.last_used_at = observed
        self._recompute_in_use(circuit)
        return True

    def _apply_envelope(self, circuit: Circuit, signal: EnvelopeEvent, observed: datetime) -> bool:
        if signal.event in ENVELOPE_STATUS_EVENTS:
            return self._set_status(circuit, ENVELOPE_STATUS_EVENTS[signal.event])

        changed = False
        for relay in signal.relays:
            changed |= self._add_hop(circuit, relay)
        changed |= self._set_status(circuit, CircuitStatus.BUILT)
        # The daemon builds a circuit in order to use it; a replayed
        # envelope that adds nothing leaves the usage time alone
        if changed or circuit.last_used_at is None:
            changed |= self._mark_used(circuit, observed)
        return changed

    def _recompute_in_use(self, just_used: Circuit) -> None:
        best: Optional[Circuit] = None
        for circuit in self._circuits.values():
            if circuit.last_used_at is None:
                continue
            if best is None or circuit.last_used_at > best.last_used_at:
                best = circuit
            elif circuit.last_used_at == best.last_used_at and circuit is just_used:
                best = circuit
        self._in_use_id = best.id if best is not None else None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, circuit_id: CircuitId, now: Optional[datetime] = None) -> Optional[Circuit]:
        circuit = self._circuits.get(circuit_id)
        if circuit is None:
            return None
        return circuit.derive(_aware(now or self._clock()))

    def snapshot(self, now: Optional[datetime] = None) -> List[Circuit]:
        """
        Return every tracked circuit with expiry derived for ``now``.

        Args:
            now: Reference time (defaults to the store clock)

        Returns:
            Copies of all circuits, in first-sighting order
        """
        now = _aware(now or self._clock())
        return [circuit.derive(now) for circuit in self._circuits.values()]

    def ready_circuits(self, now: Optional[datetime] = None) -> List[Circuit]:
        """Return only the circuits with a full, usable path."""
        return [c for c in self.snapshot(now) if c.is_ready(self.hop_count)]

    def circuit_in_use(self, now: Optional[datetime] = None) -> Optional[Circuit]:
        """Return the circuit with the most recent usage, if any."""
        if self._in_use_id is None:
            return None
        return self.get(self._in_use_id, now)
