#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Debug logging for the circuit watcher.

Outputs JSON lines format to ~/.local/state/eltor-circuitwatch/debug.log
when ELTOR_DEBUG (or CIRCUITWATCH_DEBUG) is set, or when debugLevel is
set in the circuitWatch section of settings.json.

Levels:
  0: disabled
  1: info - mode lifecycle, circuit announcements, errors, parse warnings
  2: debug - per-signal application and timing
  3: trace - file reads
"""

import json
import os
import sys
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from circuitwatch.config import read_settings


DEBUG_ENV_VAR = "ELTOR_DEBUG"
DEBUG_ENV_VAR_FALLBACK = "CIRCUITWATCH_DEBUG"
LOG_FILE_NAME = "debug.log"
MAX_LOG_SIZE_MB = 50
MAX_LOG_FILES = 3

# Session ID - generated once per process
_SESSION_ID: Optional[str] = None


def _get_session_id() -> str:
    """Get or create a session ID for correlating events."""
    global _SESSION_ID
    if _SESSION_ID is None:
        _SESSION_ID = uuid.uuid4().hex[:12]
    return _SESSION_ID


def _get_debug_level() -> int:
    """Get the configured debug level.

    Checks in order of precedence:
    1. ELTOR_DEBUG / CIRCUITWATCH_DEBUG env var
    2. circuitWatch.debugLevel in settings.json
    3. Default: 1
    """
    env_level = os.environ.get(DEBUG_ENV_VAR) or os.environ.get(DEBUG_ENV_VAR_FALLBACK)
    if env_level:
        try:
            return int(env_level)
        except ValueError:
            # Treat any non-numeric truthy value as level 1
            return 1 if env_level.lower() in ("true", "yes", "on") else 0

    settings_level = read_settings().get("debugLevel")
    if settings_level is not None:
        try:
            return int(settings_level)
        except (TypeError, ValueError):
            pass

    return 1


def _get_log_path() -> Path:
    """Get the log file path.

    Uses XDG_STATE_HOME (~/.local/state) for logs per XDG spec.
    ELTOR_STATE overrides with full path to state dir.
    """
    explicit_state = os.environ.get("ELTOR_STATE")
    if explicit_state:
        state_dir = Path(explicit_state)
    else:
        xdg_state = os.environ.get("XDG_STATE_HOME") or (Path.home() / ".local" / "state")
        state_dir = Path(xdg_state) / "eltor-circuitwatch"
    return state_dir / LOG_FILE_NAME


def _rotate_if_needed(log_path: Path) -> None:
    """Rotate log file if it exceeds size limit."""
    if not log_path.exists():
        return

    size_mb = log_path.stat().st_size / (1024 * 1024)
    if size_mb < MAX_LOG_SIZE_MB:
        return

    # Rotate: debug.log.2 -> delete, debug.log.1 -> .2, debug.log -> .1
    for i in range(MAX_LOG_FILES - 1, 0, -1):
        old_path = log_path.parent / f"{LOG_FILE_NAME}.{i}"
        new_path = log_path.parent / f"{LOG_FILE_NAME}.{i + 1}"
        if old_path.exists():
            if i == MAX_LOG_FILES - 1:
                old_path.unlink()
            else:
                old_path.rename(new_path)

    log_path.rename(log_path.parent / f"{LOG_FILE_NAME}.1")


class DebugLogger:
    """
    JSON lines debug logger for the circuit watcher.

    All methods are no-ops when the debug level is 0.
    """

    def __init__(self, level: Optional[int] = None, log_path: Optional[Path] = None) -> None:
        self._level = _get_debug_level() if level is None else level
        if self._level > 0:
            self._log_path = log_path or _get_log_path()
        else:
            self._log_path = None

    @property
    def enabled(self) -> bool:
        return self._level > 0

    @property
    def level(self) -> int:
        return self._level

    @property
    def log_path(self) -> Optional[Path]:
        return self._log_path

    def _write(self, event: Dict[str, Any]) -> None:
        """Write an event to the log file."""
        if not self.enabled or self._log_path is None:
            return

        event["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        event["session_id"] = _get_session_id()
        event["pid"] = os.getpid()

        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            _rotate_if_needed(self._log_path)

            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event, default=str) + "\n")
        except (OSError, ValueError) as e:
            # Never let logging errors affect the pipeline.
            if self._level >= 3:
                print(f"[debug_logger] write failed: {type(e).__name__}: {e}", file=sys.stderr)

    # =========================================================================
    # Level 1: Info events
    # =========================================================================

    def mode_change(self, mode: str, action: str, detail: Optional[str] = None) -> None:
        """Log a mode being resumed or paused."""
        if self._level < 1:
            return
        event = {"event": "mode_change", "level": "info", "mode": mode, "action": action}
        if detail:
            event["detail"] = detail
        self._write(event)

    def connection_change(self, mode: str, connected: bool, detail: str = "") -> None:
        if self._level < 1:
            return
        self._write(
            {
                "event": "connection_change",
                "level": "info" if connected else "warn",
                "mode": mode,
                "connected": connected,
                "detail": detail,
            }
        )

    def circuit_announced(self, mode: str, circuit_id: Any, fingerprints: list) -> None:
        """Log a circuit reaching its full hop count for the first time."""
        if self._level < 1:
            return
        self._write(
            {
                "event": "circuit_announced",
                "level": "info",
                "mode": mode,
                "circuit_id": circuit_id,
                "fingerprints": fingerprints[:8],  # Limit array size
            }
        )

    def in_use_changed(self, mode: str, circuit_id: Any) -> None:
        if self._level < 1:
            return
        self._write(
            {
                "event": "in_use_changed",
                "level": "info",
                "mode": mode,
                "circuit_id": circuit_id,
            }
        )

    def parse_warning(self, line: str, error: str) -> None:
        """Log a line that looked structured but could not be decoded."""
        if self._level < 1:
            return
        self._write(
            {
                "event": "parse_warning",
                "level": "warn",
                "line": line[:200],
                "err": error,
            }
        )

    def unhandled_event(self, event_name: str) -> None:
        if self._level < 1:
            return
        self._write({"event": "unhandled_event", "level": "warn", "name": event_name})

    def subscriber_error(self, event_name: str, error: str) -> None:
        """Log a subscriber callback that raised during fan-out."""
        if self._level < 1:
            return
        self._write(
            {
                "event": "subscriber_error",
                "level": "error",
                "name": event_name,
                "err": error,
            }
        )

    def error(self, operation: str, error: str, context: Optional[Dict] = None) -> None:
        """Log errors - level 1 (always shown when debug enabled)."""
        if self._level < 1:
            return
        event = {"event": "error", "level": "error", "op": operation, "err": error}
        if context:
            event["ctx"] = context
        self._write(event)

    # =========================================================================
    # Level 2: Debug events
    # =========================================================================

    def signal_applied(self, mode: str, signal_type: str, circuit_id: Any, changed: bool) -> None:
        if self._level < 2:
            return
        self._write(
            {
                "event": "signal_applied",
                "level": "debug",
                "mode": mode,
                "signal": signal_type,
                "circuit_id": circuit_id,
                "changed": changed,
            }
        )

    @contextmanager
    def timer(self, operation: str, context: Optional[Dict[str, Any]] = None):
        """Context manager to time any operation at level 2.

        Usage:
            with logger.timer("fetch_recent", {"mode": "client"}):
                do_work()

        Logs: {"event": "timing", "op": "fetch_recent", "ms": 42.5, "mode": "client"}
        """
        if self._level < 2:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            event = {
                "event": "timing",
                "level": "debug",
                "op": operation,
                "ms": round(duration_ms, 2),
            }
            if context:
                event.update(context)
            self._write(event)

    # =========================================================================
    # Level 3: Trace events
    # =========================================================================

    def trace_read(self, file_path: str, offset: int, size: int, lines: int) -> None:
        """Trace one incremental file read."""
        if self._level < 3:
            return
        self._write(
            {
                "event": "file_read",
                "level": "trace",
                "file_path": str(file_path),
                "offset": offset,
                "size": size,
                "lines": lines,
            }
        )


# Global instance, overridable per component
_logger: Optional[DebugLogger] = None


def get_logger() -> DebugLogger:
    """Get the global debug logger instance."""
    global _logger
    if _logger is None:
        _logger = DebugLogger()
    return _logger


def reset_logger() -> None:
    """Reset the global logger (for testing)."""
    global _logger
    _logger = None
