#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Configuration for the circuit watcher.

Values are resolved from environment variables first, then from the
``circuitWatch`` section of ``settings.json`` in the config directory,
then from defaults.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from circuitwatch.models import DEFAULT_HOP_COUNT, MAX_LOG_HISTORY, Mode


SETTINGS_FILE_NAME = "settings.json"
SETTINGS_SECTION = "circuitWatch"
DEFAULT_API_URL = "http://localhost:5174"

TRANSPORT_LOCAL = "local"
TRANSPORT_STREAM = "stream"

# Env var names, most specific first
CLIENT_LOG_ENV_VARS = ("ELTOR_CLIENT_LOG", "TOR_BROWSER_INFO_LOG_FILE_PATH")
RELAY_LOG_ENV_VARS = ("ELTOR_RELAY_LOG",)
API_URL_ENV_VAR = "ELTOR_API_URL"
TRANSPORT_ENV_VAR = "ELTOR_TRANSPORT"
HOP_COUNT_ENV_VAR = "ELTOR_HOP_COUNT"


def get_config_dir() -> Path:
    """Get the config directory (ELTOR_CONFIG_DIR or ~/.config/eltor)."""
    explicit = os.environ.get("ELTOR_CONFIG_DIR")
    if explicit:
        return Path(explicit)
    xdg_config = os.environ.get("XDG_CONFIG_HOME") or (Path.home() / ".config")
    return Path(xdg_config) / "eltor"


def read_settings() -> Dict[str, Any]:
    """Read the circuitWatch section of settings.json.

    Returns an empty dict if the file is missing or unreadable.
    """
    path = get_config_dir() / SETTINGS_FILE_NAME
    try:
        if not path.exists():
            return {}
        with open(path, encoding="utf-8") as f:
            settings = json.load(f)
        section = settings.get(SETTINGS_SECTION, {})
        return section if isinstance(section, dict) else {}
    except (OSError, json.JSONDecodeError, AttributeError):
        return {}


def _first_env(names) -> Optional[str]:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _positive_int(value: Any) -> Optional[int]:
    number = _as_int(value)
    return number if number is not None and number > 0 else None


@dataclass
class WatchConfig:
    """
    Resolved configuration.

    Attributes:
        client_log_path: Diagnostic log for client mode (file transport)
        relay_log_path: Diagnostic log for relay mode (file transport)
        api_url: Daemon backend base URL (stream transport)
        transport: 'local' or 'stream'
        hop_count: Hops required before a circuit is announced
        history_limit: Visible log entries kept per mode
    """

    client_log_path: Optional[Path] = None
    relay_log_path: Optional[Path] = None
    api_url: str = DEFAULT_API_URL
    transport: str = TRANSPORT_LOCAL
    hop_count: int = DEFAULT_HOP_COUNT
    history_limit: int = MAX_LOG_HISTORY

    def log_path(self, mode: str) -> Optional[Path]:
        """Get the log file path configured for a mode."""
        if mode == Mode.RELAY:
            return self.relay_log_path
        return self.client_log_path


def load_config() -> WatchConfig:
    """
    Resolve configuration from env vars, settings.json, and defaults.

    Returns:
        WatchConfig with every field populated
    """
    settings = read_settings()
    config = WatchConfig()

    client_log = _first_env(CLIENT_LOG_ENV_VARS) or settings.get("clientLog")
    if client_log:
        config.client_log_path = Path(client_log).expanduser()

    relay_log = _first_env(RELAY_LOG_ENV_VARS) or settings.get("relayLog")
    if relay_log:
        config.relay_log_path = Path(relay_log).expanduser()

    config.api_url = (
        os.environ.get(API_URL_ENV_VAR) or settings.get("apiUrl") or DEFAULT_API_URL
    ).rstrip("/")

    transport = (os.environ.get(TRANSPORT_ENV_VAR) or settings.get("transport") or "").lower()
    if transport in (TRANSPORT_LOCAL, TRANSPORT_STREAM):
        config.transport = transport

    # Zero, negative or non-numeric values fall through to the next source
    hop_count = _positive_int(os.environ.get(HOP_COUNT_ENV_VAR)) or _positive_int(
        settings.get("hopCount")
    )
    if hop_count is not None:
        config.hop_count = hop_count

    history_limit = _positive_int(settings.get("historyLimit"))
    if history_limit is not None:
        config.history_limit = history_limit

    return config
