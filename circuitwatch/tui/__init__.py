#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Interactive circuit monitor.

One tab per mode, each with the mode's connection status, its circuits
and its live log. Either mode can be paused and resumed from the keyboard.

Usage:
    from circuitwatch.tui import run_app
    run_app()
"""


# Defer app import to avoid textual dependency at module load time
def _get_app():
    """Lazy import of app module to avoid textual import at module load."""
    from .app import CircuitMonitorApp, run_app
    return CircuitMonitorApp, run_app


def run_app(*args, **kwargs):
    """Run the TUI application. See app.run_app for details."""
    _, _run_app = _get_app()
    return _run_app(*args, **kwargs)


__all__ = [
    "CircuitMonitorApp",
    "run_app",
]


def __getattr__(name):
    if name == "CircuitMonitorApp":
        app_class, _ = _get_app()
        return app_class
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
