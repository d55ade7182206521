"""Centralized logging for the control plane (component loggers and CLI formatting)."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from rich.text import Text
from typing_extensions import override

from controlplane.models import LogEntry
from controlplane.utils import PrefixedLogHandler, console


class LogComponent(str, Enum):
    """Where a log originated (used for prefixes and per-component levels)."""

    SERVER = "server"
    UVICORN = "uvicorn"
    SUPERVISOR = "supervisor"
    BROADCASTER = "broadcaster"
    SYNC = "sync"
    PREWARM = "prewarm"
    DEPENDENCIES = "dependencies"
    MODULES = "modules"
    CONTEXT = "context"


_COMPONENT_COLORS: dict[LogComponent, str] = {
    LogComponent.SERVER: "bright_blue",
    LogComponent.UVICORN: "bright_blue",
    LogComponent.SUPERVISOR: "magenta",
    LogComponent.BROADCASTER: "cyan",
    LogComponent.SYNC: "green",
    LogComponent.PREWARM: "yellow",
    LogComponent.DEPENDENCIES: "green",
    LogComponent.MODULES: "cyan",
    LogComponent.CONTEXT: "magenta",
}

_configured: bool = False


class _HealthAccessLogFilter(logging.Filter):
    """Drop access logs for health probes, which the edge proxy polls constantly."""

    _noisy_paths: tuple[str, ...] = ("/health", "/dev/status")

    @override
    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not any(f'"GET {p} ' in msg for p in self._noisy_paths)


def configure_logging(level: str | int = logging.INFO) -> None:
    """Attach a prefixed rich handler to every component logger and to uvicorn."""
    global _configured

    for component in LogComponent:
        logger = logging.getLogger(f"controlplane.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        handler = PrefixedLogHandler(
            f"[{component.value}]", _COMPONENT_COLORS.get(component, "white")
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv = logging.getLogger(name)
        uv.setLevel(level)
        uv.handlers.clear()
        if name == "uvicorn.access":
            uv.addFilter(_HealthAccessLogFilter())
        h = PrefixedLogHandler("[uvicorn]", _COMPONENT_COLORS[LogComponent.UVICORN])
        h.setFormatter(logging.Formatter("%(message)s"))
        uv.addHandler(h)
        uv.propagate = False

    _configured = True


def get_logger(component: LogComponent) -> logging.Logger:
    """Get a component logger (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"controlplane.{component.value}")
    if not _configured and not logger.handlers:
        # Unconfigured contexts (tests, library use) defer to the root logger.
        logger.addHandler(logging.NullHandler())
    return logger


def print_log_entry(
    entry: LogEntry | dict[str, Any],
    *,
    raw_output: bool = False,  # pyright: ignore[reportExplicitAny]
) -> None:
    """Print a single log stream frame."""
    if isinstance(entry, dict):
        entry = LogEntry.model_validate(entry)

    if entry.system_message:
        console.print(Text(f"-- {entry.system_message} --", style="dim"))
        return

    if raw_output:
        print(entry.log)
        return

    prefix_style = "red" if entry.error else (
        "yellow" if entry.stream == "stderr" else "cyan"
    )
    prefix = Text(f"[{entry.stream or 'app'}]", style=prefix_style)
    console.print(prefix + Text(" | ") + Text(entry.log))
