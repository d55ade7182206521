"""Process liveness, process-group signalling and port probes for the supervisor.

Design goals:
- Liveness is an OS-level probe (signal 0), never in-memory bookkeeping.
- Signals target the whole process group; a single-pid signal is the fallback.
- Every wait has a deadline.

POSIX only: the dev server runs in a container, spawned into its own session.
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket
import time
from enum import Enum

import psutil

from controlplane.logging import LogComponent, get_logger

logger = get_logger(LogComponent.SUPERVISOR)


class SignalTarget(str, Enum):
    """Which target a signal was actually delivered to."""

    GROUP = "group"
    PROCESS = "process"


def is_process_alive(pid: int | None) -> bool:
    """Non-destructive existence probe; reaped-pending zombies count as gone."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False

    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.Error:
        return True


def signal_process_group(pid: int, sig: signal.Signals) -> SignalTarget:
    """Signal the process group led by ``pid``, falling back to ``pid`` alone.

    The dev server is spawned as a session leader, so its pgid equals its pid.
    Raises ProcessLookupError if neither target exists, and OSError if the
    fallback signal could not be delivered either.
    """
    try:
        os.killpg(pid, sig)
        return SignalTarget.GROUP
    except OSError as e:
        logger.warning(
            f"Failed to signal process group {pid} with {sig.name}, trying single process: {e}"
        )
    os.kill(pid, sig)
    return SignalTarget.PROCESS


async def wait_for_exit(pid: int, *, timeout: float, poll: float = 0.15) -> bool:
    """Poll liveness until ``pid`` is gone or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_alive(pid):
            return True
        await asyncio.sleep(poll)
    return not is_process_alive(pid)


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    """Check if a port is free by connecting to it and then trying to bind it.

    Args:
        port: Port number to check
        host: Interface to bind on (default: all IPv4 interfaces, like dev servers)

    Returns:
        True if port is available, False otherwise
    """
    # A successful connect means something is definitely listening.
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.2)
            if sock.connect_ex(("127.0.0.1", port)) == 0:
                return False
    except OSError:
        pass

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            # No SO_REUSEADDR: we want to know if the port is actually in use.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 0)
            sock.bind((host, port))
    except OSError:
        return False
    return True


async def wait_for_port_free(
    port: int, *, timeout: float = 5.0, poll: float = 0.1
) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if is_port_available(port):
            return True
        await asyncio.sleep(poll)
    return is_port_available(port)


def find_listeners_for_port(port: int) -> list[int]:
    """Return PIDs that have a LISTEN socket bound to the port (best-effort)."""
    pids: set[int] = set()
    try:
        for conn in psutil.net_connections(kind="inet"):
            if not conn.laddr or getattr(conn.laddr, "port", None) != port:
                continue
            if conn.status != psutil.CONN_LISTEN:
                continue
            if conn.pid:
                pids.add(int(conn.pid))
    except (psutil.AccessDenied, PermissionError):
        # Needs elevated privileges on some platforms; diagnostics only.
        return []
    return sorted(pids)
