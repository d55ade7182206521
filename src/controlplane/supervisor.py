"""Lifecycle of the single supervised dev server process.

States: ABSENT (no record, or the recorded pid is dead) -> STARTING -> RUNNING
-> STOPPING -> ABSENT. The pid marker is the durable source of truth; liveness
is always an OS-level probe, so the state is correct across control-plane
restarts.

Start, stop and restart run under one operation lock. OS process operations are
not atomic across check-then-act sequences ("is it alive?" then "start a new
one"), so the lock is the only thing keeping two dev servers from running at once.
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path

from controlplane.broadcaster import LogBroadcaster, pipe_to_broadcaster
from controlplane.constants import DEV_SERVER_HOST, STREAM_LINE_LIMIT
from controlplane.context import ContextStore
from controlplane.errors import (
    AlreadyRunningError,
    ConflictError,
    ControlPlaneError,
    OperationInProgressError,
    PortInUseError,
    RegistryWriteError,
    RestartError,
    SignalError,
    SpawnError,
)
from controlplane.logging import LogComponent, get_logger
from controlplane.models import (
    PrewarmConfig,
    StatusResponse,
    StopOutcome,
    SupervisedProcess,
)
from controlplane.prewarm import Prewarmer
from controlplane.process_control import (
    find_listeners_for_port,
    is_port_available,
    signal_process_group,
    wait_for_exit,
    wait_for_port_free,
)
from controlplane.registry import ProcessRegistry
from controlplane.resolver import CommandResolver

logger = get_logger(LogComponent.SUPERVISOR)


class SupervisorState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ProcessSupervisor:
    """Owns the one supervised dev server.

    Created once at service startup and shared by every request handler for the
    lifetime of the service.
    """

    def __init__(
        self,
        *,
        root: Path,
        registry: ProcessRegistry,
        resolver: CommandResolver,
        broadcaster: LogBroadcaster,
        contexts: ContextStore,
        prewarmer: Prewarmer,
        default_port: int = 3000,
        stop_grace_seconds: float = 5.0,
        stop_poll_interval: float = 0.15,
        kill_settle_seconds: float = 1.0,
        restart_port_wait_seconds: float = 5.0,
        lock_timeout: float = 30.0,
    ) -> None:
        self.root: Path = root
        self.registry: ProcessRegistry = registry
        self.resolver: CommandResolver = resolver
        self.broadcaster: LogBroadcaster = broadcaster
        self.contexts: ContextStore = contexts
        self.prewarmer: Prewarmer = prewarmer
        self.default_port: int = default_port
        self.stop_grace_seconds: float = stop_grace_seconds
        self.stop_poll_interval: float = stop_poll_interval
        self.kill_settle_seconds: float = kill_settle_seconds
        self.restart_port_wait_seconds: float = restart_port_wait_seconds
        self.lock_timeout: float = lock_timeout

        self._lock: asyncio.Lock = asyncio.Lock()
        self._transition: SupervisorState | None = None
        # Output pumps per spawned pid; each clears the marker when its child exits.
        self._watchers: dict[int, asyncio.Task[None]] = {}

    # === Observability ===

    @property
    def state(self) -> SupervisorState:
        if self._transition is not None:
            return self._transition
        if self.registry.live_pid() is not None:
            return SupervisorState.RUNNING
        return SupervisorState.ABSENT

    def status(self) -> StatusResponse:
        """Read-only; takes no lock."""
        pid = self.registry.live_pid()
        return StatusResponse(running=pid is not None, pid=pid)

    # === Locking ===

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Hold the operation lock; callers queue up to ``lock_timeout`` seconds."""
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except TimeoutError:
            raise OperationInProgressError() from None
        try:
            yield
        finally:
            self._lock.release()

    # === Public operations ===

    async def start(
        self, port: int | None = None, prewarm: PrewarmConfig | None = None
    ) -> SupervisedProcess:
        async with self.exclusive():
            process = await self.start_locked(port or self.default_port)
        await self._maybe_prewarm(process, prewarm)
        return process

    async def stop(self) -> StopOutcome:
        async with self.exclusive():
            return await self.stop_locked()

    async def restart(
        self, port: int | None = None, prewarm: PrewarmConfig | None = None
    ) -> tuple[SupervisedProcess, StopOutcome]:
        """Stop then start as one locked sequence.

        A failed stop is logged and the start is attempted anyway. Once the stop
        phase has run, a start that still finds the server or its port busy is a
        failed restart (500), not a conflict.
        """
        port = port or self.default_port
        async with self.exclusive():
            self.broadcaster.submit("--- Server restarting... ---")
            try:
                outcome = await self.stop_locked()
            except ControlPlaneError as e:
                logger.error(
                    f"Failed to stop dev server during restart, proceeding anyway: {e}"
                )
                outcome = StopOutcome(was_running=True)
            if outcome.was_running and not await wait_for_port_free(
                port, timeout=self.restart_port_wait_seconds
            ):
                logger.warning(f"Port {port} still busy after stopping the dev server")
            try:
                process = await self.start_locked(port)
            except ConflictError as e:
                raise RestartError(
                    f"Dev server did not start after stop: {e.message}", **e.extra
                ) from e
        await self._maybe_prewarm(process, prewarm)
        return process, outcome

    async def shutdown(self, *, stop_server: bool = True) -> None:
        """Service teardown: optionally stop the dev server, then drop output pumps."""
        if stop_server and self.registry.live_pid() is not None:
            logger.info("Stopping dev server during shutdown...")
            try:
                await self.stop()
            except ControlPlaneError as e:
                logger.error(f"Failed to stop dev server during shutdown: {e}")
        watchers = list(self._watchers.values())
        for task in watchers:
            task.cancel()
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)

    # === Lock-held sequences ===

    async def start_locked(self, port: int) -> SupervisedProcess:
        """Spawn the dev server. The caller must hold ``exclusive()``."""
        existing = self.registry.read()
        if self.registry.is_alive(existing):
            assert existing is not None
            raise AlreadyRunningError(existing)
        if existing is not None:
            self.registry.clear()

        if not is_port_available(port):
            listeners = find_listeners_for_port(port)
            logger.warning(f"Port {port} is in use (listening PIDs: {listeners or 'unknown'})")
            raise PortInUseError(port)

        context = self.contexts.current
        command, args = self.resolver.resolve(self.root, port, context.framework)
        env = {
            **os.environ,
            **context.environment_variables,
            "PORT": str(port),
            "HOST": DEV_SERVER_HOST,
        }

        logger.info(f"Starting dev server: {command} {' '.join(args)}")
        self._transition = SupervisorState.STARTING
        try:
            try:
                # New session: the child leads its own process group, so stop can
                # reach wrapper processes (npm -> node) and not just the direct child.
                process = await asyncio.create_subprocess_exec(
                    command,
                    *args,
                    cwd=self.root,
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                    limit=STREAM_LINE_LIMIT,
                )
            except OSError as e:
                raise SpawnError(f"Failed to start process: {e}") from e

            pid = process.pid
            self._watchers[pid] = asyncio.create_task(
                self._watch(process), name=f"dev-server-{pid}"
            )

            try:
                self.registry.write(pid)
            except RegistryWriteError:
                self._kill_untracked(pid)
                raise
        finally:
            self._transition = None

        logger.info(f"Dev server started with PID: {pid}")
        self.broadcaster.submit(f"--- Server started with PID {pid} on port {port} ---")
        return SupervisedProcess(pid=pid, port=port)

    async def stop_locked(self) -> StopOutcome:
        """Terminate the dev server's process group. The caller must hold ``exclusive()``.

        SIGTERM to the group, poll for the grace window, then SIGKILL and a short
        settle delay. The marker is cleared on every path that gets past signalling.
        """
        pid = self.registry.read()
        if pid is None:
            return StopOutcome()
        if not self.registry.is_alive(pid):
            self.registry.clear()
            return StopOutcome(pid=pid)

        self._transition = SupervisorState.STOPPING
        try:
            logger.info(f"Stopping process group with PGID: {pid}")
            try:
                signal_process_group(pid, signal.SIGTERM)
            except ProcessLookupError:
                # Exited between the liveness probe and the signal.
                self.registry.clear()
                return StopOutcome(was_running=True, pid=pid)
            except OSError as e:
                raise SignalError(f"Failed to signal dev server (PID {pid}): {e}") from e

            force_killed = False
            if await wait_for_exit(
                pid, timeout=self.stop_grace_seconds, poll=self.stop_poll_interval
            ):
                logger.info(f"Process {pid} stopped.")
                self.broadcaster.submit(f"--- Server (PID {pid}) stopped ---")
            else:
                logger.warning(f"Process {pid} did not exit gracefully, sending SIGKILL.")
                self._kill_untracked(pid)
                await asyncio.sleep(self.kill_settle_seconds)
                self.broadcaster.submit(f"--- Server (PID {pid}) force-killed ---")
                force_killed = True

            self.registry.clear()
            return StopOutcome(was_running=True, force_killed=force_killed, pid=pid)
        finally:
            self._transition = None

    # === Internals ===

    def _kill_untracked(self, pid: int) -> None:
        try:
            signal_process_group(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.error(f"Failed to kill dev server (PID {pid}): {e}")

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        """Pump stdout/stderr into the broadcaster until the child goes away."""
        pid = process.pid
        try:
            await asyncio.gather(
                pipe_to_broadcaster(process.stdout, self.broadcaster, is_error=False),
                pipe_to_broadcaster(process.stderr, self.broadcaster, is_error=True),
            )
            returncode = await process.wait()
        except Exception as e:
            logger.error(f"Error reading output of dev server (PID {pid}): {e}")
            return
        finally:
            self._watchers.pop(pid, None)

        if self.registry.clear_if(pid):
            logger.info(f"Dev server (PID {pid}) exited on its own with code {returncode}")
        self.broadcaster.submit(f"--- Server (PID {pid}) exited with code {returncode} ---")

    async def _maybe_prewarm(
        self, process: SupervisedProcess, prewarm: PrewarmConfig | None
    ) -> None:
        if prewarm is None:
            return
        await self.prewarmer.prewarm(prewarm, process.port)
