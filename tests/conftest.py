from __future__ import annotations

import asyncio
import io
import socket
import sys
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from pathlib import Path
from typing import Any

import pytest

from controlplane.broadcaster import LogBroadcaster, Subscriber
from controlplane.context import ContextStore
from controlplane.models import Framework, Settings
from controlplane.prewarm import Prewarmer
from controlplane.registry import ProcessRegistry
from controlplane.supervisor import ProcessSupervisor

# Child programs standing in for a real dev server.
SLEEPER = (
    "import os, time\n"
    "print('ready', os.environ.get('PORT'), flush=True)\n"
    "while True:\n"
    "    time.sleep(0.1)\n"
)
IGNORES_SIGTERM = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "while True:\n"
    "    time.sleep(0.1)\n"
)
EXITS_QUICKLY = "import sys\nprint('bye', flush=True)\nprint('oops', file=sys.stderr, flush=True)\nsys.exit(3)\n"


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class ScriptResolver:
    """Resolves every directory to ``python -u -c <script>``."""

    def __init__(self, script: str = SLEEPER) -> None:
        self.script: str = script
        self.calls: list[tuple[Path, int, Framework]] = []

    def resolve(
        self,
        directory: Path,
        port: int,
        framework: Framework = Framework.FRAMEWORK_UNSPECIFIED,
    ) -> tuple[str, list[str]]:
        self.calls.append((directory, port, framework))
        return sys.executable, ["-u", "-c", self.script]


async def wait_for_line(subscriber: Subscriber, needle: str, timeout: float = 10.0) -> str:
    """Read from a subscriber until a line containing ``needle`` arrives."""

    async def _read() -> str:
        while True:
            message = await subscriber.get()
            if message is None:
                raise AssertionError(f"stream closed before {needle!r}")
            if needle in message.text:
                return message.text

    return await asyncio.wait_for(_read(), timeout=timeout)


@pytest.fixture
def app_dir(tmp_path: Path) -> Path:
    root = tmp_path / "applet"
    root.mkdir()
    return root


@pytest.fixture
def settings(app_dir: Path) -> Settings:
    return Settings(
        app_dir=app_dir,
        default_app_port=free_port(),
        stop_grace_seconds=2.0,
        stop_poll_interval=0.05,
        kill_settle_seconds=0.2,
        restart_port_wait_seconds=1.0,
        dev_lock_timeout=10.0,
        ready_timeout=0.3,
        ready_poll_interval=0.05,
        ready_request_timeout=0.2,
        prewarm_request_timeout=0.5,
        sse_keepalive_seconds=0.2,
    )


SupervisorFactory = Callable[..., AbstractAsyncContextManager[ProcessSupervisor]]


@pytest.fixture
def supervisor_factory(settings: Settings) -> SupervisorFactory:
    """Build a supervisor with a running broadcaster; tears both down on exit."""

    @asynccontextmanager
    async def _factory(
        script: str = SLEEPER, **overrides: Any
    ) -> AsyncIterator[ProcessSupervisor]:
        broadcaster = LogBroadcaster(stdout=io.StringIO(), stderr=io.StringIO())
        broadcaster.start()
        options: dict[str, Any] = {
            "root": settings.app_dir,
            "registry": ProcessRegistry(settings.pid_file),
            "resolver": ScriptResolver(script),
            "broadcaster": broadcaster,
            "contexts": ContextStore(settings.context_file),
            "prewarmer": Prewarmer(
                ready_timeout=settings.ready_timeout,
                ready_poll_interval=settings.ready_poll_interval,
                ready_request_timeout=settings.ready_request_timeout,
                request_timeout=settings.prewarm_request_timeout,
            ),
            "default_port": settings.default_app_port,
            "stop_grace_seconds": settings.stop_grace_seconds,
            "stop_poll_interval": settings.stop_poll_interval,
            "kill_settle_seconds": settings.kill_settle_seconds,
            "restart_port_wait_seconds": settings.restart_port_wait_seconds,
            "lock_timeout": settings.dev_lock_timeout,
        }
        options.update(overrides)
        supervisor = ProcessSupervisor(**options)
        try:
            yield supervisor
        finally:
            await supervisor.shutdown()
            await supervisor.prewarmer.shutdown()
            await broadcaster.stop()

    return _factory
