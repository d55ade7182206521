"""Dependency manager invocation (install/prune) with output streamed to subscribers."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from pathlib import Path

from controlplane.broadcaster import LogBroadcaster, pipe_to_broadcaster
from controlplane.constants import PRUNE_ARGS, STREAM_LINE_LIMIT
from controlplane.errors import ExternalCommandError, SpawnError
from controlplane.logging import LogComponent, get_logger
from controlplane.models import CommandResult
from controlplane.utils import format_elapsed_ms

logger = get_logger(LogComponent.DEPENDENCIES)


class DependencyManager:
    """Runs the package manager inside the managed root.

    The command is opaque: all that matters is its exit code and its output, which
    is both captured and streamed into the log broadcaster line by line.
    """

    def __init__(
        self,
        *,
        root: Path,
        broadcaster: LogBroadcaster,
        package_manager: str = "npm",
        install_args: Sequence[str] = ("install",),
    ) -> None:
        self.root: Path = root
        self.package_manager: str = package_manager
        self.install_args: list[str] = list(install_args)
        self._broadcaster: LogBroadcaster = broadcaster

    async def run(self, args: Sequence[str], cwd: Path | None = None) -> CommandResult:
        """Run ``package_manager *args``; raises SpawnError if it cannot be started."""
        workdir = cwd or self.root
        command = [self.package_manager, *args]
        pretty = " ".join(command)
        logger.info(f"Running: {pretty} in {workdir}")
        self._broadcaster.submit(f"--- Running: {pretty} ---")

        start = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=workdir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as e:
            self._broadcaster.submit(f"--- Failed to start command: {pretty} ---")
            raise SpawnError(f"Failed to start command {pretty}: {e}") from e

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        # Drain both pipes fully before waiting so no output is lost.
        await asyncio.gather(
            pipe_to_broadcaster(
                process.stdout, self._broadcaster, is_error=False, capture=stdout_lines
            ),
            pipe_to_broadcaster(
                process.stderr, self._broadcaster, is_error=True, capture=stderr_lines
            ),
        )
        returncode = await process.wait()

        result = CommandResult(
            command=command,
            cwd=str(workdir),
            returncode=returncode,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info(f"{pretty} exited with code {returncode} in {format_elapsed_ms(start)}")
        if returncode == 0:
            self._broadcaster.submit(f"--- Command finished successfully: {pretty} ---")
        else:
            self._broadcaster.submit(
                f"--- Command failed: {pretty} (exit code {returncode}) ---"
            )
        return result

    async def install(
        self, extra_args: Sequence[str] = (), cwd: Path | None = None
    ) -> CommandResult:
        """Install dependencies; raises ExternalCommandError on a non-zero exit."""
        result = await self.run([*self.install_args, *extra_args], cwd=cwd)
        if result.returncode != 0:
            logger.error(f"{self.package_manager} install failed: {result.output}")
            raise ExternalCommandError(
                f"{self.package_manager} install failed",
                exit_code=result.returncode,
                output=result.output,
            )
        logger.info(f"{self.package_manager} install completed successfully")
        return result

    async def prune(self, cwd: Path | None = None) -> CommandResult:
        result = await self.run(PRUNE_ARGS, cwd=cwd)
        if result.returncode != 0:
            raise ExternalCommandError(
                f"{self.package_manager} prune failed",
                exit_code=result.returncode,
                output=result.output,
            )
        return result

    async def reconcile(self) -> list[str]:
        """Install then prune after a manifest change; returns progress messages."""
        logger.info("Manifest modified, running dependency reconciliation.")
        self._broadcaster.submit("--- package.json updated. Reconciling dependencies... ---")
        messages: list[str] = []
        try:
            await self.install()
            messages.append(f"{self.package_manager} install completed successfully.")
            await self.prune()
            messages.append(f"{self.package_manager} prune completed successfully.")
        finally:
            self._broadcaster.submit("--- Dependency reconciliation finished. ---")
        return messages
