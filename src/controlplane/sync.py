"""File synchronization into the managed root.

Every entry of a batch is resolved through the path guard and applied
concurrently. Failures are collected per entry; entries that succeeded are not
rolled back.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import os
import shutil
from pathlib import Path, PurePosixPath

from controlplane.constants import MANIFEST_FILE_NAME
from controlplane.dependencies import DependencyManager
from controlplane.errors import ControlPlaneError, SyncError
from controlplane.logging import LogComponent, get_logger
from controlplane.models import SyncRequest, SyncResponse
from controlplane.paths import PathGuard
from controlplane.prewarm import Prewarmer
from controlplane.supervisor import ProcessSupervisor

logger = get_logger(LogComponent.SYNC)


def _write_file(target: Path, payload: str) -> None:
    data = base64.b64decode(payload, validate=True)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


def _delete_path(target: Path) -> None:
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink(missing_ok=True)


def touches_manifest(paths: list[str]) -> bool:
    return any(os.path.normpath(p) == MANIFEST_FILE_NAME for p in paths)


def _normalized(path: str) -> PurePosixPath:
    return PurePosixPath(os.path.normpath(path.replace("\\", "/")))


class SyncHandler:
    def __init__(
        self,
        *,
        guard: PathGuard,
        dependencies: DependencyManager,
        supervisor: ProcessSupervisor,
        prewarmer: Prewarmer,
    ) -> None:
        self.guard: PathGuard = guard
        self.dependencies: DependencyManager = dependencies
        self.supervisor: ProcessSupervisor = supervisor
        self.prewarmer: Prewarmer = prewarmer

    async def apply_files(
        self, files: dict[str, str], deleted_paths: list[str]
    ) -> list[str]:
        """Write and delete concurrently; returns one message per failed entry."""
        written = [_normalized(path) for path in files]
        operations = [self._write(path, payload) for path, payload in files.items()]
        for path in deleted_paths:
            target = _normalized(path)
            # A delete overlapping a written path would race the write.
            if any(w.is_relative_to(target) or target.is_relative_to(w) for w in written):
                operations.append(self._conflict(path))
            else:
                operations.append(self._delete(path))
        results = await asyncio.gather(*operations)
        return [error for error in results if error is not None]

    async def sync(self, request: SyncRequest) -> SyncResponse:
        """Apply a batch, then reconcile dependencies, restart and prewarm as requested.

        Raises:
            SyncError: if any entry or the dependency reconciliation failed.
        """
        errors = await self.apply_files(request.files, request.deleted_file_paths)
        if errors:
            logger.error(f"Sync finished with {len(errors)} failed entries")
            raise SyncError(errors)
        logger.info(
            f"Synced {len(request.files)} files, deleted {len(request.deleted_file_paths)} paths"
        )

        dependency_messages: list[str] = []
        if touches_manifest(list(request.files)):
            try:
                dependency_messages = await self.dependencies.reconcile()
            except ControlPlaneError as e:
                raise SyncError([e.message]) from e

        message = "Files synced successfully"
        if dependency_messages:
            message = f"{message}. {' '.join(dependency_messages)}"

        if request.restart_dev_server:
            process, _ = await self.supervisor.restart(prewarm=request.prewarm_config)
            message = f"{message}. Dev server restarted with PID {process.pid}."
        elif request.prewarm_config is not None:
            await self.prewarmer.prewarm(
                request.prewarm_config, self.supervisor.default_port
            )
        return SyncResponse(success=True, message=message)

    async def _write(self, relative_path: str, payload: str) -> str | None:
        try:
            target = self.guard.resolve(relative_path)
            await asyncio.to_thread(_write_file, target, payload)
        except ControlPlaneError as e:
            return f"failed to write {relative_path}: {e.message}"
        except (OSError, binascii.Error, ValueError) as e:
            return f"failed to write {relative_path}: {e}"
        return None

    async def _delete(self, relative_path: str) -> str | None:
        try:
            target = self.guard.locate(relative_path)
            await asyncio.to_thread(_delete_path, target)
        except ControlPlaneError as e:
            return f"failed to delete {relative_path}: {e.message}"
        except OSError as e:
            return f"failed to delete {relative_path}: {e}"
        return None

    async def _conflict(self, relative_path: str) -> str:
        return f"failed to delete {relative_path}: path overlaps a file being written"
