"""Read-only browsing of the installed ``node_modules`` tree."""

from __future__ import annotations

import asyncio
import mimetypes
from pathlib import Path

from controlplane.errors import NotFoundError, RequestValidationFailure
from controlplane.logging import LogComponent, get_logger
from controlplane.models import ModuleEntry, ModuleListing
from controlplane.paths import PathGuard

logger = get_logger(LogComponent.MODULES)


class ModuleBrowser:
    """Lists directories and reads files below ``node_modules``; never writes."""

    def __init__(self, root: Path) -> None:
        self.guard: PathGuard = PathGuard(root)

    def _target(self, relative_path: str) -> Path:
        # An empty path lists node_modules itself.
        if not relative_path.strip():
            return self.guard.root
        return self.guard.resolve(relative_path)

    def list_dir(self, relative_path: str = "") -> ModuleListing:
        target = self._target(relative_path)
        if not target.exists():
            raise NotFoundError("Not found")
        if not target.is_dir():
            raise RequestValidationFailure("Not a directory")
        entries = [
            ModuleEntry(name=child.name, type="dir" if child.is_dir() else "file")
            for child in sorted(target.iterdir(), key=lambda p: p.name)
        ]
        return ModuleListing(path=relative_path.strip(), entries=entries)

    async def read_file(self, relative_path: str) -> tuple[bytes, str]:
        """Returns the file bytes and a guessed content type."""
        target = self._target(relative_path)
        if not target.exists():
            raise NotFoundError("Not found")
        if target.is_dir():
            raise RequestValidationFailure("Path is a directory")
        logger.debug(f"Reading module file {target}")
        data = await asyncio.to_thread(target.read_bytes)
        return data, guess_content_type(target)


def guess_content_type(path: Path) -> str:
    if path.suffix in (".js", ".mjs", ".cjs"):
        return "application/javascript; charset=utf-8"
    if path.suffix in (".ts", ".tsx", ".md", ".txt"):
        return "text/plain; charset=utf-8"
    content_type, _ = mimetypes.guess_type(path.name)
    if content_type is None:
        return "application/octet-stream"
    if content_type.startswith("text/") or content_type == "application/json":
        return f"{content_type}; charset=utf-8"
    return content_type
