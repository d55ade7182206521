"""Persisted dev context: framework hint and extra environment for the dev server."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from pydantic import ValidationError

from controlplane.logging import LogComponent, get_logger
from controlplane.models import DevContext, Framework
from controlplane.utils import ensure_dir

logger = get_logger(LogComponent.CONTEXT)

_NEXT_ARTIFACTS = (".next", "out")
_VITE_ARTIFACTS = ("dist", "node_modules/.vite")
_COMMON_ARTIFACTS = ("build",)


class ContextStore:
    """Reads and writes the dev context JSON file; a broken file reads as the default."""

    def __init__(self, path: Path) -> None:
        self.path: Path = path
        self.current: DevContext = self.load()

    def load(self) -> DevContext:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError:
            return DevContext()
        try:
            return DevContext.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable dev context {self.path}: {e}")
            return DevContext()

    def save(self, context: DevContext) -> None:
        ensure_dir(self.path.parent)
        self.path.write_text(context.model_dump_json(indent=2), encoding="utf-8")
        self.current = context


def build_artifacts(framework: Framework) -> list[str]:
    """Root-relative build caches to clear when switching to ``framework``."""
    targets: list[str] = []
    if framework in (Framework.FRAMEWORK_NEXTJS, Framework.FRAMEWORK_UNSPECIFIED):
        targets.extend(_NEXT_ARTIFACTS)
    if framework in (Framework.FRAMEWORK_VITE, Framework.FRAMEWORK_UNSPECIFIED):
        targets.extend(_VITE_ARTIFACTS)
    targets.extend(_COMMON_ARTIFACTS)
    return targets


async def clean_workspace(root: Path, framework: Framework) -> list[str]:
    """Remove build caches for ``framework`` under ``root``; returns what was removed."""
    removed: list[str] = []
    for relative in build_artifacts(framework):
        target = root / relative
        if not target.exists():
            continue
        if target.is_dir() and not target.is_symlink():
            await asyncio.to_thread(shutil.rmtree, target, True)
        else:
            target.unlink(missing_ok=True)
        removed.append(relative)
    if removed:
        logger.info(f"Removed build artifacts: {', '.join(removed)}")
    return removed
