"""Resolution of externally supplied relative paths against a fixed root."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from controlplane.errors import PathTraversalError


class PathGuard:
    """Resolves relative paths inside ``root`` and rejects anything that would escape it.

    Every write or read into the managed directory goes through ``resolve``, every
    delete through ``locate``.
    A path is rejected when it is empty, absolute, contains a ``..`` segment, names
    the root itself, names a protected file, or canonicalizes (following symlinks)
    to a location outside the root.
    """

    def __init__(self, root: Path, protected: Iterable[str] = ()) -> None:
        self.root: Path = Path(root).resolve()
        self._protected: frozenset[str] = frozenset(
            PurePosixPath(p).as_posix() for p in protected
        )

    def resolve(self, relative_path: str) -> Path:
        """Canonical location of ``relative_path`` with every symlink followed."""
        raw, parts = self._split(relative_path)
        resolved = (self.root / Path(*parts)).resolve()
        self._check(raw, resolved)
        return resolved

    def locate(self, relative_path: str) -> Path:
        """The entry named by ``relative_path`` itself, for deletes.

        Only the parent directory is canonicalized, so a final symlink names the
        link and not its target.
        """
        raw, parts = self._split(relative_path)
        entry = self.root / Path(*parts)
        located = entry.parent.resolve() / entry.name
        self._check(raw, located)
        return located

    def _split(self, relative_path: str) -> tuple[str, tuple[str, ...]]:
        raw = str(relative_path or "").strip()
        if not raw:
            raise PathTraversalError(raw, "empty path")

        candidate = PurePosixPath(raw.replace("\\", "/"))
        if candidate.is_absolute() or Path(raw).is_absolute():
            raise PathTraversalError(raw, "absolute path")
        if ".." in candidate.parts:
            raise PathTraversalError(raw, "parent directory segment")
        return raw, candidate.parts

    def _check(self, raw: str, target: Path) -> None:
        if target == self.root or not target.is_relative_to(self.root):
            raise PathTraversalError(raw)
        if target.relative_to(self.root).as_posix() in self._protected:
            raise PathTraversalError(raw, "protected file")
