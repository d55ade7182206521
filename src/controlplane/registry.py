"""Durable record of the supervised dev server's pid."""

from __future__ import annotations

from pathlib import Path

from controlplane.errors import RegistryWriteError
from controlplane.process_control import is_process_alive
from controlplane.utils import ensure_dir


class ProcessRegistry:
    """Persists the current child pid as plain decimal text in a marker file.

    The marker is the source of truth, so state survives control-plane restarts.
    A missing or unparsable marker means "no server", which is not an error.
    """

    def __init__(self, pid_file: Path) -> None:
        self.pid_file: Path = pid_file

    def write(self, pid: int) -> None:
        try:
            ensure_dir(self.pid_file.parent)
            self.pid_file.write_text(str(pid))
        except OSError as e:
            raise RegistryWriteError(f"Failed to write pid file: {e}") from e

    def read(self) -> int | None:
        try:
            content = self.pid_file.read_text().strip()
        except OSError:
            return None
        try:
            pid = int(content)
        except ValueError:
            return None
        return pid if pid > 0 else None

    def clear(self) -> None:
        self.pid_file.unlink(missing_ok=True)

    def clear_if(self, pid: int) -> bool:
        """Clear the marker only if it still names ``pid``."""
        if self.read() != pid:
            return False
        self.clear()
        return True

    @staticmethod
    def is_alive(pid: int | None) -> bool:
        return is_process_alive(pid)

    def live_pid(self) -> int | None:
        """The recorded pid if that process exists, else None."""
        pid = self.read()
        return pid if self.is_alive(pid) else None
