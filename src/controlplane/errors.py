"""Exception hierarchy for the control plane.

Every error carries the HTTP status it maps to, so request handlers can raise
freely and a single exception handler renders the response body.
"""

from __future__ import annotations

from typing import Any


class ControlPlaneError(Exception):
    """Base class for errors surfaced through the HTTP API."""

    status_code: int = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message: str = message
        self.extra: dict[str, Any] = extra

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "error": self.message,
            **self.extra,
        }


# === Validation (400) ===


class RequestValidationFailure(ControlPlaneError):
    """Malformed request body."""

    status_code = 400


class PathTraversalError(RequestValidationFailure):
    """A path escapes the managed root or names a protected file."""

    def __init__(self, path: str, reason: str = "path escapes the managed root") -> None:
        super().__init__(f"Path not permitted ({reason}): {path}")
        self.path: str = path


# === Conflicts (409) ===


class ConflictError(ControlPlaneError):
    status_code = 409

    def to_payload(self) -> dict[str, Any]:
        return {"operation_initiated": False, **super().to_payload()}


class AlreadyRunningError(ConflictError):
    def __init__(self, pid: int) -> None:
        super().__init__("Already running", pid=pid)
        self.pid: int = pid


class PortInUseError(ConflictError):
    def __init__(self, port: int) -> None:
        super().__init__(f"Port {port} is already in use", port=port)
        self.port: int = port


class OperationInProgressError(ConflictError):
    def __init__(self) -> None:
        super().__init__("Another dev operation is in progress")


# === External commands (500) ===


class ExternalCommandError(ControlPlaneError):
    """An external command could not be run or exited with a non-zero code."""

    status_code = 500

    def __init__(
        self, message: str, *, exit_code: int = -1, output: str = ""
    ) -> None:
        super().__init__(message, exit_code=exit_code)
        self.exit_code: int = exit_code
        self.output: str = output

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["error_message"] = self.output or self.message
        return payload


class SpawnError(ExternalCommandError):
    pass


class UnresolvableCommandError(ExternalCommandError):
    """No dev command could be derived from the manifest."""


class SignalError(ExternalCommandError):
    pass


class RegistryWriteError(ExternalCommandError):
    pass


# === Sync (500) ===


class SyncError(ControlPlaneError):
    """One or more entries of a sync batch failed; successful entries are kept."""

    status_code = 500

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors), errors=errors)
        self.errors: list[str] = errors


# === Lookups (404) ===


class NotFoundError(ControlPlaneError):
    status_code = 404


# === Restart (500) ===


class RestartError(ControlPlaneError):
    """The start half of a restart failed after the stop half ran."""

    status_code = 500
