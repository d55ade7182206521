"""HTTP client for talking to a running control plane."""

import base64
import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import httpx
from pydantic import ValidationError

from controlplane.models import (
    DevOperationRequest,
    InstallRequest,
    InstallResponse,
    LogEntry,
    PrewarmConfig,
    RestartResponse,
    StartResponse,
    StatusResponse,
    StopResponse,
    SyncRequest,
    SyncResponse,
)


class ControlPlaneClient:
    """Synchronous client for the control plane HTTP API.

    Every call raises ``httpx.HTTPStatusError`` for non-2xx answers; the service's
    JSON error body is available on ``error.response``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Control plane base URL (e.g., "http://localhost:8000")
            timeout: Default timeout for requests in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url: str = base_url.rstrip("/")
        self.timeout: float = timeout
        self._transport: httpx.BaseTransport | None = transport

    def _client(self, timeout: float | None = None) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else self.timeout,
            transport=self._transport,
        )

    def status(self) -> StatusResponse:
        with self._client() as client:
            response = client.get("/dev/status")
            response.raise_for_status()
            return StatusResponse.model_validate(response.json())

    def start(
        self, port: int | None = None, prewarm: PrewarmConfig | None = None
    ) -> StartResponse:
        body = DevOperationRequest(port=port, prewarm_config=prewarm)
        # Start may wait for the operation lock and for an inline prewarm.
        with self._client(timeout=max(self.timeout, 60.0)) as client:
            response = client.post("/dev/start", json=body.model_dump(exclude_none=True))
            response.raise_for_status()
            return StartResponse.model_validate(response.json())

    def stop(self) -> StopResponse:
        with self._client(timeout=max(self.timeout, 60.0)) as client:
            response = client.post("/dev/stop")
            response.raise_for_status()
            return StopResponse.model_validate(response.json())

    def restart(
        self, port: int | None = None, prewarm: PrewarmConfig | None = None
    ) -> RestartResponse:
        body = DevOperationRequest(port=port, prewarm_config=prewarm)
        with self._client(timeout=max(self.timeout, 60.0)) as client:
            response = client.post("/dev/restart", json=body.model_dump(exclude_none=True))
            response.raise_for_status()
            return RestartResponse.model_validate(response.json())

    def install(self, request: InstallRequest | None = None) -> InstallResponse:
        body = request or InstallRequest()
        # Installs can run for minutes.
        with self._client(timeout=None) as client:
            response = client.post(
                "/dependencies/install", json=body.model_dump(exclude_none=True)
            )
            response.raise_for_status()
            return InstallResponse.model_validate(response.json())

    def sync(self, request: SyncRequest) -> SyncResponse:
        with self._client(timeout=None) as client:
            response = client.post("/sync", json=request.model_dump(exclude_none=True))
            response.raise_for_status()
            return SyncResponse.model_validate(response.json())

    def sync_directory(
        self,
        directory: Path,
        *,
        deleted: list[str] | None = None,
        restart: bool = False,
    ) -> SyncResponse:
        """Push every file under ``directory`` (relative paths preserved)."""
        return self.sync(
            build_sync_request(directory, deleted=deleted or [], restart=restart)
        )

    @contextmanager
    def stream_logs(self) -> Iterator[Iterator[LogEntry]]:
        """Follow the live log stream.

        Yields an iterator of LogEntry frames; keepalive comments are skipped. The
        connection closes when the context exits.

        Example:
            >>> with ControlPlaneClient().stream_logs() as entries:
            ...     for entry in entries:
            ...         print(entry.log)
        """
        with self._client(timeout=None) as client:
            with client.stream("GET", "/dev/logs") as response:
                response.raise_for_status()

                def entry_iterator() -> Iterator[LogEntry]:
                    for line in response.iter_lines():
                        if not line.startswith("data: "):
                            continue
                        try:
                            yield LogEntry.model_validate(json.loads(line[6:]))
                        except (ValidationError, ValueError):
                            continue

                yield entry_iterator()


def build_sync_request(
    directory: Path, *, deleted: list[str], restart: bool = False
) -> SyncRequest:
    """Encode all files below ``directory``, skipping node_modules and dot-directories."""
    files: dict[str, str] = {}
    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(directory)
        if any(
            part == "node_modules" or (part.startswith(".") and part != relative.name)
            for part in relative.parts
        ):
            continue
        files[relative.as_posix()] = base64.b64encode(path.read_bytes()).decode("ascii")
    return SyncRequest(
        files=files, deleted_file_paths=deleted, restart_dev_server=restart
    )
