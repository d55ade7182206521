"""Best-effort warming of dev server routes after a (re)start.

Prewarming is an optimization, never a correctness gate: readiness polling is
bounded by a deadline and every request failure is swallowed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from controlplane.broadcaster import LogBroadcaster
from controlplane.logging import LogComponent, get_logger
from controlplane.models import PrewarmConfig

logger = get_logger(LogComponent.PREWARM)


def _is_ready_status(status_code: int) -> bool:
    # A server that is up but has not mapped "/" yet still counts as ready.
    return 200 <= status_code < 300 or status_code == 404


def _not_ready(ready: bool) -> bool:
    return not ready


class Prewarmer:
    """Polls a dev server until it answers, then issues one GET per unique path."""

    def __init__(
        self,
        *,
        default_paths: Iterable[str] = ("/",),
        host: str = "localhost",
        ready_timeout: float = 20.0,
        ready_poll_interval: float = 0.25,
        ready_request_timeout: float = 2.0,
        request_timeout: float = 10.0,
        broadcaster: LogBroadcaster | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.default_paths: list[str] = list(default_paths)
        self.host: str = host
        self.ready_timeout: float = ready_timeout
        self.ready_poll_interval: float = ready_poll_interval
        self.ready_request_timeout: float = ready_request_timeout
        self.request_timeout: float = request_timeout
        self._broadcaster: LogBroadcaster | None = broadcaster
        self._transport: httpx.AsyncBaseTransport | None = transport
        # Detached runs; kept referenced until done so they are not garbage collected.
        self._background: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._background)

    def normalize_paths(self, paths: Iterable[str] | None) -> list[str]:
        """Defaults for an empty list, drop paths without a leading slash, de-duplicate."""
        candidates = list(paths or []) or self.default_paths
        unique: list[str] = []
        for path in candidates:
            if not isinstance(path, str) or not path.startswith("/"):
                logger.warning(f"Skipping invalid pre-warm path: {path!r}")
                continue
            if path not in unique:
                unique.append(path)
        return unique

    async def prewarm(self, config: PrewarmConfig, default_port: int) -> list[str]:
        """Run inline when ``wait_for_completion`` is set, otherwise detach.

        Returns the normalized path list in both modes.
        """
        paths = self.normalize_paths(config.paths)
        port = config.port or default_port
        self._submit(f"--- Pre-warming {len(paths)} paths ---")
        if config.wait_for_completion:
            await self._run(paths, port)
            self._submit("--- Pre-warming completed ---")
        else:
            self.launch(paths, port)
            self._submit("--- Pre-warming running in the background ---")
        return paths

    def launch(self, paths: list[str], port: int) -> asyncio.Task[None]:
        """Fire-and-forget; there is no cancellation handle for callers."""
        task = asyncio.create_task(self._run(paths, port), name=f"prewarm-{port}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def shutdown(self) -> None:
        """Cancel detached runs that are still pending (service shutdown only)."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_until_ready(self, client: httpx.AsyncClient, base_url: str) -> bool:
        retrying = AsyncRetrying(
            stop=stop_after_delay(self.ready_timeout),
            wait=wait_fixed(self.ready_poll_interval),
            retry=retry_if_result(_not_ready),
        )
        try:
            return await retrying(self._probe, client, base_url)
        except RetryError:
            return False

    async def _probe(self, client: httpx.AsyncClient, base_url: str) -> bool:
        try:
            response = await client.get(base_url, timeout=self.ready_request_timeout)
        except httpx.HTTPError:
            return False
        return _is_ready_status(response.status_code)

    async def _run(self, paths: list[str], port: int) -> None:
        base_url = f"http://{self.host}:{port}"
        logger.info(f"Starting pre-warming for {len(paths)} paths...")
        try:
            async with httpx.AsyncClient(
                transport=self._transport, follow_redirects=True
            ) as client:
                if not await self.wait_until_ready(client, base_url):
                    logger.warning(
                        f"Dev server on port {port} did not become ready within "
                        f"{self.ready_timeout:g}s; proceeding anyway"
                    )
                await asyncio.gather(
                    *(self._warm(client, f"{base_url}{path}") for path in paths)
                )
        except Exception as e:
            logger.warning(f"Pre-warming aborted: {e}")
            return
        logger.info("Pre-warming completed.")

    async def _warm(self, client: httpx.AsyncClient, url: str) -> None:
        logger.info(f"Pre-warming path: {url}")
        try:
            response = await client.get(url, timeout=self.request_timeout)
        except Exception as e:
            logger.info(f"Pre-warm request to {url} failed: {e}")
            return
        logger.info(f"Pre-warmed {url} - Status: {response.status_code}")

    def _submit(self, line: str) -> None:
        if self._broadcaster is not None:
            self._broadcaster.submit(line)
