"""FastAPI control plane for a single supervised dev server.

Architecture:
- One ``ControlPlane`` object per service, created with the app and shared by all
  request handlers through ``app.state``
- The log broadcaster loop starts in the lifespan and runs for the service lifetime
- Start/stop/restart, context reset and setup run under the supervisor's operation lock;
  sync and plain dependency installs do not take it
- Errors are raised as ``ControlPlaneError`` subclasses and rendered by one handler
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from controlplane import __version__
from controlplane.broadcaster import LogBroadcaster
from controlplane.constants import (
    MANIFEST_FILE_NAME,
    NODE_MODULES_DIR,
    SYSTEM_MESSAGE_CONNECTED,
    SYSTEM_MESSAGE_DISCONNECTED,
)
from controlplane.context import ContextStore, clean_workspace
from controlplane.dependencies import DependencyManager
from controlplane.errors import ControlPlaneError, RequestValidationFailure
from controlplane.logging import LogComponent, configure_logging, get_logger
from controlplane.models import (
    ContextResetRequest,
    ContextResponse,
    DevContext,
    DevOperationRequest,
    HealthResponse,
    InstallRequest,
    InstallResponse,
    LegacyInstallRequest,
    LogEntry,
    ModuleListing,
    PrewarmConfig,
    PrewarmRequest,
    PrewarmResponse,
    RestartResponse,
    Settings,
    StartResponse,
    StatusResponse,
    StopResponse,
    SupervisedProcess,
    SyncRequest,
    SyncResponse,
)
from controlplane.modules import ModuleBrowser
from controlplane.paths import PathGuard
from controlplane.prewarm import Prewarmer
from controlplane.registry import ProcessRegistry
from controlplane.resolver import CommandResolver, PackageJsonResolver
from controlplane.scaffold import scaffold_app
from controlplane.supervisor import ProcessSupervisor
from controlplane.sync import SyncHandler

logger = get_logger(LogComponent.SERVER)

_ERROR_PATTERN = re.compile(r"error|exception|failed|unhandled", re.IGNORECASE)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ControlPlane:
    """Every long-lived component of the service, wired from one ``Settings``."""

    def __init__(
        self,
        settings: Settings,
        *,
        resolver: CommandResolver | None = None,
        prewarm_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings: Settings = settings
        root = settings.app_dir

        self.guard: PathGuard = PathGuard(root, protected=settings.protected_paths)
        self.broadcaster: LogBroadcaster = LogBroadcaster(
            subscriber_buffer=settings.subscriber_buffer
        )
        self.registry: ProcessRegistry = ProcessRegistry(settings.pid_file)
        self.contexts: ContextStore = ContextStore(settings.context_file)
        self.prewarmer: Prewarmer = Prewarmer(
            default_paths=settings.prewarm_default_paths,
            ready_timeout=settings.ready_timeout,
            ready_poll_interval=settings.ready_poll_interval,
            ready_request_timeout=settings.ready_request_timeout,
            request_timeout=settings.prewarm_request_timeout,
            broadcaster=self.broadcaster,
            transport=prewarm_transport,
        )
        self.supervisor: ProcessSupervisor = ProcessSupervisor(
            root=root,
            registry=self.registry,
            resolver=resolver or PackageJsonResolver(settings.package_manager),
            broadcaster=self.broadcaster,
            contexts=self.contexts,
            prewarmer=self.prewarmer,
            default_port=settings.default_app_port,
            stop_grace_seconds=settings.stop_grace_seconds,
            stop_poll_interval=settings.stop_poll_interval,
            kill_settle_seconds=settings.kill_settle_seconds,
            restart_port_wait_seconds=settings.restart_port_wait_seconds,
            lock_timeout=settings.dev_lock_timeout,
        )
        self.dependencies: DependencyManager = DependencyManager(
            root=root,
            broadcaster=self.broadcaster,
            package_manager=settings.package_manager,
            install_args=settings.install_args,
        )
        self.sync: SyncHandler = SyncHandler(
            guard=self.guard,
            dependencies=self.dependencies,
            supervisor=self.supervisor,
            prewarmer=self.prewarmer,
        )
        self.modules: ModuleBrowser = ModuleBrowser(root / NODE_MODULES_DIR)

    async def startup(self) -> None:
        self.broadcaster.start()
        logger.info(f"Control plane managing {self.settings.app_dir}")

    async def shutdown(self) -> None:
        await self.prewarmer.shutdown()
        await self.supervisor.shutdown(stop_server=self.settings.stop_on_shutdown)
        await self.broadcaster.stop()
        logger.info("Control plane stopped.")

    async def install(self, request: InstallRequest) -> InstallResponse:
        cwd: Path | None = None
        if request.cwd:
            cwd = self.guard.resolve(request.cwd)
            if not cwd.is_dir():
                raise RequestValidationFailure(f"Not a directory: {request.cwd}")
        result = await self.dependencies.install(request.extra_args, cwd=cwd)
        if request.prewarm_config is not None:
            await self.prewarmer.prewarm(
                request.prewarm_config, self.supervisor.default_port
            )
        return InstallResponse(success=True, exit_code=result.returncode)

    async def reset_context(self, request: ContextResetRequest) -> ContextResponse:
        """Stop, store the new context, clean caches, reinstall, start again.

        Runs as one sequence under the operation lock.
        """
        context, process, _ = await self._apply_context(
            request, scaffold=False, start=request.start
        )
        return ContextResponse(
            success=True,
            message="Context reset"
            + (f"; dev server started with PID {process.pid}" if process else ""),
            framework=context.framework,
            environment_variables=context.environment_variables,
            pid=process.pid if process else None,
            port=process.port if process else None,
        )

    async def setup(self, request: ContextResetRequest) -> ContextResponse:
        """First-run setup: like a context reset, plus a starter app for an empty root."""
        context, process, scaffolded = await self._apply_context(
            request, scaffold=True, start=True
        )
        assert process is not None
        return ContextResponse(
            success=True,
            message=f"Initial setup complete for {context.framework.value}, dev server started.",
            framework=context.framework,
            environment_variables=context.environment_variables,
            pid=process.pid,
            port=process.port,
            scaffolded=scaffolded,
        )

    async def _apply_context(
        self, request: ContextResetRequest, *, scaffold: bool, start: bool
    ) -> tuple[DevContext, SupervisedProcess | None, list[str]]:
        context = DevContext(
            framework=request.framework,
            environment_variables=request.environment_variables,
        )
        root = self.settings.app_dir
        process: SupervisedProcess | None = None
        scaffolded: list[str] = []
        async with self.supervisor.exclusive():
            await self.supervisor.stop_locked()
            self.contexts.save(context)
            logger.info(f"Dev context set to {context.framework.value}")
            await clean_workspace(root, context.framework)
            if scaffold:
                scaffolded = await scaffold_app(root, context.framework)
            if (root / MANIFEST_FILE_NAME).exists():
                await self.dependencies.install()
            if start:
                process = await self.supervisor.start_locked(self.supervisor.default_port)
        return context, process, scaffolded


def _frame(entry: LogEntry) -> str:
    return f"data: {entry.model_dump_json()}\n\n"


def log_entry_for(text: str, is_error: bool) -> LogEntry:
    return LogEntry(
        log=text,
        error=bool(_ERROR_PATTERN.search(text)),
        stream="stderr" if is_error else "stdout",
    )


async def log_events(
    broadcaster: LogBroadcaster, request: Request, *, keepalive: float
) -> AsyncGenerator[str, None]:
    """Server-sent events for one log stream client.

    The subscriber lives exactly as long as the client connection.
    """
    subscriber = broadcaster.register()
    try:
        yield _frame(LogEntry(system_message=SYSTEM_MESSAGE_CONNECTED))
        while True:
            try:
                message = await asyncio.wait_for(subscriber.get(), timeout=keepalive)
            except TimeoutError:
                if await request.is_disconnected():
                    return
                yield ": keepalive\n\n"
                continue
            if message is None:
                yield _frame(LogEntry(system_message=SYSTEM_MESSAGE_DISCONNECTED))
                return
            yield _frame(log_entry_for(message.text, message.is_error))
    finally:
        broadcaster.unregister(subscriber)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan context manager for the FastAPI app."""
    plane: ControlPlane = app.state.controlplane
    await plane.startup()
    try:
        yield
    finally:
        await plane.shutdown()


def create_app(
    settings: Settings,
    *,
    resolver: CommandResolver | None = None,
    prewarm_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the control plane FastAPI app.

    Args:
        settings: Service configuration
        resolver: Dev command strategy (defaults to reading package.json)
        prewarm_transport: Optional httpx transport for prewarm requests

    Returns:
        FastAPI app instance
    """
    app = FastAPI(
        title="Applet Control Plane",
        description="Supervises one dev server and syncs files into its workspace",
        version=__version__,
        lifespan=lifespan,
    )
    plane = ControlPlane(settings, resolver=resolver, prewarm_transport=prewarm_transport)
    app.state.controlplane = plane

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        allow_credentials=False,
    )

    @app.exception_handler(ControlPlaneError)
    async def handle_controlplane_error(_: Request, exc: ControlPlaneError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        error = RequestValidationFailure(
            "Invalid JSON body", detail=jsonable_encoder(exc.errors())
        )
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    # === Files and dependencies ===

    @app.post("/sync", response_model=SyncResponse)
    async def sync_files(request: SyncRequest) -> SyncResponse:
        return await plane.sync.sync(request)

    @app.post("/dependencies/install", response_model=InstallResponse)
    @app.post("/dev/install", response_model=InstallResponse)
    async def install_dependencies(
        request: InstallRequest | None = None,
    ) -> InstallResponse:
        return await plane.install(request or InstallRequest())

    @app.post("/npm/install", response_model=InstallResponse)
    async def npm_install(request: LegacyInstallRequest | None = None) -> InstallResponse:
        legacy = request or LegacyInstallRequest()
        return await plane.install(legacy.to_install_request())

    # === Dev server ===

    @app.get("/dev/status", response_model=StatusResponse)
    async def dev_status() -> StatusResponse:
        return plane.supervisor.status()

    @app.post("/dev/start", response_model=StartResponse, status_code=202)
    async def dev_start(request: DevOperationRequest | None = None) -> StartResponse:
        body = request or DevOperationRequest()
        process = await plane.supervisor.start(body.port, body.prewarm_config)
        return StartResponse(message="Dev server started successfully", pid=process.pid)

    @app.post("/dev/stop", response_model=StopResponse)
    async def dev_stop() -> StopResponse:
        outcome = await plane.supervisor.stop()
        if not outcome.was_running:
            return StopResponse(message="Dev server not running")
        return StopResponse(
            message="Dev server stopped successfully",
            force_killed=outcome.force_killed,
        )

    @app.post("/dev/restart", response_model=RestartResponse, status_code=202)
    async def dev_restart(request: DevOperationRequest | None = None) -> RestartResponse:
        body = request or DevOperationRequest()
        process, outcome = await plane.supervisor.restart(body.port, body.prewarm_config)
        return RestartResponse(
            message="Dev server restarted successfully",
            pid=process.pid,
            force_killed=outcome.force_killed,
        )

    @app.get("/dev/logs")
    async def dev_logs(request: Request) -> StreamingResponse:
        """Stream dev server output using Server-Sent Events (SSE)."""
        return StreamingResponse(
            log_events(
                plane.broadcaster,
                request,
                keepalive=settings.sse_keepalive_seconds,
            ),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    @app.get("/dev/context", response_model=ContextResponse)
    async def dev_context() -> ContextResponse:
        context = plane.contexts.current
        status = plane.supervisor.status()
        return ContextResponse(
            framework=context.framework,
            environment_variables=context.environment_variables,
            pid=status.pid,
        )

    @app.post("/dev/context/reset", response_model=ContextResponse)
    async def dev_context_reset(
        request: ContextResetRequest | None = None,
    ) -> ContextResponse:
        return await plane.reset_context(request or ContextResetRequest())

    @app.post("/dev/setup", response_model=ContextResponse)
    async def dev_setup(request: ContextResetRequest | None = None) -> ContextResponse:
        return await plane.setup(request or ContextResetRequest())

    # === Prewarm ===

    @app.post("/prewarm", response_model=PrewarmResponse)
    async def prewarm(request: PrewarmRequest | None = None) -> PrewarmResponse:
        body = request or PrewarmRequest()
        config = PrewarmConfig(
            paths=body.paths, port=body.port, wait_for_completion=body.wait
        )
        warmed = await plane.prewarmer.prewarm(config, plane.supervisor.default_port)
        return PrewarmResponse(warmed=warmed)

    # === node_modules (read-only) ===

    @app.get("/modules", response_model=ModuleListing)
    async def list_modules(
        path: Annotated[str, Query(description="Directory below node_modules")] = "",
    ) -> ModuleListing:
        return await asyncio.to_thread(plane.modules.list_dir, path)

    @app.get("/modules/file")
    async def read_module_file(
        path: Annotated[str, Query(description="File below node_modules")] = "",
    ) -> Response:
        data, content_type = await plane.modules.read_file(path)
        return Response(content=data, media_type=content_type)

    # === Health ===

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        context = plane.contexts.current
        return HealthResponse(
            framework=context.framework,
            environment_variables_count=len(context.environment_variables),
        )

    return app


def run_server(settings: Settings) -> None:
    """Run the control plane with uvicorn until interrupted."""
    import uvicorn

    configure_logging(settings.log_level.upper())
    app = create_app(settings)
    config = uvicorn.Config(
        app=app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )
    server = uvicorn.Server(config)
    asyncio.run(server.serve())
