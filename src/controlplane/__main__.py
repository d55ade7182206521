"""Command line entry point: run the service or drive a running one."""

from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Annotated, ParamSpec, TypeVar

import httpx
from rich.markup import escape
from typer import Argument, Exit, Option, Typer

from controlplane import __version__
from controlplane.client import ControlPlaneClient
from controlplane.logging import print_log_entry
from controlplane.models import InstallRequest, PrewarmConfig, Settings
from controlplane.utils import console

app = Typer(
    name="controlplane",
    help="Supervise a dev server and sync files into its workspace",
    no_args_is_help=True,
)

P = ParamSpec("P")
R = TypeVar("R")

UrlOption = Annotated[
    str,
    Option("--url", envvar="CONTROLPLANE_URL", help="Base URL of the control plane"),
]


def handle_http_errors(func: Callable[P, R]) -> Callable[P, R]:
    """Render HTTP failures from the control plane and exit non-zero."""

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return func(*args, **kwargs)
        except httpx.HTTPStatusError as e:
            try:
                detail = e.response.json().get("message", e.response.text)
            except ValueError:
                detail = e.response.text
            console.print(f"[red]❌ {e.response.status_code}: {escape(str(detail))}[/red]")
            raise Exit(code=1)
        except httpx.HTTPError as e:
            console.print(f"[red]❌ Could not reach the control plane: {escape(str(e))}[/red]")
            raise Exit(code=1)

    return wrapper


def _prewarm_config(paths: list[str] | None, wait: bool) -> PrewarmConfig | None:
    if paths is None:
        return None
    return PrewarmConfig(paths=paths, wait_for_completion=wait)


@app.command(name="version", help="Show the version")
def version() -> None:
    console.print(f"controlplane {__version__}")


@app.command(name="serve", help="Run the control plane service")
def serve(
    app_dir: Annotated[
        Path | None,
        Argument(help="Directory of the managed application (default from settings)"),
    ] = None,
    host: Annotated[str | None, Option(help="Interface to listen on")] = None,
    port: Annotated[int | None, Option(help="Port to listen on")] = None,
    app_port: Annotated[
        int | None, Option("--app-port", help="Default dev server port")
    ] = None,
    log_level: Annotated[str | None, Option("--log-level", help="Log level")] = None,
    env_file: Annotated[
        Path | None, Option("--env-file", help="Path to a .env file")
    ] = None,
):
    """Run the HTTP service until interrupted."""
    from controlplane.server import run_server

    settings = Settings.from_env(
        env_file,
        app_dir=app_dir,
        host=host,
        port=port,
        default_app_port=app_port,
        log_level=log_level,
    )
    console.print(
        f"[bold cyan]Control plane for {settings.app_dir} on {settings.host}:{settings.port}[/bold cyan]"
    )
    run_server(settings)


@app.command(name="status", help="Show whether the dev server is running")
@handle_http_errors
def status(url: UrlOption = "http://localhost:8000"):
    result = ControlPlaneClient(url).status()
    if result.running:
        console.print(f"[green]✅ Dev server running (PID {result.pid})[/green]")
    else:
        console.print("[yellow]Dev server not running[/yellow]")


@app.command(name="start", help="Start the dev server")
@handle_http_errors
def start(
    url: UrlOption = "http://localhost:8000",
    port: Annotated[int | None, Option(help="Dev server port")] = None,
    prewarm: Annotated[
        list[str] | None, Option("--prewarm", help="Path to warm after start (repeatable)")
    ] = None,
    wait: Annotated[bool, Option(help="Wait for prewarming to finish")] = False,
):
    result = ControlPlaneClient(url).start(port, _prewarm_config(prewarm, wait))
    console.print(f"[bold green]✨ {result.message} (PID {result.pid})[/bold green]")


@app.command(name="stop", help="Stop the dev server")
@handle_http_errors
def stop(url: UrlOption = "http://localhost:8000"):
    result = ControlPlaneClient(url).stop()
    suffix = " (force-killed)" if result.force_killed else ""
    console.print(f"[green]{result.message}{suffix}[/green]")


@app.command(name="restart", help="Restart the dev server")
@handle_http_errors
def restart(
    url: UrlOption = "http://localhost:8000",
    port: Annotated[int | None, Option(help="Dev server port")] = None,
    prewarm: Annotated[
        list[str] | None, Option("--prewarm", help="Path to warm after restart (repeatable)")
    ] = None,
    wait: Annotated[bool, Option(help="Wait for prewarming to finish")] = False,
):
    result = ControlPlaneClient(url).restart(port, _prewarm_config(prewarm, wait))
    console.print(f"[bold green]✨ {result.message} (PID {result.pid})[/bold green]")


@app.command(name="install", help="Install dependencies in the managed application")
@handle_http_errors
def install(
    url: UrlOption = "http://localhost:8000",
    cwd: Annotated[
        str | None, Option(help="Subdirectory of the application to install in")
    ] = None,
    extra_args: Annotated[
        list[str] | None, Argument(help="Extra arguments for the package manager")
    ] = None,
):
    result = ControlPlaneClient(url).install(
        InstallRequest(cwd=cwd, extra_args=extra_args or [])
    )
    console.print(f"[green]✅ Install finished (exit code {result.exit_code})[/green]")


@app.command(name="sync", help="Push local files into the managed application")
@handle_http_errors
def sync(
    directory: Annotated[Path, Argument(help="Local directory to push")],
    url: UrlOption = "http://localhost:8000",
    delete: Annotated[
        list[str] | None, Option("--delete", help="Relative path to delete (repeatable)")
    ] = None,
    restart_server: Annotated[
        bool, Option("--restart", help="Restart the dev server after syncing")
    ] = False,
):
    if not directory.is_dir():
        console.print(f"[red]❌ Not a directory: {directory}[/red]")
        raise Exit(code=1)
    result = ControlPlaneClient(url).sync_directory(
        directory, deleted=delete, restart=restart_server
    )
    console.print(f"[green]✅ {result.message}[/green]")


@app.command(name="logs", help="Follow the dev server log stream")
@handle_http_errors
def logs(
    url: UrlOption = "http://localhost:8000",
    raw: Annotated[
        bool, Option("--raw", help="Show raw log output without prefix formatting")
    ] = False,
):
    """Stream logs until interrupted or until the service closes the stream."""
    try:
        with ControlPlaneClient(url).stream_logs() as entries:
            for entry in entries:
                print_log_entry(entry, raw_output=raw)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped following logs[/dim]")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
