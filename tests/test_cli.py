"""Tests for the controlplane command line."""

import base64
import json
from functools import partial
from pathlib import Path

import httpx
import pytest
from typer.testing import CliRunner

import controlplane.__main__ as cli
from controlplane.__main__ import app
from controlplane.client import ControlPlaneClient, build_sync_request

runner: CliRunner = CliRunner()


class FakeControlPlane:
    """MockTransport handler with canned answers per route."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict[str, object] | None]] = []
        self.running_pid: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        path = request.url.path
        if path == "/dev/status":
            return httpx.Response(
                200, json={"running": self.running_pid is not None, "pid": self.running_pid}
            )
        if path == "/dev/start":
            if self.running_pid is not None:
                return httpx.Response(
                    409,
                    json={"success": False, "message": "Already running", "error": "Already running"},
                )
            self.running_pid = 4242
            return httpx.Response(
                202,
                json={"success": True, "message": "Dev server started successfully", "pid": 4242},
            )
        if path == "/dev/stop":
            self.running_pid = None
            return httpx.Response(
                200, json={"success": True, "stopped": True, "message": "Dev server stopped successfully"}
            )
        if path == "/sync":
            return httpx.Response(200, json={"success": True, "message": "Files synced successfully"})
        if path == "/dependencies/install":
            return httpx.Response(200, json={"success": True, "exit_code": 0})
        if path == "/dev/logs":
            frames = [
                {"log": "", "error": False, "stream": None, "system_message": "CONNECTED"},
                {"log": "compiled", "error": False, "stream": "stdout", "system_message": ""},
            ]
            content = "".join(f"data: {json.dumps(f)}\n\n" for f in frames) + ": keepalive\n\n"
            return httpx.Response(
                200, content=content.encode(), headers={"content-type": "text/event-stream"}
            )
        return httpx.Response(404, json={"detail": "Not Found"})


@pytest.fixture
def fake(monkeypatch: pytest.MonkeyPatch) -> FakeControlPlane:
    handler = FakeControlPlane()
    monkeypatch.setattr(
        cli,
        "ControlPlaneClient",
        partial(ControlPlaneClient, transport=httpx.MockTransport(handler)),
    )
    return handler


class TestDevCommands:
    def test_status_not_running(self, fake: FakeControlPlane) -> None:
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "not running" in result.output

    def test_start_then_conflict(self, fake: FakeControlPlane) -> None:
        first = runner.invoke(app, ["start", "--prewarm", "/", "--wait"])
        assert first.exit_code == 0
        assert "4242" in first.output
        assert fake.requests[0][2] == {
            "prewarm_config": {"paths": ["/"], "wait_for_completion": True}
        }

        second = runner.invoke(app, ["start"])
        assert second.exit_code == 1
        assert "409" in second.output
        assert "Already running" in second.output

    def test_stop(self, fake: FakeControlPlane) -> None:
        fake.running_pid = 1
        result = runner.invoke(app, ["stop"])
        assert result.exit_code == 0
        assert "stopped successfully" in result.output
        assert fake.running_pid is None

    def test_install_passes_extra_args(self, fake: FakeControlPlane) -> None:
        result = runner.invoke(app, ["install", "--cwd", "web", "--", "--force"])
        assert result.exit_code == 0
        assert fake.requests[-1][2] == {"cwd": "web", "extra_args": ["--force"]}

    def test_logs_prints_entries(self, fake: FakeControlPlane) -> None:
        result = runner.invoke(app, ["logs", "--raw"])
        assert result.exit_code == 0
        assert "CONNECTED" in result.output
        assert "compiled" in result.output

    def test_unreachable_service(self) -> None:
        result = runner.invoke(app, ["status", "--url", "http://127.0.0.1:9"])
        assert result.exit_code == 1
        assert "Could not reach" in result.output


class TestSyncCommand:
    def test_sync_directory(self, fake: FakeControlPlane, tmp_path: Path) -> None:
        (tmp_path / "app").mkdir()
        (tmp_path / "app" / "page.js").write_text("hello")

        result = runner.invoke(app, ["sync", str(tmp_path), "--delete", "old.js"])

        assert result.exit_code == 0
        method, path, body = fake.requests[-1]
        assert (method, path) == ("POST", "/sync")
        assert body is not None
        assert body["files"] == {"app/page.js": base64.b64encode(b"hello").decode()}
        assert body["deleted_file_paths"] == ["old.js"]

    def test_sync_requires_directory(self, fake: FakeControlPlane, tmp_path: Path) -> None:
        result = runner.invoke(app, ["sync", str(tmp_path / "missing")])
        assert result.exit_code == 1
        assert fake.requests == []


class TestBuildSyncRequest:
    def test_skips_node_modules_and_dot_directories(self, tmp_path: Path) -> None:
        (tmp_path / "node_modules" / "x").mkdir(parents=True)
        (tmp_path / "node_modules" / "x" / "index.js").write_text("x")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref")
        (tmp_path / ".env").write_text("A=1")
        (tmp_path / "index.ts").write_text("export {}")

        request = build_sync_request(tmp_path, deleted=[])

        assert sorted(request.files) == [".env", "index.ts"]
