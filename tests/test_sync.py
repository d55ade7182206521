"""Tests for file sync and dependency reconciliation."""

import base64
import io
import stat
import sys
from pathlib import Path

import pytest

from conftest import SupervisorFactory
from controlplane.broadcaster import LogBroadcaster
from controlplane.dependencies import DependencyManager
from controlplane.errors import ExternalCommandError, SpawnError, SyncError
from controlplane.models import PrewarmConfig, SyncRequest
from controlplane.paths import PathGuard
from controlplane.supervisor import ProcessSupervisor
from controlplane.sync import SyncHandler, touches_manifest


def b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def fake_package_manager(directory: Path, *, fail_on: str | None = None) -> Path:
    """A shell script that records its arguments and prints a line per call."""
    script = directory / "fake-npm"
    failure = f'if [ "$1" = "{fail_on}" ]; then echo "boom" >&2; exit 7; fi\n' if fail_on else ""
    script.write_text(
        "#!/bin/sh\n"
        f'echo "$@" >> "{directory / "calls.log"}"\n'
        f"{failure}"
        'echo "ran $1"\n'
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script


def calls(directory: Path) -> list[str]:
    log = directory / "calls.log"
    return log.read_text().splitlines() if log.exists() else []


def make_handler(
    supervisor: ProcessSupervisor, package_manager: Path
) -> SyncHandler:
    guard = PathGuard(supervisor.root, protected=(".dev.pid", ".dev.context.json"))
    dependencies = DependencyManager(
        root=supervisor.root,
        broadcaster=supervisor.broadcaster,
        package_manager=str(package_manager),
        install_args=["install", "--no-audit"],
    )
    return SyncHandler(
        guard=guard,
        dependencies=dependencies,
        supervisor=supervisor,
        prewarmer=supervisor.prewarmer,
    )


class TestTouchesManifest:
    def test_exact_relative_match(self) -> None:
        assert touches_manifest(["package.json"]) is True
        assert touches_manifest(["./package.json"]) is True
        assert touches_manifest(["app/package.json"]) is False
        assert touches_manifest(["package.json.bak"]) is False


class TestSyncHandler:
    """Tests for SyncHandler.sync."""

    @pytest.mark.asyncio
    async def test_writes_and_deletes(
        self, supervisor_factory: SupervisorFactory, app_dir: Path, tmp_path: Path
    ) -> None:
        (app_dir / "old").mkdir()
        (app_dir / "old" / "file.txt").write_text("x")
        (app_dir / "stale.txt").write_text("x")

        async with supervisor_factory() as supervisor:
            handler = make_handler(supervisor, fake_package_manager(tmp_path))
            response = await handler.sync(
                SyncRequest(
                    files={"app/page.js": b64("hello"), "README.md": b64("# hi")},
                    deleted_file_paths=["old", "stale.txt", "never-existed.txt"],
                )
            )

        assert response.success is True
        assert response.message == "Files synced successfully"
        assert (app_dir / "app" / "page.js").read_bytes() == b"hello"
        assert (app_dir / "README.md").read_text() == "# hi"
        assert not (app_dir / "old").exists()
        assert not (app_dir / "stale.txt").exists()
        assert calls(tmp_path) == []

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_valid_entries(
        self, supervisor_factory: SupervisorFactory, app_dir: Path, tmp_path: Path
    ) -> None:
        async with supervisor_factory() as supervisor:
            handler = make_handler(supervisor, fake_package_manager(tmp_path))
            with pytest.raises(SyncError) as exc_info:
                await handler.sync(
                    SyncRequest(
                        files={
                            "good.txt": b64("ok"),
                            "../escape.txt": b64("nope"),
                            "bad.txt": "***not base64***",
                        },
                        deleted_file_paths=["/etc/hosts"],
                    )
                )

        errors = exc_info.value.errors
        assert exc_info.value.status_code == 500
        assert len(errors) == 3
        assert any("../escape.txt" in e for e in errors)
        assert any("bad.txt" in e for e in errors)
        assert any("/etc/hosts" in e for e in errors)
        assert (app_dir / "good.txt").read_text() == "ok"
        assert not (app_dir.parent / "escape.txt").exists()

    @pytest.mark.asyncio
    async def test_protected_marker_cannot_be_overwritten(
        self, supervisor_factory: SupervisorFactory, app_dir: Path, tmp_path: Path
    ) -> None:
        async with supervisor_factory() as supervisor:
            handler = make_handler(supervisor, fake_package_manager(tmp_path))
            with pytest.raises(SyncError):
                await handler.sync(SyncRequest(files={".dev.pid": b64("1")}))
        assert not (app_dir / ".dev.pid").exists()

    @pytest.mark.asyncio
    async def test_write_and_delete_of_same_path_is_rejected(
        self, supervisor_factory: SupervisorFactory, tmp_path: Path
    ) -> None:
        async with supervisor_factory() as supervisor:
            handler = make_handler(supervisor, fake_package_manager(tmp_path))
            errors = await handler.apply_files({"a.txt": b64("a")}, ["a.txt"])
        assert errors == ["failed to delete a.txt: path overlaps a file being written"]

    @pytest.mark.asyncio
    async def test_delete_of_parent_directory_of_a_write_is_rejected(
        self, supervisor_factory: SupervisorFactory, app_dir: Path, tmp_path: Path
    ) -> None:
        (app_dir / "a").mkdir()
        (app_dir / "a" / "old.js").write_text("old")

        async with supervisor_factory() as supervisor:
            handler = make_handler(supervisor, fake_package_manager(tmp_path))
            errors = await handler.apply_files({"a/b.js": b64("new")}, ["a", "./a/b.js"])

        assert errors == [
            "failed to delete a: path overlaps a file being written",
            "failed to delete ./a/b.js: path overlaps a file being written",
        ]
        assert (app_dir / "a" / "b.js").read_text() == "new"
        assert (app_dir / "a" / "old.js").exists()

    @pytest.mark.asyncio
    async def test_delete_removes_symlink_not_its_target(
        self, supervisor_factory: SupervisorFactory, app_dir: Path, tmp_path: Path
    ) -> None:
        (app_dir / "src").mkdir()
        (app_dir / "src" / "keep.js").write_text("keep")
        (app_dir / "lnk").symlink_to(app_dir / "src", target_is_directory=True)

        async with supervisor_factory() as supervisor:
            handler = make_handler(supervisor, fake_package_manager(tmp_path))
            await handler.sync(SyncRequest(deleted_file_paths=["lnk"]))

        assert not (app_dir / "lnk").is_symlink()
        assert (app_dir / "src" / "keep.js").read_text() == "keep"

    @pytest.mark.asyncio
    async def test_manifest_triggers_install_then_prune(
        self, supervisor_factory: SupervisorFactory, app_dir: Path, tmp_path: Path
    ) -> None:
        async with supervisor_factory() as supervisor:
            subscriber = supervisor.broadcaster.register()
            handler = make_handler(supervisor, fake_package_manager(tmp_path))
            response = await handler.sync(
                SyncRequest(files={"package.json": b64('{"name": "app"}')})
            )
            await supervisor.broadcaster.flush()
            texts: list[str] = []
            while True:
                message = subscriber._queue.get_nowait()
                assert message is not None
                texts.append(message.text)
                if "reconciliation finished" in message.text:
                    break

        assert calls(tmp_path) == ["install --no-audit", "prune"]
        assert "install completed successfully" in response.message
        assert "prune completed successfully" in response.message
        assert texts[0] == "--- package.json updated. Reconciling dependencies... ---"
        assert "ran install" in texts
        assert "ran prune" in texts

    @pytest.mark.asyncio
    async def test_failed_install_reports_sync_error(
        self, supervisor_factory: SupervisorFactory, app_dir: Path, tmp_path: Path
    ) -> None:
        async with supervisor_factory() as supervisor:
            handler = make_handler(
                supervisor, fake_package_manager(tmp_path, fail_on="install")
            )
            with pytest.raises(SyncError) as exc_info:
                await handler.sync(SyncRequest(files={"package.json": b64("{}")}))

        assert "install failed" in exc_info.value.message
        assert calls(tmp_path) == ["install --no-audit"]
        assert (app_dir / "package.json").read_text() == "{}"

    @pytest.mark.asyncio
    async def test_restart_after_sync(
        self, supervisor_factory: SupervisorFactory, tmp_path: Path
    ) -> None:
        async with supervisor_factory() as supervisor:
            before = await supervisor.start()
            handler = make_handler(supervisor, fake_package_manager(tmp_path))
            response = await handler.sync(
                SyncRequest(files={"a.txt": b64("a")}, restart_dev_server=True)
            )
            after = supervisor.status()

        assert after.running is True
        assert after.pid != before.pid
        assert f"PID {after.pid}" in response.message

    @pytest.mark.asyncio
    async def test_prewarm_runs_after_files(
        self, supervisor_factory: SupervisorFactory, tmp_path: Path
    ) -> None:
        async with supervisor_factory() as supervisor:
            handler = make_handler(supervisor, fake_package_manager(tmp_path))
            launched: list[tuple[list[str], int]] = []
            supervisor.prewarmer.launch = lambda paths, port: launched.append((paths, port))  # type: ignore[method-assign,assignment,return-value]

            await handler.sync(
                SyncRequest(
                    files={"a.txt": b64("a")},
                    prewarm_config=PrewarmConfig(paths=["/a", "/b"]),
                )
            )

        assert launched == [(["/a", "/b"], supervisor.default_port)]


class TestDependencyManager:
    """Tests for DependencyManager."""

    @pytest.mark.asyncio
    async def test_install_captures_output(self, app_dir: Path, tmp_path: Path) -> None:
        broadcaster = LogBroadcaster(stdout=io.StringIO(), stderr=io.StringIO())
        broadcaster.start()
        try:
            manager = DependencyManager(
                root=app_dir,
                broadcaster=broadcaster,
                package_manager=str(fake_package_manager(tmp_path)),
                install_args=["install"],
            )
            result = await manager.install(["--legacy-peer-deps"])
        finally:
            await broadcaster.stop()

        assert result.returncode == 0
        assert result.stdout == "ran install"
        assert result.cwd == str(app_dir)
        assert calls(tmp_path) == ["install --legacy-peer-deps"]

    @pytest.mark.asyncio
    async def test_install_failure_carries_exit_code_and_output(
        self, app_dir: Path, tmp_path: Path
    ) -> None:
        broadcaster = LogBroadcaster(stdout=io.StringIO(), stderr=io.StringIO())
        broadcaster.start()
        try:
            manager = DependencyManager(
                root=app_dir,
                broadcaster=broadcaster,
                package_manager=str(fake_package_manager(tmp_path, fail_on="install")),
            )
            with pytest.raises(ExternalCommandError) as exc_info:
                await manager.install()
        finally:
            await broadcaster.stop()

        payload = exc_info.value.to_payload()
        assert payload["exit_code"] == 7
        assert payload["error_message"] == "boom"

    @pytest.mark.asyncio
    async def test_missing_executable(self, app_dir: Path, tmp_path: Path) -> None:
        broadcaster = LogBroadcaster(stdout=io.StringIO(), stderr=io.StringIO())
        broadcaster.start()
        try:
            manager = DependencyManager(
                root=app_dir,
                broadcaster=broadcaster,
                package_manager=str(tmp_path / "missing"),
            )
            with pytest.raises(SpawnError) as exc_info:
                await manager.install()
        finally:
            await broadcaster.stop()

        assert exc_info.value.exit_code == -1

    @pytest.mark.asyncio
    async def test_output_line_longer_than_stream_limit(self, app_dir: Path) -> None:
        broadcaster = LogBroadcaster(stdout=io.StringIO(), stderr=io.StringIO())
        broadcaster.start()
        size = 2 * 1024 * 1024
        script = f"import sys\nsys.stdout.write('x' * {size} + '\\n')\nprint('done')\n"
        try:
            manager = DependencyManager(
                root=app_dir, broadcaster=broadcaster, package_manager=sys.executable
            )
            result = await manager.run(["-c", script])
        finally:
            await broadcaster.stop()

        assert result.returncode == 0
        lines = result.stdout.split("\n")
        assert lines[-1] == "done"
        assert "".join(lines[:-1]) == "x" * size
