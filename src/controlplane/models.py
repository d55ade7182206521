"""Centralized Pydantic models, enums, and settings for the control plane."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import ClassVar, Literal, get_origin

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from controlplane.constants import (
    CONTEXT_FILE_NAME,
    DEFAULT_APP_DIR,
    DEFAULT_APP_PORT,
    DEFAULT_INSTALL_ARGS,
    DEFAULT_LISTEN_HOST,
    DEFAULT_LISTEN_PORT,
    DEFAULT_PACKAGE_MANAGER,
    ENV_PREFIX,
    PID_FILE_NAME,
    PREWARM_DEFAULT_PATHS,
)


LogStream = Literal["stdout", "stderr"]


# === Enums ===


class Framework(str, Enum):
    """Framework hint stored in the dev context."""

    FRAMEWORK_UNSPECIFIED = "FRAMEWORK_UNSPECIFIED"
    FRAMEWORK_NEXTJS = "FRAMEWORK_NEXTJS"
    FRAMEWORK_VITE = "FRAMEWORK_VITE"
    FRAMEWORK_ANGULAR = "FRAMEWORK_ANGULAR"

    @classmethod
    def from_input(cls, value: int | str | None) -> Framework:
        """Accept enum names (any case) or their integer codes; unknown values are unspecified."""
        members = list(cls)
        if isinstance(value, int) and not isinstance(value, bool):
            if 0 <= value < len(members):
                return members[value]
            return cls.FRAMEWORK_UNSPECIFIED
        text = str(value or "").strip().upper()
        if text.isdigit():
            return cls.from_input(int(text))
        try:
            return cls(text)
        except ValueError:
            return cls.FRAMEWORK_UNSPECIFIED


# === Settings ===


class Settings(BaseModel):
    """Complete configuration for the control plane.

    This is the single source of truth for all defaults. Values can be overridden by
    ``CONTROLPLANE_<FIELD>`` environment variables (see ``from_env``) and by CLI options.
    """

    app_dir: Path = Path(DEFAULT_APP_DIR)
    host: str = DEFAULT_LISTEN_HOST
    port: int = DEFAULT_LISTEN_PORT
    default_app_port: int = DEFAULT_APP_PORT
    pid_file_name: str = PID_FILE_NAME
    context_file_name: str = CONTEXT_FILE_NAME

    package_manager: str = DEFAULT_PACKAGE_MANAGER
    install_args: list[str] = Field(default_factory=lambda: list(DEFAULT_INSTALL_ARGS))

    stop_grace_seconds: float = 5.0
    stop_poll_interval: float = 0.15
    kill_settle_seconds: float = 1.0
    restart_port_wait_seconds: float = 5.0
    dev_lock_timeout: float = 30.0

    ready_timeout: float = 20.0
    ready_poll_interval: float = 0.25
    ready_request_timeout: float = 2.0
    prewarm_request_timeout: float = 10.0
    prewarm_default_paths: list[str] = Field(
        default_factory=lambda: list(PREWARM_DEFAULT_PATHS)
    )

    subscriber_buffer: int = 10
    sse_keepalive_seconds: float = 15.0
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    stop_on_shutdown: bool = True
    log_level: str = "INFO"

    @property
    def pid_file(self) -> Path:
        return self.app_dir / self.pid_file_name

    @property
    def context_file(self) -> Path:
        return self.app_dir / self.context_file_name

    @property
    def protected_paths(self) -> tuple[str, ...]:
        """Root-relative names that file sync may never touch."""
        return (self.pid_file_name, self.context_file_name)

    @classmethod
    def from_env(cls, env_file: Path | None = None, **overrides: object) -> Settings:
        """Build settings from ``CONTROLPLANE_*`` variables (after loading ``.env``).

        List fields accept comma-separated values. ``None`` overrides are ignored so
        CLI options that were not given fall through to the environment.
        """
        load_dotenv(env_file or Path.cwd() / ".env")
        values: dict[str, object] = {}
        for name, field in cls.model_fields.items():
            raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if get_origin(field.annotation) is list:
                values[name] = [part.strip() for part in raw.split(",") if part.strip()]
            else:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)


# === Dev context ===


class DevContext(BaseModel):
    """Framework hint and extra environment for the dev server, persisted in the root."""

    framework: Framework = Framework.FRAMEWORK_UNSPECIFIED
    environment_variables: dict[str, str] = Field(default_factory=dict)

    @field_validator("framework", mode="before")
    @classmethod
    def _coerce_framework(cls, value: object) -> Framework:
        if isinstance(value, Framework):
            return value
        return Framework.from_input(value if isinstance(value, (int, str)) else None)


# === Process bookkeeping ===


class SupervisedProcess(BaseModel):
    """The one supervised dev server (the pid is durable, the port is informational)."""

    pid: int
    port: int

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class StopOutcome(BaseModel):
    """Result of a stop sequence. ``force_killed`` is an observability signal only."""

    was_running: bool = False
    force_killed: bool = False
    pid: int | None = None


class CommandResult(BaseModel):
    """Result of running an external command."""

    command: list[str]
    cwd: str
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


# === Log models ===


class LogEntry(BaseModel):
    """A single frame of the log stream."""

    log: str = ""
    error: bool = False
    stream: LogStream | None = None
    system_message: str = ""


# === API request models ===


class PrewarmConfig(BaseModel):
    """Canonical prewarm configuration shared by every endpoint that accepts one."""

    paths: list[str] = Field(default_factory=list)
    port: int | None = None
    wait_for_completion: bool = False


class SyncRequest(BaseModel):
    files: dict[str, str] = Field(default_factory=dict)
    deleted_file_paths: list[str] = Field(default_factory=list)
    prewarm_config: PrewarmConfig | None = None
    restart_dev_server: bool = False


class InstallRequest(BaseModel):
    cwd: str | None = None
    extra_args: list[str] = Field(default_factory=list)
    prewarm_config: PrewarmConfig | None = None


class LegacyInstallRequest(BaseModel):
    """Body accepted by the ``/npm/install`` alias."""

    cwd: str | None = None
    extraArgs: list[str] = Field(default_factory=list)
    prewarm: bool = False
    prewarmPaths: list[str] | None = None
    port: int | None = None
    prewarm_config: PrewarmConfig | None = None

    def to_install_request(self) -> InstallRequest:
        prewarm_config = self.prewarm_config
        if prewarm_config is None and self.prewarm:
            prewarm_config = PrewarmConfig(
                paths=self.prewarmPaths or [],
                port=self.port,
                wait_for_completion=False,
            )
        return InstallRequest(
            cwd=self.cwd,
            extra_args=self.extraArgs,
            prewarm_config=prewarm_config,
        )


class DevOperationRequest(BaseModel):
    """Optional body of start/restart."""

    port: int | None = None
    prewarm_config: PrewarmConfig | None = None


class PrewarmRequest(BaseModel):
    paths: list[str] = Field(default_factory=list)
    port: int | None = None
    wait: bool = True


class ContextResetRequest(BaseModel):
    framework: int | str | None = None
    environment_variables: dict[str, str] = Field(default_factory=dict)
    start: bool = True


# === API response models ===


class SyncResponse(BaseModel):
    success: bool = True
    message: str


class InstallResponse(BaseModel):
    success: bool = True
    exit_code: int = 0


class StatusResponse(BaseModel):
    running: bool
    pid: int | None = None


class StartResponse(BaseModel):
    success: bool = True
    operation_initiated: bool = True
    message: str
    pid: int


class StopResponse(BaseModel):
    success: bool = True
    stopped: bool = True
    message: str
    force_killed: bool = False


class RestartResponse(BaseModel):
    success: bool = True
    operation_initiated: bool = True
    message: str
    pid: int
    force_killed: bool = False


class PrewarmResponse(BaseModel):
    ok: bool = True
    warmed: list[str]


class ContextResponse(BaseModel):
    success: bool = True
    message: str = ""
    framework: Framework
    environment_variables: dict[str, str] = Field(default_factory=dict)
    pid: int | None = None
    port: int | None = None
    scaffolded: list[str] = Field(default_factory=list)


class ModuleEntry(BaseModel):
    name: str
    type: Literal["dir", "file"]


class ModuleListing(BaseModel):
    ok: bool = True
    path: str
    entries: list[ModuleEntry]


class HealthResponse(BaseModel):
    status: str = "healthy"
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    framework: Framework = Framework.FRAMEWORK_UNSPECIFIED
    environment_variables_count: int = 0
