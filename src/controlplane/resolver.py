"""Decides which command starts the dev server for a given directory and port.

Resolution order (scripts first):
1. ``scripts.dev``   -> ``npm run dev``
2. ``scripts.start`` -> ``npm start``
3. the framework hint from the dev context, if any
4. framework detection over ``dependencies`` and ``devDependencies``:
   ``next``, then ``@angular/cli``, then ``vite``

Script-based commands still receive ``PORT`` and ``HOST`` through the environment;
framework binaries are invoked with explicit host/port flags.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol

from controlplane.constants import DEV_SERVER_HOST, MANIFEST_FILE_NAME
from controlplane.errors import UnresolvableCommandError
from controlplane.models import Framework

DevCommand = tuple[str, list[str]]


class CommandResolver(Protocol):
    """Strategy that maps a directory and port to ``(command, argv)``."""

    def resolve(
        self,
        directory: Path,
        port: int,
        framework: Framework = Framework.FRAMEWORK_UNSPECIFIED,
    ) -> DevCommand: ...


def read_manifest(directory: Path) -> dict[str, Any]:  # pyright: ignore[reportExplicitAny]
    """Read and parse ``package.json`` from ``directory``."""
    manifest_path = directory / MANIFEST_FILE_NAME
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise UnresolvableCommandError(
            f"Cannot read {MANIFEST_FILE_NAME}: not found in {directory}"
        ) from e
    except (OSError, ValueError) as e:
        raise UnresolvableCommandError(f"Cannot read {MANIFEST_FILE_NAME}: {e}") from e
    if not isinstance(data, dict):
        raise UnresolvableCommandError(f"{MANIFEST_FILE_NAME} is not a JSON object")
    return data


def _framework_command(framework: Framework, port: int) -> DevCommand | None:
    port_str = str(port)
    if framework == Framework.FRAMEWORK_NEXTJS:
        return "node", [
            "node_modules/next/dist/bin/next",
            "dev",
            "-H",
            DEV_SERVER_HOST,
            "-p",
            port_str,
        ]
    if framework == Framework.FRAMEWORK_ANGULAR:
        return "node", [
            "node_modules/@angular/cli/bin/ng.js",
            "serve",
            "--host",
            DEV_SERVER_HOST,
            "--port",
            port_str,
        ]
    if framework == Framework.FRAMEWORK_VITE:
        return "node", [
            "node_modules/vite/bin/vite.js",
            "--host",
            DEV_SERVER_HOST,
            "--port",
            port_str,
        ]
    return None


_DEPENDENCY_FRAMEWORKS: tuple[tuple[str, Framework], ...] = (
    ("next", Framework.FRAMEWORK_NEXTJS),
    ("@angular/cli", Framework.FRAMEWORK_ANGULAR),
    ("vite", Framework.FRAMEWORK_VITE),
)


class PackageJsonResolver:
    """Default resolver reading the Node manifest."""

    def __init__(self, package_manager: str = "npm") -> None:
        self.package_manager: str = package_manager

    def resolve(
        self,
        directory: Path,
        port: int,
        framework: Framework = Framework.FRAMEWORK_UNSPECIFIED,
    ) -> DevCommand:
        manifest = read_manifest(directory)

        scripts = manifest.get("scripts") or {}
        if isinstance(scripts, dict):
            if "dev" in scripts:
                return self.package_manager, ["run", "dev"]
            if "start" in scripts:
                return self.package_manager, ["start"]

        hinted = _framework_command(framework, port)
        if hinted is not None:
            return hinted

        deps: dict[str, Any] = {}  # pyright: ignore[reportExplicitAny]
        for key in ("dependencies", "devDependencies"):
            section = manifest.get(key)
            if isinstance(section, dict):
                deps.update(section)

        for dependency, detected in _DEPENDENCY_FRAMEWORKS:
            if dependency in deps:
                command = _framework_command(detected, port)
                if command is not None:
                    return command

        raise UnresolvableCommandError(
            f"No suitable dev command found in {MANIFEST_FILE_NAME} "
            "(checked 'dev'/'start' scripts and 'next'/'@angular/cli'/'vite' dependencies)"
        )
