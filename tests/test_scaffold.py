"""Tests for starter app generation."""

import json
from pathlib import Path

import pytest

from controlplane.models import Framework
from controlplane.resolver import PackageJsonResolver
from controlplane.scaffold import scaffold_app


class TestScaffoldApp:
    @pytest.mark.asyncio
    async def test_nextjs_starter(self, app_dir: Path) -> None:
        written = await scaffold_app(app_dir, Framework.FRAMEWORK_NEXTJS)

        assert written == ["app/layout.js", "app/page.js", "next.config.js", "package.json"]
        manifest = json.loads((app_dir / "package.json").read_text())
        assert manifest["dependencies"]["next"] == "^14.0.0"

    @pytest.mark.asyncio
    async def test_starter_resolves_to_dev_script(self, app_dir: Path) -> None:
        await scaffold_app(app_dir, Framework.FRAMEWORK_VITE)

        command, args = PackageJsonResolver("npm").resolve(
            app_dir, 3000, Framework.FRAMEWORK_VITE
        )
        assert (command, args) == ("npm", ["run", "dev"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "framework", [Framework.FRAMEWORK_UNSPECIFIED, Framework.FRAMEWORK_ANGULAR]
    )
    async def test_no_starter_for_framework(self, app_dir: Path, framework: Framework) -> None:
        assert await scaffold_app(app_dir, framework) == []
        assert list(app_dir.iterdir()) == []
