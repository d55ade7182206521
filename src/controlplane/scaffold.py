"""Starter applications for an empty workspace."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from controlplane.constants import MANIFEST_FILE_NAME
from controlplane.logging import LogComponent, get_logger
from controlplane.models import Framework

logger = get_logger(LogComponent.CONTEXT)


def _manifest(name: str, scripts: dict[str, str], **sections: dict[str, str]) -> str:
    manifest = {
        "name": name,
        "version": "0.1.0",
        "private": True,
        "scripts": scripts,
        **sections,
    }
    return json.dumps(manifest, indent=2) + "\n"


_NEXTJS_FILES: dict[str, str] = {
    MANIFEST_FILE_NAME: _manifest(
        "nextjs-applet",
        {"dev": "next dev", "build": "next build", "start": "next start"},
        dependencies={"next": "^14.0.0", "react": "^18.0.0", "react-dom": "^18.0.0"},
    ),
    "next.config.js": """/** @type {import('next').NextConfig} */
const nextConfig = {}

module.exports = nextConfig
""",
    "app/layout.js": """export default function RootLayout({ children }) {
  return (
    <html lang="en">
      <body>{children}</body>
    </html>
  )
}
""",
    "app/page.js": """export default function Home() {
  return (
    <div>
      <h1>Welcome to Next.js Applet</h1>
      <p>This is a basic Next.js app created automatically.</p>
    </div>
  )
}
""",
}

_VITE_FILES: dict[str, str] = {
    MANIFEST_FILE_NAME: _manifest(
        "vite-applet",
        {"dev": "vite", "build": "vite build", "preview": "vite preview"},
        dependencies={"react": "^18.0.0", "react-dom": "^18.0.0"},
        devDependencies={"@vitejs/plugin-react": "^4.0.0", "vite": "^4.0.0"},
    ),
    "vite.config.js": """import { defineConfig } from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({
  plugins: [react()],
  server: {
    host: '0.0.0.0',
    port: Number(process.env.PORT) || 3000,
  },
})
""",
    "index.html": """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Vite Applet</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.jsx"></script>
  </body>
</html>
""",
    "src/main.jsx": """import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App.jsx'

ReactDOM.createRoot(document.getElementById('root')).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>,
)
""",
    "src/App.jsx": """function App() {
  return (
    <div>
      <h1>Welcome to Vite Applet</h1>
      <p>This is a basic Vite app created automatically.</p>
    </div>
  )
}

export default App
""",
}

STARTER_FILES: dict[Framework, dict[str, str]] = {
    Framework.FRAMEWORK_NEXTJS: _NEXTJS_FILES,
    Framework.FRAMEWORK_VITE: _VITE_FILES,
}


def _write_files(root: Path, files: dict[str, str]) -> list[str]:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return sorted(files)


async def scaffold_app(root: Path, framework: Framework) -> list[str]:
    """Write a starter app for ``framework`` into ``root``.

    Nothing is written when ``root`` already has a manifest or when there is no
    starter for the framework. Returns the relative paths that were written.
    """
    if (root / MANIFEST_FILE_NAME).exists():
        logger.info(f"{MANIFEST_FILE_NAME} present in {root}, keeping existing app")
        return []
    files = STARTER_FILES.get(framework)
    if not files:
        logger.warning(f"No starter app for {framework.value}, leaving {root} as is")
        return []
    written = await asyncio.to_thread(_write_files, root, files)
    logger.info(f"Created starter {framework.value} app in {root}")
    return written
