"""Global constants for the control plane."""

# Service defaults

DEFAULT_APP_DIR = "/app/applet"
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 8000
DEFAULT_APP_PORT = 3000

# Marker files stored inside the managed root

PID_FILE_NAME = ".dev.pid"
CONTEXT_FILE_NAME = ".dev.context.json"

# Target application manifest

MANIFEST_FILE_NAME = "package.json"
NODE_MODULES_DIR = "node_modules"

# Dependency manager invocation

DEFAULT_PACKAGE_MANAGER = "npm"
DEFAULT_INSTALL_ARGS = ("install", "--no-fund", "--no-audit", "--prefer-offline")
PRUNE_ARGS = ("prune",)

# Longest single output line read from a child process (bytes)

STREAM_LINE_LIMIT = 1024 * 1024

# Dev server environment

DEV_SERVER_HOST = "0.0.0.0"

# Prewarm defaults

PREWARM_DEFAULT_PATHS = ("/", "/api/hello")

# Environment variable prefix for settings

ENV_PREFIX = "CONTROLPLANE_"

# Log stream markers

SYSTEM_MESSAGE_CONNECTED = "CONNECTED"
SYSTEM_MESSAGE_DISCONNECTED = "DISCONNECTED"
