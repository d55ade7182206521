"""Control plane for a single supervised dev server."""

__version__ = "0.1.0"
