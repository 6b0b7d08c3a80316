"""Project metadata read from the installed distribution."""

from __future__ import annotations

import importlib.metadata

__all__ = ("__version__", "__project__")

__version__ = importlib.metadata.version("litestar-orchestration")
"""Version of the project."""
__project__ = importlib.metadata.metadata("litestar-orchestration")["Name"]
"""Name of the project."""
