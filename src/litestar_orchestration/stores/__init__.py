"""Instance store implementations.

The SQLAlchemy backed store lives in :mod:`litestar_orchestration.db`.
"""

from __future__ import annotations

from litestar_orchestration.stores.memory import InMemoryInstanceStore

__all__ = ["InMemoryInstanceStore"]
