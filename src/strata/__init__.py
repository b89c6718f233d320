"""
strata — pluggable persistence layer

File: src/strata/__init__.py

Purpose
- Package root. Exposes package metadata and the persistence facade.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
- Heavy submodules (drivers, YAML) are imported lazily by the modules that need them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

__version__ = "0.1.0"

if TYPE_CHECKING:
    from strata.persistence import Persistence


def __getattr__(name: str) -> Any:
    if name == "Persistence":
        from strata.persistence import Persistence

        return Persistence
    raise AttributeError(f"module 'strata' has no attribute {name!r}")


__all__ = ["Persistence", "__version__"]
