"""Plan-then-execute frontend for CMake builds, with LLVM quirks."""
from __future__ import annotations

from .cli import main

__all__ = ["main"]
