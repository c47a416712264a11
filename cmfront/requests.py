"""Immutable request values produced by the command-line adapter."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

from .quirks import Quirks


@dataclass(frozen=True, slots=True)
class Request:
    """Options shared by every operation. ``None`` means "not given, resolve a default"."""

    source: Path | None = None
    binary: Path | None = None
    config: str | None = None
    quirks: Quirks | None = None

    @property
    def operation(self) -> str:
        return type(self).__name__.lower()


@dataclass(frozen=True, slots=True)
class ConfigureOptions:
    generator: str | None = None
    prefix_path: Tuple[str, ...] = ()
    shared_libs: bool | None = None
    san: bool = False
    linker: str | None = None
    expensive_checks: bool = False
    enable_projects: Tuple[str, ...] | None = None
    enable_runtimes: Tuple[str, ...] | None = None
    targets_to_build: Tuple[str, ...] | None = None
    disable_implicit_native: bool = False
    flags: Tuple[str, ...] = ()
    args: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Configure(Request):
    options: ConfigureOptions = field(default_factory=ConfigureOptions)


@dataclass(frozen=True, slots=True)
class Build(Request):
    targets: Tuple[str, ...] = ()
    args: Tuple[str, ...] = ()
    configure: ConfigureOptions = field(default_factory=ConfigureOptions)


@dataclass(frozen=True, slots=True)
class Test(Request):
    group: str | None = None
    first: bool = False
    verbose: bool = False
    print_only: bool = False
    xfail_export: bool = False
    update_resultdb: bool | None = None
    tests: Tuple[str, ...] = ()
    args: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Activate(Request):
    pass


@dataclass(frozen=True, slots=True)
class Deactivate(Request):
    pass


@dataclass(frozen=True, slots=True)
class Clean(Request):
    cache_only: bool = False


__all__ = [
    "Activate",
    "Build",
    "Clean",
    "Configure",
    "ConfigureOptions",
    "Deactivate",
    "Request",
    "Test",
]
