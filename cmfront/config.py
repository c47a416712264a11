"""User settings: an optional settings file plus the ``CM_*`` environment variables."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping
import logging
import os

import yaml

from core.config_loader import load_config_file, merge_mappings, normalize_bool, normalize_string_list

from .errors import ConfigError
from .log import parse_level

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "CM_CONFIG_PATH"
CONFIG_FILE_NAME = "config.toml"
DEFAULT_LOG_LEVEL = "warning"

# Environment variables written by ``cm activate``.
ENVIRONMENT_OPTIONS: Mapping[str, str] = {
    "source": "CM_SRC",
    "binary": "CM_BIN",
    "config": "CM_CFG",
    "quirks": "CM_QUIRKS",
}

_CONFIGURE_OPTIONS = frozenset(
    {
        "generator",
        "prefix_path",
        "shared_libs",
        "san",
        "linker",
        "expensive_checks",
        "enable_projects",
        "enable_runtimes",
        "targets_to_build",
        "disable_implicit_native",
        "flags",
    }
)

SECTION_OPTIONS: Mapping[str, FrozenSet[str]] = {
    "global": frozenset({"source", "binary", "config", "quirks", "dry_run", "log_level", "log_file"}),
    "configure": _CONFIGURE_OPTIONS,
    "build": _CONFIGURE_OPTIONS | {"targets"},
    "test": frozenset({"group", "first", "verbose", "print_only", "xfail_export", "update_resultdb"}),
    "clean": frozenset({"cache_only"}),
}

LIST_OPTIONS = frozenset({"prefix_path", "enable_projects", "enable_runtimes", "targets_to_build", "flags", "targets"})
BOOL_OPTIONS = frozenset(
    {
        "dry_run",
        "shared_libs",
        "san",
        "expensive_checks",
        "disable_implicit_native",
        "first",
        "verbose",
        "print_only",
        "xfail_export",
        "update_resultdb",
        "cache_only",
    }
)
PATH_OPTIONS = frozenset({"source", "binary", "log_file"})


def coerce_option(name: str, value: Any) -> Any:
    """Convert a settings value to the type the matching command-line option produces."""

    if name in LIST_OPTIONS:
        return normalize_string_list(value, field_name=name)
    if name in BOOL_OPTIONS:
        return normalize_bool(value, field_name=name)
    if name == "log_level":
        parse_level(value)
        return value
    if name in PATH_OPTIONS:
        return Path(str(value)).expanduser()
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a string")
    return value


@dataclass(frozen=True, slots=True)
class Settings:
    path: Path | None = None
    sections: Mapping[str, Mapping[str, Any]] = field(default_factory=lambda: MappingProxyType({}))

    def section(self, name: str) -> Mapping[str, Any]:
        return self.sections.get(name, MappingProxyType({}))

    @property
    def log_level(self) -> str:
        return self.section("global").get("log_level", DEFAULT_LOG_LEVEL)

    @property
    def log_file(self) -> Path | None:
        return self.section("global").get("log_file")

    def global_defaults(self, environ: Mapping[str, str]) -> Dict[str, Any]:
        """Global option defaults with the ``CM_*`` variables layered over the file."""

        overlay = {}
        for name, variable in ENVIRONMENT_OPTIONS.items():
            value = environ.get(variable)
            if value:
                overlay[name] = coerce_option(name, value)
        merged = merge_mappings(self.section("global"), overlay)
        merged.pop("log_level", None)
        merged.pop("log_file", None)
        return merged


def locate_settings_file(environ: Mapping[str, str]) -> Path | None:
    explicit = environ.get(CONFIG_PATH_ENV)
    if explicit is not None:
        if not explicit:
            return None
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ConfigError(f"{CONFIG_PATH_ENV} points to a missing file: {path}")
        return path

    config_home = environ.get("XDG_CONFIG_HOME")
    base = Path(config_home) if config_home else Path.home() / ".config"
    candidate = base / "cm" / CONFIG_FILE_NAME
    return candidate if candidate.is_file() else None


def _read_sections(path: Path, data: Mapping[str, Any]) -> Dict[str, Mapping[str, Any]]:
    sections: Dict[str, Mapping[str, Any]] = {}
    for name, table in data.items():
        allowed = SECTION_OPTIONS.get(name)
        if allowed is None:
            raise ConfigError(f"{path}: unknown section [{name}]")
        if not isinstance(table, Mapping):
            raise ConfigError(f"{path}: [{name}] must be a table")
        unknown = sorted(set(table) - allowed)
        if unknown:
            raise ConfigError(f"{path}: unknown option(s) in [{name}]: {', '.join(unknown)}")
        try:
            sections[name] = MappingProxyType({key: coerce_option(key, value) for key, value in table.items()})
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{path}: [{name}] {exc}") from exc
    return sections


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    environ = os.environ if environ is None else environ
    path = locate_settings_file(environ)
    if path is None:
        return Settings()
    try:
        data = load_config_file(path)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
        raise ConfigError(f"unable to read settings file {path}: {exc}") from exc
    logger.debug("Loaded settings from %s", path)
    return Settings(path=path, sections=MappingProxyType(_read_sections(path, data)))


__all__ = [
    "CONFIG_PATH_ENV",
    "ENVIRONMENT_OPTIONS",
    "SECTION_OPTIONS",
    "Settings",
    "coerce_option",
    "load_settings",
    "locate_settings_file",
]
