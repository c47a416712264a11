"""Read-only probing of the toolchain and of existing build directory state."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, List, Mapping, Tuple
import json
import logging
import os
import re
import shutil
import tempfile

from core.command_runner import CommandRunner

from .quirks import COLOR_DIAGNOSTIC_FLAGS, Quirks, detect_quirks
from .requests import Build, Configure, Request

logger = logging.getLogger(__name__)

DEFAULT_BINARY_DIR = "build"
CMAKE_CACHE_FILE = "CMakeCache.txt"
RESULTDB_FILE = "lit.json"

PROBED_COMMANDS: Tuple[str, ...] = ("ccache", "ninja", "sphinx-build", "lld", "gold", "mold")
PROBED_LINKERS: Tuple[str, ...] = ("lld", "gold", "mold")

_VERSION_RE = re.compile(r"(\d+\.\d+(?:\.\d+)?)")


@dataclass(frozen=True, slots=True)
class CompilerInfo:
    command: str
    identifier: str
    version: str | None = None


@dataclass(frozen=True, slots=True)
class BuildDirectoryState:
    path: Path
    exists: bool = False
    configured: bool = False
    generator: str | None = None
    build_type: str | None = None
    home_directory: Path | None = None
    cache: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True, slots=True)
class LitResult:
    test_id: str
    expected: bool


@dataclass(frozen=True, slots=True)
class ResolvedDefaults:
    """Everything planning may consult about the environment, computed once per invocation."""

    workspace: Path
    binary_dir: Path
    lit_json: Path
    detected_quirks: Quirks
    build_state: BuildDirectoryState
    source_dir: Path | None = None
    detected_generator: str | None = None
    compiler: CompilerInfo | None = None
    commands: FrozenSet[str] = frozenset()
    cc_flags: FrozenSet[str] = frozenset()
    cflags: str | None = None
    cxxflags: str | None = None
    result_db: Tuple[LitResult, ...] | None = None


def parse_cmake_cache(text: str) -> Dict[str, str]:
    entries: Dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", "//")):
            continue
        name_and_type, sep, value = stripped.partition("=")
        if not sep:
            continue
        name = name_and_type.partition(":")[0].strip()
        if name:
            entries[name] = value
    return entries


def parse_result_db(text: str) -> Tuple[LitResult, ...]:
    data = json.loads(text)
    tests = data.get("tests") if isinstance(data, dict) else None
    if not isinstance(tests, list):
        raise ValueError("ResultDB has no 'tests' list")
    results: List[LitResult] = []
    for entry in tests:
        if not isinstance(entry, dict) or "testId" not in entry:
            raise ValueError(f"malformed ResultDB entry: {entry!r}")
        results.append(LitResult(test_id=str(entry["testId"]), expected=bool(entry.get("expected", True))))
    return tuple(results)


def parse_compiler_version(command: str, version_output: str) -> CompilerInfo:
    first_line = version_output.strip().splitlines()[0] if version_output.strip() else ""
    lowered = version_output.lower()
    if "clang" in lowered:
        identifier = "clang"
    elif "free software foundation" in lowered or "gcc" in lowered:
        identifier = "gcc"
    else:
        identifier = "unknown"
    match = _VERSION_RE.search(first_line)
    return CompilerInfo(command=command, identifier=identifier, version=match.group(1) if match else None)


class EnvironmentProbe:
    """Builds :class:`ResolvedDefaults` without touching project or build directories.

    Compiler flag checks run inside a scratch directory that is removed afterwards, so
    anything the compiler writes never lands next to the sources.
    """

    def __init__(
        self,
        *,
        workspace: Path,
        runner: CommandRunner,
        environ: Mapping[str, str] | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._workspace = workspace
        self._runner = runner
        self._environ = dict(environ) if environ is not None else dict(os.environ)
        self._which = which

    def _absolute(self, path: Path) -> Path:
        path = path.expanduser()
        if not path.is_absolute():
            path = self._workspace / path
        return path.resolve()

    def detect(self, request: Request) -> ResolvedDefaults:
        binary_dir = self._absolute(request.binary or Path(DEFAULT_BINARY_DIR))
        source_dir = self._absolute(request.source) if request.source else None
        defaults = {
            "workspace": self._workspace,
            "binary_dir": binary_dir,
            "lit_json": binary_dir / RESULTDB_FILE,
            "detected_quirks": detect_quirks(source_dir or self._workspace),
            "build_state": self.read_build_directory(binary_dir),
            "source_dir": source_dir,
            "cflags": self._environ.get("CFLAGS"),
            "cxxflags": self._environ.get("CXXFLAGS"),
            "result_db": self.read_result_db(binary_dir / RESULTDB_FILE),
        }
        if isinstance(request, (Configure, Build)):
            commands = frozenset(name for name in PROBED_COMMANDS if self._which(name))
            compiler_command = self._environ.get("CC") or "cc"
            defaults.update(
                commands=commands,
                detected_generator=self._detect_generator(commands),
                compiler=self.identify_compiler(compiler_command),
                cc_flags=self._probe_cc_flags(compiler_command, commands),
            )
        resolved = ResolvedDefaults(**defaults)
        logger.debug("Resolved defaults: %s", resolved)
        return resolved

    def read_build_directory(self, binary_dir: Path) -> BuildDirectoryState:
        if not binary_dir.is_dir():
            return BuildDirectoryState(path=binary_dir)
        cache_file = binary_dir / CMAKE_CACHE_FILE
        if not cache_file.is_file():
            return BuildDirectoryState(path=binary_dir, exists=True)
        try:
            entries = parse_cmake_cache(cache_file.read_text(encoding="utf-8", errors="replace"))
        except OSError as exc:
            logger.warning("Unable to read %s: %s", cache_file, exc)
            return BuildDirectoryState(path=binary_dir, exists=True, configured=True)
        home = entries.get("CMAKE_HOME_DIRECTORY")
        return BuildDirectoryState(
            path=binary_dir,
            exists=True,
            configured=True,
            generator=entries.get("CMAKE_GENERATOR") or None,
            build_type=entries.get("CMAKE_BUILD_TYPE") or None,
            home_directory=Path(home) if home else None,
            cache=MappingProxyType(entries),
        )

    def read_result_db(self, path: Path) -> Tuple[LitResult, ...] | None:
        if not path.is_file():
            logger.debug("No ResultDB at %s", path)
            return None
        try:
            return parse_result_db(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring %s: %s", path, exc)
            return None

    def identify_compiler(self, command: str) -> CompilerInfo | None:
        try:
            result = self._runner.run([command, "--version"], check=False, input="")
        except OSError as exc:
            logger.debug("Compiler %s not usable: %s", command, exc)
            return None
        if result.returncode != 0:
            logger.debug("%s --version exited with %s", command, result.returncode)
            return None
        return parse_compiler_version(command, result.stdout)

    def _detect_generator(self, commands: FrozenSet[str]) -> str | None:
        if "ninja" in commands:
            return "Ninja"
        if self._which("make"):
            return "Unix Makefiles"
        return None

    def _probe_cc_flags(self, compiler: str, commands: FrozenSet[str]) -> FrozenSet[str]:
        candidates = list(COLOR_DIAGNOSTIC_FLAGS)
        candidates.extend(f"-fuse-ld={linker}" for linker in PROBED_LINKERS if linker in commands)
        supported = set()
        with tempfile.TemporaryDirectory(prefix="cm-probe-") as scratch:
            for flag in candidates:
                if self.has_cc_flag(compiler, flag, scratch=Path(scratch)):
                    supported.add(flag)
        return frozenset(supported)

    def has_cc_flag(self, compiler: str, flag: str, *, scratch: Path) -> bool:
        command = [compiler, "-x", "c", "-", "-o", os.devnull, "-c", flag]
        try:
            result = self._runner.run(command, cwd=scratch, check=False, input="")
        except OSError as exc:
            logger.debug("Flag probe %s failed to launch: %s", flag, exc)
            return False
        return result.returncode == 0


__all__ = [
    "BuildDirectoryState",
    "CompilerInfo",
    "DEFAULT_BINARY_DIR",
    "EnvironmentProbe",
    "LitResult",
    "ResolvedDefaults",
    "parse_compiler_version",
    "parse_cmake_cache",
    "parse_result_db",
]
