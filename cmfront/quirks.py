"""Quirk modes and the declarative rules each mode contributes to a plan."""
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Mapping, Tuple
import re


class Quirks(str, Enum):
    NONE = "none"
    LLVM = "llvm"


def detect_quirks(source: Path) -> Quirks:
    """An llvm-project checkout has no top-level CMakeLists.txt but does have ``llvm/``."""

    if not (source / "CMakeLists.txt").is_file() and (source / "llvm").is_dir():
        return Quirks.LLVM
    return Quirks.NONE


DEFAULT_SOURCE_SUBDIR: Mapping[Quirks, str] = {
    Quirks.NONE: ".",
    Quirks.LLVM: "llvm",
}

LLVM_DEFINITIONS: Tuple[Tuple[str, str], ...] = (
    ("LLVM_ENABLE_ASSERTIONS", "On"),
    ("LLVM_OPTIMIZED_TABLEGEN", "On"),
)
LLVM_SPHINX_DEFINITION = ("LLVM_ENABLE_SPHINX", "On")
LLVM_EXPENSIVE_CHECKS_DEFINITIONS: Tuple[Tuple[str, str], ...] = (
    ("LLVM_ENABLE_EXPENSIVE_CHECKS", "On"),
    ("LLVM_ENABLE_WERROR", "Off"),
)
LLVM_DEFAULT_PROJECTS: Tuple[str, ...] = ("llvm", "clang", "lld")
LLVM_DEFAULT_TARGETS: Tuple[str, ...] = ("all",)
LLVM_IMPLICIT_TARGET = "Native"
LLVM_AUTO_LINKERS: Tuple[str, ...] = ("lld", "gold")
LLVM_ONLY_OPTIONS: Tuple[str, ...] = (
    "expensive_checks",
    "enable_projects",
    "enable_runtimes",
    "targets_to_build",
    "disable_implicit_native",
    "linker",
)

LAUNCHER_DEFINITIONS: Mapping[Quirks, Tuple[Tuple[str, str], ...]] = {
    Quirks.NONE: (
        ("CMAKE_C_COMPILER_LAUNCHER", "ccache"),
        ("CMAKE_CXX_COMPILER_LAUNCHER", "ccache"),
    ),
    Quirks.LLVM: (("LLVM_CCACHE_BUILD", "On"),),
}

SANITIZER_FLAGS: Mapping[Quirks, Tuple[str, ...]] = {
    Quirks.NONE: ("-fsanitize=address,undefined",),
    Quirks.LLVM: (),
}
SANITIZER_DEFINITIONS: Mapping[Quirks, Tuple[Tuple[str, str], ...]] = {
    Quirks.NONE: (),
    Quirks.LLVM: (
        ("LLVM_USE_SANITIZER", "Address;Undefined"),
        ("LLVM_USE_SANITIZE_COVERAGE", "Yes"),
    ),
}

COLOR_DIAGNOSTIC_FLAGS: Tuple[str, ...] = ("-fcolor-diagnostics", "-fdiagnostics-color=always")

LIT_GROUP_PREFIX = "check-"


def _rule(pattern: str, replacement: str) -> Tuple[re.Pattern[str], str]:
    return re.compile(pattern), replacement


# ResultDB test ids, relative to the llvm/ source directory.
LIT_TEST_PATHS: List[Tuple[re.Pattern[str], str]] = [
    _rule(r"LLVM :: ", "test/"),
    _rule(r"LLVM-Unit :: .*", "test/Unit"),
    _rule(r"Clang :: ", "../clang/test/"),
    _rule(r"Clang-Unit :: .*", "../clang/test/Unit"),
    _rule(r"Flang :: ", "../flang/test/"),
    _rule(r"flang-OldUnit :: .*", "../flang/test/NonGtestUnit"),
    _rule(r"flang-Unit :: .*", "../flang/test/Unit"),
    _rule(r"lld :: ", "../lld/test/"),
    _rule(r"lldb :: ", "../lldb/test/"),
    _rule(r"lldb-shell :: .*", "../lldb/test/Shell"),
    _rule(r"lldb-unit :: .*", "../lldb/test/Unit"),
    _rule(r"lldb-api :: .*", "../lldb/test/API"),
    _rule(r"MLIR :: ", "../mlir/test/"),
    _rule(r"MLIR-Unit .*:: ", "../mlir/test/Unit"),
    _rule(r"libomptarget :: [^:]* :: ", "../openmp/libomptarget/test/"),
    _rule(r"ompt-test :: ", "../openmp/libompd/test/"),
    _rule(r"libomp :: ", "../openmp/runtime/test/"),
    _rule(r"OMPT multiplex :: ", "../openmp/tools/multiplex/tests/"),
    _rule(r"libarcher :: ", "../openmp/tools/archer/tests/"),
    _rule(r"Polly :: ", "../polly/test/"),
    _rule(r"Polly-Unit :: .*", "../polly/test/Unit"),
    _rule(r"Polly - isl unit tests :: .*", "../polly/test/UnitIsl"),
]


def lit_test_path(test_id: str, source: Path) -> str:
    """Map a ResultDB ``testId`` to a path llvm-lit accepts.

    Unrecognised ids are returned as-is; llvm-lit reports them if they are not paths.
    """

    for pattern, replacement in LIT_TEST_PATHS:
        if pattern.search(test_id):
            return str(source / pattern.sub(lambda _match: replacement, test_id, count=1))
    return test_id



__all__ = [
    "COLOR_DIAGNOSTIC_FLAGS",
    "DEFAULT_SOURCE_SUBDIR",
    "LAUNCHER_DEFINITIONS",
    "LIT_GROUP_PREFIX",
    "LIT_TEST_PATHS",
    "LLVM_AUTO_LINKERS",
    "LLVM_DEFAULT_PROJECTS",
    "LLVM_DEFAULT_TARGETS",
    "LLVM_DEFINITIONS",
    "LLVM_EXPENSIVE_CHECKS_DEFINITIONS",
    "LLVM_IMPLICIT_TARGET",
    "LLVM_ONLY_OPTIONS",
    "LLVM_SPHINX_DEFINITION",
    "Quirks",
    "SANITIZER_DEFINITIONS",
    "SANITIZER_FLAGS",
    "detect_quirks",
    "lit_test_path",
]
