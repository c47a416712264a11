"""Turns a request and the resolved environment into an immutable :class:`Plan`.

Planning never runs commands or touches the filesystem: everything it needs about
the environment arrives through :class:`ResolvedDefaults`, and every quirk is a table
lookup from :mod:`cmfront.quirks`.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Sequence, Tuple
import logging
import shlex

from .environment import CMAKE_CACHE_FILE, ResolvedDefaults
from .errors import AmbiguousRequest, EnvironmentUnresolvable, InvalidRequest, InvalidValue, PlanError
from .known_values import KnownValueResolver
from .plan import Plan, Step
from .quirks import (
    COLOR_DIAGNOSTIC_FLAGS,
    DEFAULT_SOURCE_SUBDIR,
    LAUNCHER_DEFINITIONS,
    LIT_GROUP_PREFIX,
    LLVM_AUTO_LINKERS,
    LLVM_DEFAULT_PROJECTS,
    LLVM_DEFAULT_TARGETS,
    LLVM_DEFINITIONS,
    LLVM_EXPENSIVE_CHECKS_DEFINITIONS,
    LLVM_IMPLICIT_TARGET,
    LLVM_ONLY_OPTIONS,
    LLVM_SPHINX_DEFINITION,
    SANITIZER_DEFINITIONS,
    SANITIZER_FLAGS,
    Quirks,
    lit_test_path,
)
from .requests import Activate, Build, Clean, Configure, ConfigureOptions, Deactivate, Request, Test

logger = logging.getLogger(__name__)

DEFAULT_BUILD_TYPE = "RelWithDebInfo"
DEFAULT_GENERATOR = "Ninja"
DEFAULT_INSTALL_PREFIX = "dist"

ACTIVATE_SCRIPT = (
    "CM_SRC=%s CM_BIN=%s CM_CFG=%s CM_QUIRKS=%s;\\n"
    "export CM_SRC CM_BIN CM_CFG CM_QUIRKS;\\n"
    'PATH="$CM_BIN/bin:$PATH";\\n'
    "alias cm='cm -s \"$CM_SRC\" -b \"$CM_BIN\" -c \"$CM_CFG\"';\\n"
)
DEACTIVATE_SCRIPT = (
    "unalias cm;\\n"
    '[ -z "$CM_BIN" ] || PATH="${PATH/$CM_BIN\\/bin:/}";\\n'
    "unset -v CM_SRC CM_BIN CM_CFG CM_QUIRKS;\\n"
)


@dataclass(frozen=True, slots=True)
class _Validated:
    config: str | None
    options: ConfigureOptions | None
    group: str | None


@dataclass(frozen=True, slots=True)
class _Settings:
    quirks: Quirks
    workspace: Path
    source: Path
    binary: Path
    build_type: str
    generator: str
    multi_config: bool
    options: ConfigureOptions | None
    group: str | None


def is_multi_config_generator(generator: str | None) -> bool:
    if not generator:
        return False
    normalized = generator.lower()
    multi_keywords = ["multi-config", "visual studio", "xcode"]
    return any(keyword in normalized for keyword in multi_keywords)


def _join_flags(flags: Sequence[str], environment_flags: str | None) -> str:
    joined = " ".join(flags)
    if environment_flags:
        return f"{joined} {environment_flags}" if joined else environment_flags
    return joined


class PlanBuilder:
    def __init__(self, resolver: KnownValueResolver) -> None:
        self._resolver = resolver
        self._planners: Dict[type, Callable[..., List[Step]]] = {
            Configure: self._plan_configure,
            Build: self._plan_build,
            Test: self._plan_test,
            Activate: self._plan_activate,
            Deactivate: self._plan_deactivate,
            Clean: self._plan_clean,
        }

    def build(self, request: Request, defaults: ResolvedDefaults) -> Plan:
        planner = self._planners.get(type(request))
        if planner is None:
            raise TypeError(f"Unsupported request type: {type(request).__name__}")
        quirks = request.quirks or defaults.detected_quirks
        validated = self._validate(request, quirks)
        settings = self._resolve(request, defaults, quirks, validated)
        steps = tuple(planner(request, settings, defaults))
        return Plan(
            request=request,
            workspace=defaults.workspace,
            steps=steps,
            unsafe=any(step.destructive for step in steps),
        )

    # Validation

    def _validate(self, request: Request, quirks: Quirks) -> _Validated:
        errors: List[PlanError] = []
        config = None
        if request.config is not None:
            config = self._check(errors, "build_types", request.config)

        options = self._requested_options(request)
        if options is not None:
            options = self._validate_options(options, errors)

        group = None
        if isinstance(request, Test):
            selectors = [
                name
                for name, given in (
                    ("--group", request.group is not None),
                    ("--first", request.first),
                    ("explicit tests", bool(request.tests)),
                )
                if given
            ]
            if len(selectors) > 1:
                errors.append(AmbiguousRequest(f"{' and '.join(selectors)} cannot be combined"))
            if request.group is not None:
                group = self._infer_group(errors, request.group, quirks)

        if errors:
            raise InvalidRequest(errors)
        return _Validated(config=config, options=options, group=group)

    def _check(self, errors: List[PlanError], category: str, value: str) -> str:
        canonical = self._resolver.canonical(category, value)
        if canonical is None:
            errors.append(InvalidValue(category, value, self._resolver.suggest(category, value)))
            return value
        return canonical

    def _check_all(
        self, errors: List[PlanError], category: str, values: Tuple[str, ...] | None
    ) -> Tuple[str, ...] | None:
        if values is None:
            return None
        return tuple(self._check(errors, category, value) for value in values)

    def _validate_options(self, options: ConfigureOptions, errors: List[PlanError]) -> ConfigureOptions:
        return replace(
            options,
            linker=self._check(errors, "linkers", options.linker) if options.linker is not None else None,
            enable_projects=self._check_all(errors, "projects", options.enable_projects),
            enable_runtimes=self._check_all(errors, "runtimes", options.enable_runtimes),
            targets_to_build=self._check_all(errors, "targets", options.targets_to_build),
        )

    def _infer_group(self, errors: List[PlanError], group: str, quirks: Quirks) -> str:
        if quirks is not Quirks.LLVM:
            return group
        candidates = self._resolver.infer("lit_groups", group, LIT_GROUP_PREFIX)
        if len(candidates) == 1:
            return candidates[0]
        if candidates:
            errors.append(AmbiguousRequest(f"test group '{group}' matches {', '.join(candidates)}"))
        else:
            errors.append(InvalidValue("lit_groups", group, self._resolver.suggest("lit_groups", group)))
        return group

    @staticmethod
    def _requested_options(request: Request) -> ConfigureOptions | None:
        if isinstance(request, Configure):
            return request.options
        if isinstance(request, Build):
            return request.configure
        return None

    # Resolution

    def _resolve(
        self,
        request: Request,
        defaults: ResolvedDefaults,
        quirks: Quirks,
        validated: _Validated,
    ) -> _Settings:
        state = defaults.build_state
        if defaults.source_dir is not None:
            source = defaults.source_dir
        elif state.home_directory is not None:
            source = state.home_directory
        else:
            source = defaults.workspace / DEFAULT_SOURCE_SUBDIR[quirks]

        build_type = validated.config or state.build_type or DEFAULT_BUILD_TYPE

        explicit_generator = validated.options.generator if validated.options else None
        generator = explicit_generator or state.generator or defaults.detected_generator or DEFAULT_GENERATOR

        return _Settings(
            quirks=quirks,
            workspace=defaults.workspace,
            source=source,
            binary=defaults.binary_dir,
            build_type=build_type,
            generator=generator,
            multi_config=is_multi_config_generator(generator),
            options=validated.options,
            group=validated.group,
        )

    # Translation

    def _plan_configure(self, request: Configure, settings: _Settings, defaults: ResolvedDefaults) -> List[Step]:
        return self._configure_steps(settings, defaults)

    def _plan_build(self, request: Build, settings: _Settings, defaults: ResolvedDefaults) -> List[Step]:
        steps: List[Step] = []
        if self._configuration_matches(settings, defaults):
            logger.debug("Build directory %s is configured; skipping configure", settings.binary)
        else:
            steps.extend(self._configure_steps(settings, defaults))
        steps.append(self._build_step(settings, label="Build", targets=request.targets, args=request.args))
        return steps

    def _plan_test(self, request: Test, settings: _Settings, defaults: ResolvedDefaults) -> List[Step]:
        if settings.quirks is Quirks.LLVM:
            return self._lit_steps(request, settings, defaults)
        return self._ctest_steps(request, settings)

    def _plan_activate(self, request: Activate, settings: _Settings, defaults: ResolvedDefaults) -> List[Step]:
        values = (str(settings.source), str(settings.binary), settings.build_type, settings.quirks.value)
        return [
            self._printf_step(settings, "Print activation script", ACTIVATE_SCRIPT, [shlex.quote(value) for value in values])
        ]

    def _plan_deactivate(self, request: Deactivate, settings: _Settings, defaults: ResolvedDefaults) -> List[Step]:
        return [self._printf_step(settings, "Print deactivation script", DEACTIVATE_SCRIPT, [])]

    def _plan_clean(self, request: Clean, settings: _Settings, defaults: ResolvedDefaults) -> List[Step]:
        state = defaults.build_state
        if not state.exists:
            logger.info("Build directory %s does not exist; nothing to clean", settings.binary)
            return []
        if request.cache_only:
            return [self._reset_cache_step(settings)] if state.configured else []
        binary = settings.binary
        for protected in (settings.source, settings.workspace):
            if protected == binary or protected.is_relative_to(binary):
                raise EnvironmentUnresolvable(f"refusing to remove {binary}: it contains {protected}")
        return [
            Step(
                label="Remove build directory",
                argv=("cmake", "-E", "rm", "-rf", str(binary)),
                cwd=settings.workspace,
                destructive=True,
            )
        ]

    # Configure

    @staticmethod
    def _configuration_matches(settings: _Settings, defaults: ResolvedDefaults) -> bool:
        state = defaults.build_state
        if not state.configured or state.generator != settings.generator:
            return False
        if not settings.multi_config and state.build_type != settings.build_type:
            return False
        if state.home_directory is not None and state.home_directory != settings.source:
            return False
        # Explicit configure options are only applied by running configure again.
        options = settings.options or ConfigureOptions()
        return replace(options, generator=None) == ConfigureOptions()

    def _reset_cache_step(self, settings: _Settings) -> Step:
        return Step(
            label="Reset CMake cache",
            argv=(
                "cmake",
                "-E",
                "rm",
                "-rf",
                str(settings.binary / CMAKE_CACHE_FILE),
                str(settings.binary / "CMakeFiles"),
            ),
            cwd=settings.workspace,
        )

    def _configure_steps(self, settings: _Settings, defaults: ResolvedDefaults) -> List[Step]:
        steps: List[Step] = []
        if defaults.build_state.configured:
            steps.append(self._reset_cache_step(settings))
        steps.append(
            Step(
                label="Configure",
                argv=tuple(self._configure_argv(settings, settings.options or ConfigureOptions(), defaults)),
                cwd=settings.workspace,
            )
        )
        return steps

    def _configure_argv(
        self, settings: _Settings, options: ConfigureOptions, defaults: ResolvedDefaults
    ) -> List[str]:
        quirks = settings.quirks
        llvm = quirks is Quirks.LLVM
        argv = ["cmake", "-S", str(settings.source), "-B", str(settings.binary), "-G", settings.generator]
        definitions: List[Tuple[str, str]] = []
        flags: List[str] = []

        if not settings.multi_config:
            definitions.append(("CMAKE_BUILD_TYPE", settings.build_type))
        definitions.append(("CMAKE_PREFIX_PATH", ";".join(options.prefix_path)))
        definitions.append(("CMAKE_INSTALL_PREFIX", DEFAULT_INSTALL_PREFIX))
        definitions.append(("CMAKE_EXPORT_COMPILE_COMMANDS", "On"))
        if options.shared_libs is not None:
            definitions.append(("BUILD_SHARED_LIBS", "On" if options.shared_libs else "Off"))

        if llvm:
            definitions.extend(LLVM_DEFINITIONS)
            if "sphinx-build" in defaults.commands:
                definitions.append(LLVM_SPHINX_DEFINITION)
            linker = self._select_linker(options.linker, defaults)
            if linker:
                definitions.append(("LLVM_USE_LINKER", linker))
        else:
            self._warn_llvm_only(options)

        if "ccache" in defaults.commands:
            definitions.extend(LAUNCHER_DEFINITIONS[quirks])

        color_flag = next((flag for flag in COLOR_DIAGNOSTIC_FLAGS if flag in defaults.cc_flags), None)
        if color_flag:
            flags.append(color_flag)

        if options.san:
            flags.extend(SANITIZER_FLAGS[quirks])
            definitions.extend(SANITIZER_DEFINITIONS[quirks])

        if llvm:
            if options.expensive_checks:
                definitions.extend(LLVM_EXPENSIVE_CHECKS_DEFINITIONS)
            definitions.append(("LLVM_ENABLE_PROJECTS", ";".join(options.enable_projects or LLVM_DEFAULT_PROJECTS)))
            if options.enable_runtimes:
                definitions.append(("LLVM_ENABLE_RUNTIMES", ";".join(options.enable_runtimes)))
            definitions.append(("LLVM_TARGETS_TO_BUILD", ";".join(self._targets_to_build(options))))

        flags.extend(options.flags)
        definitions.append(("CMAKE_C_FLAGS", _join_flags(flags, defaults.cflags)))
        definitions.append(("CMAKE_CXX_FLAGS", _join_flags(flags, defaults.cxxflags)))

        argv.extend(f"-D{name}={value}" for name, value in definitions)
        argv.extend(options.args)
        return argv

    @staticmethod
    def _select_linker(explicit: str | None, defaults: ResolvedDefaults) -> str | None:
        if explicit == "default":
            return None
        if explicit:
            return explicit
        for linker in LLVM_AUTO_LINKERS:
            if linker in defaults.commands and f"-fuse-ld={linker}" in defaults.cc_flags:
                return linker
        return None

    @staticmethod
    def _targets_to_build(options: ConfigureOptions) -> Tuple[str, ...]:
        if not options.targets_to_build:
            return LLVM_DEFAULT_TARGETS
        targets = list(options.targets_to_build)
        if (
            not options.disable_implicit_native
            and LLVM_IMPLICIT_TARGET not in targets
            and "all" not in targets
        ):
            targets.append(LLVM_IMPLICIT_TARGET)
        return tuple(targets)

    @staticmethod
    def _warn_llvm_only(options: ConfigureOptions) -> None:
        baseline = ConfigureOptions()
        ignored = [name for name in LLVM_ONLY_OPTIONS if getattr(options, name) != getattr(baseline, name)]
        if ignored:
            logger.warning("Ignoring LLVM-only options outside LLVM quirks mode: %s", ", ".join(ignored))

    # Build and test

    @staticmethod
    def _build_step(
        settings: _Settings,
        *,
        label: str,
        targets: Iterable[str] = (),
        args: Sequence[str] = (),
        env: Tuple[Tuple[str, str], ...] = (),
    ) -> Step:
        argv = ["cmake", "--build", str(settings.binary), "--config", settings.build_type]
        targets = list(targets)
        if targets:
            argv.extend(["--target", *targets])
        if args:
            argv.extend(["--", *args])
        return Step(label=label, argv=tuple(argv), cwd=settings.workspace, env=env)

    @staticmethod
    def _printf_step(settings: _Settings, label: str, template: str, values: Sequence[str]) -> Step:
        return Step(label=label, argv=("printf", template, *values), cwd=settings.workspace)

    def _lit_steps(self, request: Test, settings: _Settings, defaults: ResolvedDefaults) -> List[Step]:
        update_resultdb = request.update_resultdb
        if update_resultdb is None:
            update_resultdb = not (request.first or request.tests)
        resultdb_env: Tuple[Tuple[str, str], ...] = ()
        if update_resultdb:
            resultdb_env = (("LIT_OPTS", f"--resultdb-output {shlex.quote(str(defaults.lit_json))}"),)

        if request.xfail_export:
            if defaults.result_db is None:
                raise EnvironmentUnresolvable(f"no ResultDB at {defaults.lit_json}; run the tests first")
            failing = ";".join(result.test_id for result in defaults.result_db if not result.expected)
            return [self._printf_step(settings, "Print LIT_XFAIL export", "%s\\n", [f'export LIT_XFAIL="{failing}"'])]

        if settings.group:
            return [self._build_step(settings, label=f"Run {settings.group}", targets=[settings.group], env=resultdb_env)]

        if request.tests:
            tests = list(request.tests)
        else:
            failing_results = [result for result in defaults.result_db or () if not result.expected]
            if request.first:
                failing_results = failing_results[:1]
            tests = [lit_test_path(result.test_id, settings.source) for result in failing_results]
        tests.extend(request.args)
        if not tests:
            logger.info("No failing tests recorded in %s; nothing to run", defaults.lit_json)
            return []

        if request.print_only:
            return [self._printf_step(settings, "List tests", "%s\\n", tests)]

        env: List[Tuple[str, str]] = []
        argv = [str(settings.binary / "bin" / "llvm-lit")]
        if request.verbose:
            env.append(("FILECHECK_OPTS", "--dump-input always"))
            argv.append("-a")
        argv.extend(tests)
        env.extend(resultdb_env)
        return [Step(label="Run llvm-lit", argv=tuple(argv), cwd=settings.workspace, env=tuple(env))]

    def _ctest_steps(self, request: Test, settings: _Settings) -> List[Step]:
        if request.xfail_export or request.first:
            raise EnvironmentUnresolvable("--xfail-export and --first need the llvm-lit ResultDB (LLVM quirks mode)")
        if request.update_resultdb:
            logger.debug("Ignoring --update-resultdb outside LLVM quirks mode")
        if settings.group:
            return [self._build_step(settings, label=f"Run {settings.group}", targets=[settings.group])]

        argv = ["ctest", "--test-dir", str(settings.binary)]
        if settings.multi_config:
            argv.extend(["-C", settings.build_type])
        argv.append("-N" if request.print_only else "--output-on-failure")
        if request.verbose:
            argv.append("-V")
        if request.tests:
            argv.extend(["-R", "|".join(request.tests)])
        argv.extend(request.args)
        return [Step(label="Run ctest", argv=tuple(argv), cwd=settings.workspace)]


__all__ = [
    "ACTIVATE_SCRIPT",
    "DEACTIVATE_SCRIPT",
    "DEFAULT_BUILD_TYPE",
    "DEFAULT_GENERATOR",
    "PlanBuilder",
    "is_multi_config_generator",
]
