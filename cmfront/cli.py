"""Command line interface for ``cm``."""
from __future__ import annotations

from argparse import ArgumentParser, ArgumentTypeError, BooleanOptionalAction, Namespace
from pathlib import Path
from typing import Any, Collection, Iterable, List, Mapping, Sequence, Tuple
import logging
import os
import shutil
import sys

from core.command_runner import SubprocessCommandRunner
from core.config_loader import normalize_bool, normalize_string_list

from .config import Settings, load_settings
from .environment import EnvironmentProbe
from .errors import ConfigError, ConfirmationDeclined, InvalidValue, PlanError
from .executor import Executor, StepOutcome, render_step
from .known_values import KnownValueResolver, load_known_values
from .log import configure_logging
from .plan import Plan, serialize_plan
from .planner import PlanBuilder
from .quirks import Quirks
from .requests import Activate, Build, Clean, Configure, ConfigureOptions, Deactivate, Request, Test

logger = logging.getLogger(__name__)

PASSTHROUGH_COMMANDS = {"configure", "build", "test"}

# Boolean options that also accept ``--name=BOOL`` so the command line can undo a settings file value.
SETTABLE_FLAGS = frozenset(
    {
        "--dry-run",
        "--shared-libs",
        "--san",
        "--expensive-checks",
        "--disable-implicit-native",
        "--first",
        "--verbose",
        "--print-only",
        "--xfail-export",
        "--update-resultdb",
        "--cache-only",
    }
)


def _bool_value(text: str) -> bool:
    try:
        return normalize_bool(text)
    except ValueError as exc:
        raise ArgumentTypeError(str(exc)) from exc


def _list_value(text: str) -> List[str]:
    return normalize_string_list(text)


def _split_passthrough(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    arguments = list(argv)
    if "--" not in arguments:
        return arguments, []
    index = arguments.index("--")
    return arguments[:index], arguments[index + 1 :]


def _expand_flag_values(parser: ArgumentParser, arguments: Sequence[str], flags: Collection[str]) -> List[str]:
    """Rewrite ``--name=BOOL`` into ``--name`` or ``--no-name``."""

    expanded = []
    for argument in arguments:
        name, separator, value = argument.partition("=")
        if not separator or name not in flags:
            expanded.append(argument)
            continue
        try:
            enabled = _bool_value(value)
        except ArgumentTypeError as exc:
            parser.error(f"argument {name}: {exc}")
        expanded.append(name if enabled else f"--no-{name[2:]}")
    return expanded


def _add_settable_flag(parser: ArgumentParser, *names: str, help_text: str) -> None:
    long_name = names[-1]
    parser.add_argument(
        *names,
        action=BooleanOptionalAction,
        default=None,
        help=f"{help_text} (or {long_name}=BOOL)",
    )


def _add_configure_arguments(parser: ArgumentParser) -> None:
    parser.add_argument("-G", "--generator", help="CMake generator (default: recorded, detected, then Ninja)")
    parser.add_argument("--prefix-path", type=_list_value, default=[], metavar="DIRS", help="Comma-separated CMAKE_PREFIX_PATH entries")
    _add_settable_flag(parser, "--shared-libs", help_text="Set BUILD_SHARED_LIBS")
    _add_settable_flag(parser, "--san", help_text="Build with address and undefined behaviour sanitizers")
    parser.add_argument("--linker", help="Linker for LLVM_USE_LINKER ('default' disables auto-selection)")
    _add_settable_flag(parser, "--expensive-checks", help_text="Enable LLVM expensive checks")
    parser.add_argument("--enable-projects", type=_list_value, metavar="LIST", help="LLVM_ENABLE_PROJECTS (default: llvm,clang,lld)")
    parser.add_argument("--enable-runtimes", type=_list_value, metavar="LIST", help="LLVM_ENABLE_RUNTIMES")
    parser.add_argument("--targets-to-build", type=_list_value, metavar="LIST", help="LLVM_TARGETS_TO_BUILD (default: all)")
    _add_settable_flag(parser, "--disable-implicit-native", help_text="Do not add Native to an explicit target list")
    parser.add_argument("--flags", type=_list_value, default=[], metavar="FLAGS", help="Extra compiler flags, e.g. --flags=-O2,-g")


def _apply_section(parser: ArgumentParser, settings: Settings, section: str) -> None:
    values = settings.section(section)
    if values:
        parser.set_defaults(**values)


def _build_parser(settings: Settings, environ: Mapping[str, str]) -> ArgumentParser:
    parser = ArgumentParser(prog="cm", description="CMake build frontend with LLVM quirks")
    parser.add_argument("-s", "--source", type=Path, help="Source directory")
    parser.add_argument("-b", "--binary", type=Path, help="Build directory (default: build)")
    parser.add_argument("-c", "--config", help="Build type (Release, Debug, RelWithDebInfo, MinSizeRel)")
    parser.add_argument("-q", "--quirks", help="Quirks mode: none or llvm (default: detected)")
    _add_settable_flag(parser, "-n", "--dry-run", help_text="Print the plan without running it")
    parser.add_argument("-y", "--yes", action="store_true", help="Run destructive plans without asking")
    parser.add_argument("-v", "--verbose", dest="debug", action=BooleanOptionalAction, default=False, help="Enable debug logging")
    parser.set_defaults(**settings.global_defaults(environ))

    subparsers = parser.add_subparsers(dest="command", required=True)

    configure_parser = subparsers.add_parser("configure", aliases=["c"], help="Configure the build directory")
    _add_configure_arguments(configure_parser)
    configure_parser.set_defaults(operation="configure")
    _apply_section(configure_parser, settings, "configure")

    build_parser = subparsers.add_parser("build", aliases=["b"], help="Build targets, configuring first when needed")
    _add_configure_arguments(build_parser)
    build_parser.add_argument("targets", nargs="*", help="Targets to build")
    build_parser.set_defaults(operation="build")
    _apply_section(build_parser, settings, "build")

    test_parser = subparsers.add_parser("test", aliases=["lit", "l"], help="Run tests with llvm-lit or ctest")
    test_parser.add_argument("-g", "--group", help="Test group target, e.g. 'clang' for check-clang")
    _add_settable_flag(test_parser, "-f", "--first", help_text="Rerun only the first failing test")
    _add_settable_flag(test_parser, "-v", "--verbose", help_text="Show all test output")
    _add_settable_flag(test_parser, "-p", "--print-only", help_text="Print the selected tests instead of running them")
    _add_settable_flag(test_parser, "--xfail-export", help_text="Print an export of LIT_XFAIL for the failing tests")
    _add_settable_flag(test_parser, "--update-resultdb", help_text="Record results to lit.json")
    test_parser.add_argument("tests", nargs="*", help="Tests to run (default: failing tests from lit.json)")
    test_parser.set_defaults(operation="test")
    _apply_section(test_parser, settings, "test")

    activate_parser = subparsers.add_parser("activate", aliases=["a"], help="Print shell code that pins the current settings")
    activate_parser.set_defaults(operation="activate")

    deactivate_parser = subparsers.add_parser("deactivate", aliases=["d"], help="Print shell code that undoes activate")
    deactivate_parser.set_defaults(operation="deactivate")

    clean_parser = subparsers.add_parser("clean", help="Remove the build directory")
    _add_settable_flag(clean_parser, "--cache-only", help_text="Only remove the CMake cache")
    clean_parser.set_defaults(operation="clean")
    _apply_section(clean_parser, settings, "clean")

    return parser


def _parse_quirks(value: str | None, resolver: KnownValueResolver) -> Quirks | None:
    if value is None:
        return None
    canonical = resolver.canonical("quirks", value)
    if canonical is None:
        raise InvalidValue("quirks", value, resolver.suggest("quirks", value))
    return Quirks(canonical)


def _optional_tuple(values: Iterable[str] | None) -> Tuple[str, ...] | None:
    return tuple(values) if values is not None else None


def _configure_options(args: Namespace, passthrough: Sequence[str]) -> ConfigureOptions:
    return ConfigureOptions(
        generator=args.generator,
        prefix_path=tuple(args.prefix_path or ()),
        shared_libs=args.shared_libs,
        san=bool(args.san),
        linker=args.linker,
        expensive_checks=bool(args.expensive_checks),
        enable_projects=_optional_tuple(args.enable_projects),
        enable_runtimes=_optional_tuple(args.enable_runtimes),
        targets_to_build=_optional_tuple(args.targets_to_build),
        disable_implicit_native=bool(args.disable_implicit_native),
        flags=tuple(args.flags or ()),
        args=tuple(passthrough),
    )


def _build_request(args: Namespace, passthrough: Sequence[str], resolver: KnownValueResolver) -> Request:
    common: Mapping[str, Any] = {
        "source": args.source,
        "binary": args.binary,
        "config": args.config,
        "quirks": _parse_quirks(args.quirks, resolver),
    }
    operation = args.operation
    if operation == "configure":
        return Configure(options=_configure_options(args, passthrough), **common)
    if operation == "build":
        return Build(
            targets=tuple(args.targets),
            args=tuple(passthrough),
            configure=_configure_options(args, ()),
            **common,
        )
    if operation == "test":
        return Test(
            group=args.group,
            first=bool(args.first),
            verbose=bool(args.verbose),
            print_only=bool(args.print_only),
            xfail_export=bool(args.xfail_export),
            update_resultdb=args.update_resultdb,
            tests=tuple(args.tests),
            args=tuple(passthrough),
            **common,
        )
    if operation == "activate":
        return Activate(**common)
    if operation == "deactivate":
        return Deactivate(**common)
    if operation == "clean":
        return Clean(cache_only=bool(args.cache_only), **common)
    raise ValueError(f"Unknown command: {operation}")


def _confirm(plan: Plan) -> bool:
    if not sys.stdin.isatty():
        print("cm: refusing to run a destructive plan without --yes", file=sys.stderr)
        return False
    for step in plan.steps:
        line = render_step(step, workspace=plan.workspace)
        print(line, file=sys.stderr)
    try:
        answer = input("Proceed? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _emit_output(outcome: StepOutcome) -> None:
    if outcome.stdout:
        sys.stdout.write(outcome.stdout)
        sys.stdout.flush()
    if outcome.stderr:
        sys.stderr.write(outcome.stderr)
        sys.stderr.flush()
    if outcome.error and not outcome.interrupted:
        print(f"cm: {outcome.step.label}: {outcome.error}", file=sys.stderr)


def main(argv: Iterable[str] | None = None) -> int:
    arguments, passthrough = _split_passthrough(list(sys.argv[1:] if argv is None else argv))
    environ = os.environ
    try:
        settings = load_settings(environ)
        parser = _build_parser(settings, environ)
    except ConfigError as exc:
        print(f"cm: error: {exc}", file=sys.stderr)
        return 2

    args = parser.parse_args(_expand_flag_values(parser, arguments, SETTABLE_FLAGS))
    if passthrough and args.operation not in PASSTHROUGH_COMMANDS:
        parser.error(f"{args.operation} does not accept arguments after '--'")
    try:
        configure_logging("DEBUG" if args.debug else settings.log_level, settings.log_file)
    except (OSError, ValueError) as exc:
        print(f"cm: error: unable to set up logging: {exc}", file=sys.stderr)
        return 2

    workspace = Path.cwd()
    runner = SubprocessCommandRunner()
    resolver = KnownValueResolver(load_known_values())
    try:
        request = _build_request(args, passthrough, resolver)
        probe = EnvironmentProbe(workspace=workspace, runner=runner, environ=environ, which=shutil.which)
        defaults = probe.detect(request)
        plan = PlanBuilder(resolver).build(request, defaults)
    except PlanError as exc:
        print(f"cm: error: {exc}", file=sys.stderr)
        return 2
    logger.debug("Plan: %s", serialize_plan(plan))

    executor = Executor(runner)
    if args.dry_run:
        for line in executor.render(plan):
            print(line)
        return 0

    try:
        result = executor.run(plan, confirm=None if args.yes else _confirm, on_step=_emit_output)
    except ConfirmationDeclined as exc:
        print(f"cm: {exc}", file=sys.stderr)
        return 1
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
