from __future__ import annotations

from pathlib import Path
import json
import unittest
from unittest.mock import patch

from cmfront.environment import BuildDirectoryState, LitResult, ResolvedDefaults
from cmfront.errors import AmbiguousRequest, EnvironmentUnresolvable, InvalidRequest, InvalidValue
from cmfront.known_values import KnownValueResolver, load_known_values
from cmfront.plan import serialize_plan
from cmfront.planner import ACTIVATE_SCRIPT, DEACTIVATE_SCRIPT, PlanBuilder
from cmfront.quirks import Quirks
from cmfront.requests import Activate, Build, Clean, Configure, ConfigureOptions, Deactivate, Test as TestRequest

WORKSPACE = Path("/work/project")
BINARY = WORKSPACE / "build"


def make_defaults(**overrides) -> ResolvedDefaults:
    binary = overrides.pop("binary_dir", BINARY)
    values = {
        "workspace": WORKSPACE,
        "binary_dir": binary,
        "lit_json": binary / "lit.json",
        "detected_quirks": Quirks.NONE,
        "build_state": BuildDirectoryState(path=binary),
    }
    values.update(overrides)
    return ResolvedDefaults(**values)


def configured(
    *,
    generator: str = "Ninja",
    build_type: str | None = "RelWithDebInfo",
    home: Path | None = WORKSPACE,
    binary: Path = BINARY,
) -> BuildDirectoryState:
    return BuildDirectoryState(
        path=binary,
        exists=True,
        configured=True,
        generator=generator,
        build_type=build_type,
        home_directory=home,
    )


class PlanBuilderTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.resolver = KnownValueResolver(load_known_values())

    def setUp(self) -> None:
        self.builder = PlanBuilder(self.resolver)

    def labels(self, plan) -> list[str]:
        return [step.label for step in plan.steps]


class BuildScenarioTests(PlanBuilderTestCase):
    def test_fresh_directory_configures_then_builds(self) -> None:
        plan = self.builder.build(Build(targets=("all",)), make_defaults())

        self.assertEqual(self.labels(plan), ["Configure", "Build"])
        self.assertEqual(
            list(plan.steps[0].argv),
            [
                "cmake",
                "-S",
                str(WORKSPACE),
                "-B",
                str(BINARY),
                "-G",
                "Ninja",
                "-DCMAKE_BUILD_TYPE=RelWithDebInfo",
                "-DCMAKE_PREFIX_PATH=",
                "-DCMAKE_INSTALL_PREFIX=dist",
                "-DCMAKE_EXPORT_COMPILE_COMMANDS=On",
                "-DCMAKE_C_FLAGS=",
                "-DCMAKE_CXX_FLAGS=",
            ],
        )
        self.assertEqual(
            list(plan.steps[1].argv),
            ["cmake", "--build", str(BINARY), "--config", "RelWithDebInfo", "--target", "all"],
        )
        self.assertFalse(plan.unsafe)

    def test_matching_configuration_only_builds(self) -> None:
        plan = self.builder.build(Build(targets=("all",)), make_defaults(build_state=configured()))

        self.assertEqual(self.labels(plan), ["Build"])

    def test_changed_build_type_resets_and_reconfigures(self) -> None:
        plan = self.builder.build(Build(config="debug", args=("-j", "8")), make_defaults(build_state=configured()))

        self.assertEqual(self.labels(plan), ["Reset CMake cache", "Configure", "Build"])
        self.assertEqual(
            list(plan.steps[0].argv),
            ["cmake", "-E", "rm", "-rf", str(BINARY / "CMakeCache.txt"), str(BINARY / "CMakeFiles")],
        )
        self.assertFalse(plan.steps[0].destructive)
        self.assertIn("-DCMAKE_BUILD_TYPE=Debug", plan.steps[1].argv)
        self.assertEqual(
            list(plan.steps[2].argv),
            ["cmake", "--build", str(BINARY), "--config", "Debug", "--", "-j", "8"],
        )
        self.assertFalse(plan.unsafe)

    def test_changed_generator_reconfigures(self) -> None:
        request = Build(configure=ConfigureOptions(generator="Unix Makefiles"))

        plan = self.builder.build(request, make_defaults(build_state=configured()))

        self.assertEqual(self.labels(plan), ["Reset CMake cache", "Configure", "Build"])
        self.assertIn("Unix Makefiles", plan.steps[1].argv)

    def test_explicit_configure_options_reconfigure(self) -> None:
        state = configured(home=WORKSPACE / "llvm")
        request = Build(configure=ConfigureOptions(enable_projects=("clang", "mlir"), san=True))

        plan = self.builder.build(request, make_defaults(build_state=state, detected_quirks=Quirks.LLVM))

        self.assertEqual(self.labels(plan), ["Reset CMake cache", "Configure", "Build"])
        self.assertIn("-DLLVM_ENABLE_PROJECTS=clang;mlir", plan.steps[1].argv)
        self.assertIn("-DLLVM_USE_SANITIZER=Address;Undefined", plan.steps[1].argv)

    def test_recorded_generator_given_explicitly_only_builds(self) -> None:
        request = Build(configure=ConfigureOptions(generator="Ninja"))

        plan = self.builder.build(request, make_defaults(build_state=configured()))

        self.assertEqual(self.labels(plan), ["Build"])

    def test_multi_config_generator_ignores_build_type(self) -> None:
        state = configured(generator="Ninja Multi-Config", build_type=None)

        plan = self.builder.build(Build(config="Release"), make_defaults(build_state=state))

        self.assertEqual(self.labels(plan), ["Build"])
        self.assertEqual(list(plan.steps[0].argv), ["cmake", "--build", str(BINARY), "--config", "Release"])

    def test_multi_config_configure_omits_build_type(self) -> None:
        request = Configure(options=ConfigureOptions(generator="Ninja Multi-Config"))

        plan = self.builder.build(request, make_defaults())

        self.assertFalse(any(arg.startswith("-DCMAKE_BUILD_TYPE=") for arg in plan.steps[0].argv))


class DeterminismTests(PlanBuilderTestCase):
    def test_same_inputs_give_equal_plans(self) -> None:
        request = Build(targets=("check-all",), configure=ConfigureOptions(san=True, flags=("-g",)))
        defaults = make_defaults(commands=frozenset({"ccache", "ninja"}), cc_flags=frozenset({"-fcolor-diagnostics"}))

        first = self.builder.build(request, defaults)
        second = PlanBuilder(self.resolver).build(request, defaults)

        self.assertEqual(first, second)
        self.assertEqual(serialize_plan(first), serialize_plan(second))

    def test_planning_performs_no_io(self) -> None:
        request = Build(configure=ConfigureOptions(linker="lld"))
        defaults = make_defaults(detected_quirks=Quirks.LLVM, build_state=configured(home=WORKSPACE / "llvm"))

        with patch("subprocess.run", side_effect=AssertionError("subprocess")), patch(
            "builtins.open", side_effect=AssertionError("open")
        ), patch("os.stat", side_effect=AssertionError("stat")):
            plan = self.builder.build(request, defaults)

        self.assertTrue(plan.steps)

    def test_serialized_plan_is_json(self) -> None:
        plan = self.builder.build(TestRequest(tests=("a", "b")), make_defaults())

        data = json.loads(serialize_plan(plan))

        self.assertEqual(data["operation"], "test")
        self.assertEqual(data["request"]["tests"], ["a", "b"])
        self.assertEqual(data["steps"][0]["argv"][0], "ctest")


class PrecedenceTests(PlanBuilderTestCase):
    def test_recorded_values_beat_builtin_defaults(self) -> None:
        source = Path("/elsewhere/src")
        state = configured(generator="Unix Makefiles", build_type="MinSizeRel", home=source)

        plan = self.builder.build(Configure(), make_defaults(build_state=state, detected_generator="Ninja"))

        argv = plan.steps[-1].argv
        self.assertEqual(argv[:7], ("cmake", "-S", str(source), "-B", str(BINARY), "-G", "Unix Makefiles"))
        self.assertIn("-DCMAKE_BUILD_TYPE=MinSizeRel", argv)

    def test_explicit_values_beat_recorded(self) -> None:
        state = configured(generator="Unix Makefiles", build_type="MinSizeRel", home=Path("/elsewhere/src"))
        request = Configure(config="Release", options=ConfigureOptions(generator="Ninja"))

        plan = self.builder.build(request, make_defaults(build_state=state, source_dir=WORKSPACE / "other"))

        argv = plan.steps[-1].argv
        self.assertEqual(argv[:7], ("cmake", "-S", str(WORKSPACE / "other"), "-B", str(BINARY), "-G", "Ninja"))
        self.assertIn("-DCMAKE_BUILD_TYPE=Release", argv)

    def test_detected_generator_beats_builtin(self) -> None:
        plan = self.builder.build(Configure(), make_defaults(detected_generator="Unix Makefiles"))

        self.assertIn("Unix Makefiles", plan.steps[0].argv)

    def test_explicit_quirks_beat_detected(self) -> None:
        plan = self.builder.build(Configure(quirks=Quirks.NONE), make_defaults(detected_quirks=Quirks.LLVM))

        argv = plan.steps[0].argv
        self.assertEqual(argv[2], str(WORKSPACE))
        self.assertFalse(any(arg.startswith("-DLLVM_") for arg in argv))


class ValidationTests(PlanBuilderTestCase):
    def test_reports_every_invalid_field(self) -> None:
        request = Build(
            config="Fast",
            configure=ConfigureOptions(enable_projects=("clang", "clangg"), linker="ld.lld"),
        )

        with self.assertRaises(InvalidRequest) as ctx:
            self.builder.build(request, make_defaults(detected_quirks=Quirks.LLVM))

        errors = ctx.exception.errors
        self.assertEqual(len(errors), 3)
        self.assertTrue(all(isinstance(error, InvalidValue) for error in errors))
        self.assertEqual([error.category for error in errors], ["build_types", "linkers", "projects"])
        self.assertIn("clang", errors[2].suggestions)
        self.assertTrue(errors[0].suggestions)
        self.assertIn("did you mean", str(ctx.exception))

    def test_values_are_canonicalised(self) -> None:
        request = Configure(options=ConfigureOptions(targets_to_build=("x86", "aarch64")))

        plan = self.builder.build(request, make_defaults(detected_quirks=Quirks.LLVM))

        self.assertIn("-DLLVM_TARGETS_TO_BUILD=X86;AArch64;Native", plan.steps[0].argv)

    def test_test_selectors_are_exclusive(self) -> None:
        with self.assertRaises(InvalidRequest) as ctx:
            self.builder.build(TestRequest(group="clang", first=True), make_defaults(detected_quirks=Quirks.LLVM))

        self.assertTrue(any(isinstance(error, AmbiguousRequest) for error in ctx.exception.errors))

    def test_ambiguous_group_prefix(self) -> None:
        with self.assertRaises(InvalidRequest) as ctx:
            self.builder.build(TestRequest(group="ll"), make_defaults(detected_quirks=Quirks.LLVM))

        (error,) = ctx.exception.errors
        self.assertIsInstance(error, AmbiguousRequest)
        self.assertIn("check-llvm", str(error))
        self.assertIn("check-lld", str(error))

    def test_unknown_group(self) -> None:
        with self.assertRaises(InvalidRequest) as ctx:
            self.builder.build(TestRequest(group="zzz"), make_defaults(detected_quirks=Quirks.LLVM))

        (error,) = ctx.exception.errors
        self.assertIsInstance(error, InvalidValue)
        self.assertEqual(error.category, "lit_groups")


class ConfigureQuirkTests(PlanBuilderTestCase):
    def test_llvm_configure_applies_every_rule(self) -> None:
        request = Configure(
            options=ConfigureOptions(
                san=True,
                expensive_checks=True,
                targets_to_build=("X86",),
                flags=("-g",),
                args=("-DFOO=1",),
            )
        )
        defaults = make_defaults(
            detected_quirks=Quirks.LLVM,
            commands=frozenset({"ccache", "sphinx-build", "lld", "ninja"}),
            cc_flags=frozenset({"-fcolor-diagnostics", "-fuse-ld=lld"}),
            cflags="-O1",
        )

        plan = self.builder.build(request, defaults)

        self.assertEqual(
            list(plan.steps[0].argv),
            [
                "cmake",
                "-S",
                str(WORKSPACE / "llvm"),
                "-B",
                str(BINARY),
                "-G",
                "Ninja",
                "-DCMAKE_BUILD_TYPE=RelWithDebInfo",
                "-DCMAKE_PREFIX_PATH=",
                "-DCMAKE_INSTALL_PREFIX=dist",
                "-DCMAKE_EXPORT_COMPILE_COMMANDS=On",
                "-DLLVM_ENABLE_ASSERTIONS=On",
                "-DLLVM_OPTIMIZED_TABLEGEN=On",
                "-DLLVM_ENABLE_SPHINX=On",
                "-DLLVM_USE_LINKER=lld",
                "-DLLVM_CCACHE_BUILD=On",
                "-DLLVM_USE_SANITIZER=Address;Undefined",
                "-DLLVM_USE_SANITIZE_COVERAGE=Yes",
                "-DLLVM_ENABLE_EXPENSIVE_CHECKS=On",
                "-DLLVM_ENABLE_WERROR=Off",
                "-DLLVM_ENABLE_PROJECTS=llvm;clang;lld",
                "-DLLVM_TARGETS_TO_BUILD=X86;Native",
                "-DCMAKE_C_FLAGS=-fcolor-diagnostics -g -O1",
                "-DCMAKE_CXX_FLAGS=-fcolor-diagnostics -g",
                "-DFOO=1",
            ],
        )

    def test_plain_project_uses_compiler_launcher_and_flags(self) -> None:
        request = Configure(options=ConfigureOptions(san=True, prefix_path=("/opt/a", "/opt/b"), shared_libs=False))
        defaults = make_defaults(
            commands=frozenset({"ccache"}),
            cc_flags=frozenset({"-fdiagnostics-color=always"}),
            cxxflags="-stdlib=libc++",
        )

        argv = self.builder.build(request, defaults).steps[0].argv

        self.assertIn("-DCMAKE_PREFIX_PATH=/opt/a;/opt/b", argv)
        self.assertIn("-DBUILD_SHARED_LIBS=Off", argv)
        self.assertIn("-DCMAKE_C_COMPILER_LAUNCHER=ccache", argv)
        self.assertIn("-DCMAKE_CXX_COMPILER_LAUNCHER=ccache", argv)
        self.assertIn("-DCMAKE_C_FLAGS=-fdiagnostics-color=always -fsanitize=address,undefined", argv)
        self.assertIn(
            "-DCMAKE_CXX_FLAGS=-fdiagnostics-color=always -fsanitize=address,undefined -stdlib=libc++",
            argv,
        )

    def test_llvm_only_options_are_ignored_outside_llvm(self) -> None:
        request = Configure(options=ConfigureOptions(enable_projects=("clang",), expensive_checks=True))

        with self.assertLogs("cmfront.planner", level="WARNING") as logs:
            plan = self.builder.build(request, make_defaults())

        self.assertFalse(any("LLVM" in arg for arg in plan.steps[0].argv))
        self.assertIn("enable_projects", logs.output[0])

    def test_linker_selection(self) -> None:
        cases = [
            (None, frozenset({"lld", "gold"}), frozenset({"-fuse-ld=lld", "-fuse-ld=gold"}), "lld"),
            (None, frozenset({"gold"}), frozenset({"-fuse-ld=gold"}), "gold"),
            (None, frozenset({"lld"}), frozenset(), None),
            ("default", frozenset({"lld"}), frozenset({"-fuse-ld=lld"}), None),
            ("mold", frozenset(), frozenset(), "mold"),
        ]
        for explicit, commands, flags, expected in cases:
            with self.subTest(explicit=explicit, commands=sorted(commands)):
                request = Configure(options=ConfigureOptions(linker=explicit))
                defaults = make_defaults(detected_quirks=Quirks.LLVM, commands=commands, cc_flags=flags)

                argv = self.builder.build(request, defaults).steps[0].argv

                linker_args = [arg for arg in argv if arg.startswith("-DLLVM_USE_LINKER=")]
                self.assertEqual(linker_args, [f"-DLLVM_USE_LINKER={expected}"] if expected else [])

    def test_target_list_rules(self) -> None:
        cases = [
            (ConfigureOptions(), "all"),
            (ConfigureOptions(targets_to_build=("X86", "Native")), "X86;Native"),
            (ConfigureOptions(targets_to_build=("X86",), disable_implicit_native=True), "X86"),
            (ConfigureOptions(targets_to_build=("all",)), "all"),
        ]
        for options, expected in cases:
            with self.subTest(expected=expected):
                argv = self.builder.build(Configure(options=options), make_defaults(detected_quirks=Quirks.LLVM)).steps[0].argv

                self.assertIn(f"-DLLVM_TARGETS_TO_BUILD={expected}", argv)

    def test_runtimes_only_when_requested(self) -> None:
        request = Configure(options=ConfigureOptions(enable_runtimes=("libcxx", "libcxxabi")))

        argv = self.builder.build(request, make_defaults(detected_quirks=Quirks.LLVM)).steps[0].argv

        self.assertIn("-DLLVM_ENABLE_RUNTIMES=libcxx;libcxxabi", argv)


class LitTests(PlanBuilderTestCase):
    RESULTS = (
        LitResult("LLVM :: CodeGen/X86/pass.ll", True),
        LitResult("LLVM :: CodeGen/X86/fail.ll", False),
        LitResult("Clang :: Sema/fail.c", False),
    )

    def defaults(self, **overrides) -> ResolvedDefaults:
        values = {"detected_quirks": Quirks.LLVM, "result_db": self.RESULTS}
        values.update(overrides)
        return make_defaults(**values)

    def test_reruns_failing_tests_and_updates_resultdb(self) -> None:
        plan = self.builder.build(TestRequest(), self.defaults())

        (step,) = plan.steps
        self.assertEqual(
            list(step.argv),
            [
                str(BINARY / "bin" / "llvm-lit"),
                str(WORKSPACE / "llvm" / "test" / "CodeGen" / "X86" / "fail.ll"),
                str(WORKSPACE / "llvm") + "/../clang/test/Sema/fail.c",
            ],
        )
        self.assertEqual(step.environment, {"LIT_OPTS": f"--resultdb-output {BINARY / 'lit.json'}"})

    def test_first_runs_one_test_without_updating(self) -> None:
        plan = self.builder.build(TestRequest(first=True, verbose=True), self.defaults())

        (step,) = plan.steps
        self.assertEqual(step.argv[1:], ("-a", str(WORKSPACE / "llvm" / "test" / "CodeGen" / "X86" / "fail.ll")))
        self.assertEqual(step.environment, {"FILECHECK_OPTS": "--dump-input always"})

    def test_explicit_tests_and_passthrough_args(self) -> None:
        plan = self.builder.build(TestRequest(tests=("llvm/test/Foo",), args=("--filter", "x"), update_resultdb=True), self.defaults())

        (step,) = plan.steps
        self.assertEqual(step.argv[1:], ("llvm/test/Foo", "--filter", "x"))
        self.assertIn("LIT_OPTS", step.environment)

    def test_group_runs_check_target(self) -> None:
        plan = self.builder.build(TestRequest(group="c", update_resultdb=False), self.defaults())

        (step,) = plan.steps
        self.assertEqual(step.label, "Run check-clang")
        self.assertEqual(
            list(step.argv),
            ["cmake", "--build", str(BINARY), "--config", "RelWithDebInfo", "--target", "check-clang"],
        )
        self.assertEqual(step.env, ())

    def test_print_only_lists_tests(self) -> None:
        plan = self.builder.build(TestRequest(print_only=True, first=True), self.defaults())

        (step,) = plan.steps
        self.assertEqual(step.argv[:2], ("printf", "%s\\n"))
        self.assertEqual(len(step.argv), 3)

    def test_xfail_export(self) -> None:
        plan = self.builder.build(TestRequest(xfail_export=True), self.defaults())

        (step,) = plan.steps
        self.assertEqual(
            list(step.argv),
            ["printf", "%s\\n", 'export LIT_XFAIL="LLVM :: CodeGen/X86/fail.ll;Clang :: Sema/fail.c"'],
        )

    def test_xfail_export_needs_resultdb(self) -> None:
        with self.assertRaises(EnvironmentUnresolvable):
            self.builder.build(TestRequest(xfail_export=True), self.defaults(result_db=None))

    def test_nothing_to_run_is_an_empty_plan(self) -> None:
        plan = self.builder.build(TestRequest(), self.defaults(result_db=(LitResult("LLVM :: ok.ll", True),)))

        self.assertEqual(plan.steps, ())
        self.assertFalse(plan.unsafe)


class CtestTests(PlanBuilderTestCase):
    def test_ctest_with_filters(self) -> None:
        plan = self.builder.build(TestRequest(tests=("foo", "bar"), verbose=True, args=("-j4",)), make_defaults())

        (step,) = plan.steps
        self.assertEqual(
            list(step.argv),
            ["ctest", "--test-dir", str(BINARY), "--output-on-failure", "-V", "-R", "foo|bar", "-j4"],
        )

    def test_ctest_multi_config_and_print_only(self) -> None:
        state = configured(generator="Visual Studio 17 2022", build_type=None)

        plan = self.builder.build(TestRequest(print_only=True, config="Debug"), make_defaults(build_state=state))

        self.assertEqual(list(plan.steps[0].argv), ["ctest", "--test-dir", str(BINARY), "-C", "Debug", "-N"])

    def test_group_builds_target_verbatim(self) -> None:
        plan = self.builder.build(TestRequest(group="unit-tests"), make_defaults())

        self.assertEqual(plan.steps[0].argv[-2:], ("--target", "unit-tests"))

    def test_resultdb_features_need_llvm(self) -> None:
        for request in (TestRequest(first=True), TestRequest(xfail_export=True)):
            with self.subTest(request=request):
                with self.assertRaises(EnvironmentUnresolvable):
                    self.builder.build(request, make_defaults())


class ShellScriptTests(PlanBuilderTestCase):
    def test_activate_prints_quoted_settings(self) -> None:
        defaults = make_defaults(binary_dir=WORKSPACE / "my build", detected_quirks=Quirks.LLVM)

        plan = self.builder.build(Activate(config="Debug"), defaults)

        (step,) = plan.steps
        self.assertEqual(
            list(step.argv),
            ["printf", ACTIVATE_SCRIPT, str(WORKSPACE / "llvm"), f"'{WORKSPACE / 'my build'}'", "Debug", "llvm"],
        )

    def test_deactivate(self) -> None:
        plan = self.builder.build(Deactivate(), make_defaults())

        self.assertEqual(list(plan.steps[0].argv), ["printf", DEACTIVATE_SCRIPT])
        self.assertIn("unset -v CM_SRC CM_BIN CM_CFG CM_QUIRKS", DEACTIVATE_SCRIPT)


class CleanTests(PlanBuilderTestCase):
    def test_missing_directory_is_a_noop(self) -> None:
        plan = self.builder.build(Clean(), make_defaults())

        self.assertEqual(plan.steps, ())

    def test_full_clean_is_unsafe(self) -> None:
        plan = self.builder.build(Clean(), make_defaults(build_state=configured()))

        (step,) = plan.steps
        self.assertEqual(list(step.argv), ["cmake", "-E", "rm", "-rf", str(BINARY)])
        self.assertTrue(step.destructive)
        self.assertTrue(plan.unsafe)

    def test_cache_only_clean_is_safe(self) -> None:
        plan = self.builder.build(Clean(cache_only=True), make_defaults(build_state=configured()))

        self.assertEqual(self.labels(plan), ["Reset CMake cache"])
        self.assertFalse(plan.unsafe)

    def test_refuses_to_remove_source(self) -> None:
        state = BuildDirectoryState(path=WORKSPACE, exists=True)

        with self.assertRaises(EnvironmentUnresolvable):
            self.builder.build(Clean(), make_defaults(binary_dir=WORKSPACE, build_state=state))


if __name__ == "__main__":
    unittest.main()
