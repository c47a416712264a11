from __future__ import annotations

from pathlib import Path
import tempfile
import textwrap
import unittest

from cmfront.errors import UnknownCategoryError
from cmfront.known_values import KnownValueResolver, KnownValueSet, load_known_values


class KnownValueTableTests(unittest.TestCase):
    def test_packaged_table_has_every_category(self) -> None:
        values = load_known_values()

        for category in ("projects", "runtimes", "targets", "build_types", "linkers", "lit_groups", "quirks"):
            self.assertIn(category, values.categories)
            self.assertTrue(values.categories[category])
        self.assertEqual(values.source, "llvm/CMakeLists.txt")
        self.assertIn("clang", values.categories["projects"])
        self.assertIn("Native", values.categories["targets"])

    def test_load_from_explicit_yaml_path(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "values.yaml"
            path.write_text(
                textwrap.dedent(
                    """
                    values:
                      colors: [red, green]
                      sizes: "small, large"
                    """
                )
            )

            values = load_known_values(path)

        self.assertEqual(values.categories["colors"], ("red", "green"))
        self.assertEqual(values.categories["sizes"], ("small", "large"))
        self.assertIsNone(values.version)

    def test_values_must_be_a_table(self) -> None:
        with self.assertRaises(TypeError):
            KnownValueSet.from_mapping({"values": ["a", "b"]})


class KnownValueResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = KnownValueResolver(
            KnownValueSet.from_mapping(
                {
                    "values": {
                        "build_types": ["Release", "Debug", "RelWithDebInfo", "MinSizeRel"],
                        "lit_groups": ["all", "llvm", "clang", "lld"],
                        "empty": [],
                    }
                }
            )
        )

    def test_validate_is_case_insensitive(self) -> None:
        self.assertTrue(self.resolver.validate("build_types", "Debug"))
        self.assertTrue(self.resolver.validate("build_types", "debug"))
        self.assertFalse(self.resolver.validate("build_types", "Fast"))

    def test_canonical_returns_table_spelling(self) -> None:
        self.assertEqual(self.resolver.canonical("build_types", "relwithdebinfo"), "RelWithDebInfo")
        self.assertIsNone(self.resolver.canonical("build_types", "Fast"))

    def test_all_keeps_table_order(self) -> None:
        self.assertEqual(self.resolver.all("lit_groups"), ("all", "llvm", "clang", "lld"))

    def test_infer_expands_unique_prefix(self) -> None:
        self.assertEqual(self.resolver.infer("lit_groups", "c", "check-"), ("check-clang",))

    def test_infer_reports_every_candidate_for_ambiguous_prefix(self) -> None:
        self.assertEqual(self.resolver.infer("lit_groups", "ll", "check-"), ("check-llvm", "check-lld"))

    def test_infer_prefers_exact_match(self) -> None:
        self.assertEqual(self.resolver.infer("lit_groups", "lld", "check-"), ("check-lld",))

    def test_infer_accepts_prefixed_value_verbatim(self) -> None:
        self.assertEqual(self.resolver.infer("lit_groups", "check-mlir", "check-"), ("check-mlir",))

    def test_infer_without_match_is_empty(self) -> None:
        self.assertEqual(self.resolver.infer("lit_groups", "zzz", "check-"), ())

    def test_suggest_ranks_closest_first(self) -> None:
        suggestions = self.resolver.suggest("build_types", "Relase")

        self.assertEqual(suggestions[0], "Release")
        self.assertLessEqual(len(suggestions), 3)

    def test_suggest_is_never_empty_for_populated_category(self) -> None:
        self.assertTrue(self.resolver.suggest("build_types", "?"))
        self.assertEqual(self.resolver.suggest("empty", "x"), ())

    def test_unknown_category_is_fatal(self) -> None:
        for query in (
            lambda: self.resolver.all("nope"),
            lambda: self.resolver.validate("nope", "x"),
            lambda: self.resolver.canonical("nope", "x"),
            lambda: self.resolver.infer("nope", "x", "check-"),
            lambda: self.resolver.suggest("nope", "x"),
        ):
            with self.assertRaises(UnknownCategoryError):
                query()


if __name__ == "__main__":
    unittest.main()
