"""Static tables of valid option values and lookups over them."""
from __future__ import annotations

from dataclasses import dataclass, field
from difflib import SequenceMatcher
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Tuple

from core.config_loader import load_config_file, normalize_string_list

from .errors import UnknownCategoryError

DEFAULT_TABLE_PATH = Path(__file__).resolve().parent / "data" / "known_values.toml"


@dataclass(frozen=True, slots=True)
class KnownValueSet:
    """Immutable ``category -> values`` table plus the snapshot it was scraped from."""

    categories: Mapping[str, Tuple[str, ...]]
    source: str | None = None
    version: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "KnownValueSet":
        values_section = data.get("values", {})
        if not isinstance(values_section, Mapping):
            raise TypeError("[values] must be a table of category lists")
        categories = {
            str(name): tuple(normalize_string_list(values, field_name=f"values.{name}"))
            for name, values in values_section.items()
        }
        meta = data.get("meta", {})
        if not isinstance(meta, Mapping):
            meta = {}
        return cls(
            categories=MappingProxyType(categories),
            source=str(meta["source"]) if meta.get("source") else None,
            version=str(meta["version"]) if meta.get("version") else None,
        )


def load_known_values(path: Path | None = None) -> KnownValueSet:
    return KnownValueSet.from_mapping(load_config_file(path or DEFAULT_TABLE_PATH))


@dataclass(slots=True)
class KnownValueResolver:
    """Answers membership and suggestion queries against a :class:`KnownValueSet`.

    Unknown categories raise :class:`UnknownCategoryError`; unknown values are reported
    through return values so callers can gather every problem before failing.
    """

    values: KnownValueSet
    _folded: Mapping[str, Mapping[str, str]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        folded = {}
        for category, entries in self.values.categories.items():
            lowered: dict[str, str] = {}
            for entry in entries:
                lowered.setdefault(entry.lower(), entry)
            folded[category] = MappingProxyType(lowered)
        self._folded = MappingProxyType(folded)

    def _category(self, category: str) -> Tuple[str, ...]:
        try:
            return self.values.categories[category]
        except KeyError:
            raise UnknownCategoryError(f"unknown known-value category '{category}'") from None

    def all(self, category: str) -> Tuple[str, ...]:
        return self._category(category)

    def validate(self, category: str, value: str) -> bool:
        return self.canonical(category, value) is not None

    def canonical(self, category: str, value: str) -> str | None:
        self._category(category)
        return self._folded[category].get(value.lower())

    def infer(self, category: str, value: str, prefix: str) -> Tuple[str, ...]:
        """Expand ``value`` into prefixed candidates, e.g. ``"a"`` into ``("check-all",)``.

        Anything already carrying ``prefix`` is taken verbatim, since the known list is
        incomplete in that namespace.
        """

        entries = self._category(category)
        if value.startswith(prefix):
            return (value,)
        if value in entries:
            return (f"{prefix}{value}",)
        return tuple(f"{prefix}{entry}" for entry in entries if entry.startswith(value))

    def suggest(self, category: str, value: str, limit: int = 3) -> Tuple[str, ...]:
        entries = self._category(category)
        needle = value.lower()
        ranked = sorted(
            entries,
            key=lambda entry: SequenceMatcher(None, needle, entry.lower()).ratio(),
            reverse=True,
        )
        return tuple(ranked[:limit])


__all__ = ["DEFAULT_TABLE_PATH", "KnownValueResolver", "KnownValueSet", "load_known_values"]
