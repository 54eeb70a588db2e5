"""Salary bracket table lookup."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Iterable

import yaml

DEFAULT_BRACKETS: tuple[tuple[str, str], ...] = (
    ("Ajudante Comum", "1454.20"),
    ("Ajudante Prático/Meio-Oficial", "1476.20"),
    ("Oficial", "2378.34"),
    ("Op. Qualificado I", "2637.80"),
    ("Op. Qualificado II", "3262.60"),
    ("Op. Qualificado III", "4037.00"),
)


@dataclass(frozen=True, slots=True)
class SalaryBracket:
    label: str
    minimum: Decimal


class BracketTable:
    """Ordered (label, minimum salary) table."""

    def __init__(self, brackets: Iterable[SalaryBracket]) -> None:
        ordered = sorted(brackets, key=lambda item: item.minimum)
        if not ordered:
            raise ValueError("salary bracket table must not be empty")
        self._brackets: tuple[SalaryBracket, ...] = tuple(ordered)

    @property
    def brackets(self) -> tuple[SalaryBracket, ...]:
        return self._brackets

    def classify(self, salary: Decimal | None) -> str | None:
        if salary is None:
            return None
        label = self._brackets[0].label
        for bracket in self._brackets:
            if salary >= bracket.minimum:
                label = bracket.label
            else:
                break
        return label

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str | Decimal | float]]) -> "BracketTable":
        return cls(SalaryBracket(label=str(label), minimum=Decimal(str(minimum))) for label, minimum in pairs)


def load_bracket_table(path: Path | None) -> BracketTable:
    """Read the bracket table from YAML, falling back to the built-in defaults."""

    if path is None or not path.exists():
        return BracketTable.from_pairs(DEFAULT_BRACKETS)
    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    entries = data.get("brackets") or []
    pairs = [(item["label"], item["minimum"]) for item in entries if "label" in item and "minimum" in item]
    if not pairs:
        return BracketTable.from_pairs(DEFAULT_BRACKETS)
    return BracketTable.from_pairs(pairs)


@lru_cache(maxsize=4)
def get_bracket_table(path: str | None = None) -> BracketTable:
    return load_bracket_table(Path(path) if path else None)
