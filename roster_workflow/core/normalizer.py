"""Pure conversions from raw spreadsheet cells to canonical typed values.

Every normaliser is total: it never raises, and answers with a
:class:`FieldResult` that is either ``ok`` (with the canonical value),
``invalid`` (with a reason code and the best-effort raw text kept for
diagnostics) or ``absent`` (the cell was empty).
"""
from __future__ import annotations

import math
import numbers
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Sequence, Union

import pandas as pd

from roster_workflow.core.national_id import NATIONAL_ID_LENGTH, digits_only, has_valid_check_digits
from roster_workflow.domain.models import Sex

CellValue = Union[Decimal, str, None]

SPREADSHEET_EPOCH = date(1899, 12, 30)
MIN_YEAR = 1900
MAX_YEAR = 2100
CENT = Decimal("0.01")


class FieldState(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    ABSENT = "absent"


class ReasonCode(str, Enum):
    MISSING_NAME = "missing_name"
    MISSING_NATIONAL_ID = "missing_national_id"
    INVALID_LENGTH = "invalid_length"
    INVALID_CHECKSUM = "invalid_checksum"
    DUPLICATE_IN_FILE = "duplicate_in_file"
    MISSING_DATE = "missing_date"
    INVALID_DATE = "invalid_date"
    MISSING_SALARY = "missing_salary"
    INVALID_SALARY = "invalid_salary"
    NEGATIVE_SALARY = "negative_salary"
    MISSING_SEX = "missing_sex"
    INVALID_SEX = "invalid_sex"
    INVALID_FLAG = "invalid_flag"


class SexPolicy(str, Enum):
    """What to do with an empty or unrecognised sex cell."""

    DEFAULT_MASCULINE = "default_masculine"
    STRICT = "strict"


@dataclass(frozen=True, slots=True)
class FieldResult:
    state: FieldState
    value: Any = None
    raw: str | None = None
    reason: ReasonCode | None = None

    @classmethod
    def valid(cls, value: Any, raw: str | None = None) -> "FieldResult":
        return cls(FieldState.OK, value=value, raw=raw)

    @classmethod
    def invalid(cls, reason: ReasonCode, raw: str | None = None) -> "FieldResult":
        return cls(FieldState.INVALID, raw=raw, reason=reason)

    @classmethod
    def missing(cls) -> "FieldResult":
        return cls(FieldState.ABSENT)

    @property
    def is_ok(self) -> bool:
        return self.state is FieldState.OK

    @property
    def is_absent(self) -> bool:
        return self.state is FieldState.ABSENT

    @property
    def is_invalid(self) -> bool:
        return self.state is FieldState.INVALID


# ----------------------------------------------------------------------
# cells
# ----------------------------------------------------------------------
def to_cell(value: Any) -> CellValue:
    """Resolve whatever the spreadsheet reader produced into ``Decimal | str | None``."""

    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        if isinstance(value, datetime) and pd.isna(value):
            return None
        return value.date().isoformat() if isinstance(value, datetime) else value.isoformat()
    if isinstance(value, time):
        return value.isoformat()
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return Decimal(repr(float(value)))
    if isinstance(value, numbers.Integral):
        return Decimal(int(value))
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    text = str(value).strip()
    return text or None


def cell_text(cell: CellValue) -> str:
    """Plain text of a cell; integral numbers lose their trailing ``.0``."""

    if cell is None:
        return ""
    if isinstance(cell, Decimal):
        if cell == cell.to_integral_value():
            return format(cell.to_integral_value(), "f")
        return format(cell.normalize(), "f")
    return str(cell)


def is_blank_row(cells: Iterable[CellValue]) -> bool:
    return all(cell is None or cell_text(cell).strip() == "" for cell in cells)


# ----------------------------------------------------------------------
# headers
# ----------------------------------------------------------------------
COLUMN_SYNONYMS: dict[str, tuple[str, ...]] = {
    "national_id": ("cpf", "documento", "doc", "cpfcnpj", "numcpf", "numerocpf", "cpfcolaborador"),
    "birth_date": (
        "nascimento",
        "nasc",
        "dtnasc",
        "dtnascimento",
        "datanasc",
        "datanascimento",
        "datadenasc",
        "datadenascimento",
        "dtdenascimento",
        "dtnasci",
    ),
    "sex": ("sexo", "genero", "gen", "sx", "masculinofeminino", "mf"),
    "retired": ("aposentado", "aposentadoria"),
    "on_leave": ("afastado", "afastamento"),
    "salary": (
        "salario",
        "salariobase",
        "vencimento",
        "vencimentos",
        "remuneracao",
        "sal",
        "renda",
        "valor",
        "pagamento",
    ),
    "name": (
        "nome",
        "nomecompleto",
        "funcionario",
        "colaborador",
        "empregado",
        "trabalhador",
        "nomecolaborador",
        "nomefuncionario",
        "nometrabalhador",
        "nomefunc",
        "nomecolab",
    ),
}

# ties between equally placed substring matches go to the earlier column
CLAIM_ORDER: tuple[str, ...] = tuple(COLUMN_SYNONYMS.keys())

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_header(text: object) -> str:
    if text is None:
        return ""
    lowered = str(text).lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub("", stripped)


def match_columns(headers: Sequence[object], columns: Iterable[str] = CLAIM_ORDER) -> dict[str, int]:
    """Map logical columns to header positions.

    Exact synonym matches are claimed first. Substring matches come second,
    ranked by where the synonym starts in the header and then by its length,
    so the leading noun decides: "Nome do Colaborador" is the name and "CPF do
    Colaborador" the national ID. A header position is never assigned to two
    logical columns.
    """

    wanted = [column for column in CLAIM_ORDER if column in set(columns)]
    normalized = [normalize_header(header) for header in headers]
    claimed: dict[str, int] = {}
    taken: set[int] = set()

    for column in wanted:
        synonyms = COLUMN_SYNONYMS[column]
        for index, header in enumerate(normalized):
            if index not in taken and header and header in synonyms:
                claimed[column] = index
                taken.add(index)
                break

    candidates: list[tuple[int, int, int, int, str]] = []
    for rank, column in enumerate(wanted):
        if column in claimed:
            continue
        for index, header in enumerate(normalized):
            if index in taken or not header:
                continue
            hits = [(header.find(synonym), -len(synonym)) for synonym in COLUMN_SYNONYMS[column] if synonym in header]
            if hits:
                position, negative_length = min(hits)
                candidates.append((position, negative_length, rank, index, column))

    for _, _, _, index, column in sorted(candidates):
        if column in claimed or index in taken:
            continue
        claimed[column] = index
        taken.add(index)
    return claimed


# ----------------------------------------------------------------------
# field normalisers
# ----------------------------------------------------------------------
_WHITESPACE = re.compile(r"\s+")


def normalize_name(cell: CellValue) -> FieldResult:
    text = _WHITESPACE.sub(" ", cell_text(cell)).strip()
    if not text:
        return FieldResult.missing()
    return FieldResult.valid(text, raw=text)


def normalize_national_id(cell: CellValue) -> FieldResult:
    raw = cell_text(cell).strip()
    digits = digits_only(raw)
    if not digits:
        return FieldResult.missing() if not raw else FieldResult.invalid(ReasonCode.INVALID_LENGTH, raw)
    if len(digits) > NATIONAL_ID_LENGTH:
        return FieldResult.invalid(ReasonCode.INVALID_LENGTH, raw)
    padded = digits.zfill(NATIONAL_ID_LENGTH)
    if not has_valid_check_digits(padded):
        return FieldResult(FieldState.INVALID, value=padded, raw=raw, reason=ReasonCode.INVALID_CHECKSUM)
    return FieldResult.valid(padded, raw=raw)


_DMY = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d+)$")
_ISO = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[ T].*)?$")
_SERIAL = re.compile(r"^\d+(?:\.\d+)?$")


def _calendar_date(year: int, month: int, day: int) -> date | None:
    if year < MIN_YEAR or year > MAX_YEAR:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _from_serial(serial: Decimal) -> date | None:
    if serial <= 0:
        return None
    try:
        candidate = SPREADSHEET_EPOCH + timedelta(days=int(serial))
    except OverflowError:
        return None
    if candidate.year < MIN_YEAR or candidate.year > MAX_YEAR:
        return None
    return candidate


def normalize_date(cell: CellValue) -> FieldResult:
    if cell is None:
        return FieldResult.missing()
    raw = cell_text(cell).strip()
    if not raw:
        return FieldResult.missing()

    parsed: date | None = None
    if isinstance(cell, Decimal):
        parsed = _from_serial(cell)
    elif match := _DMY.match(raw):
        day, month, year_text = match.groups()
        if len(year_text) == 2:
            year = 1900 + int(year_text) if int(year_text) > 50 else 2000 + int(year_text)
            parsed = _calendar_date(year, int(month), int(day))
        elif len(year_text) == 4:
            parsed = _calendar_date(int(year_text), int(month), int(day))
    elif match := _ISO.match(raw):
        year, month, day = (int(part) for part in match.groups())
        parsed = _calendar_date(year, month, day)
    elif _SERIAL.match(raw):
        parsed = _from_serial(Decimal(raw))

    if parsed is None:
        return FieldResult.invalid(ReasonCode.INVALID_DATE, raw)
    return FieldResult.valid(parsed, raw=raw)


_CURRENCY_NOISE = re.compile(r"(R\$|\$|BRL|\s| )", re.IGNORECASE)


def _cents(amount: Decimal, raw: str) -> FieldResult:
    if not amount.is_finite():
        return FieldResult.invalid(ReasonCode.INVALID_SALARY, raw)
    try:
        return FieldResult.valid(amount.quantize(CENT, rounding=ROUND_HALF_UP), raw=raw)
    except InvalidOperation:
        # more digits than the context precision
        return FieldResult.invalid(ReasonCode.INVALID_SALARY, raw)


def normalize_currency(cell: CellValue) -> FieldResult:
    if cell is None:
        return FieldResult.missing()
    if isinstance(cell, Decimal):
        return _cents(cell, cell_text(cell))

    raw = str(cell).strip()
    text = _CURRENCY_NOISE.sub("", raw)
    if not text:
        return FieldResult.missing()

    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    elif "." in text:
        parts = text.split(".")
        if len(parts[-1]) == 3 and all(part.lstrip("-").isdigit() for part in parts if part):
            text = text.replace(".", "")

    try:
        amount = Decimal(text)
    except InvalidOperation:
        return FieldResult.invalid(ReasonCode.INVALID_SALARY, raw)
    return _cents(amount, raw)


_SEX_VALUES: dict[str, Sex] = {
    "masculino": Sex.MASCULINE,
    "masc": Sex.MASCULINE,
    "m": Sex.MASCULINE,
    "feminino": Sex.FEMININE,
    "fem": Sex.FEMININE,
    "femi": Sex.FEMININE,
    "f": Sex.FEMININE,
    "outro": Sex.OTHER,
    "o": Sex.OTHER,
}


def normalize_sex(
    cell: CellValue,
    policy: SexPolicy = SexPolicy.STRICT,
    *,
    allow_other: bool = True,
) -> FieldResult:
    raw = cell_text(cell).strip()
    if not raw:
        if policy is SexPolicy.DEFAULT_MASCULINE:
            return FieldResult.valid(Sex.MASCULINE)
        return FieldResult.missing()

    sex = _SEX_VALUES.get(raw.lower())
    if sex is Sex.OTHER and not allow_other:
        sex = None
    if sex is None:
        if policy is SexPolicy.DEFAULT_MASCULINE:
            return FieldResult.valid(Sex.MASCULINE, raw=raw)
        return FieldResult.invalid(ReasonCode.INVALID_SEX, raw)
    return FieldResult.valid(sex, raw=raw)


_TRUE_VALUES = {"sim", "s", "yes", "y", "true", "1", "x", "verdadeiro"}
_FALSE_VALUES = {"nao", "não", "n", "no", "false", "0", "falso"}


def normalize_flag(cell: CellValue) -> FieldResult:
    raw = cell_text(cell).strip()
    if not raw:
        return FieldResult.missing()
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return FieldResult.valid(True, raw=raw)
    if lowered in _FALSE_VALUES:
        return FieldResult.valid(False, raw=raw)
    return FieldResult.invalid(ReasonCode.INVALID_FLAG, raw)
