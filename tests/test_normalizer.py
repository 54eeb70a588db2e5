import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from roster_workflow.core.brackets import BracketTable, DEFAULT_BRACKETS, load_bracket_table
from roster_workflow.core.national_id import complete_national_id, format_national_id, has_valid_check_digits
from roster_workflow.core.normalizer import (
    FieldState,
    ReasonCode,
    SexPolicy,
    match_columns,
    normalize_currency,
    normalize_date,
    normalize_flag,
    normalize_header,
    normalize_name,
    normalize_national_id,
    normalize_sex,
    to_cell,
)
from roster_workflow.domain.models import Sex


def test_national_id_is_cleaned_and_checked():
    result = normalize_national_id("123.456.789-09")
    assert result.state is FieldState.OK
    assert result.value == "12345678909"
    assert result.raw == "123.456.789-09"


def test_national_id_left_pads_numeric_cells():
    # a spreadsheet stores 012.345.678-90 as the number 1234567890
    padded = complete_national_id("012345678")
    assert padded.startswith("0")
    result = normalize_national_id(to_cell(float(int(padded))))
    assert result.is_ok
    assert result.value == padded


def test_national_id_failures():
    too_long = normalize_national_id("123456789091")
    assert too_long.state is FieldState.INVALID
    assert too_long.reason is ReasonCode.INVALID_LENGTH

    bad_checksum = normalize_national_id("123.456.789-00")
    assert bad_checksum.state is FieldState.INVALID
    assert bad_checksum.reason is ReasonCode.INVALID_CHECKSUM
    assert bad_checksum.value == "12345678900"

    assert normalize_national_id(None).is_absent
    assert normalize_national_id("   ").is_absent


def test_all_zero_national_id_passes_checksum():
    assert has_valid_check_digits("00000000000")
    assert normalize_national_id("000.000.000-00").is_ok


def test_format_national_id():
    assert format_national_id("12345678909") == "123.456.789-09"
    assert format_national_id("1234") == "1234"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("15/03/1990", date(1990, 3, 15)),
        ("5/3/90", date(1990, 3, 5)),
        ("01/01/25", date(2025, 1, 1)),
        ("1990-03-15", date(1990, 3, 15)),
        ("1990-03-15 00:00:00", date(1990, 3, 15)),
        (Decimal("32947"), date(1990, 3, 15)),
        ("32947", date(1990, 3, 15)),
    ],
)
def test_dates_are_parsed(raw, expected):
    result = normalize_date(raw)
    assert result.is_ok
    assert result.value == expected


@pytest.mark.parametrize("raw", ["30/02/2020", "15/03/190", "1899-12-31", "15/13/1990", "ontem"])
def test_invalid_dates_keep_raw_text(raw):
    result = normalize_date(raw)
    assert result.state is FieldState.INVALID
    assert result.reason is ReasonCode.INVALID_DATE
    assert result.raw == raw


def test_native_date_cells_become_iso_text():
    from datetime import datetime

    assert to_cell(datetime(1990, 3, 15)) == "1990-03-15"
    assert normalize_date(to_cell(datetime(1990, 3, 15))).value == date(1990, 3, 15)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("3.500,00", Decimal("3500.00")),
        ("R$ 1.234,5", Decimal("1234.50")),
        ("3500", Decimal("3500.00")),
        ("3.500", Decimal("3500.00")),
        ("3500.5", Decimal("3500.50")),
        ("1,234", Decimal("1.23")),
        (Decimal("2637.8"), Decimal("2637.80")),
        ("1.234.567,891", Decimal("1234567.89")),
    ],
)
def test_currency_separators(raw, expected):
    result = normalize_currency(raw)
    assert result.is_ok
    assert result.value == expected


def test_currency_failures():
    assert normalize_currency("abc").reason is ReasonCode.INVALID_SALARY
    assert normalize_currency("1,2,3").state is FieldState.INVALID
    assert normalize_currency(None).is_absent
    assert normalize_currency("R$ ").is_absent
    assert normalize_currency("9" * 30).reason is ReasonCode.INVALID_SALARY
    assert normalize_currency(Decimal("1E+40")).reason is ReasonCode.INVALID_SALARY
    assert normalize_currency(Decimal("NaN")).state is FieldState.INVALID


def test_sex_policies():
    assert normalize_sex("MASC").value is Sex.MASCULINE
    assert normalize_sex("f").value is Sex.FEMININE
    assert normalize_sex("Outro").value is Sex.OTHER
    assert normalize_sex("outro", allow_other=False).reason is ReasonCode.INVALID_SEX
    assert normalize_sex("x").reason is ReasonCode.INVALID_SEX
    assert normalize_sex(None).is_absent

    assert normalize_sex("x", SexPolicy.DEFAULT_MASCULINE).value is Sex.MASCULINE
    assert normalize_sex(None, SexPolicy.DEFAULT_MASCULINE).value is Sex.MASCULINE


def test_flags_and_names():
    assert normalize_flag("Sim").value is True
    assert normalize_flag("NÃO".lower()).value is False
    assert normalize_flag("talvez").reason is ReasonCode.INVALID_FLAG
    assert normalize_name("  JOHN   DOE ").value == "JOHN DOE"
    assert normalize_name("").is_absent


def test_header_matching_prefers_identifier_over_name():
    headers = ["Nome do Colaborador", "CPF Colaborador", "Dt. Nascimento", "Salário Base", "Sexo"]
    columns = match_columns(headers)
    assert columns["national_id"] == 1
    assert columns["name"] == 0
    assert columns["birth_date"] == 2
    assert columns["salary"] == 3
    assert columns["sex"] == 4
    assert normalize_header("Salário Base") == "salariobase"

    spelled_out = match_columns(["Nome do Colaborador", "CPF do Colaborador", "Sexo", "Data Nascimento", "Salário"])
    assert spelled_out["name"] == 0
    assert spelled_out["national_id"] == 1
    assert spelled_out["salary"] == 4


def test_salary_brackets():
    table = BracketTable.from_pairs(DEFAULT_BRACKETS)
    assert table.classify(Decimal("1000")) == "Ajudante Comum"
    assert table.classify(Decimal("2378.34")) == "Oficial"
    assert table.classify(Decimal("3000")) == "Op. Qualificado I"
    assert table.classify(Decimal("9000")) == "Op. Qualificado III"
    assert table.classify(None) is None


def test_bracket_table_loads_from_yaml(tmp_path):
    path = tmp_path / "brackets.yaml"
    path.write_text("brackets:\n  - label: Baixo\n    minimum: '0'\n  - label: Alto\n    minimum: '5000'\n", encoding="utf-8")
    table = load_bracket_table(path)
    assert table.classify(Decimal("4999.99")) == "Baixo"
    assert table.classify(Decimal("5000")) == "Alto"
    assert load_bracket_table(tmp_path / "missing.yaml").classify(Decimal("1000")) == "Ajudante Comum"
