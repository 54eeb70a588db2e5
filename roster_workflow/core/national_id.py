"""Brazilian CPF handling: cleaning, check digits and display mask."""
from __future__ import annotations

import re

NATIONAL_ID_LENGTH = 11

_NON_DIGITS = re.compile(r"\D")


def digits_only(value: object) -> str:
    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value))


def _check_digit(digits: str) -> int:
    weight = len(digits) + 1
    total = sum(int(digit) * (weight - index) for index, digit in enumerate(digits))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def has_valid_check_digits(cpf: str) -> bool:
    """Run both verification passes on an 11-digit string."""

    if len(cpf) != NATIONAL_ID_LENGTH or not cpf.isdigit():
        return False
    first = _check_digit(cpf[:9])
    if first != int(cpf[9]):
        return False
    second = _check_digit(cpf[:10])
    return second == int(cpf[10])


def format_national_id(value: object) -> str:
    """Render ``12345678909`` as ``123.456.789-09``; partial input is returned cleaned."""

    cpf = digits_only(value)
    if len(cpf) != NATIONAL_ID_LENGTH:
        return cpf
    return f"{cpf[:3]}.{cpf[3:6]}.{cpf[6:9]}-{cpf[9:]}"


def complete_national_id(base: str) -> str:
    """Append both check digits to a 9-digit base."""

    digits = digits_only(base)
    if len(digits) != NATIONAL_ID_LENGTH - 2:
        raise ValueError("a national ID base has exactly 9 digits")
    first = _check_digit(digits)
    second = _check_digit(f"{digits}{first}")
    return f"{digits}{first}{second}"
