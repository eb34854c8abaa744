from __future__ import annotations

import string

import pytest

from tokenvault.core.errors import InvalidTokenValueError
from tokenvault.domain.values import token_prefix, validate_token_value
from tokenvault.services.tokenization.generators import (
    RANDOM_CHARSET,
    generate_format_preserving_token,
    generate_random_token,
)


def test_random_token_uses_configured_length_and_charset() -> None:
    value = generate_random_token()
    assert len(value) == 32
    assert set(value) <= set(RANDOM_CHARSET)
    assert len(generate_random_token(12)) == 12


def test_format_preserving_token_keeps_shape() -> None:
    source = "4111-1111-1111-1111"
    value = generate_format_preserving_token(source)
    assert len(value) == len(source)
    for original, produced in zip(source, value):
        if original.isdigit():
            assert produced in string.digits
        else:
            assert produced == original


def test_format_preserving_token_keeps_letter_case() -> None:
    value = generate_format_preserving_token("Ab-9z")
    assert value[0] in string.ascii_uppercase
    assert value[1] in string.ascii_lowercase
    assert value[2] == "-"
    assert value[3] in string.digits
    assert value[4] in string.ascii_lowercase


@pytest.mark.parametrize("value", ["", "short", "a" * 129, "11111111"])
def test_validate_token_value_rejects(value: str) -> None:
    with pytest.raises(InvalidTokenValueError):
        validate_token_value(value)


def test_validate_token_value_accepts_bounds() -> None:
    assert validate_token_value("ab345678") == "ab345678"
    assert validate_token_value("ab" * 64) == "ab" * 64


def test_token_prefix() -> None:
    assert token_prefix("abcdefghijkl") == "abcdefgh"
    assert token_prefix(None) is None
