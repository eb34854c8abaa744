from __future__ import annotations

import secrets
import string
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.config import get_settings
from tokenvault.core.errors import InvalidTokenValueError, TokenizationError
from tokenvault.domain.values import TOKEN_VALUE_MAX_LENGTH, TOKEN_VALUE_MIN_LENGTH, validate_token_value
from tokenvault.persistence.repos import tokens as tokens_repo


RANDOM_CHARSET = string.ascii_letters + string.digits
SEQUENCE_NAME = "token_sequence"
MAX_GENERATION_ATTEMPTS = 10


def generate_random_token(length: int | None = None) -> str:
    size = length or get_settings().token_random_length
    return "".join(secrets.choice(RANDOM_CHARSET) for _ in range(size))


def generate_format_preserving_token(plaintext: str) -> str:
    # Shape-preserving substitution only; not reversible FPE (FF1/FF3).
    out: list[str] = []
    for char in plaintext:
        if char in string.digits:
            out.append(secrets.choice(string.digits))
        elif char in string.ascii_uppercase:
            out.append(secrets.choice(string.ascii_uppercase))
        elif char in string.ascii_lowercase:
            out.append(secrets.choice(string.ascii_lowercase))
        else:
            out.append(char)
    return "".join(out)


async def generate_sequential_token(session: AsyncSession) -> str:
    # Counter row is locked until the caller's transaction ends.
    settings = get_settings()
    value = await tokens_repo.next_sequence_value(
        session, name=SEQUENCE_NAME, start=settings.token_sequence_start
    )
    return str(value)


def _check_length(value: str) -> None:
    if not TOKEN_VALUE_MIN_LENGTH <= len(value) <= TOKEN_VALUE_MAX_LENGTH:
        # Length follows the input shape; retrying cannot fix it.
        validate_token_value(value)


async def generate_token_value(session: AsyncSession, plaintext: str, token_type: str) -> str:
    candidates: dict[str, Callable[[], Awaitable[str] | str]] = {
        "random": generate_random_token,
        "format_preserving": lambda: generate_format_preserving_token(plaintext),
        "sequential": lambda: generate_sequential_token(session),
    }
    factory = candidates.get(token_type)
    if factory is None:
        raise TokenizationError(
            "Unsupported token type",
            code="INVALID_TOKEN_TYPE",
            context={"token_type": token_type},
        )
    for _ in range(MAX_GENERATION_ATTEMPTS):
        produced = factory()
        value = await produced if not isinstance(produced, str) else produced
        _check_length(value)
        if value == plaintext:
            continue
        try:
            validate_token_value(value)
        except InvalidTokenValueError:
            continue
        if await tokens_repo.token_value_exists(session, value):
            continue
        return value
    raise TokenizationError(
        "Could not generate a unique token value",
        code="TOKEN_GENERATION_FAILED",
        context={"token_type": token_type},
    )
