"""
Identifier validation.
Every identifier is checked here before it reaches storage or yt-dlp.
"""
import re
from typing import Optional

IDENTIFIER_LENGTH = 11

_IDENTIFIER_RE = re.compile(r"[A-Za-z0-9_-]{11}")


class InvalidIdentifier(ValueError):
    pass


def is_valid_identifier(value: Optional[str]) -> bool:
    return isinstance(value, str) and _IDENTIFIER_RE.fullmatch(value) is not None


def validate_identifier(value: Optional[str]) -> str:
    """Return the identifier unchanged or raise InvalidIdentifier."""
    if not is_valid_identifier(value):
        raise InvalidIdentifier(
            f"Video ID must be {IDENTIFIER_LENGTH} characters"
        )
    return value  # type: ignore[return-value]


def source_url(identifier: str) -> str:
    return f"https://www.youtube.com/watch?v={identifier}"
