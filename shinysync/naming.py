"""Naming helpers.

Centralizes how player names and species names are normalized before
they are compared.
"""

from __future__ import annotations

from typing import Any


def normalize_username(name: Any) -> str:
    """Normalize a player name for matching (trimmed, lowercase).

    ``None`` and non-string values normalize to the empty string.
    """
    if not isinstance(name, str):
        return ""
    return name.strip().lower()


def normalize_species(name: Any) -> str:
    """Normalize a species name for bucket keys.

    Rules:
    - Strip surrounding whitespace
    - Lowercase
    - Non-string values (missing ``Pokemon``) become ``""``, which never matches
    """
    if not isinstance(name, str):
        return ""
    return name.strip().lower()


def split_csv(value: str | None) -> list[str]:
    """Split a comma-separated CLI value into trimmed, non-empty tokens."""
    if not value:
        return []
    return [token.strip() for token in value.split(",") if token.strip()]
