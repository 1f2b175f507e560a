"""Argument checks shared by the pulse services.

Violations raise ``ValueError`` before any database work happens.
"""

from __future__ import annotations

from typing import Any, Sequence


def require_int(value: Any, name: str = "id") -> int:
    # bool is an int subclass but never a valid id
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return value


def require_int_list(values: Any, name: str = "ids") -> list[int]:
    if not isinstance(values, (list, tuple)):
        raise ValueError(f"{name} must be a list of integers, got {type(values).__name__}")
    return [require_int(v, name) for v in values]


def require_non_empty(values: Sequence[Any], name: str) -> None:
    if not values:
        raise ValueError(f"{name} must not be empty")
