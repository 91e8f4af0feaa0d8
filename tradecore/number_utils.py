"""Numeric parsing helpers for broker payloads."""

from __future__ import annotations

from typing import Any


def safe_float(value: Any, default: float = 0.0) -> float:
    """Parse a float from a payload field that may be null, blank or a string."""
    if value is None or value == "":
        return default
    try:
        return float(value)  # type: ignore
    except (TypeError, ValueError):
        return default


def safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))  # type: ignore
    except (TypeError, ValueError):
        return default


def optional_float(value: Any) -> float | None:
    """Like ``safe_float`` but keeps ``None`` for missing values."""
    if value is None or value == "":
        return None
    try:
        return float(value)  # type: ignore
    except (TypeError, ValueError):
        return None


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def money(value: float) -> str:
    """Format a dollar amount as ``$1,234.56``."""
    return f"${value:,.2f}"
