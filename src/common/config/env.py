"""Typed environment variable parsing helpers.

Each getter returns ``default`` when the variable is unset, raises ``KeyError`` when
it is unset and ``required``, and raises ``ValueError`` naming the variable when the
value cannot be parsed.
"""

import os
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

TRUE_VALUES = ("true", "1", "yes", "on")
FALSE_VALUES = ("false", "0", "no", "off", "")


def _read(name: str, default: Optional[T], required: bool, convert: Callable[[str], T]) -> Optional[T]:
    value = os.getenv(name)
    if value is None:
        if required:
            raise KeyError(f"Environment variable '{name}' is required but not set.")
        return default
    return convert(value)


def get_env_str(name: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """Get an environment variable as a string."""
    return _read(name, default, required, str)


def get_env_int(name: str, default: Optional[int] = None, required: bool = False) -> Optional[int]:
    """Get an environment variable as an integer."""

    def convert(value: str) -> int:
        try:
            return int(value.strip())
        except ValueError:
            raise ValueError(f"Environment variable '{name}' must be an integer, got '{value}'.")

    return _read(name, default, required, convert)


def get_env_positive_int(name: str, default: int) -> int:
    """Get an environment variable as a strictly positive integer (cache capacities)."""
    value = get_env_int(name, default)
    if value is None or value <= 0:
        raise ValueError(f"Environment variable '{name}' must be a positive integer, got '{value}'.")
    return value


def parse_bool(value: str) -> Optional[bool]:
    """Parse a boolean-ish string; return None when it is not recognised."""
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    return None


def get_env_bool(
    name: str, default: Optional[bool] = None, required: bool = False
) -> Optional[bool]:
    """Get an environment variable as a boolean (see ``parse_bool``)."""

    def convert(value: str) -> bool:
        parsed = parse_bool(value)
        if parsed is None:
            raise ValueError(f"Environment variable '{name}' must be a boolean, got '{value}'.")
        return parsed

    return _read(name, default, required, convert)

