"""Per-operation switches for diagnostic logging."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, Mapping, Optional, Union

from common.config.env import parse_bool
from common.sanitization.text import redact_log_data

DEBUG_CATEGORIES = frozenset(
    {
        "create",
        "update",
        "update_many",
        "find_one",
        "find_many",
        "delete",
        "delete_many",
        "count",
        "execute",
        "schema",
    }
)

_CATEGORY_ALIASES = {
    "updateMany": "update_many",
    "findOne": "find_one",
    "findMany": "find_many",
    "deleteMany": "delete_many",
}

DebugInput = Union[None, bool, str, Mapping[str, Any], Iterable[str], "DebugLogOptions"]


@dataclass(frozen=True)
class DebugLogOptions:
    """Set of operation categories that emit diagnostic output."""

    categories: FrozenSet[str] = frozenset()

    @classmethod
    def all(cls) -> "DebugLogOptions":
        """Enable every category."""
        return cls(DEBUG_CATEGORIES)

    @classmethod
    def parse(cls, value: DebugInput) -> "DebugLogOptions":
        """Build options from a bool, a comma list, a mapping of flags, or names.

        Unknown category names raise ``ValueError``.
        """
        if isinstance(value, DebugLogOptions):
            return value
        if value is None or value is False:
            return cls()
        if value is True:
            return cls.all()
        if isinstance(value, str):
            as_bool = parse_bool(value)
            if as_bool is not None:
                return cls.all() if as_bool else cls()
            names: Iterable[str] = [part.strip() for part in value.split(",") if part.strip()]
        elif isinstance(value, Mapping):
            names = [name for name, enabled in value.items() if enabled]
        else:
            names = list(value)

        resolved = set()
        for name in names:
            canonical = _CATEGORY_ALIASES.get(name, name)
            if canonical not in DEBUG_CATEGORIES:
                raise ValueError(
                    f"Unknown debug log category: {name!r}. "
                    f"Expected one of: {', '.join(sorted(DEBUG_CATEGORIES))}"
                )
            resolved.add(canonical)
        return cls(frozenset(resolved))

    def enabled(self, category: str) -> bool:
        """Return True when ``category`` should log."""
        return category in self.categories

    def __bool__(self) -> bool:
        return bool(self.categories)


def debug_log(
    logger: logging.Logger,
    options: DebugLogOptions,
    category: str,
    event: str,
    payload: Optional[Any] = None,
) -> None:
    """Emit a redacted INFO record when ``category`` is enabled."""
    if not options.enabled(category):
        return
    if payload is None:
        logger.info("%s category=%s", event, category)
    else:
        logger.info("%s category=%s payload=%s", event, category, redact_log_data(payload))
