import sqlite3
from dataclasses import dataclass
from typing import Optional

# RETURNING arrived in SQLite 3.35.0.
SQLITE_RETURNING_MIN_VERSION = (3, 35, 0)


@dataclass(frozen=True)
class EngineCapabilities:
    """Capability flags that change the SQL the translator emits."""

    provider_name: str = "unspecified"
    supports_returning: bool = False
    supports_bound_limit: bool = True
    supports_transactions: bool = True
    supports_rowid: bool = True
    notes: Optional[str] = None


def capabilities_for_provider(
    provider: str, sqlite_version: Optional[tuple] = None
) -> EngineCapabilities:
    """Return capability flags for a given engine provider."""
    normalized = (provider or "").strip().lower()
    if normalized in {"sqlite", "sqlite3"}:
        version = sqlite_version or sqlite3.sqlite_version_info
        return EngineCapabilities(
            provider_name="sqlite",
            supports_returning=tuple(version) >= SQLITE_RETURNING_MIN_VERSION,
            supports_bound_limit=True,
            supports_transactions=True,
            supports_rowid=True,
        )
    if normalized in {"turso", "libsql"}:
        return EngineCapabilities(
            provider_name=normalized,
            supports_returning=False,
            supports_bound_limit=True,
            supports_transactions=True,
            supports_rowid=True,
            notes="Inserted rows are re-read with a follow-up SELECT.",
        )
    return EngineCapabilities(
        provider_name=normalized or "unspecified",
        supports_returning=False,
        supports_bound_limit=True,
        supports_transactions=True,
        supports_rowid=False,
        notes="Unknown provider; conservative defaults.",
    )
