"""Adapter configuration loaded from arguments or environment."""

from dataclasses import dataclass, field
from typing import Optional

from common.config.env import get_env_bool, get_env_positive_int, get_env_str
from dal.debug import DebugLogOptions

DEFAULT_DATABASE_PATH = ":memory:"
DEFAULT_PROVIDER = "sqlite"


@dataclass(frozen=True)
class AdapterConfig:
    """Settings for one :class:`~dal.adapter.EntityStoreAdapter` instance."""

    database_path: str = DEFAULT_DATABASE_PATH
    provider: str = DEFAULT_PROVIDER
    max_table_cache: int = 50
    max_column_cache: int = 500
    max_prepared_statements: int = 100
    max_deserialize_cache: int = 10000
    use_plural: bool = False
    use_numeric_ids: bool = False
    debug_logs: DebugLogOptions = field(default_factory=DebugLogOptions)

    def __post_init__(self) -> None:
        """Normalize debug flags and fail fast on invalid capacities."""
        if not isinstance(self.debug_logs, DebugLogOptions):
            object.__setattr__(self, "debug_logs", DebugLogOptions.parse(self.debug_logs))
        self.validate()

    def validate(self) -> None:
        """Reject empty paths and non-positive cache capacities."""
        if not self.database_path or not str(self.database_path).strip():
            raise ValueError("database_path must be a non-empty path or ':memory:'.")
        for name in (
            "max_table_cache",
            "max_column_cache",
            "max_prepared_statements",
            "max_deserialize_cache",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}.")

    @classmethod
    def from_env(cls, database_path: Optional[str] = None) -> "AdapterConfig":
        """Build settings from ``DAL_*`` environment variables.

        Raises:
            ValueError: a variable holds an invalid integer, boolean or debug category.
        """
        return cls(
            database_path=database_path
            or (get_env_str("DAL_DATABASE_PATH", DEFAULT_DATABASE_PATH) or DEFAULT_DATABASE_PATH),
            provider=(get_env_str("DAL_PROVIDER", DEFAULT_PROVIDER) or DEFAULT_PROVIDER)
            .strip()
            .lower(),
            max_table_cache=get_env_positive_int("DAL_SCHEMA_TABLE_CACHE_MAX", 50),
            max_column_cache=get_env_positive_int("DAL_SCHEMA_COLUMN_CACHE_MAX", 500),
            max_prepared_statements=get_env_positive_int("DAL_STATEMENT_CACHE_MAX", 100),
            max_deserialize_cache=get_env_positive_int("DAL_DESERIALIZE_CACHE_MAX", 10000),
            use_plural=bool(get_env_bool("DAL_USE_PLURAL", False)),
            use_numeric_ids=bool(get_env_bool("DAL_USE_NUMERIC_IDS", False)),
            debug_logs=DebugLogOptions.parse(get_env_str("DAL_DEBUG_LOGS")),
        )
