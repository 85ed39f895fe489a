"""Unit tests for the entity CRUD adapter against in-memory SQLite."""

import logging
import sqlite3
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from dal.adapter import EntityStoreAdapter
from dal.capabilities import EngineCapabilities
from dal.config import AdapterConfig
from dal.errors import (
    AdapterNotInitializedError,
    CreateFailedError,
    EmptyWhereClauseError,
    InvalidIdentifierError,
    RetrieveAfterCreateFailedError,
)
from dal.executor import ExecutionResult
from dal.identifiers import ModelAllowList
from dal.query_builder import Operator, WhereCondition

NO_RETURNING = EngineCapabilities(provider_name="sqlite", supports_returning=False)


@pytest.mark.asyncio
async def test_create_find_update_count_delete_scenario():
    """The basic record lifecycle round-trips exactly."""
    async with EntityStoreAdapter.open() as adapter:
        created = await adapter.create("user", {"id": "u1", "name": "Ann", "age": 30})
        assert created == {"id": "u1", "name": "Ann", "age": 30}

        found = await adapter.find_one("user", {"id": "u1"})
        assert found == {"id": "u1", "name": "Ann", "age": 30}

        updated = await adapter.update("user", {"id": "u1"}, {"age": 31})
        assert updated == {"id": "u1", "name": "Ann", "age": 31}

        assert await adapter.count("user", {}) == 1

        await adapter.delete("user", {"id": "u1"})
        assert await adapter.find_one("user", {"id": "u1"}) is None


@pytest.mark.asyncio
async def test_lifecycle_without_returning_support():
    """Engines without RETURNING re-read inserted and updated rows."""
    async with EntityStoreAdapter.open(capabilities=NO_RETURNING) as adapter:
        created = await adapter.create("user", {"id": "u1", "name": "Ann", "age": 30})
        anonymous = await adapter.create("user", {"name": "NoId"})
        updated = await adapter.update("user", [("name", "eq", "Ann")], {"name": "Bea"})

        assert created == {"id": "u1", "name": "Ann", "age": 30}
        assert anonymous == {"id": None, "name": "NoId", "age": None}
        assert updated == {"id": "u1", "name": "Bea", "age": 30}


@pytest.mark.asyncio
async def test_semantic_types_round_trip():
    """Booleans, datetimes and structures come back as they were written."""
    when = datetime(2024, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    record = {
        "id": "u1",
        "emailVerified": True,
        "createdAt": when,
        "profile": {"theme": "dark", "langs": ["en"]},
    }
    async with EntityStoreAdapter.open() as adapter:
        created = await adapter.create("user", record)
        found = await adapter.find_one("user", {"id": "u1"})

    assert created == record
    assert found == record


@pytest.mark.asyncio
async def test_update_leaves_other_fields_unchanged():
    """A partial patch only touches the named fields."""
    async with EntityStoreAdapter.open() as adapter:
        await adapter.create("user", {"id": "u1", "name": "Ann", "email": "a@x.io", "age": 30})
        await adapter.update("user", {"id": "u1"}, {"name": "Bea"})
        found = await adapter.find_one("user", {"id": "u1"})

    assert found == {"id": "u1", "name": "Bea", "email": "a@x.io", "age": 30}


@pytest.mark.asyncio
async def test_update_without_match_returns_none():
    """Updating nothing returns None rather than raising."""
    async with EntityStoreAdapter.open() as adapter:
        await adapter.create("user", {"id": "u1", "name": "Ann"})
        assert await adapter.update("user", {"id": "nobody"}, {"name": "x"}) is None

    async with EntityStoreAdapter.open(capabilities=NO_RETURNING) as adapter:
        await adapter.create("user", {"id": "u1", "name": "Ann"})
        assert await adapter.update("user", {"id": "nobody"}, {"name": "x"}) is None


@pytest.mark.asyncio
async def test_update_many_and_delete_many_return_counts():
    """Bulk operations report how many rows they touched."""
    async with EntityStoreAdapter.open() as adapter:
        for i in range(4):
            await adapter.create("session", {"id": f"s{i}", "userId": "u1" if i < 3 else "u2"})

        assert await adapter.update_many("session", {"userId": "u1"}, {"active": True}) == 3
        assert await adapter.count("session", {"active": True}) == 3
        assert await adapter.delete_many("session", {"userId": "u1"}) == 3
        assert await adapter.count("session") == 1


@pytest.mark.asyncio
async def test_count_then_delete_many_all():
    """Count tracks inserts and drops to zero after deleting everything."""
    async with EntityStoreAdapter.open() as adapter:
        for i in range(5):
            await adapter.create("user", {"id": f"u{i}", "age": i})

        assert await adapter.count("user") == 5
        assert await adapter.delete_many("user", [("age", "gte", 0)]) == 5
        assert await adapter.count("user") == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("operation", ["update", "update_many"])
async def test_empty_where_update_never_executes(operation):
    """Updates without a filter fail before any I/O."""
    adapter = EntityStoreAdapter()
    with pytest.raises(EmptyWhereClauseError):
        await getattr(adapter, operation)("user", {}, {"name": "x"})
    with pytest.raises(AdapterNotInitializedError):
        adapter.executor


@pytest.mark.asyncio
@pytest.mark.parametrize("operation", ["delete", "delete_many"])
async def test_empty_where_delete_never_executes(operation):
    """Deletes without a filter fail before any I/O."""
    adapter = EntityStoreAdapter()
    with pytest.raises(EmptyWhereClauseError):
        await getattr(adapter, operation)("user", [])
    with pytest.raises(AdapterNotInitializedError):
        adapter.registry


@pytest.mark.asyncio
async def test_empty_where_does_not_touch_existing_rows():
    """A refused bulk delete leaves the table intact."""
    async with EntityStoreAdapter.open() as adapter:
        await adapter.create("user", {"id": "u1"})
        with pytest.raises(EmptyWhereClauseError):
            await adapter.delete_many("user", None)
        assert await adapter.count("user") == 1


@pytest.mark.asyncio
async def test_invalid_identifiers_rejected():
    """Unknown models and malformed fields never reach the engine."""
    async with EntityStoreAdapter.open() as adapter:
        with pytest.raises(InvalidIdentifierError):
            await adapter.create("user; DROP TABLE user", {"id": "x"})
        with pytest.raises(InvalidIdentifierError):
            await adapter.create("user", {"na'me": "x"})
        with pytest.raises(InvalidIdentifierError):
            await adapter.find_many("user", {"id) OR (1": "x"})
        with pytest.raises(InvalidIdentifierError):
            await adapter.count("widget")


@pytest.mark.asyncio
async def test_find_many_limit_offset():
    """Limit caps the result size; offset skips rows."""
    async with EntityStoreAdapter.open() as adapter:
        for i in range(5):
            await adapter.create("user", {"id": f"u{i}", "age": i})

        assert len(await adapter.find_many("user", limit=3)) == 3
        assert len(await adapter.find_many("user", limit=10)) == 5
        page = await adapter.find_many("user", sort_by=[("age", "asc")], limit=2, offset=2)
        assert [row["age"] for row in page] == [2, 3]
        tail = await adapter.find_many("user", sort_by="age", offset=3)
        assert [row["age"] for row in tail] == [3, 4]


@pytest.mark.asyncio
async def test_find_many_sort_is_monotonic_with_stable_ties():
    """Sorted results are ordered, and ties keep insertion order."""
    async with EntityStoreAdapter.open() as adapter:
        for ident, age in [("a", 30), ("b", 10), ("c", 20), ("d", 20), ("e", 20)]:
            await adapter.create("user", {"id": ident, "age": age})

        descending = await adapter.find_many("user", sort_by=[("age", "desc")])
        ascending = await adapter.find_many("user", sort_by={"field": "age", "direction": "asc"})

    assert [row["age"] for row in descending] == [30, 20, 20, 20, 10]
    assert [row["id"] for row in descending if row["age"] == 20] == ["c", "d", "e"]
    assert [row["age"] for row in ascending] == [10, 20, 20, 20, 30]


@pytest.mark.asyncio
async def test_find_many_operators():
    """String and membership operators filter as expected."""
    async with EntityStoreAdapter.open() as adapter:
        for ident, name in [("1", "Ann"), ("2", "Annie"), ("3", "Bob"), ("4", "50%_off")]:
            await adapter.create("user", {"id": ident, "name": name})

        starts = await adapter.find_many("user", [("name", "starts_with", "Ann")])
        members = await adapter.find_many("user", [("id", "in", ["1", "3"])])
        nothing = await adapter.find_many("user", [("id", "in", [])])
        literal = await adapter.find_many("user", [("name", "contains", "%_")])

    assert {row["name"] for row in starts} == {"Ann", "Annie"}
    assert {row["id"] for row in members} == {"1", "3"}
    assert nothing == []
    assert [row["name"] for row in literal] == ["50%_off"]


@pytest.mark.asyncio
async def test_select_projection():
    """Select keeps only the requested fields that exist."""
    async with EntityStoreAdapter.open() as adapter:
        created = await adapter.create(
            "user", {"id": "u1", "name": "Ann", "age": 30}, select=["id", "name"]
        )
        found = await adapter.find_one("user", {"id": "u1"}, select=["name", "missing"])
        many = await adapter.find_many("user", select=["age"])

    assert created == {"id": "u1", "name": "Ann"}
    assert found == {"name": "Ann"}
    assert many == [{"age": 30}]


@pytest.mark.asyncio
async def test_reads_on_unknown_table_return_empty():
    """Reading a model that was never written yields empty results."""
    async with EntityStoreAdapter.open() as adapter:
        assert await adapter.find_one("account", {"id": "x"}) is None
        assert await adapter.find_many("account") == []
        assert await adapter.count("account") == 0


@pytest.mark.asyncio
async def test_filters_on_unwritten_columns_match_nothing():
    """A field no record has written behaves as NULL, never as a literal string."""
    async with EntityStoreAdapter.open() as adapter:
        for user_id, name in (("u1", "Ann"), ("u2", "Bob"), ("u3", "Cy")):
            await adapter.create("user", {"id": user_id, "name": name})

        assert await adapter.delete_many("user", [("email", "ne", "a@x.io")]) == 0
        assert await adapter.count("user") == 3
        assert await adapter.find_one("user", {"email": "email"}) is None
        assert await adapter.count("user", {"image": "image"}) == 0
        assert await adapter.update("user", {"phone": "phone"}, {"name": "Z"}) is None
        assert await adapter.update_many("user", {"banned": "banned"}, {"name": "Z"}) == 0

        ordered = await adapter.find_many("user", sort_by=[("createdAt", "desc")])
        assert [user["name"] for user in ordered] == ["Ann", "Bob", "Cy"]
        assert {"email", "image", "phone", "banned", "createdAt"} <= adapter.registry.known_columns("user")


@pytest.mark.asyncio
async def test_delete_on_unwritten_column_keeps_rows():
    """A single delete filtered on an unwritten field removes nothing."""
    async with EntityStoreAdapter.open() as adapter:
        await adapter.create("session", {"id": "s1", "userId": "u1"})

        await adapter.delete("session", [("token", "ne", "t-1")])

        assert await adapter.count("session") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "where",
    [
        [("email", "eq", "secret@x.io")],
        (("email", "eq", "secret@x.io"),),
        [{"field": "email", "operator": "eq", "value": "secret@x.io"}],
        [WhereCondition("email", Operator.EQ, "secret@x.io")],
    ],
)
async def test_update_debug_output_redacts_condition_values(where, caplog):
    """Condition lists are redacted by field just like mapping keys."""
    async with EntityStoreAdapter.open() as adapter:
        await adapter.create("user", {"id": "u1", "name": "Ann", "email": "secret@x.io"})
        with caplog.at_level(logging.INFO):
            updated = await adapter.update("user", where, {"name": "Bea"}, debug=["update"])

    messages = "\n".join(r.getMessage() for r in caplog.records)
    assert updated["name"] == "Bea"
    assert "dal_update" in messages
    assert "secret@x.io" not in messages


@pytest.mark.asyncio
async def test_create_empty_record_inserts_defaults():
    """An empty record still produces a row."""
    async with EntityStoreAdapter.open() as adapter:
        created = await adapter.create("verification", {})
        assert created == {"id": None}
        assert await adapter.count("verification") == 1


@pytest.mark.asyncio
async def test_create_duplicate_id_propagates_engine_error():
    """Constraint violations surface as the engine's own exception."""
    async with EntityStoreAdapter.open() as adapter:
        await adapter.create("user", {"id": "u1"})
        with pytest.raises(sqlite3.IntegrityError):
            await adapter.create("user", {"id": "u1"})


@pytest.mark.asyncio
async def test_create_failed_when_nothing_inserted():
    """Zero affected rows is a create failure."""
    async with EntityStoreAdapter.open() as adapter:
        await adapter.connect()
        adapter.executor.execute_statement = AsyncMock(return_value=ExecutionResult())

        with pytest.raises(CreateFailedError):
            await adapter.create("user", {"id": "u1"})


@pytest.mark.asyncio
async def test_retrieve_after_create_failed():
    """A follow-up read that finds nothing is its own error."""
    async with EntityStoreAdapter.open(capabilities=NO_RETURNING) as adapter:
        adapter.executor.execute_statement = AsyncMock(
            side_effect=[ExecutionResult(rows_affected=1, last_insert_id=9), ExecutionResult()]
        )

        with pytest.raises(RetrieveAfterCreateFailedError):
            await adapter.create("user", {"name": "Ann"})


@pytest.mark.asyncio
async def test_heuristic_create_lookup_logs_warning(caplog):
    """Falling back to field matching is flagged in the log."""
    async with EntityStoreAdapter.open(capabilities=NO_RETURNING) as adapter:
        adapter.executor.execute_statement = AsyncMock(
            side_effect=[
                ExecutionResult(rows_affected=1, last_insert_id=None),
                ExecutionResult(rows=[{"id": None, "name": "Ann"}]),
            ]
        )
        with caplog.at_level(logging.WARNING, logger="dal.adapter"):
            created = await adapter.create("user", {"name": "Ann"})

    assert created == {"id": None, "name": "Ann"}
    assert any("strategy=field_match" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_use_plural_maps_to_plural_tables():
    """With plural names enabled, 'user' is stored in the 'users' table."""
    async with EntityStoreAdapter.open(AdapterConfig(use_plural=True)) as adapter:
        await adapter.create("user", {"id": "u1"})
        assert await adapter.count("users") == 1
        tables = await adapter.executor.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )

    assert [row["name"] for row in tables.rows] == ["users"]


@pytest.mark.asyncio
async def test_custom_models_can_be_registered():
    """Models outside the default set work once registered."""
    async with EntityStoreAdapter.open(allow_list=ModelAllowList([])) as adapter:
        with pytest.raises(InvalidIdentifierError):
            await adapter.count("user")
        adapter.register_model("widget")
        await adapter.create("widget", {"id": "w1", "color": "red"})
        assert await adapter.find_one("widgets", {"id": "w1"}) is None
        assert await adapter.find_one("widget", {"id": "w1"}) == {"id": "w1", "color": "red"}


@pytest.mark.asyncio
async def test_debug_logs_are_redacted(caplog):
    """Diagnostic output never includes sensitive values."""
    async with EntityStoreAdapter.open() as adapter:
        with caplog.at_level(logging.INFO):
            await adapter.create(
                "account",
                {"id": "a1", "password": "hunter2", "accessToken": "tok-123", "providerId": "gh"},
                debug=True,
            )

    messages = "\n".join(r.getMessage() for r in caplog.records)
    assert "dal_create" in messages
    assert "hunter2" not in messages
    assert "tok-123" not in messages
    assert "gh" in messages


@pytest.mark.asyncio
async def test_debug_is_silent_by_default(caplog):
    """Without debug flags the adapter logs nothing at INFO per operation."""
    async with EntityStoreAdapter.open() as adapter:
        with caplog.at_level(logging.INFO, logger="dal"):
            await adapter.create("user", {"id": "u1"})
            await adapter.find_one("user", {"id": "u1"})

    assert not any(r.getMessage().startswith("dal_create") for r in caplog.records)


@pytest.mark.asyncio
async def test_adapters_do_not_share_caches():
    """Each adapter owns its own registry and statement cache."""
    async with EntityStoreAdapter.open() as first, EntityStoreAdapter.open() as second:
        await first.create("user", {"id": "u1"})

        assert first.get_cache_stats()["schema"]["tables"] == 1
        assert second.get_cache_stats()["schema"]["tables"] == 0
        assert second.get_cache_stats()["statements"]["size"] == 0


@pytest.mark.asyncio
async def test_clear_caches():
    """Clearing caches forces the registry to re-check the engine."""
    async with EntityStoreAdapter.open() as adapter:
        await adapter.create("user", {"id": "u1", "name": "Ann"})
        adapter.clear_caches()
        stats = adapter.get_cache_stats()
        assert stats["schema"]["tables"] == 0
        assert stats["statements"]["size"] == 0

        assert await adapter.find_one("user", {"id": "u1"}) == {"id": "u1", "name": "Ann"}
        assert adapter.registry.known_columns("user") == {"id", "name"}


def test_identity_and_options():
    """The adapter reports its provider and settings."""
    adapter = EntityStoreAdapter(AdapterConfig(use_plural=True))

    assert adapter.id == "sqlite"
    assert adapter.options == {"provider": "sqlite", "use_plural": True, "use_numeric_ids": False}


@pytest.mark.asyncio
async def test_closed_adapter_refuses_work():
    """Using an adapter after close raises; health reports unhealthy."""
    adapter = EntityStoreAdapter()
    async with adapter:
        assert (await adapter.check_health()).healthy is True

    with pytest.raises(AdapterNotInitializedError):
        await adapter.find_one("user", {"id": "u1"})
    status = await adapter.check_health()
    assert status.healthy is False
    assert "closed" in status.error


@pytest.mark.asyncio
async def test_unknown_provider_requires_engine():
    """Providers without a built-in engine must be given one."""
    adapter = EntityStoreAdapter(AdapterConfig(provider="libsql"))

    assert adapter.capabilities.supports_returning is False
    with pytest.raises(ValueError, match="pass engine"):
        await adapter.connect()


def test_generate_schema_uses_config_numeric_ids():
    """Schema generation follows the adapter's id setting unless overridden."""
    adapter = EntityStoreAdapter(AdapterConfig(use_numeric_ids=True))
    tables = {"user": {"fields": {"name": {"type": "string", "required": True}}}}

    numeric = adapter.generate_schema(tables)
    text_ids = adapter.generate_schema(tables, use_numeric_ids=False, file_name="auth.sql")

    assert '"id" INTEGER PRIMARY KEY AUTOINCREMENT' in numeric.sql_text
    assert numeric.target_path == "schema.sql"
    assert '"id" TEXT PRIMARY KEY' in text_ids.sql_text
    assert text_ids.target_path == "auth.sql"
