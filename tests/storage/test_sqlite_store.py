# tests/storage/test_sqlite_store.py
"""
Tests for SqliteStore against real SQLite database files.

These exercise the full store contract end to end: namespace isolation,
prefix handling, the expires column, keyset iteration, the schema upgrade of
legacy tables and the store lifecycle.
"""

import asyncio
import json
import sqlite3
from pathlib import Path

import aiosqlite
import pytest

from kvcore.exceptions import BootstrapError, ConfigError, StoreClosedError
from kvcore.models import Entry
from kvcore.storage.events import EventType
from kvcore.storage.expiry import now_ms
from kvcore.storage.sqlite_store import SqliteStore, sqlite_connections


def payload(value, expires=None) -> str:
    return json.dumps({"value": value, "expires": expires})


def query(db_path: Path, sql: str, params=()) -> list[tuple]:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "kv.db"


@pytest.fixture
def uri(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


@pytest.fixture
async def store(uri):
    s = SqliteStore(uri)
    await s.initialize()
    yield s
    await s.disconnect()


async def collect(aiter):
    return [item async for item in aiter]


# =============================================================================
# NAMESPACES
# =============================================================================


class TestNamespaces:

    async def test_two_namespaces_are_isolated(self, uri, db_path):
        store_a = SqliteStore(uri, namespace="a")
        store_b = SqliteStore(uri, namespace="b")

        await store_a.set("a:key", payload("one"))
        await store_b.set("b:key", payload("two"))

        assert json.loads(await store_a.get("a:key"))["value"] == "one"
        assert json.loads(await store_b.get("b:key"))["value"] == "two"
        assert sorted(query(db_path, "SELECT key, namespace FROM keyv")) == [("key", "a"), ("key", "b")]

        await store_a.clear()

        assert await store_a.get("a:key") is None
        assert await store_b.get("b:key") is not None

    async def test_unprefixed_key_lands_in_store_namespace(self, uri, db_path):
        store = SqliteStore(uri, namespace="sessions")

        await store.set("abc", "v")

        assert query(db_path, "SELECT key, namespace FROM keyv") == [("abc", "sessions")]
        assert await store.get("sessions:abc") == "v"

    async def test_foreign_prefix_is_kept(self, uri, db_path):
        store = SqliteStore(uri, namespace="a")

        await store.set("b:x", "v")

        assert query(db_path, "SELECT key, namespace FROM keyv") == [("b:x", "a")]

    async def test_none_and_empty_namespace_are_the_same(self, uri, db_path):
        store_none = SqliteStore(uri)
        store_empty = SqliteStore(uri, namespace="")

        await store_none.set("a:b", "v")

        assert await store_empty.get("a:b") == "v"
        assert query(db_path, "SELECT key, namespace FROM keyv") == [("a:b", "")]

    async def test_namespace_can_be_changed(self, store):
        await store.set("k", "default")
        store.namespace = "other"

        assert await store.get("k") is None
        await store.set("other:k", "scoped")
        assert await store.get("k") == "scoped"

    async def test_clear_leaves_other_namespaces(self, uri):
        default = SqliteStore(uri)
        scoped = SqliteStore(uri, namespace="ns")
        await default.set("k", "1")
        await scoped.set("k", "2")

        await default.clear()

        assert await default.get("k") is None
        assert await scoped.get("ns:k") == "2"


# =============================================================================
# READS AND WRITES
# =============================================================================


class TestReadWrite:

    async def test_get_missing(self, store):
        assert await store.get("nope") is None

    async def test_upsert_replaces_value(self, store, db_path):
        await store.set("k", payload("first"))
        await store.set("k", payload("second"))

        assert json.loads(await store.get("k"))["value"] == "second"
        assert query(db_path, "SELECT COUNT(*) FROM keyv") == [(1,)]

    async def test_non_string_values_stored_as_json(self, store):
        await store.set("k", {"value": [1, 2], "expires": None})
        assert json.loads(await store.get("k")) == {"value": [1, 2], "expires": None}

    async def test_utf8_bytes_stored_as_text(self, store):
        await store.set("k", "héllo".encode())
        assert await store.get("k") == "héllo"

    async def test_non_utf8_bytes_rejected(self, store, db_path):
        with pytest.raises(TypeError, match="UTF-8"):
            await store.set_many([("ok", "v"), ("bad", b"\xff\x00\xfe")])

        assert query(db_path, "SELECT COUNT(*) FROM keyv") == [(0,)]

    async def test_get_many_keeps_order_with_gaps(self, store):
        await store.set_many([("k1", "v1"), ("k3", "v3")])

        assert await store.get_many(["k3", "missing", "k1", "k3"]) == ["v3", None, "v1", "v3"]

    async def test_set_many_accepts_mixed_shapes(self, store):
        await store.set_many([
            Entry(key="a", value="1"),
            {"key": "b", "value": "2"},
            ("c", "3", None),
        ])

        assert await store.get_many(["a", "b", "c"]) == ["1", "2", "3"]

    async def test_set_many_last_occurrence_wins(self, store, db_path):
        await store.set_many([("k", "old"), ("other", "x"), ("k", "new")])

        assert await store.get("k") == "new"
        assert query(db_path, "SELECT COUNT(*) FROM keyv WHERE key = 'k'") == [(1,)]

    async def test_delete(self, store):
        await store.set("k", "v")

        assert await store.delete("k") is True
        assert await store.delete("k") is False
        assert await store.get("k") is None

    async def test_delete_many(self, store):
        await store.set_many([("a", "1"), ("b", "2")])

        assert await store.delete_many(["a", "missing"]) is True
        assert await store.has_many(["a", "b"]) == [False, True]

    async def test_delete_many_of_missing_keys(self, store):
        assert await store.delete_many(["x", "y"]) is False

    async def test_has(self, store):
        await store.set("k", "v")

        assert await store.has("k") is True
        assert await store.has("other") is False
        assert await store.has_many(["other", "k"]) == [False, True]

    async def test_prefixed_keys_in_batch_operations(self, uri):
        store = SqliteStore(uri, namespace="ns")
        await store.set_many([("ns:a", "1"), ("b", "2")])

        assert await store.get_many(["ns:a", "ns:b"]) == ["1", "2"]
        assert await store.has_many(["a", "ns:b"]) == [True, True]
        assert await store.delete_many(["ns:a", "ns:b"]) is True
        assert await store.has_many(["a", "b"]) == [False, False]


class TestEmptyInputs:

    async def test_get_many(self, store):
        assert await store.get_many([]) == []

    async def test_has_many(self, store):
        assert await store.has_many([]) == []

    async def test_delete_many(self, store):
        assert await store.delete_many([]) is False

    async def test_set_many(self, store, db_path):
        await store.set_many([])
        assert query(db_path, "SELECT COUNT(*) FROM keyv") == [(0,)]


# =============================================================================
# EXPIRY
# =============================================================================


class TestExpiry:

    async def test_expires_column_follows_payload(self, store, db_path):
        await store.set("timed", payload("x", 1234))
        await store.set("forever", payload("x"))
        await store.set("opaque", "not json")

        rows = dict(query(db_path, "SELECT key, expires FROM keyv"))
        assert rows == {"timed": 1234, "forever": None, "opaque": None}

    @pytest.mark.parametrize(
        "raw_expires", ["Infinity", "-Infinity", "NaN", "1e400", "1e30", "-1", "9223372036854775808"]
    )
    async def test_unusable_expires_is_stored_as_null(self, store, db_path, raw_expires):
        await store.set("k", f'{{"value":"x","expires":{raw_expires}}}')

        assert query(db_path, "SELECT expires FROM keyv WHERE key = 'k'") == [(None,)]
        assert await store.get("k") == f'{{"value":"x","expires":{raw_expires}}}'

    async def test_upsert_updates_expires(self, store, db_path):
        await store.set("k", payload("x", 1000))
        await store.set("k", payload("x"))

        assert query(db_path, "SELECT expires FROM keyv WHERE key = 'k'") == [(None,)]

    async def test_ttl_argument_is_ignored(self, store, db_path):
        await store.set("k", payload("x"), ttl=10)
        assert query(db_path, "SELECT expires FROM keyv WHERE key = 'k'") == [(None,)]

    async def test_clear_expired_is_selective(self, uri):
        store = SqliteStore(uri)
        other = SqliteStore(uri, namespace="other")
        now = now_ms()
        await store.set_many([
            ("past1", payload("a", now - 10_000)),
            ("past2", payload("b", now - 1)),
            ("future", payload("c", now + 60_000)),
            ("never", payload("d")),
        ])
        await other.set("old", payload("e", now - 5_000))

        cleared = []
        store.on("expired_cleared", cleared.append)

        assert await store.clear_expired() == 3
        assert await store.has_many(["past1", "past2", "future", "never"]) == [False, False, True, True]
        assert await other.has("old") is False
        assert cleared == [3]

        assert await store.clear_expired() == 0
        assert cleared == [3]

    async def test_reaper_clears_on_interval(self, uri):
        store = SqliteStore(uri, reap_interval=0.02)
        cleared = []
        store.on(EventType.EXPIRED_CLEARED, cleared.append)
        await store.initialize()

        await store.set("old", payload("x", now_ms() - 1000))
        for _ in range(50):
            if cleared:
                break
            await asyncio.sleep(0.02)

        assert cleared == [1]
        assert await store.has("old") is False
        await store.disconnect()

    async def test_reap_interval_setter(self, store):
        assert not store._reaper.running

        store.reap_interval = 60
        assert store._reaper.running
        assert store._reaper.interval == 60

        store.reap_interval = 0
        assert not store._reaper.running


# =============================================================================
# ITERATION
# =============================================================================


class TestIterator:

    async def test_pages_through_namespace(self, uri):
        store = SqliteStore(uri, namespace="sessions", iteration_limit=2)
        noise = SqliteStore(uri)
        await store.set_many([(f"k{i}", f"v{i}") for i in range(5)])
        await noise.set("k9", "noise")

        items = await collect(store.iterator())

        assert items == [(f"sessions:k{i}", f"v{i}") for i in range(5)]

    async def test_default_namespace_has_no_prefix(self, store):
        await store.set_many([("b", "2"), ("a", "1")])
        assert await collect(store.iterator()) == [("a", "1"), ("b", "2")]

    async def test_explicit_namespace_argument(self, uri):
        writer = SqliteStore(uri, namespace="other")
        reader = SqliteStore(uri)
        await writer.set("x", "1")

        assert await collect(reader.iterator("other")) == [("other:x", "1")]
        assert await collect(reader.iterator()) == []

    async def test_delete_while_iterating(self, uri):
        store = SqliteStore(uri, iteration_limit=3)
        await store.set_many([(f"k{i:02d}", str(i)) for i in range(10)])

        seen = []
        async for key, _ in store.iterator():
            seen.append(key)
            await store.delete(key)

        assert seen == [f"k{i:02d}" for i in range(10)]
        assert await collect(store.iterator()) == []

    async def test_iteration_fails_after_disconnect(self, uri):
        store = SqliteStore(uri, iteration_limit=1)
        await store.set_many([("a", "1"), ("b", "2")])

        with pytest.raises(StoreClosedError):
            async for _ in store.iterator():
                await store.disconnect()


# =============================================================================
# SCHEMA BOOTSTRAP
# =============================================================================


class TestBootstrap:

    async def test_fresh_table_shape(self, store, db_path):
        columns = {row[1]: row[5] for row in query(db_path, "PRAGMA table_info(keyv)")}
        assert set(columns) == {"key", "value", "namespace", "expires"}
        assert not any(columns.values())

        indexes = {row[1] for row in query(db_path, "PRAGMA index_list(keyv)")}
        assert {"keyv_key_namespace_idx", "keyv_expires_idx"} <= indexes

    async def test_custom_table_name(self, uri, db_path):
        store = SqliteStore(uri, table="cache")
        await store.set("k", "v")
        assert query(db_path, "SELECT key, value FROM cache") == [("k", "v")]

    async def test_legacy_primary_key_table_is_upgraded(self, uri, db_path):
        async with aiosqlite.connect(db_path) as conn:
            await conn.execute("CREATE TABLE keyv (key VARCHAR(255) PRIMARY KEY, value TEXT)")
            await conn.execute("INSERT INTO keyv VALUES ('k', 'legacy')")
            await conn.commit()

        default = SqliteStore(uri)
        scoped = SqliteStore(uri, namespace="ns")

        assert await default.get("k") == "legacy"
        await scoped.set("k", "scoped")
        assert await default.get("k") == "legacy"
        assert await scoped.get("k") == "scoped"

        columns = {row[1]: row[5] for row in query(db_path, "PRAGMA table_info(keyv)")}
        assert not any(columns.values())
        assert "expires" in columns

    async def test_bootstrap_is_idempotent(self, uri):
        first = SqliteStore(uri)
        await first.set("k", "v")
        await first.disconnect()

        second = SqliteStore(uri)
        assert await second.get("k") == "v"

    async def test_bootstrap_failure_is_signalled(self, uri, db_path):
        async with aiosqlite.connect(db_path) as conn:
            await conn.execute("CREATE TABLE keyv (id INTEGER PRIMARY KEY, data TEXT)")
            await conn.commit()

        store = SqliteStore(uri)
        errors = []
        store.on("error", errors.append)

        with pytest.raises(BootstrapError):
            await store.get("k")
        with pytest.raises(BootstrapError):
            await store.set("k", "v")

        assert len(errors) == 1
        assert isinstance(errors[0], sqlite3.Error)

    def test_no_bootstrap_without_running_loop(self, uri):
        store = SqliteStore(uri)
        assert store._bootstrap_task is None


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestLifecycle:

    async def test_operations_fail_after_disconnect(self, uri):
        store = SqliteStore(uri)
        await store.set("k", "v")
        await store.disconnect()

        assert store.closed
        for call in (store.get("k"), store.set("k", "v"), store.has("k"), store.clear_expired()):
            with pytest.raises(StoreClosedError):
                await call

    async def test_disconnect_is_idempotent(self, uri):
        store = SqliteStore(uri)
        disconnected = []
        store.on("disconnected", disconnected.append)
        await store.initialize()

        await store.disconnect()
        await store.disconnect()

        assert disconnected == [store]

    async def test_disconnect_during_bootstrap(self, uri):
        store = SqliteStore(uri)
        await store.disconnect()

        with pytest.raises(StoreClosedError):
            await store.get("k")

    async def test_stores_share_one_connection(self, uri):
        first = SqliteStore(uri)
        second = SqliteStore(uri, namespace="ns")
        await first.initialize()
        await second.initialize()

        assert len(sqlite_connections) == 1

    async def test_async_context_manager(self, uri):
        async with SqliteStore(uri) as store:
            await store.set("k", "v")
            assert await store.get("k") == "v"
        assert store.closed

    async def test_opts_projection(self, uri):
        store = SqliteStore(uri, namespace="ns", table="cache")
        opts = store.opts

        assert opts["dialect"] == "sqlite"
        assert opts["namespace"] == "ns"
        assert opts["table"] == "cache"
        assert store.iteration_limit == 10

    def test_invalid_options(self, uri):
        with pytest.raises(ConfigError):
            SqliteStore(uri, iteration_limit="lots")
