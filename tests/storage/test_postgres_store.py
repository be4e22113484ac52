# tests/storage/test_postgres_store.py
"""
Tests for PostgresStore.

The driver is mocked by default: AsyncConnectionPool is patched to hand out a
mock connection whose cursor records every statement. The tests marked
``requires_postgres`` run the store contract against a live server.
"""

import asyncio
import json
from unittest.mock import patch

import psycopg.errors
import pytest

from kvcore.exceptions import BootstrapError, ConnectionPoolError, StoreClosedError
from kvcore.storage.postgres_store import PostgresStore, open_postgres_pool
from tests.helpers import find_call

from .conftest import get_pg_url

URI = "postgresql://app:secret@db:5432/kv"


@pytest.fixture
def pool_class(mock_pg_pool):
    with patch("kvcore.storage.postgres_store.AsyncConnectionPool", return_value=mock_pg_pool) as cls:
        yield cls


@pytest.fixture
async def store(pool_class):
    s = PostgresStore(URI, namespace="ns")
    await s.initialize()
    yield s
    await s.disconnect()


# =============================================================================
# POOL
# =============================================================================


class TestOpenPostgresPool:

    async def test_autocommit_and_sizes(self, pool_class, mock_pg_pool):
        pool = await open_postgres_pool(URI, {"min_size": 2, "max_size": 5})

        assert pool is mock_pg_pool
        kwargs = pool_class.call_args.kwargs
        assert kwargs["conninfo"] == URI
        assert kwargs["min_size"] == 2
        assert kwargs["max_size"] == 5
        assert kwargs["open"] is False
        assert kwargs["kwargs"] == {"autocommit": True}
        mock_pg_pool.open.assert_awaited_once_with(wait=True)

    async def test_ssl_true_requires_tls(self, pool_class):
        await open_postgres_pool(URI, {"ssl": True})
        assert pool_class.call_args.kwargs["kwargs"]["sslmode"] == "require"

    async def test_ssl_mapping_is_merged(self, pool_class):
        await open_postgres_pool(URI, {"ssl": {"sslmode": "verify-full", "sslrootcert": "/ca.pem"}})

        connection_kwargs = pool_class.call_args.kwargs["kwargs"]
        assert connection_kwargs["sslmode"] == "verify-full"
        assert connection_kwargs["sslrootcert"] == "/ca.pem"

    async def test_pool_and_connection_options_are_split(self, pool_class):
        await open_postgres_pool(URI, {"timeout": 3, "application_name": "app"})

        kwargs = pool_class.call_args.kwargs
        assert kwargs["timeout"] == 3
        assert kwargs["kwargs"]["application_name"] == "app"
        assert "timeout" not in kwargs["kwargs"]

    async def test_failed_open_closes_pool(self, pool_class, mock_pg_pool):
        mock_pg_pool.open.side_effect = psycopg.OperationalError("connection refused")

        with pytest.raises(psycopg.OperationalError):
            await open_postgres_pool(URI, {})
        mock_pg_pool.close.assert_awaited_once()

    async def test_store_reports_pool_failure(self, pool_class, mock_pg_pool):
        mock_pg_pool.open.side_effect = psycopg.OperationalError("connection refused")
        store = PostgresStore(URI)
        errors = []
        store.on("error", errors.append)

        with pytest.raises(ConnectionPoolError) as exc_info:
            await store.get("k")

        assert "secret" not in str(exc_info.value)
        assert len(errors) == 1


# =============================================================================
# STORE OPERATIONS
# =============================================================================


class TestPostgresStore:

    async def test_stores_share_pool(self, pool_class):
        first = PostgresStore(URI, namespace="a")
        second = PostgresStore(URI, namespace="b")
        await first.initialize()
        await second.initialize()

        assert pool_class.call_count == 1

    async def test_different_pool_sizes_get_own_pool(self, pool_class):
        await PostgresStore(URI).initialize()
        await PostgresStore(URI, max_pool_size=3).initialize()

        assert pool_class.call_count == 2

    async def test_get(self, store, mock_cursor):
        mock_cursor.fetchall.return_value = [('{"value":"v","expires":null}',)]

        value = await store.get("ns:k")

        sql, params = find_call(mock_cursor, "SELECT value")
        assert sql == 'SELECT value FROM "public"."keyv" WHERE key = %s AND namespace = %s'
        assert params == ("k", "ns")
        assert json.loads(value)["value"] == "v"

    async def test_get_missing(self, store, mock_cursor):
        mock_cursor.fetchall.return_value = []
        assert await store.get("k") is None

    async def test_get_many_orders_results(self, store, mock_cursor):
        mock_cursor.fetchall.return_value = [("b", "2"), ("a", "1")]

        assert await store.get_many(["a", "missing", "b", "a"]) == ["1", None, "2", "1"]

        sql, params = find_call(mock_cursor, "key = ANY(%s)")
        assert params == (["a", "missing", "b"], "ns")

    async def test_set_many_is_one_upsert(self, store, mock_cursor):
        mock_cursor.execute.reset_mock()

        await store.set_many([
            ("ns:a", json.dumps({"value": 1, "expires": 1234})),
            ("b", {"value": 2, "expires": None}),
        ])

        assert mock_cursor.execute.await_count == 1
        sql, params = find_call(mock_cursor, "INSERT INTO")
        assert "UNNEST(%s::text[], %s::text[], %s::bigint[])" in sql
        assert "ON CONFLICT (key, namespace) DO UPDATE SET value = EXCLUDED.value, expires = EXCLUDED.expires" in sql
        namespace, keys, values, expires = params
        assert namespace == "ns"
        assert keys == ["a", "b"]
        assert json.loads(values[1]) == {"value": 2, "expires": None}
        assert expires == [1234, None]

    async def test_delete(self, store, mock_cursor):
        mock_cursor.rowcount = 1
        assert await store.delete("k") is True

        mock_cursor.rowcount = 0
        assert await store.delete("k") is False

        sql, params = find_call(mock_cursor, "DELETE FROM")
        assert sql == 'DELETE FROM "public"."keyv" WHERE key = %s AND namespace = %s'

    async def test_delete_many(self, store, mock_cursor):
        mock_cursor.rowcount = 2
        assert await store.delete_many(["a", "ns:b"]) is True

        _, params = find_call(mock_cursor, "DELETE FROM")
        assert params == (["a", "b"], "ns")

    async def test_has_many(self, store, mock_cursor):
        mock_cursor.fetchall.return_value = [("b",)]
        assert await store.has_many(["a", "b"]) == [False, True]

    async def test_empty_batches_skip_the_database(self, store, mock_cursor):
        mock_cursor.execute.reset_mock()

        assert await store.get_many([]) == []
        assert await store.has_many([]) == []
        assert await store.delete_many([]) is False
        await store.set_many([])

        mock_cursor.execute.assert_not_awaited()

    async def test_empty_batches_do_not_bootstrap(self, pool_class, mock_cursor):
        # Built off-loop so construction does not schedule the bootstrap.
        store = await asyncio.to_thread(PostgresStore, URI)

        assert await store.get_many([]) == []
        assert await store.has_many([]) == []
        assert await store.delete_many([]) is False
        await store.set_many([])

        assert store._bootstrap_task is None
        pool_class.assert_not_called()
        mock_cursor.execute.assert_not_awaited()

    async def test_empty_batch_on_closed_store(self, store):
        await store.disconnect()

        with pytest.raises(StoreClosedError):
            await store.get_many([])
        with pytest.raises(StoreClosedError):
            await store.set_many([])

    async def test_clear_is_namespace_scoped(self, store, mock_cursor):
        await store.clear()

        sql, params = find_call(mock_cursor, "DELETE FROM")
        assert sql == 'DELETE FROM "public"."keyv" WHERE namespace = %s'
        assert params == ("ns",)

    async def test_clear_expired(self, store, mock_cursor):
        mock_cursor.rowcount = 4

        assert await store.clear_expired() == 4

        sql, params = find_call(mock_cursor, "expires IS NOT NULL")
        assert sql == 'DELETE FROM "public"."keyv" WHERE expires IS NOT NULL AND expires < %s'
        assert isinstance(params[0], int)

    async def test_iterator_uses_keyset_pages(self, pool_class, mock_cursor):
        store = PostgresStore(URI, namespace="ns", iteration_limit=2)
        await store.initialize()
        mock_cursor.fetchall.side_effect = [[("a", "1"), ("b", "2")], [("c", "3")]]

        items = [item async for item in store.iterator()]

        assert items == [("ns:a", "1"), ("ns:b", "2"), ("ns:c", "3")]
        first = [c for c in mock_cursor.execute.await_args_list if "ORDER BY key" in c.args[0]]
        assert first[0].args[1] == ("ns", 2)
        assert "key > %s" in first[1].args[0]
        assert first[1].args[1] == ("ns", "b", 2)

    async def test_custom_schema_table(self, pool_class, mock_cursor):
        store = PostgresStore(URI, schema_name="cache", table="kv")
        await store.get("k")

        sql, _ = find_call(mock_cursor, "SELECT value")
        assert 'FROM "cache"."kv"' in sql

    async def test_bootstrap_failure(self, pool_class, mock_cursor):
        async def execute(sql, *args):
            if "CREATE TABLE" in sql:
                raise psycopg.errors.InsufficientPrivilege("permission denied for schema public")

        mock_cursor.execute.side_effect = execute
        store = PostgresStore(URI)
        errors = []
        store.on("error", errors.append)

        with pytest.raises(BootstrapError, match="permission denied"):
            await store.set("k", "v")

        assert isinstance(errors[0], psycopg.errors.InsufficientPrivilege)
        assert not any("INSERT" in c.args[0] for c in mock_cursor.execute.await_args_list)

    async def test_disconnect_closes_pool(self, pool_class, mock_pg_pool):
        store = PostgresStore(URI)
        await store.initialize()

        await store.disconnect()

        mock_pg_pool.close.assert_awaited_once()


# =============================================================================
# LIVE SERVER
# =============================================================================


@pytest.mark.requires_postgres
class TestPostgresStoreLive:

    @pytest.fixture
    async def live_store(self, unique_table):
        store = PostgresStore(get_pg_url(), table=unique_table, namespace="live", iteration_limit=2)
        await store.initialize()
        yield store
        pool = await store._connected()
        async with pool.connection() as conn:
            await conn.execute(f'DROP TABLE IF EXISTS "public"."{unique_table}"')
        await store.disconnect()

    async def test_round_trip(self, live_store):
        await live_store.set_many([("live:a", json.dumps({"value": 1, "expires": 1})), ("b", "2")])

        assert await live_store.get_many(["a", "b", "c"]) == [json.dumps({"value": 1, "expires": 1}), "2", None]
        assert await live_store.clear_expired() == 1
        assert [k async for k, _ in live_store.iterator()] == ["live:b"]
        assert await live_store.delete("b") is True
        assert await live_store.has("b") is False
