"""Tests for anonsync.sync -- one table from source to target."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from anonsync import sync as sync_mod
from anonsync.errors import ChunkFetchError, SyncConnectionError, WriteError
from anonsync.schema import Column
from anonsync.sync import TableState, sync_chunk, sync_table
from anonsync.transform import TransformPolicy, template

FAST = {"chunk_pause": 0}


def _users(*ids):
    return [
        {"id": i, "email": f"user{i}@real.com", "password": "secret", "name": f"User {i}"}
        for i in ids
    ]


@pytest.fixture()
def users_pair(source_target, seed, users_ddl):
    """Source seeded with ``users`` rows; target empty unless rows are given."""

    def _make(source_ids, target_ids=None):
        source, target = source_target
        seed(source, users_ddl, "users", _users(*source_ids))
        if target_ids is not None:
            seed(target, users_ddl, "users", _users(*target_ids))
        return source, target

    return _make


class TestScenarios:
    def test_emails_are_anonymized(self, source_target, seed, rows_of):
        source, target = source_target
        seed(source, "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT)", "users",
             [{"id": 1, "email": "a@x.com"}, {"id": 2, "email": "b@x.com"}])

        result = sync_table(source, target, "users", **FAST)

        assert result["status"] == "ok"
        assert result["state"] == TableState.DONE.value
        assert rows_of(target, "users") == [
            {"id": 1, "email": "dev_hotel1@movefast.xyz"},
            {"id": 2, "email": "dev_hotel2@movefast.xyz"},
        ]

    def test_stale_destination_row_overwritten(self, source_target, seed, rows_of):
        source, target = source_target
        ddl = "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT)"
        seed(source, ddl, "users", [{"id": 1, "email": "a@x.com"}])
        seed(target, ddl, "users", [{"id": 1, "email": "stale@x.com"}])

        sync_table(source, target, "users", **FAST)

        assert rows_of(target, "users") == [{"id": 1, "email": "dev_hotel1@movefast.xyz"}]

    def test_row_missing_from_source_is_deleted(self, users_pair):
        source, target = users_pair([1, 2], target_ids=[1, 2, 3])
        result = sync_table(source, target, "users", **FAST)
        assert result["rows_deleted"] == 1
        assert target.fetch_keys("users", "id", 0, 10) == [1, 2]

    def test_skip_list_leaves_target_untouched(self, users_pair, rows_of):
        _, target = users_pair([], target_ids=[7, 8])
        before = rows_of(target, "users")
        source = MagicMock()

        result = sync_table(source, target, "users", skip=True, **FAST)

        assert result["status"] == "skipped"
        assert result["state"] == TableState.SKIPPED.value
        assert rows_of(target, "users") == before
        assert source.mock_calls == []


class TestRoundTrip:
    def test_target_equals_transformed_source(self, users_pair, rows_of):
        source, target = users_pair(range(1, 26), target_ids=[30, 31])

        result = sync_table(source, target, "users", chunk_size=4, **FAST)

        assert result["row_count"] == 25
        assert result["chunks_planned"] == 7
        assert result["rows_upserted"] == 25
        assert result["rows_deleted"] == 2
        got = rows_of(target, "users")
        assert [r["id"] for r in got] == list(range(1, 26))
        assert all(r["email"] == f"dev_hotel{r['id']}@movefast.xyz" for r in got)
        assert all(r["name"] == f"User {r['id']}" for r in got)

    def test_rerun_is_a_noop(self, users_pair, rows_of):
        source, target = users_pair(range(1, 11))
        sync_table(source, target, "users", chunk_size=3, **FAST)
        first = rows_of(target, "users")

        again = sync_table(source, target, "users", chunk_size=3, **FAST)

        assert again["status"] == "ok"
        assert again["rows_deleted"] == 0
        assert rows_of(target, "users") == first

    def test_source_delete_propagates_on_next_run(self, users_pair):
        source, target = users_pair([1, 2, 3])
        sync_table(source, target, "users", **FAST)
        source.execute("DELETE FROM users WHERE id = 2")

        sync_table(source, target, "users", **FAST)

        assert target.fetch_keys("users", "id", 0, 10) == [1, 3]

    def test_creates_target_table(self, users_pair):
        source, target = users_pair([1])
        assert target.list_tables() == []
        sync_table(source, target, "users", **FAST)
        assert [c.name for c in target.describe_columns("users")] == ["id", "email", "password", "name"]

    @pytest.mark.parametrize("strategy", ["native", "case"])
    def test_strategies_agree(self, users_pair, rows_of, strategy):
        source, target = users_pair(range(1, 8), target_ids=[2, 3])
        sync_table(source, target, "users", chunk_size=3, strategy=strategy, **FAST)
        got = rows_of(target, "users")
        assert [r["id"] for r in got] == list(range(1, 8))
        assert got[1]["email"] == "dev_hotel2@movefast.xyz"

    def test_custom_policy(self, users_pair, rows_of):
        source, target = users_pair([1])
        policy = TransformPolicy.from_config({"name": {"constant": "anon"}})
        sync_table(source, target, "users", policy=policy, **FAST)
        row = rows_of(target, "users")[0]
        assert row["name"] == "anon"
        assert row["email"] == "user1@real.com"


class TestConcurrency:
    def test_parallel_matches_sequential(self, make_sqlite, seed, rows_of, users_ddl):
        source = make_sqlite("source")
        seed(source, users_ddl, "users", _users(*range(1, 51)))
        seq_target = make_sqlite("seq")
        par_target = make_sqlite("par")

        seq = sync_table(source, seq_target, "users", chunk_size=7, max_workers=1, **FAST)
        par = sync_table(source, par_target, "users", chunk_size=7, max_workers=4, **FAST)

        assert par["status"] == seq["status"] == "ok"
        assert par["chunks_planned"] == seq["chunks_planned"] == 8
        assert par["rows_upserted"] == 50
        assert rows_of(par_target, "users") == rows_of(seq_target, "users")

    def test_worker_connections_released(self, users_pair):
        source, target = users_pair(range(1, 11))
        sync_table(source, target, "users", chunk_size=2, max_workers=3, **FAST)
        assert len(source._sessions) <= 1
        assert len(target._sessions) <= 1


class TestFailures:
    @pytest.mark.parametrize("workers", [1, 3])
    def test_failed_chunk_does_not_stop_siblings(self, users_pair, workers):
        source, target = users_pair(range(1, 10))
        real_upsert = sync_mod.upsert

        def flaky(db, table, records, key, **kw):
            if records[0]["id"] == 4:
                raise WriteError(table, detail="deadlock")
            return real_upsert(db, table, records, key, **kw)

        with patch.object(sync_mod, "upsert", side_effect=flaky):
            result = sync_table(source, target, "users", chunk_size=3, max_workers=workers, **FAST)

        assert result["status"] == "partial"
        assert result["chunks_failed"] == 1
        assert result["rows_fetched"] == 9
        assert result["rows_upserted"] == 6
        assert any("deadlock" in e for e in result["errors"])
        assert target.fetch_keys("users", "id", 0, 20) == [1, 2, 3, 7, 8, 9]

    def test_fetch_failure_recorded(self, users_pair):
        source, target = users_pair(range(1, 5))
        real_fetch = source.fetch_page

        def flaky(table, columns, key, offset, limit):
            if offset == 2:
                raise RuntimeError("lock timeout")
            return real_fetch(table, columns, key, offset, limit)

        source.fetch_page = flaky
        result = sync_table(source, target, "users", chunk_size=2, **FAST)

        assert result["status"] == "partial"
        assert result["chunks_failed"] == 1
        assert "offset 2" in result["errors"][0]

    def test_transform_failure_is_chunk_scoped(self, users_pair):
        source, target = users_pair(range(1, 5))
        policy = TransformPolicy({"email": template("{user_id}@example.test")})
        result = sync_table(source, target, "users", policy=policy, chunk_size=2, **FAST)

        assert result["status"] == "partial"
        assert result["chunks_failed"] == 2
        assert result["rows_fetched"] == 4
        assert result["rows_upserted"] == 0
        assert all("Cannot anonymize" in e for e in result["errors"])
        assert target.count("users") == 0

    def test_null_key_row_is_never_written_unmasked(self, source_target, seed, rows_of):
        source, target = source_target
        seed(source, "CREATE TABLE contacts (id INTEGER, email TEXT)", "contacts", [
            {"id": None, "email": "ceo@real-customer.com"},
            {"id": 2, "email": "b@x.com"},
        ])
        result = sync_table(source, target, "contacts", chunk_size=1, **FAST)

        assert result["status"] == "partial"
        assert result["chunks_failed"] == 1
        assert "key 'id' is NULL" in result["errors"][0]
        assert rows_of(target, "contacts") == [{"id": 2, "email": "dev_hotel2@movefast.xyz"}]

    def test_string_keys_survive_collation_mismatch(self, source_target, seed):
        source, target = source_target
        seed(source, "CREATE TABLE codes (id TEXT PRIMARY KEY COLLATE NOCASE)", "codes",
             [{"id": "a"}, {"id": "B"}])
        result = sync_table(source, target, "codes", chunk_size=1, **FAST)

        assert result["status"] == "ok"
        assert result["rows_upserted"] == 2
        assert result["rows_deleted"] == 0
        assert sorted(target.fetch_keys("codes", "id", 0, 10)) == ["B", "a"]

    def test_missing_source_table_is_table_error(self, source_target):
        source, target = source_target
        result = sync_table(source, target, "ghost", **FAST)
        assert result["status"] == "error"
        assert result["state"] == TableState.FAILED.value
        assert "ghost" in result["errors"][0]

    def test_count_failure_is_table_error(self, users_pair):
        source, target = users_pair([1])
        source.count = MagicMock(side_effect=RuntimeError("statement timeout"))
        result = sync_table(source, target, "users", **FAST)
        assert result["status"] == "error"
        assert "Cannot count" in result["errors"][0]
        assert target.count("users") == 0

    def test_connection_loss_propagates(self, users_pair):
        source, target = users_pair([1])
        source.count = MagicMock(side_effect=SyncConnectionError("production", OSError("reset")))
        with pytest.raises(SyncConnectionError):
            sync_table(source, target, "users", **FAST)

    def test_zero_rows(self, users_pair):
        source, target = users_pair([], target_ids=[1, 2])
        result = sync_table(source, target, "users", **FAST)
        assert result["status"] == "ok"
        assert result["chunks_planned"] == 0
        assert result["rows_deleted"] == 2
        assert target.count("users") == 0

    def test_rejects_bad_arguments(self, source_target):
        source, target = source_target
        with pytest.raises(ValueError):
            sync_table(source, target, "users", strategy="bulk")
        with pytest.raises(ValueError):
            sync_table(source, target, "users", chunk_size=0)


class TestSyncChunk:
    def test_returns_rows_written(self, users_pair, rows_of, users_ddl):
        source, target = users_pair(range(1, 6))
        target.execute(users_ddl)
        cols = source.describe_columns("users")
        assert sync_chunk(source, target, "users", cols, "id", 3, 10) == 2
        assert [r["id"] for r in rows_of(target, "users")] == [4, 5]

    def test_width_mismatch_rejected(self, users_pair):
        source, target = users_pair([1])
        cols = [Column("id", "INTEGER", False)]
        source.fetch_page = MagicMock(return_value=[(1, "extra")])
        with pytest.raises(ChunkFetchError, match="expected 1"):
            sync_chunk(source, target, "users", cols, "id", 0, 10)

    def test_fetched_rows_reported_before_write(self, users_pair):
        source, target = users_pair(range(1, 4))
        cols = source.describe_columns("users")
        fetched = []
        with pytest.raises(WriteError):
            sync_chunk(source, target, "users", cols, "id", 0, 10, on_fetched=fetched.append)
        assert fetched == [3]
