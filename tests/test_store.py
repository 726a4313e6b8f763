"""
Tests for the record store.

Tests cover:
- SqliteRecordStore schema, read path and write path
- statement/opinion uniqueness and append-only opinions
- legacy database upgrade (entity_3/entity_4 removal, shape merges, cidr columns)
- fix_cidr maintenance
- TimedStore timeout and failure mapping to StoreUnavailable, hung workers
- in-memory databases shared across worker threads
"""

import os
import sqlite3
import sys
import threading
import time
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from repnet.entity import cidr_bounds, encode_bound
from repnet.errors import InvalidRecord, StoreUnavailable
from repnet.model import Opinion, SignerId, StatementId
from repnet.store import RecordStore, SqliteRecordStore, TimedStore


PUBKEY_A = "03" + "a1" * 32


def _make_store(tmp_path):
    store = SqliteRecordStore(str(tmp_path / "reputation.sqlite3"), host=MagicMock())
    store.initialize()
    return store


def _opinion(statement_id, signer_id, date=100, serial=1, valid=True, certainty=5,
             signature="c2ln", comment=None):
    return Opinion(
        id=None,
        statement_id=StatementId(statement_id),
        signer_id=SignerId(signer_id),
        date=date,
        valid=valid,
        serial=serial,
        certainty=certainty,
        signature=signature,
        comment=comment,
    )


# =============================================================================
# Statements
# =============================================================================

class TestStatements:

    def test_add_derives_bounds(self, tmp_path):
        store = _make_store(tmp_path)
        statement, inserted = store.add_statement("spam", "10.0.0.0/8")

        assert inserted is True
        lo, hi = cidr_bounds("10.0.0.0/8")
        assert statement.cidr_min == encode_bound(lo)
        assert statement.cidr_max == encode_bound(hi)
        assert store.get_statement(statement.id) == statement

    def test_add_unranged(self, tmp_path):
        store = _make_store(tmp_path)
        statement, _ = store.add_statement("owns", "AS64496", "example.com")
        loaded = store.get_statement(statement.id)
        assert loaded.cidr_min is None and loaded.cidr_max is None
        assert loaded.entities() == ("AS64496", "example.com")

    def test_duplicate_shape_returns_existing(self, tmp_path):
        store = _make_store(tmp_path)
        first, inserted_1 = store.add_statement("spam", "example.com")
        second, inserted_2 = store.add_statement("spam", "example.com")

        assert inserted_1 is True
        assert inserted_2 is False
        assert first.id == second.id
        assert store.count_statements() == 1

    def test_null_entity_2_is_part_of_uniqueness(self, tmp_path):
        store = _make_store(tmp_path)
        store.add_statement("owns", "AS1")
        store.add_statement("owns", "AS1")
        store.add_statement("owns", "AS1", "example.com")
        assert store.count_statements() == 2

    def test_rejects_empty_fields(self, tmp_path):
        store = _make_store(tmp_path)
        with pytest.raises(InvalidRecord):
            store.add_statement("", "example.com")
        with pytest.raises(InvalidRecord):
            store.add_statement("spam", "")

    def test_find_by_exact(self, tmp_path):
        store = _make_store(tmp_path)
        a, _ = store.add_statement("owns", "AS1", "example.com")
        store.add_statement("owns", "AS1")

        assert store.find_statements_by_exact("owns", "AS1", "example.com") == [a]
        assert len(store.find_statements_by_exact("owns", "AS1")) == 1
        assert store.find_statements_by_exact("owns", "AS2") == []

    def test_scans(self, tmp_path):
        store = _make_store(tmp_path)
        wide, _ = store.add_statement("spam", "10.0.0.0/8")
        low, _ = store.add_statement("spam", "1.0.0.0/8")
        plain, _ = store.add_statement("spam", "example.com")

        assert [s.id for s in store.scan_statements_by_cidr_bounds()] == [low.id, wide.id]
        assert [s.id for s in store.scan_unbounded_statements()] == [plain.id]

    def test_missing_statement(self, tmp_path):
        store = _make_store(tmp_path)
        assert store.get_statement(StatementId(999)) is None

    def test_usage_hint_outside_identity(self, tmp_path):
        store = _make_store(tmp_path)
        statement, _ = store.add_statement("spam", "example.com")

        assert store.update_usage_hint(statement.id, 1700000000, 2.5) is True
        loaded = store.get_statement(statement.id)
        assert loaded.hint.last_used == 1700000000
        assert loaded.hint.last_weight == 2.5
        assert loaded == statement
        assert store.update_usage_hint(StatementId(999), 1, 1.0) is False


# =============================================================================
# Opinions
# =============================================================================

class TestOpinions:

    def _seed(self, tmp_path):
        store = _make_store(tmp_path)
        signer, _ = store.add_statement("signer", PUBKEY_A)
        target, _ = store.add_statement("spam", "example.com")
        return store, signer, target

    def test_add_and_read(self, tmp_path):
        store, signer, target = self._seed(tmp_path)
        stored, inserted = store.add_opinion(_opinion(target.id, signer.id, comment="seen"))

        assert inserted is True
        assert stored.id is not None
        opinions = store.get_opinions(target.id)
        assert opinions == [stored]
        assert opinions[0].valid is True

    def test_retraction_reads_back_false(self, tmp_path):
        store, signer, target = self._seed(tmp_path)
        store.add_opinion(_opinion(target.id, signer.id, valid=False))
        assert store.get_opinions(target.id)[0].valid is False

    def test_duplicate_key_returns_existing(self, tmp_path):
        store, signer, target = self._seed(tmp_path)
        first, _ = store.add_opinion(_opinion(target.id, signer.id, certainty=5))
        again, inserted = store.add_opinion(_opinion(target.id, signer.id, certainty=-5))

        assert inserted is False
        assert again == first
        assert len(store.get_opinions(target.id)) == 1

    def test_new_serial_appends(self, tmp_path):
        store, signer, target = self._seed(tmp_path)
        store.add_opinion(_opinion(target.id, signer.id, serial=1))
        store.add_opinion(_opinion(target.id, signer.id, serial=2))
        assert [o.serial for o in store.get_opinions(target.id)] == [1, 2]

    def test_unknown_statement_rejected(self, tmp_path):
        store, signer, _ = self._seed(tmp_path)
        with pytest.raises(InvalidRecord):
            store.add_opinion(_opinion(999, signer.id))

    def test_malformed_opinion_rejected(self, tmp_path):
        store, signer, target = self._seed(tmp_path)
        with pytest.raises(InvalidRecord):
            store.add_opinion(_opinion(target.id, signer.id, signature=""))
        with pytest.raises(InvalidRecord):
            store.add_opinion(_opinion(target.id, signer.id, serial=-1))

    def test_purge(self, tmp_path):
        store, signer, target = self._seed(tmp_path)
        store.add_opinion(_opinion(target.id, signer.id))

        # Still the signer of an opinion about another statement
        assert store.purge_statement(signer.id) is False
        assert store.purge_statement(target.id) is True
        assert store.get_statement(target.id) is None
        assert store.get_opinions(target.id) == []
        assert store.purge_statement(signer.id) is True


# =============================================================================
# Legacy upgrade and maintenance
# =============================================================================

LEGACY_SCHEMA = """
CREATE TABLE statement (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    entity_1 TEXT NOT NULL,
    entity_2 TEXT,
    entity_3 TEXT,
    entity_4 TEXT,
    UNIQUE (name, entity_1, entity_2, entity_3, entity_4)
);
CREATE TABLE opinion (
    id INTEGER PRIMARY KEY,
    statement_id INTEGER NOT NULL,
    signer_id INTEGER NOT NULL,
    date INTEGER NOT NULL,
    valid INTEGER NOT NULL,
    serial INTEGER NOT NULL,
    certainty INTEGER NOT NULL,
    signature TEXT NOT NULL,
    comment TEXT,
    UNIQUE (statement_id, signer_id, date, serial),
    FOREIGN KEY (statement_id) REFERENCES statement(id),
    FOREIGN KEY (signer_id) REFERENCES statement(id)
);
"""


class TestLegacyUpgrade:

    def _legacy_db(self, tmp_path):
        path = str(tmp_path / "legacy.sqlite3")
        conn = sqlite3.connect(path)
        conn.executescript(LEGACY_SCHEMA)
        conn.execute("INSERT INTO statement (id, name, entity_1) VALUES (1, 'signer', ?)", (PUBKEY_A,))
        conn.execute("INSERT INTO statement (id, name, entity_1) VALUES (2, 'spam', '10.0.0.0/8')")
        conn.execute("INSERT INTO statement (id, name, entity_1, entity_3) "
                     "VALUES (3, 'spam', 'example.com', 'unused')")
        conn.execute("INSERT INTO opinion VALUES (1, 2, 1, 100, 1, 1, 5, 'c2ln', NULL)")
        conn.commit()
        conn.close()
        return path

    def test_upgrade_reshapes_statement_table(self, tmp_path):
        path = self._legacy_db(tmp_path)
        store = SqliteRecordStore(path, host=MagicMock())
        store.initialize()

        with store._get_conn() as conn:
            columns = store._table_columns(conn, "statement")
        assert "entity_3" not in columns
        assert "entity_4" not in columns
        assert {"cidr_min", "cidr_max", "last_used", "last_weight"} <= set(columns)

    def test_upgrade_derives_bounds(self, tmp_path):
        store = SqliteRecordStore(self._legacy_db(tmp_path), host=MagicMock())
        store.initialize()

        ranged = store.get_statement(StatementId(2))
        assert ranged.bounds() == cidr_bounds("10.0.0.0/8")
        assert store.get_statement(StatementId(3)).bounds() is None

    def test_upgrade_keeps_opinions_and_foreign_keys(self, tmp_path):
        store = SqliteRecordStore(self._legacy_db(tmp_path), host=MagicMock())
        store.initialize()

        assert [o.id for o in store.get_opinions(StatementId(2))] == [1]
        # Foreign keys still point at the statement table
        store.add_opinion(_opinion(3, 1, serial=1))
        with pytest.raises(InvalidRecord):
            store.add_opinion(_opinion(42, 1, serial=1))

    def test_initialize_is_idempotent(self, tmp_path):
        store = SqliteRecordStore(self._legacy_db(tmp_path), host=MagicMock())
        store.initialize()
        store.initialize()
        assert store.count_statements() == 3

    def test_rows_differing_only_in_dropped_columns_are_merged(self, tmp_path):
        path = self._legacy_db(tmp_path)
        conn = sqlite3.connect(path)
        conn.execute("INSERT INTO statement (id, name, entity_1, entity_3) VALUES (4, 'x', 'a.com', 'p')")
        conn.execute("INSERT INTO statement (id, name, entity_1, entity_3) VALUES (5, 'x', 'a.com', 'q')")
        conn.execute("INSERT INTO statement (id, name, entity_1, entity_4) VALUES (6, 'x', 'a.com', 'r')")
        # Same signer, date and serial on 4 and 5: only one survives the merge
        conn.execute("INSERT INTO opinion VALUES (2, 4, 1, 100, 1, 1, 5, 'c2ln', NULL)")
        conn.execute("INSERT INTO opinion VALUES (3, 5, 1, 100, 1, 1, -5, 'c2ln', NULL)")
        conn.execute("INSERT INTO opinion VALUES (4, 6, 1, 200, 1, 2, 3, 'c2ln', NULL)")
        conn.commit()
        conn.close()

        host = MagicMock()
        store = SqliteRecordStore(path, host=host)
        store.initialize()

        assert [s.id for s in store.find_statements_by_exact("x", "a.com")] == [4]
        assert store.get_statement(StatementId(5)) is None
        assert store.get_statement(StatementId(6)) is None
        assert [(o.id, o.certainty) for o in store.get_opinions(StatementId(4))] == [(2, 5), (4, 3)]
        messages = [c.args[0] for c in host.log.call_args_list]
        assert any("merged statement 5 into statement 4" in m for m in messages)
        assert any("merged statement 6 into statement 4" in m for m in messages)

        # The shape index is in place: re-adding the shape finds the survivor
        again, inserted = store.add_statement("x", "a.com")
        assert (again.id, inserted) == (StatementId(4), False)

    def test_merged_signer_keeps_its_opinions(self, tmp_path):
        path = self._legacy_db(tmp_path)
        conn = sqlite3.connect(path)
        conn.execute("INSERT INTO statement (id, name, entity_1, entity_3) VALUES (4, 'signer', ?, 'old')",
                     (PUBKEY_A,))
        conn.execute("INSERT INTO opinion VALUES (2, 3, 4, 100, 1, 1, 5, 'c2ln', NULL)")
        conn.commit()
        conn.close()

        store = SqliteRecordStore(path, host=MagicMock())
        store.initialize()

        assert [o.signer_id for o in store.get_opinions(StatementId(3))] == [1]
        assert store.get_statement(StatementId(4)) is None

    def test_upgrade_rederives_existing_bounds(self, tmp_path):
        path = str(tmp_path / "bounded.sqlite3")
        conn = sqlite3.connect(path)
        conn.executescript(LEGACY_SCHEMA)
        conn.execute("ALTER TABLE statement ADD COLUMN cidr_min TEXT")
        conn.execute("ALTER TABLE statement ADD COLUMN cidr_max TEXT")
        # IPv4 bounds written without the ::ffff:0:0/96 mapping
        conn.execute("INSERT INTO statement (id, name, entity_1, cidr_min, cidr_max) "
                     "VALUES (1, 'spam', '10.0.0.0/8', 'a000000', 'affffff')")
        conn.commit()
        conn.close()

        store = SqliteRecordStore(path, host=MagicMock())
        store.initialize()

        assert store.get_statement(StatementId(1)).bounds() == cidr_bounds("10.0.0.0/8")

    def test_fix_cidr(self, tmp_path):
        store = _make_store(tmp_path)
        statement, _ = store.add_statement("spam", "10.0.0.0/8")
        plain, _ = store.add_statement("spam", "example.com")
        with store._get_conn() as conn:
            # Old-style narrow encoding and a stray bound on an unranged row
            conn.execute("UPDATE statement SET cidr_min = 'a000000', cidr_max = 'affffff' WHERE id = ?",
                         (statement.id,))
            conn.execute("UPDATE statement SET cidr_min = '00' WHERE id = ?", (plain.id,))
            conn.commit()

        assert store.fix_cidr() == 2
        assert store.get_statement(statement.id).bounds() == cidr_bounds("10.0.0.0/8")
        assert store.get_statement(plain.id).cidr_min is None
        assert store.fix_cidr() == 0


# =============================================================================
# TimedStore
# =============================================================================

class _SlowStore(RecordStore):
    def __init__(self):
        self.release = threading.Event()

    def get_statement(self, statement_id):
        self.release.wait(5)
        return None


class _HangOnceStore(RecordStore):
    """The first get_statement hangs until released; later calls return at once."""

    def __init__(self):
        self.release = threading.Event()
        self.calls = 0

    def get_statement(self, statement_id):
        self.calls += 1
        if self.calls == 1:
            self.release.wait(5)
        return None


class _BrokenStore(RecordStore):
    def get_opinions(self, statement_id):
        raise sqlite3.OperationalError("database is locked")


class TestTimedStore:

    def test_memory_store_shared_across_workers(self):
        inner = SqliteRecordStore(":memory:", host=MagicMock())
        inner.initialize()
        statement, _ = inner.add_statement("spam", "10.0.0.0/8")
        timed = TimedStore(inner, timeout_seconds=5.0, max_workers=4, host=MagicMock())
        try:
            assert timed.get_statement(statement.id) == statement
            assert timed.scan_statements_by_cidr_bounds() == [statement]
        finally:
            timed.shutdown()
            inner.close()

    def test_passes_results_through(self, tmp_path):
        inner = _make_store(tmp_path)
        statement, _ = inner.add_statement("spam", "example.com")
        timed = TimedStore(inner, timeout_seconds=5.0, host=MagicMock())
        try:
            assert timed.get_statement(statement.id) == statement
            assert timed.scan_unbounded_statements() == [statement]
        finally:
            timed.shutdown()

    def test_timeout_maps_to_store_unavailable(self):
        inner = _SlowStore()
        host = MagicMock()
        timed = TimedStore(inner, timeout_seconds=0.05, host=host)
        try:
            with pytest.raises(StoreUnavailable):
                timed.get_statement(StatementId(1))
            assert host.log.call_args.kwargs["level"] == "warn"
        finally:
            inner.release.set()
            timed.shutdown()

    def test_hung_call_does_not_starve_later_calls(self):
        inner = _HangOnceStore()
        host = MagicMock()
        timed = TimedStore(inner, timeout_seconds=0.2, max_workers=1, host=host)
        try:
            with pytest.raises(StoreUnavailable):
                timed.get_statement(StatementId(1))
            assert timed.stuck_calls == 1

            assert timed.get_statement(StatementId(1)) is None
            assert inner.calls == 2
        finally:
            inner.release.set()

        deadline = time.monotonic() + 5
        while timed.stuck_calls and time.monotonic() < deadline:
            time.sleep(0.01)
        assert timed.stuck_calls == 0
        timed.shutdown()

    def test_exception_maps_to_store_unavailable(self):
        timed = TimedStore(_BrokenStore(), timeout_seconds=1.0, host=MagicMock())
        try:
            with pytest.raises(StoreUnavailable) as excinfo:
                timed.get_opinions(StatementId(1))
            assert isinstance(excinfo.value.__cause__, sqlite3.OperationalError)
        finally:
            timed.shutdown()

    def test_unimplemented_method_is_unavailable(self):
        timed = TimedStore(RecordStore(), timeout_seconds=1.0, host=MagicMock())
        try:
            with pytest.raises(StoreUnavailable):
                timed.scan_unbounded_statements()
        finally:
            timed.shutdown()

    def test_after_shutdown(self):
        timed = TimedStore(_SlowStore(), timeout_seconds=1.0, host=MagicMock())
        timed.shutdown()
        with pytest.raises(StoreUnavailable):
            timed.get_statement(StatementId(1))
