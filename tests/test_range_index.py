"""
Tests for the CIDR range index.

Tests cover:
- point and range containment against a brute-force scan
- exact label lookups
- snapshot publication (old snapshots never change)
- invalid bounds: rejected on insert, label-only on bulk load
- rebuilding from a RecordStore
"""

import os
import random
import sys
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from repnet.entity import cidr_bounds, encode_bound
from repnet.errors import InvalidRecord
from repnet.model import Statement, StatementId
from repnet.range_index import CidrRangeIndex, IndexSnapshot


def _statement(sid, entity_1, name="spam", entity_2=None, cidr_min=None, cidr_max=None):
    bounds = cidr_bounds(entity_1)
    if bounds and cidr_min is None and cidr_max is None:
        cidr_min, cidr_max = encode_bound(bounds[0]), encode_bound(bounds[1])
    return Statement(
        id=StatementId(sid),
        name=name,
        entity_1=entity_1,
        entity_2=entity_2,
        cidr_min=cidr_min,
        cidr_max=cidr_max,
    )


def _random_intervals(rng, count, space):
    intervals = {}
    for sid in range(1, count + 1):
        a = rng.randrange(space)
        b = rng.randrange(space)
        intervals[StatementId(sid)] = (min(a, b), max(a, b))
    return intervals


# =============================================================================
# Containment vs brute force
# =============================================================================

class TestBruteForce:
    """Index answers must equal a linear scan over all intervals."""

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234])
    def test_point_queries(self, seed):
        rng = random.Random(seed)
        intervals = _random_intervals(rng, 300, 1000)
        snap = IndexSnapshot(1, intervals, {})

        for _ in range(300):
            p = rng.randrange(-5, 1005)
            if p < 0:
                continue
            expected = {sid for sid, (lo, hi) in intervals.items() if lo <= p <= hi}
            assert snap.query_point(p) == expected

    @pytest.mark.parametrize("seed", [3, 99])
    def test_range_queries(self, seed):
        rng = random.Random(seed)
        intervals = _random_intervals(rng, 200, 500)
        snap = IndexSnapshot(1, intervals, {})

        for _ in range(200):
            a = rng.randrange(500)
            b = rng.randrange(500)
            lo, hi = min(a, b), max(a, b)
            expected = {sid for sid, (s_lo, s_hi) in intervals.items()
                        if s_lo <= lo and hi <= s_hi}
            assert snap.query_range(lo, hi) == expected

    def test_endpoints_are_inclusive(self):
        snap = IndexSnapshot(1, {StatementId(1): (10, 20)}, {})
        assert snap.query_point(10) == {1}
        assert snap.query_point(20) == {1}
        assert snap.query_point(9) == frozenset()
        assert snap.query_point(21) == frozenset()

    def test_full_128_bit_space(self):
        top = 2 ** 128 - 1
        snap = IndexSnapshot(1, {StatementId(1): (0, top), StatementId(2): (top, top)}, {})
        assert snap.query_point(top) == {1, 2}
        assert snap.query_point(encode_bound(top)) == {1, 2}

    def test_range_lo_above_hi(self):
        snap = IndexSnapshot(1, {}, {})
        with pytest.raises(InvalidRecord):
            snap.query_range(5, 4)


# =============================================================================
# CidrRangeIndex
# =============================================================================

class TestCidrRangeIndex:
    """Test the mutable index facade."""

    def setup_method(self):
        self.host = MagicMock()
        self.index = CidrRangeIndex(host=self.host)

    def test_network_containment(self):
        self.index.add_statement(_statement(1, "10.0.0.0/8"))
        self.index.add_statement(_statement(2, "10.1.0.0/16"))
        self.index.add_statement(_statement(3, "192.0.2.0/24"))

        lo, hi = cidr_bounds("10.1.2.3")
        assert self.index.query_range(lo, hi) == {1, 2}
        lo, hi = cidr_bounds("10.2.0.0/16")
        assert self.index.query_range(lo, hi) == {1}

    def test_exact_lookup_covers_all_statements(self):
        self.index.add_statement(_statement(1, "example.com"))
        self.index.add_statement(_statement(2, "AS64496", name="owns", entity_2="example.com"))
        self.index.add_statement(_statement(3, "10.0.0.0/8"))

        assert self.index.query_exact("example.com") == {1, 2}
        assert self.index.query_exact("10.0.0.0/8") == {3}
        assert self.index.query_exact("missing.example") == frozenset()

    def test_snapshot_is_immutable(self):
        self.index.add_statement(_statement(1, "10.0.0.0/8"))
        before = self.index.snapshot()
        self.index.add_statement(_statement(2, "10.0.0.0/16"))
        self.index.remove(StatementId(1))

        point = cidr_bounds("10.0.0.1")[0]
        assert before.query_point(point) == {1}
        assert self.index.query_point(point) == {2}
        assert self.index.version > before.version

    def test_insert_replaces_previous_entry(self):
        self.index.insert(StatementId(1), 10, 20)
        self.index.insert(StatementId(1), 30, 40)
        assert self.index.query_point(15) == frozenset()
        assert self.index.query_point(35) == {1}
        assert len(self.index) == 1

    def test_insert_rejects_inverted_bounds(self):
        with pytest.raises(InvalidRecord):
            self.index.insert(StatementId(1), 20, 10)
        assert len(self.index) == 0

    def test_insert_rejects_undecodable_bounds(self):
        with pytest.raises(InvalidRecord):
            self.index.insert(StatementId(1), "zz", "ff")

    def test_remove(self):
        self.index.add_statement(_statement(1, "example.com"))
        assert self.index.remove(StatementId(1)) is True
        assert self.index.remove(StatementId(1)) is False
        assert self.index.query_exact("example.com") == frozenset()

    def test_invalid_statement_indexed_by_label_only(self):
        bad = _statement(1, "10.0.0.0/8", cidr_min="ff", cidr_max="01")
        assert self.index.add_statement(bad) is False
        assert self.index.query_exact("10.0.0.0/8") == {1}
        assert self.index.query_point(0x10) == frozenset()
        levels = [c.kwargs.get("level") for c in self.host.log.call_args_list]
        assert "warn" in levels


class TestRebuild:
    """Test bulk loading."""

    def test_rebuild_skips_invalid_ranges(self):
        host = MagicMock()
        index = CidrRangeIndex(host=host)
        statements = [
            _statement(1, "10.0.0.0/8"),
            _statement(2, "example.com"),
            _statement(3, "example.org", cidr_min="ff", cidr_max=None),
            _statement(4, "192.0.2.0/24", cidr_min="zz", cidr_max="zz"),
        ]
        snap = index.rebuild(statements)

        assert snap.range_of(StatementId(1)) == cidr_bounds("10.0.0.0/8")
        assert snap.range_of(StatementId(4)) is None
        assert snap.unranged_ids() == {2, 3, 4}
        assert index.query_exact("example.org") == {3}
        assert len(index) == 4

    def test_load_from_store(self):
        store = MagicMock()
        store.scan_statements_by_cidr_bounds.return_value = [_statement(1, "10.0.0.0/8")]
        store.scan_unbounded_statements.return_value = [_statement(2, "example.com")]

        index = CidrRangeIndex(host=MagicMock())
        index.load_from_store(store)

        assert index.query_point(cidr_bounds("10.9.9.9")[0]) == {1}
        assert index.query_exact("example.com") == {2}
