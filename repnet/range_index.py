"""
CIDR Range Index.

Maps closed [cidr_min, cidr_max] intervals to statement ids and answers "all
intervals containing point P" in O(log n + k). Every statement is also
indexed by its entity labels for exact lookups, including statements whose
bounds are invalid, so a query naming such a statement still finds it.

Concurrency:
- Every published version is an immutable IndexSnapshot.
- Writers build a new snapshot under a write lock, then publish it with a
  single reference assignment. Readers never lock; an in-flight resolution
  keeps querying the snapshot it started with.
"""

import threading
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from repnet.entity import decode_bound
from repnet.errors import InvalidRecord
from repnet.log import EngineLog
from repnet.model import Statement, StatementId


_Entry = Tuple[int, int, StatementId]


class _Node:
    """Centered interval tree node."""

    __slots__ = ("center", "by_min", "by_max", "left", "right")

    def __init__(self, center: int, by_min: List[_Entry], by_max: List[_Entry],
                 left: Optional["_Node"], right: Optional["_Node"]):
        self.center = center
        self.by_min = by_min    # ascending lo
        self.by_max = by_max    # descending hi
        self.left = left
        self.right = right


def _build(entries: List[_Entry]) -> Optional[_Node]:
    if not entries:
        return None
    endpoints = [e[0] for e in entries] + [e[1] for e in entries]
    endpoints.sort()
    # The median endpoint belongs to some interval, so overlap is never empty
    center = endpoints[len(endpoints) // 2]

    left: List[_Entry] = []
    right: List[_Entry] = []
    overlap: List[_Entry] = []
    for entry in entries:
        if entry[1] < center:
            left.append(entry)
        elif entry[0] > center:
            right.append(entry)
        else:
            overlap.append(entry)

    by_min = sorted(overlap, key=lambda e: (e[0], e[2]))
    by_max = sorted(overlap, key=lambda e: (-e[1], e[2]))
    return _Node(center, by_min, by_max, _build(left), _build(right))


class IndexSnapshot:
    """An immutable version of the index."""

    def __init__(self, version: int, ranges: Dict[StatementId, Tuple[int, int]],
                 exact: Dict[str, FrozenSet[StatementId]]):
        self.version = version
        self._ranges = ranges
        self._exact = exact
        self._unranged = frozenset(
            sid for ids in exact.values() for sid in ids if sid not in ranges)
        self._root = _build([(lo, hi, sid) for sid, (lo, hi) in ranges.items()])

    def __len__(self) -> int:
        return len(self._ranges) + len(self._unranged)

    def __contains__(self, statement_id) -> bool:
        return statement_id in self._ranges or statement_id in self._unranged

    def unranged_ids(self) -> FrozenSet[StatementId]:
        return self._unranged

    def range_of(self, statement_id: StatementId) -> Optional[Tuple[int, int]]:
        return self._ranges.get(statement_id)

    def query_point(self, point) -> FrozenSet[StatementId]:
        """Ids of every interval with lo <= point <= hi."""
        p = decode_bound(point)
        found = set()
        node = self._root
        while node is not None:
            if p < node.center:
                for lo, _hi, sid in node.by_min:
                    if lo > p:
                        break
                    found.add(sid)
                node = node.left
            elif p > node.center:
                for _lo, hi, sid in node.by_max:
                    if hi < p:
                        break
                    found.add(sid)
                node = node.right
            else:
                found.update(e[2] for e in node.by_min)
                break
        return frozenset(found)

    def query_range(self, lo, hi) -> FrozenSet[StatementId]:
        """Ids of every interval covering the whole of [lo, hi]."""
        lo_p = decode_bound(lo)
        hi_p = decode_bound(hi)
        if lo_p > hi_p:
            raise InvalidRecord("query range lo > hi")
        if lo_p == hi_p:
            return self.query_point(lo_p)
        # Intervals are contiguous: covering both ends covers everything between
        return self.query_point(lo_p) & self.query_point(hi_p)

    def query_exact(self, entity: str) -> FrozenSet[StatementId]:
        """Ids of statements naming entity as entity_1 or entity_2."""
        return self._exact.get(entity, frozenset())


class CidrRangeIndex:
    """
    Range index with immutable-snapshot publication.

    All mutators are serialized by a single write lock. Queries go to the
    snapshot current at call time; use snapshot() to pin one for a whole
    resolution.
    """

    def __init__(self, host=None):
        self.host = host or EngineLog()
        self._write_lock = threading.Lock()
        self._snapshot = IndexSnapshot(0, {}, {})

    def _log(self, msg: str, level: str = "info") -> None:
        self.host.log(f"repnet: range_index: {msg}", level=level)

    # --- Read side ---

    def snapshot(self) -> IndexSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def __len__(self) -> int:
        return len(self._snapshot)

    def query_point(self, point) -> FrozenSet[StatementId]:
        return self._snapshot.query_point(point)

    def query_range(self, lo, hi) -> FrozenSet[StatementId]:
        return self._snapshot.query_range(lo, hi)

    def query_exact(self, entity: str) -> FrozenSet[StatementId]:
        return self._snapshot.query_exact(entity)

    # --- Write side ---

    def _publish(self, ranges, exact) -> IndexSnapshot:
        snap = IndexSnapshot(self._snapshot.version + 1, ranges, exact)
        self._snapshot = snap
        return snap

    @staticmethod
    def _without(exact: Dict[str, FrozenSet[StatementId]],
                 statement_id: StatementId) -> Dict[str, FrozenSet[StatementId]]:
        result = {}
        for label, ids in exact.items():
            if statement_id in ids:
                ids = ids - {statement_id}
            if ids:
                result[label] = ids
        return result


    def insert(self, statement_id: StatementId, lo, hi, labels: Iterable[str] = ()) -> None:
        """
        Index a ranged statement (replacing any previous entry for the id).

        Raises:
            InvalidRecord: if a bound is undecodable or lo > hi
        """
        lo_v = decode_bound(lo)
        hi_v = decode_bound(hi)
        if lo_v > hi_v:
            raise InvalidRecord(f"statement {statement_id}: cidr_min > cidr_max", statement_id)
        self._replace(statement_id, (lo_v, hi_v), labels)

    def insert_exact(self, statement_id: StatementId, labels: Iterable[str]) -> None:
        """Index a statement under its entity labels only."""
        self._replace(statement_id, None, labels)

    def _replace(self, statement_id, bounds, labels) -> None:
        labels = [label for label in labels if label is not None]
        with self._write_lock:
            old = self._snapshot
            ranges = dict(old._ranges)
            ranges.pop(statement_id, None)
            if bounds is not None:
                ranges[statement_id] = bounds
            exact = self._without(old._exact, statement_id)
            for label in labels:
                exact[label] = exact.get(label, frozenset()) | {statement_id}
            self._publish(ranges, exact)

    def remove(self, statement_id: StatementId) -> bool:
        """Drop a statement from the index. Returns False if it was not indexed."""
        with self._write_lock:
            old = self._snapshot
            if statement_id not in old:
                return False
            ranges = dict(old._ranges)
            ranges.pop(statement_id, None)
            self._publish(ranges, self._without(old._exact, statement_id))
            return True

    def add_statement(self, statement: Statement) -> bool:
        """
        Index a statement by its labels and, if it has one, its range.

        A statement with invalid bounds is logged and indexed by label only;
        returns False in that case.
        """
        try:
            bounds = statement.bounds()
        except InvalidRecord as e:
            self._log(f"indexing invalid statement by label only: {e}", level="warn")
            self.insert_exact(statement.id, statement.entities())
            return False
        self._replace(statement.id, bounds, statement.entities())
        return True

    def rebuild(self, statements: Iterable[Statement]) -> IndexSnapshot:
        """Replace the whole index in one publication."""
        ranges: Dict[StatementId, Tuple[int, int]] = {}
        exact_sets: Dict[str, set] = {}
        invalid = 0
        for statement in statements:
            for label in statement.entities():
                exact_sets.setdefault(label, set()).add(statement.id)
            try:
                bounds = statement.bounds()
            except InvalidRecord as e:
                invalid += 1
                self._log(f"indexing invalid statement by label only: {e}", level="warn")
                continue
            if bounds is not None:
                ranges[statement.id] = bounds

        exact = {label: frozenset(ids) for label, ids in exact_sets.items()}
        with self._write_lock:
            snap = self._publish(ranges, exact)
        self._log(
            f"rebuilt index v{snap.version}: {len(ranges)} ranged, "
            f"{len(snap.unranged_ids())} label-only, {invalid} invalid"
        )
        return snap

    def load_from_store(self, store) -> IndexSnapshot:
        """Rebuild from a RecordStore's bound scan plus its unranged statements."""
        statements = list(store.scan_statements_by_cidr_bounds())
        statements.extend(store.scan_unbounded_statements())
        return self.rebuild(statements)
