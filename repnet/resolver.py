"""
Aggregator / Resolver.

Turns an entity descriptor into a Verdict:

1. candidates = statements naming the entity exactly, plus statements whose
   range covers the entity's address range (one index snapshot for the
   whole call)
2. each candidate is re-read from the store and re-checked against the
   descriptor; vanished or no-longer-matching candidates are skipped
3. the collector reduces each candidate's opinions to one per signer
4. score = sum(certainty * weight) / sum(weight) across all candidates,
   where weight = trust_lookup(signer_id)

Opinions with weight 0 stay in the audit trail but do not move the score.
When the total weight is 0 the verdict carries no_data=True and score 0.
"""

import math
import numbers
import time
from typing import Callable, List, Optional

from repnet.errors import InvalidRecord, NotFound, ResolutionCancelled
from repnet.log import EngineLog
from repnet.model import Contribution, EntityQuery, SignerId, Statement, StatementId, Verdict


TrustLookup = Callable[[SignerId], float]


class Resolver:
    """Combines effective opinions from all matching statements into one verdict."""

    def __init__(self, store, index, collector, host=None):
        self.store = store
        self.index = index
        self.collector = collector
        self.host = host or EngineLog()

    def _log(self, msg: str, level: str = "info") -> None:
        self.host.log(f"repnet: resolver: {msg}", level=level)

    @staticmethod
    def _check_cancel(cancel, deadline: Optional[float]) -> None:
        if cancel is not None and cancel.is_set():
            raise ResolutionCancelled("resolution cancelled")
        if deadline is not None and time.monotonic() >= deadline:
            raise ResolutionCancelled("resolution deadline elapsed")

    def _weight(self, trust_lookup: TrustLookup, signer_id: SignerId) -> float:
        """Trust weight for signer_id; anything unusable counts as 0."""
        try:
            weight = trust_lookup(signer_id)
        except Exception as e:
            self._log(f"trust lookup for signer {signer_id} failed: {e}", level="warn")
            return 0.0
        if isinstance(weight, bool) or not isinstance(weight, numbers.Real):
            self._log(f"non-numeric weight {weight!r} for signer {signer_id}", level="warn")
            return 0.0
        weight = float(weight)
        if not math.isfinite(weight) or weight < 0:
            self._log(f"invalid weight {weight!r} for signer {signer_id}", level="warn")
            return 0.0
        return weight

    def _load(self, statement_id: StatementId) -> Statement:
        statement = self.store.get_statement(statement_id)
        if statement is None:
            raise NotFound(f"statement {statement_id} not found")
        return statement

    def _applies(self, query: EntityQuery, statement: Statement) -> bool:
        """
        Re-check a candidate against the descriptor.

        Raises:
            InvalidRecord: if the statement is invalid and names the queried
                entity itself
        """
        named = query.label in statement.entities()
        try:
            statement.bounds()
        except InvalidRecord as e:
            if named:
                raise
            self._log(f"skipping invalid candidate: {e}", level="warn")
            return False
        if not query.matches(statement):
            self._log(f"statement {statement.id} no longer matches {query.label}", level="debug")
            return False
        return True

    def resolve(self, entity, trust_lookup: TrustLookup, as_of: int,
                cancel=None, deadline: Optional[float] = None, snapshot=None) -> Verdict:
        """
        Resolve entity to a Verdict as of the given epoch second.

        Args:
            entity: label, EntityQuery or ipaddress object
            trust_lookup: signer_id -> non-negative weight
            as_of: opinions dated after this are ignored
            cancel: optional threading.Event; checked before each candidate
            deadline: optional time.monotonic() value; checked likewise
            snapshot: index snapshot to use (default: the current one)

        Raises:
            InvalidRecord: malformed descriptor, or an invalid statement
                naming the entity itself
            StoreUnavailable: the store failed or timed out
            ResolutionCancelled: cancel was set or the deadline elapsed
        """
        query = EntityQuery.parse(entity)
        snap = snapshot if snapshot is not None else self.index.snapshot()

        candidates = set(snap.query_exact(query.label))
        if query.bounds is not None:
            candidates |= snap.query_range(query.bounds[0], query.bounds[1])

        matched: List[StatementId] = []
        contributing: List[Contribution] = []
        for statement_id in sorted(candidates):
            self._check_cancel(cancel, deadline)
            try:
                statement = self._load(statement_id)
            except NotFound as e:
                self._log(f"skipping candidate: {e}", level="debug")
                continue
            if not self._applies(query, statement):
                continue

            matched.append(statement_id)
            for opinion in self.collector.collect(statement_id, as_of):
                contributing.append(Contribution(
                    statement_id=statement_id,
                    signer_id=opinion.signer_id,
                    certainty=opinion.certainty,
                    weight=self._weight(trust_lookup, opinion.signer_id),
                ))

        contributing.sort(key=lambda c: (c.statement_id, c.signer_id))

        numerator = 0.0
        denominator = 0.0
        for c in contributing:
            if c.weight > 0:
                numerator += c.certainty * c.weight
                denominator += c.weight

        if denominator > 0:
            return Verdict(
                entity=query.label,
                as_of=as_of,
                score=numerator / denominator,
                no_data=False,
                contributing=tuple(contributing),
                statements=tuple(matched),
            )
        return Verdict(
            entity=query.label,
            as_of=as_of,
            contributing=tuple(contributing),
            statements=tuple(matched),
        )
