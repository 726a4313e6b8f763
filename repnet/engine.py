"""
Query facade: the single entry point of the reputation engine.

ReputationEngine wires the range index, opinion collector and resolver
over a TimedStore, so every store call made on behalf of a query is bounded
by the configured timeout. A query either completes with a Verdict (possibly
no_data) or raises; partial verdicts are never returned.
"""

import concurrent.futures
import time
from typing import Iterable, List, Optional

from repnet.collector import OpinionCollector
from repnet.config import EngineConfig
from repnet.errors import InvalidRecord
from repnet.keys import StatementKeyStore, StaticTrustProvider
from repnet.log import EngineLog
from repnet.model import Statement, StatementId, Verdict
from repnet.range_index import CidrRangeIndex
from repnet.resolver import Resolver
from repnet.store import SqliteRecordStore, TimedStore


class ReputationEngine:
    """
    Resolve entities to verdicts.

    Args:
        store: a RecordStore (wrapped in TimedStore unless it already is one)
        key_store: KeyStore for signer keys (default: signer statements in store)
        trust: TrustProvider or callable signer_id -> weight (default: all 0)
        config: EngineConfig (default: from environment)
        host: log handle with log(msg, level)
    """

    def __init__(self, store, key_store=None, trust=None,
                 config: Optional[EngineConfig] = None, host=None):
        self.config = config or EngineConfig()
        self.host = host or EngineLog()

        if isinstance(store, TimedStore):
            self.timed_store = store
            self.store = store.store
        else:
            self.store = store
            self.timed_store = TimedStore(
                store,
                timeout_seconds=self.config.store_timeout_seconds,
                max_workers=self.config.store_workers,
                host=self.host,
            )

        if key_store is None:
            key_store = StatementKeyStore(self.timed_store, host=self.host)
        self.key_store = key_store
        self.trust = trust if trust is not None else StaticTrustProvider()
        self.index = CidrRangeIndex(host=self.host)
        self.collector = OpinionCollector(self.timed_store, self.key_store, host=self.host)
        self.resolver = Resolver(self.timed_store, self.index, self.collector, host=self.host)

        self._query_executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    @classmethod
    def from_config(cls, config: Optional[EngineConfig] = None, key_store=None,
                    trust=None, host=None) -> "ReputationEngine":
        """Open (and upgrade) the SQLite store at config.db_path and load the index."""
        config = config or EngineConfig()
        store = SqliteRecordStore(config.db_path, host=host)
        store.initialize()
        engine = cls(store, key_store=key_store, trust=trust, config=config, host=host)
        engine.refresh_index()
        return engine

    def _log(self, msg: str, level: str = "info") -> None:
        self.host.log(f"repnet: engine: {msg}", level=level)

    def _trust_lookup(self):
        weight_for = getattr(self.trust, "weight_for", None)
        return weight_for if weight_for is not None else self.trust

    # =========================================================================
    # QUERIES
    # =========================================================================

    def query(self, entity, as_of: Optional[int] = None, cancel=None) -> Verdict:
        """
        Resolve entity (label, EntityQuery or ipaddress object) as of an epoch second.

        Raises:
            InvalidRecord: malformed descriptor or as_of, or an invalid
                statement naming the entity itself
            StoreUnavailable: store failure or timeout; retrying is up to the caller
            ResolutionCancelled: cancel was set or the resolution deadline elapsed
        """
        if as_of is None:
            as_of = int(time.time())
        elif isinstance(as_of, bool) or not isinstance(as_of, int):
            raise InvalidRecord(f"as_of must be an epoch second, got {as_of!r}")

        deadline = None
        if self.config.resolution_deadline_seconds:
            deadline = time.monotonic() + self.config.resolution_deadline_seconds

        return self.resolver.resolve(
            entity,
            self._trust_lookup(),
            as_of,
            cancel=cancel,
            deadline=deadline,
            snapshot=self.index.snapshot(),
        )

    def query_many(self, entities: Iterable, as_of: Optional[int] = None) -> List[Verdict]:
        """
        Resolve several entities concurrently, all at the same as_of.

        Results are in input order. The first failure is raised.
        """
        if as_of is None:
            as_of = int(time.time())
        if self._query_executor is None:
            self._query_executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.config.query_workers,
                thread_name_prefix="repnet-query",
            )
        futures = [self._query_executor.submit(self.query, entity, as_of)
                   for entity in entities]
        return [future.result() for future in futures]

    def lookup_statement(self, name: str, entity_1: str,
                         entity_2: Optional[str] = None) -> Optional[Statement]:
        """Exact claim-shape lookup; None if no such statement."""
        found = self.timed_store.find_statements_by_exact(name, entity_1, entity_2)
        return found[0] if found else None

    # =========================================================================
    # INDEX MAINTENANCE
    # =========================================================================

    def refresh_index(self) -> int:
        """Rebuild the range index from the store. Returns the new version."""
        snap = self.index.load_from_store(self.timed_store)
        return snap.version

    def statement_added(self, statement: Statement) -> bool:
        """Index a newly ingested statement."""
        return self.index.add_statement(statement)

    def statement_removed(self, statement_id: StatementId) -> bool:
        forget = getattr(self.key_store, "forget", None)
        if forget is not None:
            forget(statement_id)
        return self.index.remove(statement_id)

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    def record_usage(self, verdict: Verdict, now: Optional[int] = None) -> int:
        """
        Write the advisory last_used/last_weight hint for each statement in verdict.

        last_weight is the total trust weight the statement's opinions carried.
        Returns the number of statements updated.
        """
        update = getattr(self.store, "update_usage_hint", None)
        if update is None:
            self._log("store does not keep usage hints", level="debug")
            return 0
        now = int(time.time()) if now is None else now
        weights = {}
        for c in verdict.contributing:
            weights[c.statement_id] = weights.get(c.statement_id, 0.0) + c.weight

        updated = 0
        for statement_id in verdict.statements:
            if self.timed_store.call("update_usage_hint", update,
                                     statement_id, now, weights.get(statement_id, 0.0)):
                updated += 1
        return updated

    def purge_statement(self, statement_id: StatementId) -> bool:
        """Remove a statement and its opinions from the store and the index."""
        purge = getattr(self.store, "purge_statement", None)
        if purge is None:
            raise NotImplementedError("store does not support purging")
        purged = self.timed_store.call("purge_statement", purge, statement_id)
        if purged:
            self.statement_removed(statement_id)
        return purged

    def shutdown(self) -> None:
        """Release worker threads."""
        if self._query_executor is not None:
            self._query_executor.shutdown(wait=False, cancel_futures=True)
            self._query_executor = None
        self.timed_store.shutdown()
