"""
Record Store for statements and opinions.

RecordStore is the read interface the engine depends on. SqliteRecordStore
persists the current schema shape, upgrades legacy databases, enforces the
uniqueness invariants at write time, and provides the write path used by
ingestion. TimedStore bounds every call with a timeout and maps failures to
StoreUnavailable.

Schema (current shape):
- statement(id, name, entity_1, entity_2, cidr_min, cidr_max,
  last_used, last_weight), unique on
  (name, entity_1, entity_2, cidr_min, cidr_max)
- opinion(id, statement_id, signer_id, date, valid, serial, certainty,
  signature, comment), unique on (statement_id, signer_id, date, serial)

Thread Safety:
- SqliteRecordStore uses one connection per thread (threading.local), or
  one shared, lock-guarded connection for ":memory:"
- Writes are serialized by a store-wide lock
"""

import concurrent.futures
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from repnet.entity import cidr_bounds, encode_bound
from repnet.errors import InvalidRecord, StoreUnavailable
from repnet.log import EngineLog
from repnet.model import Opinion, SignerId, Statement, StatementId, UsageHint


SCHEMA_VERSION = 3

STATEMENT_TABLE = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    entity_1 TEXT NOT NULL,
    entity_2 TEXT,
    cidr_min TEXT,
    cidr_max TEXT,
    last_used INTEGER,
    last_weight REAL
);
"""

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at INTEGER NOT NULL
);
""" + STATEMENT_TABLE.format(table="statement") + """
CREATE TABLE IF NOT EXISTS opinion (
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

# NULLs are distinct in SQLite UNIQUE constraints, hence the IFNULL expressions
INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_statement_shape ON statement(
    name, entity_1, IFNULL(entity_2, ''), IFNULL(cidr_min, ''), IFNULL(cidr_max, '')
);
CREATE INDEX IF NOT EXISTS idx_cidr_min ON statement(cidr_min);
CREATE INDEX IF NOT EXISTS idx_cidr_max ON statement(cidr_max);
CREATE INDEX IF NOT EXISTS idx_entity_1 ON statement(entity_1);
CREATE INDEX IF NOT EXISTS idx_opinion_fk_statement ON opinion(statement_id);
"""

STATEMENT_COLUMNS = "id, name, entity_1, entity_2, cidr_min, cidr_max, last_used, last_weight"
OPINION_COLUMNS = "id, statement_id, signer_id, date, valid, serial, certainty, signature, comment"


class RecordStore:
    """Read interface the engine needs from durable storage."""

    def get_statement(self, statement_id: StatementId) -> Optional[Statement]:
        raise NotImplementedError

    def find_statements_by_exact(self, name: str, entity_1: str,
                                 entity_2: Optional[str] = None) -> List[Statement]:
        raise NotImplementedError

    def scan_statements_by_cidr_bounds(self) -> List[Statement]:
        """Ranged statements ordered by cidr_min (for building the index)."""
        raise NotImplementedError

    def scan_unbounded_statements(self) -> List[Statement]:
        raise NotImplementedError

    def get_opinions(self, statement_id: StatementId) -> List[Opinion]:
        raise NotImplementedError


def _row_to_statement(row) -> Statement:
    hint = None
    if row["last_used"] is not None or row["last_weight"] is not None:
        hint = UsageHint(last_used=row["last_used"], last_weight=row["last_weight"])
    return Statement(
        id=StatementId(row["id"]),
        name=row["name"],
        entity_1=row["entity_1"],
        entity_2=row["entity_2"],
        cidr_min=row["cidr_min"],
        cidr_max=row["cidr_max"],
        hint=hint,
    )


def _row_to_opinion(row) -> Opinion:
    valid = row["valid"]
    return Opinion(
        id=row["id"],
        statement_id=StatementId(row["statement_id"]),
        signer_id=SignerId(row["signer_id"]),
        date=row["date"],
        # Anything but 0/1 stays as stored so Opinion.check() can reject it
        valid=bool(valid) if valid in (0, 1) else valid,
        serial=row["serial"],
        certainty=row["certainty"],
        signature=row["signature"],
        comment=row["comment"],
    )


class SqliteRecordStore(RecordStore):
    """SQLite-backed record store with thread-local connections."""

    def __init__(self, db_path: str, host=None, timeout: float = 10.0):
        self.db_path = db_path
        self.host = host or EngineLog()
        self.timeout = timeout
        self._local = threading.local()
        self._write_lock = threading.Lock()

        # An in-memory database exists only on the connection that created
        # it, so every thread shares one connection, one caller at a time
        self._memory = db_path == ":memory:"
        self._memory_lock = threading.RLock()
        self._memory_conn = None

        if not self._memory:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    def _log(self, msg: str, level: str = "info") -> None:
        self.host.log(f"repnet: store: {msg}", level=level)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout,
                               check_same_thread=not self._memory)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _get_conn(self):
        """Get thread-local database connection (the shared one for :memory:)."""
        if self._memory:
            with self._memory_lock:
                if self._memory_conn is None:
                    self._memory_conn = self._connect()
                conn = self._memory_conn
                try:
                    yield conn
                except Exception:
                    conn.rollback()
                    raise
            return

        if getattr(self._local, "conn", None) is None:
            self._local.conn = self._connect()

        try:
            yield self._local.conn
        except Exception:
            self._local.conn.rollback()
            raise

    def close(self) -> None:
        if self._memory:
            with self._memory_lock:
                if self._memory_conn is not None:
                    self._memory_conn.close()
                    self._memory_conn = None
            return
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # =========================================================================
    # SCHEMA
    # =========================================================================

    def initialize(self) -> None:
        """Create tables, upgrading a legacy statement table first if present."""
        with self._write_lock, self._get_conn() as conn:
            columns = self._table_columns(conn, "statement")
            if columns and self._stored_version(conn) < SCHEMA_VERSION:
                self._upgrade_statement_table(conn, columns)
            conn.executescript(SCHEMA)
            conn.executescript(INDEXES)
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
                (SCHEMA_VERSION, int(time.time()))
            )
            conn.commit()
        self._log(f"schema ready (v{SCHEMA_VERSION}) at {self.db_path}")

    @staticmethod
    def _table_columns(conn, table: str) -> List[str]:
        return [row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]

    def _stored_version(self, conn) -> int:
        if not self._table_columns(conn, "schema_version"):
            return 0
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] or 0

    def _upgrade_statement_table(self, conn, columns: List[str]) -> None:
        """
        Bring an older statement table to the current shape.

        - add cidr_min/cidr_max
        - add last_used/last_weight
        - drop entity_3/entity_4 by copying into a fresh table
        - rederive every bound from entity_1 in the current encoding
        - merge statements that now share a shape
        """
        if "cidr_min" not in columns:
            conn.execute("ALTER TABLE statement ADD COLUMN cidr_min TEXT")
            conn.execute("ALTER TABLE statement ADD COLUMN cidr_max TEXT")
            self._log("added cidr bound columns to statement table")
        for column, sql_type in (("last_used", "INTEGER"), ("last_weight", "REAL")):
            if column not in columns:
                conn.execute(f"ALTER TABLE statement ADD COLUMN {column} {sql_type}")

        if "entity_3" in columns or "entity_4" in columns:
            # Copy into new_statement then rename, so opinion's foreign keys
            # keep pointing at "statement"
            conn.commit()
            conn.execute("PRAGMA foreign_keys=OFF")
            conn.executescript(STATEMENT_TABLE.format(table="new_statement"))
            conn.execute(
                f"INSERT INTO new_statement ({STATEMENT_COLUMNS}) "
                f"SELECT {STATEMENT_COLUMNS} FROM statement"
            )
            conn.execute("DROP TABLE statement")
            conn.execute("ALTER TABLE new_statement RENAME TO statement")
            conn.commit()
            conn.execute("PRAGMA foreign_keys=ON")
            self._log("dropped unused entity_3/entity_4 columns from statement table")

        changed = self._fix_cidr(conn)
        if changed:
            self._log(f"rederived cidr bounds for {changed} legacy statements")
        self._merge_duplicate_statements(conn)

    def _merge_duplicate_statements(self, conn) -> int:
        """
        Fold statements with the same (name, entity_1, entity_2, cidr_min,
        cidr_max) into the lowest id. Their opinions move to the survivor,
        both as subject and as signer; an opinion that would duplicate one
        already there is dropped.
        """
        rows = conn.execute(
            "SELECT s.id AS id, g.keep AS keep FROM statement s JOIN ("
            "  SELECT name, entity_1, IFNULL(entity_2, '') AS e2,"
            "         IFNULL(cidr_min, '') AS lo, IFNULL(cidr_max, '') AS hi, MIN(id) AS keep"
            "  FROM statement GROUP BY name, entity_1, e2, lo, hi HAVING COUNT(*) > 1"
            ") g ON s.name = g.name AND s.entity_1 = g.entity_1"
            " AND IFNULL(s.entity_2, '') = g.e2 AND IFNULL(s.cidr_min, '') = g.lo"
            " AND IFNULL(s.cidr_max, '') = g.hi"
            " WHERE s.id != g.keep ORDER BY s.id"
        ).fetchall()
        opinion_columns = ("statement_id", "signer_id") if self._table_columns(conn, "opinion") else ()
        for row in rows:
            dup, keep = row["id"], row["keep"]
            for column in opinion_columns:
                conn.execute(f"UPDATE OR IGNORE opinion SET {column} = ? WHERE {column} = ?",
                             (keep, dup))
                dropped = conn.execute(f"DELETE FROM opinion WHERE {column} = ?", (dup,)).rowcount
                if dropped:
                    self._log(f"dropped {dropped} duplicate opinions of statement {dup}",
                              level="warn")
            conn.execute("DELETE FROM statement WHERE id = ?", (dup,))
            self._log(f"merged statement {dup} into statement {keep} of the same shape")
        return len(rows)

    def fix_cidr(self) -> int:
        """Recompute every stored bound in the current encoding. Returns rows changed."""
        with self._write_lock, self._get_conn() as conn:
            changed = self._fix_cidr(conn)
            conn.commit()
        self._log(f"fix_cidr updated {changed} statements")
        return changed

    def _fix_cidr(self, conn) -> int:
        changed = 0
        rows = conn.execute("SELECT id, entity_1, cidr_min, cidr_max FROM statement").fetchall()
        for row in rows:
            bounds = cidr_bounds(row["entity_1"])
            if bounds is None:
                lo, hi = None, None
            else:
                lo, hi = encode_bound(bounds[0]), encode_bound(bounds[1])
            if (lo, hi) != (row["cidr_min"], row["cidr_max"]):
                conn.execute(
                    "UPDATE statement SET cidr_min = ?, cidr_max = ? WHERE id = ?",
                    (lo, hi, row["id"])
                )
                changed += 1
        return changed

    # =========================================================================
    # READ PATH
    # =========================================================================

    def get_statement(self, statement_id: StatementId) -> Optional[Statement]:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT {STATEMENT_COLUMNS} FROM statement WHERE id = ?",
                (int(statement_id),)
            ).fetchone()
        return _row_to_statement(row) if row else None

    def find_statements_by_exact(self, name: str, entity_1: str,
                                 entity_2: Optional[str] = None) -> List[Statement]:
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {STATEMENT_COLUMNS} FROM statement "
                "WHERE name = ? AND entity_1 = ? AND entity_2 IS ? ORDER BY id",
                (name, entity_1, entity_2)
            ).fetchall()
        return [_row_to_statement(row) for row in rows]

    def scan_statements_by_cidr_bounds(self) -> List[Statement]:
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {STATEMENT_COLUMNS} FROM statement "
                "WHERE cidr_min IS NOT NULL OR cidr_max IS NOT NULL "
                "ORDER BY cidr_min, id"
            ).fetchall()
        return [_row_to_statement(row) for row in rows]

    def scan_unbounded_statements(self) -> List[Statement]:
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {STATEMENT_COLUMNS} FROM statement "
                "WHERE cidr_min IS NULL AND cidr_max IS NULL ORDER BY id"
            ).fetchall()
        return [_row_to_statement(row) for row in rows]

    def get_opinions(self, statement_id: StatementId) -> List[Opinion]:
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {OPINION_COLUMNS} FROM opinion WHERE statement_id = ? ORDER BY id",
                (int(statement_id),)
            ).fetchall()
        return [_row_to_opinion(row) for row in rows]

    def count_statements(self) -> int:
        with self._get_conn() as conn:
            return conn.execute("SELECT COUNT(*) FROM statement").fetchone()[0]

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    def add_statement(self, name: str, entity_1: str,
                      entity_2: Optional[str] = None) -> Tuple[Statement, bool]:
        """
        Find or insert a statement. Bounds are derived from entity_1.

        Returns:
            (statement, inserted)
        """
        if not name or not entity_1:
            raise InvalidRecord("statement needs a name and entity_1")
        bounds = cidr_bounds(entity_1)
        cidr_min = encode_bound(bounds[0]) if bounds else None
        cidr_max = encode_bound(bounds[1]) if bounds else None

        with self._write_lock, self._get_conn() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO statement (name, entity_1, entity_2, cidr_min, cidr_max) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (name, entity_1, entity_2, cidr_min, cidr_max)
                )
                conn.commit()
                inserted = True
                statement_id = cursor.lastrowid
            except sqlite3.IntegrityError:
                conn.rollback()
                inserted = False
                row = conn.execute(
                    "SELECT id FROM statement WHERE name = ? AND entity_1 = ? "
                    "AND entity_2 IS ? AND cidr_min IS ? AND cidr_max IS ?",
                    (name, entity_1, entity_2, cidr_min, cidr_max)
                ).fetchone()
                statement_id = row["id"]

        statement = Statement(
            id=StatementId(statement_id),
            name=name,
            entity_1=entity_1,
            entity_2=entity_2,
            cidr_min=cidr_min,
            cidr_max=cidr_max,
        )
        return statement, inserted

    def add_opinion(self, opinion: Opinion) -> Tuple[Opinion, bool]:
        """
        Append an opinion. Opinions are never updated in place.

        Returns:
            (stored opinion with id, inserted). inserted is False when an
            opinion with the same (statement_id, signer_id, date, serial)
            already exists; the existing one is returned.

        Raises:
            InvalidRecord: for malformed fields or unknown statement/signer ids
        """
        opinion.check()
        with self._write_lock, self._get_conn() as conn:
            try:
                cursor = conn.execute(
                    f"INSERT INTO opinion ({OPINION_COLUMNS}) VALUES (NULL, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        int(opinion.statement_id),
                        int(opinion.signer_id),
                        opinion.date,
                        1 if opinion.valid else 0,
                        opinion.serial,
                        opinion.certainty,
                        opinion.signature,
                        opinion.comment,
                    )
                )
                conn.commit()
                stored = Opinion(
                    id=cursor.lastrowid,
                    statement_id=opinion.statement_id,
                    signer_id=opinion.signer_id,
                    date=opinion.date,
                    valid=opinion.valid,
                    serial=opinion.serial,
                    certainty=opinion.certainty,
                    signature=opinion.signature,
                    comment=opinion.comment,
                )
                return stored, True
            except sqlite3.IntegrityError as e:
                conn.rollback()
                row = conn.execute(
                    f"SELECT {OPINION_COLUMNS} FROM opinion WHERE statement_id = ? "
                    "AND signer_id = ? AND date = ? AND serial = ?",
                    (int(opinion.statement_id), int(opinion.signer_id), opinion.date, opinion.serial)
                ).fetchone()
                if row is None:
                    # Not a duplicate, so a foreign key failed
                    raise InvalidRecord(f"opinion rejected: {e}")
                return _row_to_opinion(row), False

    def update_usage_hint(self, statement_id: StatementId, last_used: int,
                          last_weight: Optional[float]) -> bool:
        """Write the advisory last_used/last_weight hint for a statement."""
        with self._write_lock, self._get_conn() as conn:
            cursor = conn.execute(
                "UPDATE statement SET last_used = ?, last_weight = ? WHERE id = ?",
                (last_used, last_weight, int(statement_id))
            )
            conn.commit()
        return cursor.rowcount > 0

    def purge_statement(self, statement_id: StatementId) -> bool:
        """
        Administrative purge of a statement and the opinions about it.

        Refuses while other opinions still name the statement as their signer.
        """
        with self._write_lock, self._get_conn() as conn:
            in_use = conn.execute(
                "SELECT COUNT(*) FROM opinion WHERE signer_id = ? AND statement_id != ?",
                (int(statement_id), int(statement_id))
            ).fetchone()[0]
            if in_use:
                self._log(f"refusing to purge statement {statement_id}: "
                          f"signer of {in_use} opinions", level="warn")
                return False
            conn.execute("DELETE FROM opinion WHERE statement_id = ?", (int(statement_id),))
            cursor = conn.execute("DELETE FROM statement WHERE id = ?", (int(statement_id),))
            conn.commit()
        if cursor.rowcount:
            self._log(f"purged statement {statement_id}")
        return cursor.rowcount > 0


class TimedStore(RecordStore):
    """
    Wraps a RecordStore so every call has a deadline.

    Each call runs on a bounded thread pool; a call exceeding timeout_seconds,
    or any exception raised by the wrapped store, surfaces as
    StoreUnavailable. Nothing is retried here: retry with backoff is the
    caller's decision.

    A call that times out while running cannot be interrupted. Its worker is
    left to finish and later calls go to a fresh pool, so a recovered store
    is not starved by workers still stuck on it.
    """

    def __init__(self, store: RecordStore, timeout_seconds: float = 5.0,
                 max_workers: int = 4, host=None):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.max_workers = max_workers
        self.host = host or EngineLog()
        self._lock = threading.Lock()
        self._stuck = 0
        self._executor = self._new_executor()

    def _new_executor(self) -> concurrent.futures.ThreadPoolExecutor:
        return concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="repnet-store",
        )

    def _log(self, msg: str, level: str = "info") -> None:
        self.host.log(f"repnet: store: {msg}", level=level)

    @property
    def stuck_calls(self) -> int:
        """Timed-out calls still running on a worker."""
        with self._lock:
            return self._stuck

    def _stuck_call_done(self, future) -> None:
        with self._lock:
            self._stuck -= 1

    def _abandon(self, executor, future) -> None:
        """Retire the pool a running call timed out on."""
        with self._lock:
            self._stuck += 1
            stuck = self._stuck
            retire = self._executor is executor
            if retire:
                self._executor = self._new_executor()
        future.add_done_callback(self._stuck_call_done)
        if retire:
            executor.shutdown(wait=False)
        self._log(f"{stuck} timed-out store calls still running", level="warn")

    def call(self, method: str, fn: Callable[..., Any], *args) -> Any:
        while True:
            executor = self._executor
            if executor is None:
                raise StoreUnavailable("store executor is shut down")
            try:
                future = executor.submit(fn, *args)
                break
            except RuntimeError as e:
                # Retired by another caller's timeout: use its replacement
                if self._executor is executor:
                    raise StoreUnavailable(f"{method}: {e}")
        try:
            return future.result(timeout=self.timeout_seconds)
        except concurrent.futures.TimeoutError:
            if not future.cancel():
                self._abandon(executor, future)
            self._log(f"{method} timed out after {self.timeout_seconds}s", level="warn")
            raise StoreUnavailable(f"{method} timed out after {self.timeout_seconds}s")
        except StoreUnavailable:
            raise
        except Exception as e:
            self._log(f"{method} failed: {e}", level="warn")
            raise StoreUnavailable(f"{method} failed: {e}") from e

    def get_statement(self, statement_id):
        return self.call("get_statement", self.store.get_statement, statement_id)

    def find_statements_by_exact(self, name, entity_1, entity_2=None):
        return self.call("find_statements_by_exact", self.store.find_statements_by_exact,
                          name, entity_1, entity_2)

    def scan_statements_by_cidr_bounds(self):
        return self.call("scan_statements_by_cidr_bounds",
                          self.store.scan_statements_by_cidr_bounds)

    def scan_unbounded_statements(self):
        return self.call("scan_unbounded_statements", self.store.scan_unbounded_statements)

    def get_opinions(self, statement_id):
        return self.call("get_opinions", self.store.get_opinions, statement_id)

    def shutdown(self) -> None:
        """Shutdown store executor threads."""
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor:
            executor.shutdown(wait=False, cancel_futures=True)
