"""SQLite-backed implementation of the BaseDnsStore interface.

Inputs:
  - Constructed via a configuration mapping passed through StoreBackendConfig
    (db_path), typically through load_store_backend().

Outputs:
  - Concrete backend that keeps the same logical tuple, individual and ledger
    tables as the ClickHouse store, using plain columns and row-level upserts.

Notes:
  - The pipeline is the same (drop/create staging, bulk load, merge), but the
    merge is an ``INSERT ... ON CONFLICT DO UPDATE`` that combines min(first),
    max(last), sum(count) and the ttl of the latest observation, and update()
    runs inside a single transaction. A failed batch therefore leaves no
    partial aggregate state behind, unlike the ClickHouse backend where a
    batch may be half merged.
  - Re-merging a batch is not idempotent on either backend; callers gate it
    with the indexing ledger.
  - Counts are stored as SQLite INTEGER (signed 64-bit). A batch that would
    push a count past 2**63 - 1 fails with IngestError and is rolled back;
    the CHECK on ``typeof(count)`` stops SQLite from silently turning the
    overflowed sum into a REAL.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..aggregate import AggregationResult, Which
from ..codec import INDIVIDUAL_COLUMNS, TUPLE_COLUMNS, Row
from ..errors import IngestError, QueryError, SchemaError, StoreConnectionError, StoreError
from .base import (
    INDIVIDUAL_STAGING,
    INDIVIDUAL_TABLE,
    LEDGER_COLUMNS,
    LEDGER_TABLE,
    TUPLES_STAGING,
    TUPLES_TABLE,
    BaseDnsStore,
    IndividualResult,
    TupleResult,
    UpdateResult,
    search_terms,
    which_branches,
)

logger = logging.getLogger(__name__)

SCHEMA = [
    f"""
    CREATE TABLE IF NOT EXISTS {TUPLES_TABLE} (
        query  TEXT NOT NULL,
        type   TEXT NOT NULL,
        answer TEXT NOT NULL,
        ttl    INTEGER NOT NULL DEFAULT 0,
        first  INTEGER NOT NULL,
        last   INTEGER NOT NULL,
        count  INTEGER NOT NULL DEFAULT 0 CHECK (typeof(count) = 'integer'),
        PRIMARY KEY (query, type, answer)
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_tuples_answer
    ON {TUPLES_TABLE}(answer)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {INDIVIDUAL_TABLE} (
        which TEXT NOT NULL CHECK (which IN ('Q', 'A')),
        value TEXT NOT NULL,
        first INTEGER NOT NULL,
        last  INTEGER NOT NULL,
        count INTEGER NOT NULL DEFAULT 0 CHECK (typeof(count) = 'integer'),
        PRIMARY KEY (which, value)
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_individual_value
    ON {INDIVIDUAL_TABLE}(value)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
        ts               INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER)),
        filename         TEXT NOT NULL,
        aggregation_time REAL NOT NULL,
        total_records    INTEGER NOT NULL,
        skipped_records  INTEGER NOT NULL,
        tuples           INTEGER NOT NULL,
        individual       INTEGER NOT NULL,
        store_time       REAL NOT NULL,
        inserted         INTEGER NOT NULL,
        updated          INTEGER NOT NULL
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_filenames_filename
    ON {LEDGER_TABLE}(filename)
    """,
]

TUPLES_STAGING_DDL = f"""
    CREATE TABLE {TUPLES_STAGING} (
        query  TEXT NOT NULL,
        type   TEXT NOT NULL,
        answer TEXT NOT NULL,
        ttl    INTEGER NOT NULL,
        first  INTEGER NOT NULL,
        last   INTEGER NOT NULL,
        count  INTEGER NOT NULL
    )
"""

INDIVIDUAL_STAGING_DDL = f"""
    CREATE TABLE {INDIVIDUAL_STAGING} (
        which TEXT NOT NULL CHECK (which IN ('Q', 'A')),
        value TEXT NOT NULL,
        first INTEGER NOT NULL,
        last  INTEGER NOT NULL,
        count INTEGER NOT NULL
    )
"""

# The correlated subquery picks the ttl of the latest staged observation for
# each key; the upsert keeps the stored ttl when it was seen later.
MERGE_TUPLES = f"""
    INSERT INTO {TUPLES_TABLE} (query, type, answer, ttl, first, last, count)
    SELECT s.query, s.type, s.answer,
           (SELECT t.ttl FROM {TUPLES_STAGING} t
             WHERE t.query = s.query AND t.type = s.type AND t.answer = s.answer
             ORDER BY t.last DESC, t.rowid DESC LIMIT 1),
           MIN(s.first), MAX(s.last), SUM(s.count)
    FROM {TUPLES_STAGING} s
    WHERE true
    GROUP BY s.query, s.type, s.answer
    ON CONFLICT(query, type, answer) DO UPDATE SET
        ttl = CASE WHEN excluded.last >= {TUPLES_TABLE}.last
                   THEN excluded.ttl ELSE {TUPLES_TABLE}.ttl END,
        first = MIN({TUPLES_TABLE}.first, excluded.first),
        last = MAX({TUPLES_TABLE}.last, excluded.last),
        count = {TUPLES_TABLE}.count + excluded.count
"""

MERGE_INDIVIDUALS = f"""
    INSERT INTO {INDIVIDUAL_TABLE} (which, value, first, last, count)
    SELECT which, value, MIN(first), MAX(last), SUM(count)
    FROM {INDIVIDUAL_STAGING}
    WHERE true
    GROUP BY which, value
    ON CONFLICT(which, value) DO UPDATE SET
        first = MIN({INDIVIDUAL_TABLE}.first, excluded.first),
        last = MAX({INDIVIDUAL_TABLE}.last, excluded.last),
        count = {INDIVIDUAL_TABLE}.count + excluded.count
"""

COUNT_TUPLE_KEYS = f"""
    SELECT COUNT(*),
           SUM(EXISTS (SELECT 1 FROM {TUPLES_TABLE} p
                        WHERE p.query = k.query AND p.type = k.type
                          AND p.answer = k.answer))
    FROM (SELECT DISTINCT query, type, answer FROM {TUPLES_STAGING}) k
"""

COUNT_INDIVIDUAL_KEYS = f"""
    SELECT COUNT(*),
           SUM(EXISTS (SELECT 1 FROM {INDIVIDUAL_TABLE} p
                        WHERE p.which = k.which AND p.value = k.value))
    FROM (SELECT DISTINCT which, value FROM {INDIVIDUAL_STAGING}) k
"""

TUPLE_SELECT = f"""
    SELECT query, type, answer, ttl AS ttl_last, first AS first_seen,
           last AS last_seen, count AS total
    FROM {TUPLES_TABLE}
    WHERE {{where}}
    ORDER BY query, answer, type
"""

INDIVIDUAL_SELECT = f"""
    SELECT which, value, first AS first_seen, last AS last_seen, count AS total
    FROM {INDIVIDUAL_TABLE}
    WHERE {{where}}
    ORDER BY value, which
"""

_BULK_COLUMNS: Dict[str, Tuple[str, ...]] = {
    TUPLES_STAGING: TUPLE_COLUMNS,
    INDIVIDUAL_STAGING: INDIVIDUAL_COLUMNS,
    LEDGER_TABLE: LEDGER_COLUMNS,
}


class SqliteDnsStore(BaseDnsStore):
    """SQLite-backed aggregate store with transactional upserts."""

    aliases = ("sqlite", "sqlite3")

    default_config = {"db_path": "./var/dnsagg.db"}

    staging_ddl = {
        TUPLES_STAGING: TUPLES_STAGING_DDL,
        INDIVIDUAL_STAGING: INDIVIDUAL_STAGING_DDL,
    }

    def __init__(self, db_path: str = ":memory:", **_: Any) -> None:
        """Open the database and ensure the permanent schema exists.

        Inputs:
            db_path: Path to the SQLite database file, or ":memory:".

        Outputs:
            None.

        Raises:
            StoreConnectionError: When the database cannot be opened.
        """

        self._db_path = db_path
        self._lock = threading.RLock()
        try:
            dir_path = os.path.dirname(db_path) if db_path != ":memory:" else ""
            if dir_path:
                os.makedirs(dir_path, exist_ok=True)
            # Autocommit mode; transactions are opened explicitly.
            self._conn = sqlite3.connect(
                db_path, check_same_thread=False, isolation_level=None
            )
        except (OSError, sqlite3.Error) as exc:
            raise StoreConnectionError("connect", f"cannot open {db_path}: {exc}") from exc
        self.init()

    # ------------------------------------------------------------------
    # Health and lifecycle
    # ------------------------------------------------------------------
    def health_check(self) -> bool:
        """Return True when the underlying SQLite store is usable."""

        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
            return True
        except Exception:
            return False

    def close(self) -> None:
        try:
            with self._lock:
                self._conn.close()
        except Exception:  # pragma: no cover - defensive
            logger.exception("Error while closing SqliteDnsStore connection")

    def init(self) -> None:
        with self._lock:
            try:
                for stmt in SCHEMA:
                    self._conn.execute(stmt)
            except sqlite3.Error as exc:
                raise SchemaError("init", str(exc)) from exc

    def clear(self) -> None:
        with self._lock:
            try:
                for table in (LEDGER_TABLE, INDIVIDUAL_TABLE, TUPLES_TABLE):
                    self._conn.execute(f"DELETE FROM {table}")
            except sqlite3.Error as exc:
                raise StoreError("clear", str(exc)) from exc

    def begin(self) -> None:
        with self._lock:
            try:
                self._conn.execute("BEGIN")
            except sqlite3.Error as exc:
                raise StoreError("begin", str(exc)) from exc

    def commit(self) -> None:
        with self._lock:
            if not self._conn.in_transaction:
                return
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                raise StoreError("commit", str(exc)) from exc

    # ------------------------------------------------------------------
    # Statement hooks
    # ------------------------------------------------------------------
    def execute(self, sql: str) -> None:
        with self._lock:
            try:
                self._conn.execute(sql)
            except sqlite3.Error as exc:
                raise StoreError("execute", str(exc)) from exc

    def send_bulk(self, table: str, rows: Iterable[Row]) -> None:
        """Brief: Insert rows into a staging or ledger table via executemany.

        Inputs:
          - table: One of tuples_temp, individual_temp, filenames.
          - rows: Iterable of row dicts; consumed lazily.

        Outputs:
          - None.
        """

        columns = _BULK_COLUMNS.get(table)
        if columns is None:
            raise ValueError(f"Invalid table name {table!r}")
        sql = "INSERT INTO %s (%s) VALUES (%s)" % (
            table,
            ", ".join(columns),
            ", ".join("?" for _ in columns),
        )
        with self._lock:
            try:
                self._conn.executemany(
                    sql, (tuple(row[c] for c in columns) for row in rows)
                )
            except (sqlite3.Error, OverflowError) as exc:
                raise StoreError("send_bulk", str(exc)) from exc

    def _merge(self, count_sql: str, merge_sql: str) -> Tuple[int, int]:
        with self._lock:
            try:
                total, existing = self._conn.execute(count_sql).fetchone()
                self._conn.execute(merge_sql)
            except sqlite3.Error as exc:
                raise StoreError("commit_merge", str(exc)) from exc
        updated = int(existing or 0)
        return int(total or 0) - updated, updated

    def _merge_tuples(self) -> Tuple[int, int]:
        return self._merge(COUNT_TUPLE_KEYS, MERGE_TUPLES)

    def _merge_individuals(self) -> Tuple[int, int]:
        return self._merge(COUNT_INDIVIDUAL_KEYS, MERGE_INDIVIDUALS)

    def update(self, result: AggregationResult) -> UpdateResult:
        """Brief: Run stage -> merge atomically.

        Inputs:
          - result: Aggregated batch.

        Outputs:
          - UpdateResult.

        Notes:
          - When the caller already opened a transaction with begin(), the
            batch joins it and commit() is left to the caller.
        """

        with self._lock:
            own_tx = not self._conn.in_transaction
            if own_tx:
                self._conn.execute("BEGIN")
            try:
                out = super().update(result)
            except BaseException:
                if own_tx and self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
            if own_tx:
                self._conn.execute("COMMIT")
            return out

    # ------------------------------------------------------------------
    # Indexing ledger
    # ------------------------------------------------------------------
    def is_indexed(self, batch_id: str) -> bool:
        with self._lock:
            try:
                row = self._conn.execute(
                    f"SELECT filename FROM {LEDGER_TABLE} WHERE filename = ? LIMIT 1",
                    (batch_id,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise QueryError("is_indexed", str(exc)) from exc
        return row is not None

    def set_indexed(
        self,
        batch_id: str,
        aggregation: AggregationResult,
        update: UpdateResult,
    ) -> None:
        try:
            self.send_bulk(LEDGER_TABLE, [self._ledger_row(batch_id, aggregation, update)])
        except StoreConnectionError:
            raise
        except StoreError as exc:
            raise IngestError("set_indexed", exc.message, stage="ledger") from exc

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------
    def _select(self, operation: str, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            try:
                cur = self._conn.execute(sql, params)
                names = [d[0] for d in cur.description]
                return [dict(zip(names, row)) for row in cur.fetchall()]
            except sqlite3.Error as exc:
                raise QueryError(operation, str(exc)) from exc

    def find_query_tuples(self, query: str) -> List[TupleResult]:
        _, rquery = search_terms(query)
        if not rquery:
            return []
        rows = self._select(
            "find_query_tuples", TUPLE_SELECT.format(where="query = :rq"), {"rq": rquery}
        )
        return self._tuple_results(rows)

    def find_tuples(self, value: str) -> List[TupleResult]:
        natural, rvalue = search_terms(value)
        if not natural:
            return []
        rows = self._select(
            "find_tuples",
            TUPLE_SELECT.format(where="query = :rq OR answer = :q"),
            {"rq": rvalue, "q": natural},
        )
        return self._tuple_results(rows)

    def like_tuples(self, value: str) -> List[TupleResult]:
        natural, rvalue = search_terms(value)
        if not natural:
            return []
        where = (
            "query = :rq OR substr(query, 1, length(:rq_dot)) = :rq_dot "
            "OR answer = :q OR substr(answer, -length(:dot_q)) = :dot_q"
        )
        rows = self._select(
            "like_tuples",
            TUPLE_SELECT.format(where=where),
            {"rq": rvalue, "rq_dot": rvalue + ".", "q": natural, "dot_q": "." + natural},
        )
        return self._tuple_results(rows)

    def _individual_lookup(
        self,
        operation: str,
        which: Optional[Which | str],
        answer_pred: str,
        query_pred: str,
        params: Dict[str, Any],
    ) -> List[IndividualResult]:
        want_q, want_a = which_branches(which, operation)
        branches = []
        if want_a:
            branches.append(f"(which = 'A' AND ({answer_pred}))")
        if want_q:
            branches.append(f"(which = 'Q' AND ({query_pred}))")
        rows = self._select(
            operation, INDIVIDUAL_SELECT.format(where=" OR ".join(branches)), params
        )
        return self._individual_results(rows)

    def find_individual(
        self, value: str, which: Optional[Which | str] = None
    ) -> List[IndividualResult]:
        natural, rvalue = search_terms(value)
        if not natural:
            return []
        return self._individual_lookup(
            "find_individual",
            which,
            "value = :v",
            "value = :rv",
            {"v": natural, "rv": rvalue},
        )

    def like_individual(
        self, value: str, which: Optional[Which | str] = None
    ) -> List[IndividualResult]:
        natural, rvalue = search_terms(value)
        if not natural:
            return []
        return self._individual_lookup(
            "like_individual",
            which,
            "value = :v OR substr(value, -length(:dot_v)) = :dot_v",
            "value = :rv OR substr(value, 1, length(:rv_dot)) = :rv_dot",
            {
                "v": natural,
                "dot_v": "." + natural,
                "rv": rvalue,
                "rv_dot": rvalue + ".",
            },
        )
