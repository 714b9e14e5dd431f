from __future__ import annotations

"""ClickHouse-backed implementation of the BaseDnsStore interface.

Inputs:
  - Constructed via a configuration mapping passed through StoreBackendConfig
    with backend-specific fields such as url, database, user, password and
    the per-call timeouts.

Outputs:
  - Concrete backend that keeps tuple and individual statistics as
    AggregatingMergeTree state (anyLast/min/max/sum) and answers lookups by
    merging that state at read time.

Notes:
  - All traffic goes over the ClickHouse HTTP interface through a single
    requests.Session. Statements are sent as the POST body; reads use
    server-side query parameters (``{name:String}`` placeholders bound via
    ``param_<name>`` URL arguments) so search terms are never interpolated
    into SQL text.
  - ClickHouse has no multi-statement transactions and no row deletes for
    this table type, so begin() and delete_older_than() raise
    UnsupportedOperation and commit() only logs.
  - Rows written by a merge come from the X-ClickHouse-Summary header.
    Existing keys are folded lazily by the engine, so ``updated`` is always 0.
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from ..aggregate import AggregationResult, Which
from ..codec import Row, json_each_row
from ..errors import (
    QueryError,
    SchemaError,
    StoreConnectionError,
    StoreError,
    StoreTimeoutError,
)
from .base import (
    INDIVIDUAL_STAGING,
    INDIVIDUAL_TABLE,
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

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SCHEMA = [
    f"""
CREATE TABLE IF NOT EXISTS {TUPLES_TABLE} (
    query String,
    type String,
    answer String,
    ttl AggregateFunction(anyLast, UInt16),
    first AggregateFunction(min, DateTime('UTC')),
    last AggregateFunction(max, DateTime('UTC')),
    count AggregateFunction(sum, UInt64)
) ENGINE = AggregatingMergeTree()
ORDER BY (query, type, answer)
""",
    f"""
CREATE TABLE IF NOT EXISTS {INDIVIDUAL_TABLE} (
    which Enum8('Q' = 0, 'A' = 1),
    value String,
    first AggregateFunction(min, DateTime('UTC')),
    last AggregateFunction(max, DateTime('UTC')),
    count AggregateFunction(sum, UInt64)
) ENGINE = AggregatingMergeTree()
ORDER BY (which, value)
""",
    f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    day Date DEFAULT toDate(ts),
    ts DateTime DEFAULT now(),
    filename String,
    aggregation_time Float64,
    total_records UInt64,
    skipped_records UInt64,
    tuples UInt64,
    individual UInt64,
    store_time Float64,
    inserted UInt64,
    updated UInt64
) ENGINE = MergeTree()
PARTITION BY toYYYYMM(day)
ORDER BY filename
""",
]

TUPLES_STAGING_DDL = f"""
CREATE TABLE {TUPLES_STAGING} (
    query String,
    type String,
    answer String,
    ttl UInt16,
    first DateTime('UTC'),
    last DateTime('UTC'),
    count UInt64
) ENGINE = Log"""

INDIVIDUAL_STAGING_DDL = f"""
CREATE TABLE {INDIVIDUAL_STAGING} (
    which Enum8('Q' = 0, 'A' = 1),
    value String,
    first DateTime('UTC'),
    last DateTime('UTC'),
    count UInt64
) ENGINE = Log"""

MERGE_TUPLES = (
    f"INSERT INTO {TUPLES_TABLE} (query, type, answer, ttl, first, last, count) "
    "SELECT query, type, answer, anyLastState(ttl), minState(first), "
    f"maxState(last), sumState(count) FROM {TUPLES_STAGING} "
    "GROUP BY query, type, answer"
)

MERGE_INDIVIDUALS = (
    f"INSERT INTO {INDIVIDUAL_TABLE} (which, value, first, last, count) "
    "SELECT which, value, minState(first), maxState(last), sumState(count) "
    f"FROM {INDIVIDUAL_STAGING} GROUP BY which, value"
)

TUPLE_SELECT = (
    "SELECT query, type, answer, anyLastMerge(ttl) AS ttl_last, "
    "toUnixTimestamp(minMerge(first)) AS first_seen, "
    "toUnixTimestamp(maxMerge(last)) AS last_seen, "
    "sumMerge(count) AS total "
    f"FROM {TUPLES_TABLE} WHERE {{where}} "
    "GROUP BY query, type, answer ORDER BY query, answer, type"
)

INDIVIDUAL_SELECT = (
    "SELECT which, value, "
    "toUnixTimestamp(minMerge(first)) AS first_seen, "
    "toUnixTimestamp(maxMerge(last)) AS last_seen, "
    "sumMerge(count) AS total "
    f"FROM {INDIVIDUAL_TABLE} WHERE {{where}} "
    "GROUP BY which, value ORDER BY value, which"
)


class ClickHouseStore(BaseDnsStore):
    """ClickHouse-backed aggregate store spoken to over HTTP.

    Inputs (constructor):
        url: Base URL of the ClickHouse HTTP interface
            (for example, "http://127.0.0.1:8123").
        database: Database name sent with every request (default "default").
        user: Optional user name (X-ClickHouse-User header).
        password: Optional password (X-ClickHouse-Key header).
        timeout: Timeout in seconds for DDL and merge statements (default 5).
        bulk_timeout: Timeout in seconds for bulk loads (default 60).
        query_timeout: Timeout in seconds for lookups (default 30).
        ping: When True (default), verify the server answers /ping during
            construction.

    Outputs:
        Initialized ClickHouseStore.

    Raises:
        StoreConnectionError: When the startup ping fails.
    """

    aliases = ("clickhouse", "ch")

    default_config = {
        "url": "http://127.0.0.1:8123",
        "database": "default",
        "timeout": 5.0,
        "bulk_timeout": 60.0,
        "query_timeout": 30.0,
    }

    staging_ddl = {
        TUPLES_STAGING: TUPLES_STAGING_DDL,
        INDIVIDUAL_STAGING: INDIVIDUAL_STAGING_DDL,
    }

    def __init__(
        self,
        url: str = "http://127.0.0.1:8123",
        database: str = "default",
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 5.0,
        bulk_timeout: float = 60.0,
        query_timeout: float = 30.0,
        ping: bool = True,
        **_: Any,
    ) -> None:
        self._url = str(url).rstrip("/")
        self._database = str(database)
        self._timeout = float(timeout)
        self._bulk_timeout = float(bulk_timeout)
        self._query_timeout = float(query_timeout)

        self._session = requests.Session()
        headers: Dict[str, str] = {}
        if user is not None:
            headers["X-ClickHouse-User"] = str(user)
        if password is not None:
            headers["X-ClickHouse-Key"] = str(password)
        self._headers = headers
        self._params: Dict[str, str] = {"database": self._database}

        if ping:
            self._ping("connect")

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------
    def _ping(self, operation: str) -> None:
        try:
            resp = self._session.get(
                f"{self._url}/ping", headers=self._headers, timeout=self._timeout
            )
        except requests.Timeout as exc:
            raise StoreTimeoutError(operation, f"ping timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise StoreConnectionError(operation, f"ClickHouse unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise StoreConnectionError(
                operation, f"ClickHouse ping failed: HTTP {resp.status_code}"
            )

    def _post(
        self,
        operation: str,
        sql: str,
        *,
        body: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        error_cls: type = StoreError,
    ) -> requests.Response:
        """Brief: POST one statement to the HTTP interface.

        Inputs:
          - operation: Store operation name used in raised errors.
          - sql: Statement text. Sent as the body unless ``body`` is given,
            in which case it travels as the ``query`` URL parameter.
          - body: Optional request body (bytes or an iterator of bytes for a
            streamed, chunked upload).
          - params: Optional server-side query parameters.
          - timeout: Client-side timeout in seconds.
          - error_cls: StoreError subclass raised for HTTP and transport errors.

        Outputs:
          - requests.Response with status < 400.

        Raises:
          - StoreTimeoutError on timeouts, StoreConnectionError when the
            server is unreachable or rejects credentials, ``error_cls``
            otherwise (with the response body as detail).
        """

        query_params: Dict[str, str] = dict(self._params)
        for name, value in (params or {}).items():
            query_params[f"param_{name}"] = str(value)
        if body is None:
            data: Any = sql.encode("utf-8")
        else:
            query_params["query"] = sql
            data = body

        logger.debug("ClickHouse %s: %s", operation, " ".join(sql.split()))
        wait = self._timeout if timeout is None else float(timeout)
        try:
            resp = self._session.post(
                self._url,
                params=query_params,
                data=data,
                headers=self._headers,
                timeout=wait,
            )
        except requests.Timeout as exc:
            raise StoreTimeoutError(operation, f"timed out after {wait:g}s") from exc
        except requests.ConnectionError as exc:
            raise StoreConnectionError(operation, f"ClickHouse unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise error_cls(operation, str(exc)) from exc

        if resp.status_code in (401, 403):
            raise StoreConnectionError(
                operation, f"ClickHouse rejected credentials: {resp.text.strip()}"
            )
        if resp.status_code >= 400:
            raise error_cls(operation, f"ClickHouse error: {resp.text.strip()}")
        return resp

    @staticmethod
    def _written_rows(resp: requests.Response) -> int:
        """Return written_rows from the X-ClickHouse-Summary header, or 0."""

        raw = (getattr(resp, "headers", None) or {}).get("X-ClickHouse-Summary")
        if not raw:
            return 0
        try:
            return int(json.loads(raw).get("written_rows", 0))
        except (TypeError, ValueError):
            logger.debug("Unparseable X-ClickHouse-Summary header: %r", raw)
            return 0

    def _select(
        self, operation: str, sql: str, params: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        resp = self._post(
            operation,
            sql + " FORMAT JSONEachRow",
            params=params,
            timeout=self._query_timeout,
            error_cls=QueryError,
        )
        rows: List[Dict[str, Any]] = []
        for line in resp.text.splitlines():
            line = line.strip()
            if line:
                rows.append(json.loads(line))
        return rows

    # ------------------------------------------------------------------
    # Health and lifecycle
    # ------------------------------------------------------------------
    def health_check(self) -> bool:
        """Return True when ClickHouse answers /ping."""

        try:
            self._ping("health_check")
            return True
        except StoreError:
            return False

    def close(self) -> None:
        try:
            self._session.close()
        except Exception:  # pragma: no cover - defensive
            logger.exception("Error while closing ClickHouse session")

    def init(self) -> None:
        for stmt in SCHEMA:
            self._post("init", stmt, error_cls=SchemaError)

    def clear(self) -> None:
        for table in (LEDGER_TABLE, INDIVIDUAL_TABLE, TUPLES_TABLE):
            self._post("clear", f"TRUNCATE TABLE IF EXISTS {table}")

    # ------------------------------------------------------------------
    # Statement hooks
    # ------------------------------------------------------------------
    def execute(self, sql: str) -> None:
        self._post("execute", sql)

    def send_bulk(self, table: str, rows: Iterable[Row]) -> None:
        """Brief: Stream rows into ``table`` as JSONEachRow.

        Inputs:
          - table: Destination table name (plain identifier).
          - rows: Iterable of row dicts; serialized lazily so only one row
            is held in memory at a time.

        Outputs:
          - None.

        Raises:
          - ValueError: When ``table`` is not a plain identifier.
          - StoreError (or subclass): On HTTP status >= 400, carrying the
            response body.
        """

        if not _IDENT.match(table):
            raise ValueError(f"Invalid table name {table!r}")
        self._post(
            "send_bulk",
            f"INSERT INTO {table} FORMAT JSONEachRow",
            body=json_each_row(rows),
            timeout=self._bulk_timeout,
        )

    def _merge_tuples(self) -> Tuple[int, int]:
        resp = self._post("commit_merge", MERGE_TUPLES)
        return self._written_rows(resp), 0

    def _merge_individuals(self) -> Tuple[int, int]:
        resp = self._post("commit_merge", MERGE_INDIVIDUALS)
        return self._written_rows(resp), 0

    # ------------------------------------------------------------------
    # Indexing ledger
    # ------------------------------------------------------------------
    def is_indexed(self, batch_id: str) -> bool:
        rows = self._select(
            "is_indexed",
            f"SELECT filename FROM {LEDGER_TABLE} WHERE filename = {{batch:String}} LIMIT 1",
            {"batch": batch_id},
        )
        return bool(rows)

    def set_indexed(
        self,
        batch_id: str,
        aggregation: AggregationResult,
        update: UpdateResult,
    ) -> None:
        self._run_stage(
            "set_indexed",
            "ledger",
            self.send_bulk,
            LEDGER_TABLE,
            [self._ledger_row(batch_id, aggregation, update)],
        )

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------
    def find_query_tuples(self, query: str) -> List[TupleResult]:
        _, rquery = search_terms(query)
        if not rquery:
            return []
        rows = self._select(
            "find_query_tuples",
            TUPLE_SELECT.format(where="query = {rq:String}"),
            {"rq": rquery},
        )
        return self._tuple_results(rows)

    def find_tuples(self, value: str) -> List[TupleResult]:
        natural, rvalue = search_terms(value)
        if not natural:
            return []
        rows = self._select(
            "find_tuples",
            TUPLE_SELECT.format(where="query = {rq:String} OR answer = {q:String}"),
            {"rq": rvalue, "q": natural},
        )
        return self._tuple_results(rows)

    def like_tuples(self, value: str) -> List[TupleResult]:
        natural, rvalue = search_terms(value)
        if not natural:
            return []
        where = (
            "query = {rq:String} OR startsWith(query, {rq_dot:String}) "
            "OR answer = {q:String} OR endsWith(answer, {dot_q:String})"
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
            "value = {v:String}",
            "value = {rv:String}",
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
            "value = {v:String} OR endsWith(value, {dot_v:String})",
            "value = {rv:String} OR startsWith(value, {rv_dot:String})",
            {
                "v": natural,
                "dot_v": "." + natural,
                "rv": rvalue,
                "rv_dot": rvalue + ".",
            },
        )
