"""Abstract base class for DNS aggregate store backends.

This module defines:

- StoreBackendConfig: Pydantic model describing a single backend
  configuration entry (backend identifier plus backend-specific config).
- TupleResult / IndividualResult / UpdateResult: values returned to callers.
- BaseDnsStore: the store capability. Concrete backends (ClickHouse,
  SQLite) implement the statement-level hooks; the ingest pipeline
  (stage -> merge) and result decoding are shared here.

Notes:
  - Tuple query names and Query-typed individual values are stored reversed;
    tuple answers and Answer-typed individual values are stored in natural
    order. Every lookup reverses the caller's term before comparing against
    a reversed column and reverses stored values back before returning them.
  - The backing engine may not offer multi-statement transactions, so the
    recovery boundary is the pipeline order: stage, merge, then the ledger
    write performed by the caller (see dnsagg.ingest).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..aggregate import AggregationResult, Which
from ..codec import Row, individual_rows, tuple_rows
from ..errors import (
    IngestError,
    QueryError,
    StoreConnectionError,
    StoreError,
    UnsupportedOperation,
)
from ..reverse import normalize_name, reverse

logger = logging.getLogger(__name__)

TUPLES_TABLE = "tuples"
INDIVIDUAL_TABLE = "individual"
LEDGER_TABLE = "filenames"
TUPLES_STAGING = "tuples_temp"
INDIVIDUAL_STAGING = "individual_temp"

LEDGER_COLUMNS = (
    "filename",
    "aggregation_time",
    "total_records",
    "skipped_records",
    "tuples",
    "individual",
    "store_time",
    "inserted",
    "updated",
)


class StoreBackendConfig(BaseModel):
    """Brief: Typed configuration model for a single store backend.

    Inputs (constructor fields):
      - name: Optional logical instance name. When omitted, the backend
        alias is used.
      - backend: Short alias (for example, "clickhouse", "sqlite") or a
        fully-qualified dotted import path to a BaseDnsStore subclass.
      - config: Free-form mapping of backend-specific options (for example,
        url and timeouts for ClickHouse, db_path for SQLite).

    Outputs:
      - StoreBackendConfig instance with normalized types.
    """

    name: Optional[str] = Field(
        default=None,
        description="Logical instance name for the configured backend.",
    )
    backend: str = Field(default="clickhouse", description="Backend alias or dotted import path")
    config: Dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific configuration options",
    )

    class Config:
        extra = "allow"


@dataclass(frozen=True)
class TupleResult:
    """One merged (query, type, answer) row.

    ``count`` is unsigned 64-bit on ClickHouse; SQLite caps it at 2**63 - 1
    and rejects batches that would exceed that.
    """

    query: str
    type: str
    answer: str
    ttl: int
    first: datetime
    last: datetime
    count: int


@dataclass(frozen=True)
class IndividualResult:
    which: Which
    value: str
    first: datetime
    last: datetime
    count: int


@dataclass(frozen=True)
class UpdateResult:
    """Brief: Outcome of merging one batch.

    Inputs (fields):
      - duration: Wall-clock seconds spent.
      - inserted: Aggregate rows written (new keys where the backend can tell).
      - updated: Existing keys folded into; 0 when the engine cannot tell.
    """

    duration: float = 0.0
    inserted: int = 0
    updated: int = 0


MergeResult = UpdateResult


def _to_datetime(raw: Any) -> datetime:
    return datetime.fromtimestamp(int(raw), tz=timezone.utc)


def search_terms(value: str) -> Tuple[str, str]:
    """Brief: Normalize a caller search term into (natural, reversed) forms.

    Inputs:
      - value: Raw search term.

    Outputs:
      - (natural, reversed): lowercase term without trailing dot, and its
        character-reversed form for comparison against reversed columns.
    """

    natural = normalize_name(value)
    return natural, reverse(natural)


def which_branches(
    which: Optional[Which | str], operation: str = "find_individual"
) -> Tuple[bool, bool]:
    """Return (include_query_rows, include_answer_rows) for an optional filter.

    Raises QueryError, tagged with ``operation``, for anything but Q or A.
    """

    if which is None:
        return True, True
    try:
        w = Which(which)
    except ValueError as exc:
        raise QueryError(operation, f"invalid which {which!r}; expected Q or A") from exc
    return w is Which.QUERY, w is Which.ANSWER


class BaseDnsStore:
    """Brief: Base class for DNS tuple/individual aggregate stores.

    Implementations are responsible for:
      - Creating and clearing the permanent tuple, individual and ledger
        tables.
      - Executing statements and bulk loads (used by the shared stage step).
      - Folding staged rows into the permanent tables (_merge_tuples and
        _merge_individuals).
      - Answering the exact, bidirectional and suffix lookups.

    Inputs (constructor):
      - **config: Backend-specific configuration mapping.

    Outputs:
      - Initialized backend instance when implemented by a subclass.
    """

    #: Staging DDL keyed by staging table name; subclasses override.
    staging_ddl: Dict[str, str] = {}

    def __init__(self, **config: object) -> None:  # pragma: no cover - interface only
        raise NotImplementedError("BaseDnsStore.__init__ must be implemented")

    # ------------------------------------------------------------------
    # Health and lifecycle
    # ------------------------------------------------------------------
    def health_check(self) -> bool:  # pragma: no cover - interface only
        """Brief: Return True when the underlying backend is usable."""

        raise NotImplementedError("health_check() must be implemented by a subclass")

    def close(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError("close() must be implemented by a subclass")

    def init(self) -> None:  # pragma: no cover - interface only
        """Brief: Idempotently create the permanent tables.

        Raises:
          - SchemaError: When any DDL statement fails.
        """

        raise NotImplementedError("init() must be implemented by a subclass")

    def clear(self) -> None:  # pragma: no cover - interface only
        """Brief: Delete all rows from the tuple, individual and ledger tables."""

        raise NotImplementedError("clear() must be implemented by a subclass")

    def begin(self) -> None:
        """Brief: Start a transaction; unsupported unless a backend overrides it.

        Raises:
          - UnsupportedOperation: Always, in the base class.
        """

        raise UnsupportedOperation(
            "begin", f"{self.__class__.__name__} doesn't support transactions"
        )

    def commit(self) -> None:
        """Brief: Commit a transaction; a logged no-op in the base class."""

        logger.info("%s doesn't support transactions", self.__class__.__name__)

    def delete_older_than(self, days: int) -> int:
        """Brief: Retention is not provided by this store.

        Inputs:
          - days: Age threshold in days.

        Outputs:
          - Never returns.

        Raises:
          - UnsupportedOperation: Always.
        """

        raise UnsupportedOperation(
            "delete_older_than", f"{self.__class__.__name__} doesn't support delete"
        )

    # ------------------------------------------------------------------
    # Statement hooks
    # ------------------------------------------------------------------
    def execute(self, sql: str) -> None:  # pragma: no cover - interface only
        """Run a single statement that returns no rows."""

        raise NotImplementedError("execute() must be implemented by a subclass")

    def send_bulk(self, table: str, rows: Iterable[Row]) -> None:  # pragma: no cover - interface only
        """Brief: Stream rows into ``table``.

        Inputs:
          - table: Destination table name.
          - rows: Iterable of row dicts; consumed lazily, one row at a time.

        Outputs:
          - None.
        """

        raise NotImplementedError("send_bulk() must be implemented by a subclass")

    def _merge_tuples(self) -> Tuple[int, int]:  # pragma: no cover - interface only
        """Fold tuples_temp into tuples; return (inserted, updated)."""

        raise NotImplementedError("_merge_tuples() must be implemented by a subclass")

    def _merge_individuals(self) -> Tuple[int, int]:  # pragma: no cover - interface only
        """Fold individual_temp into individual; return (inserted, updated)."""

        raise NotImplementedError(
            "_merge_individuals() must be implemented by a subclass"
        )

    # ------------------------------------------------------------------
    # Ingest pipeline
    # ------------------------------------------------------------------
    @staticmethod
    def _run_stage(
        operation: str, stage: str, fn: Callable[..., Any], *args: Any
    ) -> Any:
        """Brief: Call ``fn`` and re-raise store failures as IngestError.

        Inputs:
          - operation: Public operation name ("stage", "commit_merge").
          - stage: Pipeline stage label used in the error.
          - fn, *args: Callable and its arguments.

        Outputs:
          - Whatever ``fn`` returns.

        Raises:
          - IngestError: Annotated with ``stage``; keeps ``retriable`` from
            the underlying error so timeouts remain retriable.
          - StoreConnectionError: Passed through unchanged; losing the store
            ends the whole run, not just this batch.
        """

        try:
            return fn(*args)
        except (IngestError, StoreConnectionError):
            raise
        except StoreError as exc:
            err = IngestError(operation, exc.message, stage=stage)
            err.retriable = exc.retriable
            raise err from exc

    def stage(self, result: AggregationResult) -> None:
        """Brief: Recreate the staging tables and bulk-load one batch.

        Inputs:
          - result: Aggregated batch.

        Outputs:
          - None.

        Raises:
          - IngestError: stage is one of create-tuples, create-individuals,
            load-tuples, load-individuals.

        Notes:
          - Existing staging tables are dropped first (best effort). They are
            not dropped after a successful merge so that a failed batch
            leaves its staged rows behind for inspection.
        """

        for table in (TUPLES_STAGING, INDIVIDUAL_STAGING):
            try:
                self.execute(f"DROP TABLE IF EXISTS {table}")
            except StoreError as exc:
                logger.debug("Ignoring failure to drop %s: %s", table, exc)

        self._run_stage(
            "stage", "create-tuples", self.execute, self.staging_ddl[TUPLES_STAGING]
        )
        self._run_stage(
            "stage",
            "create-individuals",
            self.execute,
            self.staging_ddl[INDIVIDUAL_STAGING],
        )
        self._run_stage(
            "stage", "load-tuples", self.send_bulk, TUPLES_STAGING, tuple_rows(result)
        )
        self._run_stage(
            "stage",
            "load-individuals",
            self.send_bulk,
            INDIVIDUAL_STAGING,
            individual_rows(result),
        )

    def commit_merge(self) -> UpdateResult:
        """Brief: Fold staged rows into the permanent aggregate tables.

        Inputs:
          - None; reads the staging tables filled by stage().

        Outputs:
          - UpdateResult with merge duration and row counts.

        Raises:
          - IngestError: stage merge-tuples or merge-individuals. Nothing is
            rolled back here; a batch may be left half merged and is then
            simply absent from the ledger.
        """

        start = time.perf_counter()
        t_ins, t_upd = self._run_stage("commit_merge", "merge-tuples", self._merge_tuples)
        i_ins, i_upd = self._run_stage(
            "commit_merge", "merge-individuals", self._merge_individuals
        )
        return UpdateResult(
            duration=time.perf_counter() - start,
            inserted=int(t_ins) + int(i_ins),
            updated=int(t_upd) + int(i_upd),
        )

    def update(self, result: AggregationResult) -> UpdateResult:
        """Brief: Run the stage -> merge pipeline for one batch.

        Inputs:
          - result: Aggregated batch.

        Outputs:
          - UpdateResult whose duration covers staging and merging.
        """

        start = time.perf_counter()
        self.stage(result)
        merged = self.commit_merge()
        duration = time.perf_counter() - start
        logger.debug(
            "%s.update: %d inserted, %d updated in %.3fs",
            self.__class__.__name__,
            merged.inserted,
            merged.updated,
            duration,
        )
        return UpdateResult(
            duration=duration, inserted=merged.inserted, updated=merged.updated
        )

    # ------------------------------------------------------------------
    # Indexing ledger
    # ------------------------------------------------------------------
    def is_indexed(self, batch_id: str) -> bool:  # pragma: no cover - interface only
        """Brief: Return True when ``batch_id`` has a ledger record.

        Raises:
          - QueryError: When the lookup itself fails (distinct from absence).
        """

        raise NotImplementedError("is_indexed() must be implemented by a subclass")

    def set_indexed(
        self,
        batch_id: str,
        aggregation: AggregationResult,
        update: UpdateResult,
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError("set_indexed() must be implemented by a subclass")

    @staticmethod
    def _ledger_row(
        batch_id: str, aggregation: AggregationResult, update: UpdateResult
    ) -> Row:
        """Build the immutable ledger record for a merged batch."""

        return {
            "filename": batch_id,
            "aggregation_time": float(aggregation.duration),
            "total_records": int(aggregation.total_records),
            "skipped_records": int(aggregation.skipped_records),
            "tuples": len(aggregation.tuples),
            "individual": len(aggregation.individual),
            "store_time": float(update.duration),
            "inserted": int(update.inserted),
            "updated": int(update.updated),
        }

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------
    def find_query_tuples(self, query: str) -> List[TupleResult]:  # pragma: no cover - interface only
        """Tuples whose query name equals ``query`` exactly."""

        raise NotImplementedError("find_query_tuples() must be implemented by a subclass")

    def find_tuples(self, value: str) -> List[TupleResult]:  # pragma: no cover - interface only
        """Tuples whose query or answer equals ``value``."""

        raise NotImplementedError("find_tuples() must be implemented by a subclass")

    def like_tuples(self, value: str) -> List[TupleResult]:  # pragma: no cover - interface only
        """Tuples whose query or answer is ``value`` or a name below it."""

        raise NotImplementedError("like_tuples() must be implemented by a subclass")

    def find_individual(
        self, value: str, which: Optional[Which | str] = None
    ) -> List[IndividualResult]:  # pragma: no cover - interface only
        raise NotImplementedError("find_individual() must be implemented by a subclass")

    def like_individual(
        self, value: str, which: Optional[Which | str] = None
    ) -> List[IndividualResult]:  # pragma: no cover - interface only
        raise NotImplementedError("like_individual() must be implemented by a subclass")

    # ------------------------------------------------------------------
    # Shared helpers for backends
    # ------------------------------------------------------------------
    @staticmethod
    def _tuple_results(rows: Iterable[Dict[str, Any]]) -> List[TupleResult]:
        """Brief: Decode stored tuple rows, reversing query names back.

        Inputs:
          - rows: Mappings with query, type, answer, ttl_last, first_seen,
            last_seen and total keys.

        Outputs:
          - List of TupleResult in input order.
        """

        return [
            TupleResult(
                query=reverse(str(row["query"])),
                type=str(row["type"]),
                answer=str(row["answer"]),
                ttl=int(row["ttl_last"]),
                first=_to_datetime(row["first_seen"]),
                last=_to_datetime(row["last_seen"]),
                count=int(row["total"]),
            )
            for row in rows
        ]

    @staticmethod
    def _individual_results(rows: Iterable[Dict[str, Any]]) -> List[IndividualResult]:
        """Decode stored individual rows; only Query-typed values are reversed back."""

        out: List[IndividualResult] = []
        for row in rows:
            which = Which(str(row["which"]))
            value = str(row["value"])
            if which is Which.QUERY:
                value = reverse(value)
            out.append(
                IndividualResult(
                    which=which,
                    value=value,
                    first=_to_datetime(row["first_seen"]),
                    last=_to_datetime(row["last_seen"]),
                    count=int(row["total"]),
                )
            )
        return out
