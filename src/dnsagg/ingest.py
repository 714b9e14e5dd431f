"""Batch ingest: aggregate a log file, merge it, record it in the ledger.

Brief:
  The store offers no cross-statement transactions, so the recovery boundary
  is the order of the steps below. The ledger record is written last; a crash
  anywhere earlier leaves the file unrecorded and it is simply processed
  again on the next run.

    1. is_indexed(batch)     -> skip files already merged
    2. aggregate_file(path)  -> in-memory AggregationResult
    3. store.update(result)  -> stage + merge
    4. store.set_indexed(..) -> ledger record

  Re-merging a batch is not idempotent (counts would double); only the ledger
  check in step 1 prevents it.

Notes:
  - At most one batch may be in flight per store; staging tables are shared.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .aggregate import AggregationResult, aggregate_file
from .errors import StoreConnectionError, StoreError
from .stores.base import BaseDnsStore, UpdateResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexOutcome:
    """Result of index_file() for one path."""

    filename: str
    skipped: bool
    aggregation: Optional[AggregationResult] = None
    update: Optional[UpdateResult] = None


def batch_id_for(path: str) -> str:
    """Return the ledger identifier for a log file (its absolute path)."""

    return os.path.abspath(path)


def index_result(
    store: BaseDnsStore,
    batch_id: str,
    result: AggregationResult,
    force: bool = False,
) -> IndexOutcome:
    """Brief: Merge an already aggregated batch and record it in the ledger.

    Inputs:
      - store: Target store.
      - batch_id: Ledger identifier for the batch.
      - result: Aggregated batch.
      - force: When True, merge even if the ledger already has the batch.

    Outputs:
      - IndexOutcome; ``skipped`` is True when the ledger already had it.

    Raises:
      - StoreError (and subclasses) from the ledger lookup, the update or the
        ledger write. The ledger is only written after update() succeeds.
    """

    if not force and store.is_indexed(batch_id):
        logger.info("%s already indexed, skipping", batch_id)
        return IndexOutcome(filename=batch_id, skipped=True)

    update = store.update(result)
    store.set_indexed(batch_id, result, update)
    logger.info(
        "Indexed %s: %d tuples, %d individual, %d inserted, %d updated in %.2fs",
        batch_id,
        len(result.tuples),
        len(result.individual),
        update.inserted,
        update.updated,
        update.duration,
    )
    return IndexOutcome(filename=batch_id, skipped=False, aggregation=result, update=update)


def index_file(store: BaseDnsStore, path: str, force: bool = False) -> IndexOutcome:
    """Brief: Run the full ingest saga for one Zeek dns.log file.

    Inputs:
      - store: Target store.
      - path: Path to the log file (plain or .gz).
      - force: Reprocess even when the ledger has the file.

    Outputs:
      - IndexOutcome.
    """

    batch_id = batch_id_for(path)
    if not force and store.is_indexed(batch_id):
        logger.info("%s already indexed, skipping", batch_id)
        return IndexOutcome(filename=batch_id, skipped=True)
    result = aggregate_file(path)
    # The ledger was consulted above; do not look it up twice.
    return index_result(store, batch_id, result, force=True)


def index_files(
    store: BaseDnsStore, paths: Iterable[str], force: bool = False
) -> Tuple[List[IndexOutcome], int]:
    """Brief: Index files one after another, continuing past failures.

    Inputs:
      - store: Target store.
      - paths: Log file paths, processed in order.
      - force: Passed through to index_file().

    Outputs:
      - (outcomes, failures): outcomes for files that completed or were
        skipped, and the number of files that failed.

    Raises:
      - StoreConnectionError: Stops the run; the store is unreachable.
    """

    outcomes: List[IndexOutcome] = []
    failures = 0
    for path in paths:
        try:
            outcomes.append(index_file(store, path, force=force))
        except StoreConnectionError:
            # The store is gone; every remaining file would fail the same way.
            raise
        except (StoreError, OSError) as exc:
            failures += 1
            retriable = getattr(exc, "retriable", False)
            logger.exception(
                "Failed to index %s%s: %s",
                path,
                " (retriable)" if retriable else "",
                exc,
            )
    return outcomes, failures
