"""Row codec turning an AggregationResult into staging rows.

Brief:
  Produces one row per aggregated key as a lazy, single-pass stream. Rows are
  plain dicts (used directly by DB-API backends) and can be serialized to
  newline-delimited JSON for HTTP bulk-insert endpoints.

Notes:
  - Tuple query names and Query-typed individual values are emitted reversed
    when ``reverse_keys`` is true. Tuple answers and Answer-typed individual
    values are always emitted in natural order.
  - Counts are Python ints and timestamps are whole Unix seconds, so nothing
    is rounded on the way to a UInt64/DateTime column.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Iterator

from .aggregate import AggregationResult, Which
from .reverse import reverse

Row = Dict[str, Any]

TUPLE_COLUMNS = ("query", "type", "answer", "ttl", "first", "last", "count")
INDIVIDUAL_COLUMNS = ("which", "value", "first", "last", "count")


def tuple_rows(result: AggregationResult, reverse_keys: bool = True) -> Iterator[Row]:
    """Brief: Yield one staging row per aggregated tuple.

    Inputs:
      - result: Aggregated batch.
      - reverse_keys: When True, query names are emitted reversed.

    Outputs:
      - Iterator of dicts keyed by TUPLE_COLUMNS.
    """

    for (query, qtype, answer), state in result.tuples.items():
        yield {
            "query": reverse(query) if reverse_keys else query,
            "type": qtype,
            "answer": answer,
            "ttl": int(state.ttl.value),
            "first": int(state.first.value),
            "last": int(state.last.value),
            "count": int(state.count.value),
        }


def individual_rows(result: AggregationResult, reverse_keys: bool = True) -> Iterator[Row]:
    """Brief: Yield one staging row per aggregated individual value.

    Inputs:
      - result: Aggregated batch.
      - reverse_keys: When True, Query-typed values are emitted reversed;
        Answer-typed values are left in natural order.

    Outputs:
      - Iterator of dicts keyed by INDIVIDUAL_COLUMNS; ``which`` holds the
        stored enum label ("Q" or "A").
    """

    for (which, value), state in result.individual.items():
        which = Which(which)
        if reverse_keys and which is Which.QUERY:
            value = reverse(value)
        yield {
            "which": which.value,
            "value": value,
            "first": int(state.first.value),
            "last": int(state.last.value),
            "count": int(state.count.value),
        }


def json_each_row(rows: Iterable[Row]) -> Iterator[bytes]:
    """Serialize rows as newline-delimited JSON, one encoded line per row."""

    for row in rows:
        yield (json.dumps(row, ensure_ascii=False, separators=(",", ":")) + "\n").encode(
            "utf-8"
        )


def tuple_json_lines(result: AggregationResult, reverse_keys: bool = True) -> Iterator[bytes]:
    return json_each_row(tuple_rows(result, reverse_keys))


def individual_json_lines(
    result: AggregationResult, reverse_keys: bool = True
) -> Iterator[bytes]:
    return json_each_row(individual_rows(result, reverse_keys))
