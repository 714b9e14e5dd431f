"""Aggregation of Zeek/Bro DNS logs into mergeable batch results.

Inputs:
  - Zeek ``dns.log`` files in either the tab-separated header format or the
    JSON-lines format (optionally gzip-compressed).

Outputs:
  - AggregationResult: per-batch tuple and individual states plus the record
    counters that end up in the indexing ledger.

Notes:
  - One AggregationResult corresponds to one source file (one batch). Values
    are kept in natural order here; the row codec reverses query names when
    the batch is serialized for a store.
"""

from __future__ import annotations

import gzip
import io
import json
import logging
import math
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import chain, zip_longest
from typing import Any, Dict, Iterable, Iterator, List, Optional, TextIO, Tuple

from dnslib import QTYPE

from .errors import IngestError
from .merge_state import IndividualState, TupleState
from .reverse import normalize_name

logger = logging.getLogger(__name__)

MAX_TTL = 65535
# Stores keep first/last seen as unsigned 32-bit epoch seconds.
MAX_TS = 2**32 - 1

TupleKey = Tuple[str, str, str]


class Which(str, Enum):
    """Role a value played in a DNS exchange; values are the stored labels."""

    QUERY = "Q"
    ANSWER = "A"


IndividualKey = Tuple[Which, str]


@dataclass
class AggregationResult:
    """Brief: In-memory aggregation of one batch of DNS observations.

    Inputs (fields):
      - tuples: (query, type, answer) -> TupleState.
      - individual: (which, value) -> IndividualState.
      - duration: Seconds spent aggregating.
      - total_records: Records read from the source.
      - skipped_records: Records that produced no observations.

    Outputs:
      - Mutable container filled by add_tuple()/add_individual().
    """

    tuples: Dict[TupleKey, TupleState] = field(default_factory=dict)
    individual: Dict[IndividualKey, IndividualState] = field(default_factory=dict)
    duration: float = 0.0
    total_records: int = 0
    skipped_records: int = 0

    def add_tuple(
        self, query: str, qtype: str, answer: str, ttl: int, ts: int, count: int = 1
    ) -> None:
        key = (query, qtype, answer)
        state = TupleState.observe(ts, ttl, count)
        prev = self.tuples.get(key)
        self.tuples[key] = state if prev is None else prev.combine(state)

    def add_individual(self, which: Which, value: str, ts: int, count: int = 1) -> None:
        key = (Which(which), value)
        state = IndividualState.observe(ts, count)
        prev = self.individual.get(key)
        self.individual[key] = state if prev is None else prev.combine(state)


# ----------------------------------------------------------------------
# Zeek dns.log readers
# ----------------------------------------------------------------------
def open_log(path: str) -> TextIO:
    """Open a log file for text reading, decompressing ``.gz`` files."""

    if path.endswith(".gz"):
        return io.TextIOWrapper(gzip.open(path, "rb"), encoding="utf-8", errors="replace")
    return open(path, "r", encoding="utf-8", errors="replace")


def _decode_separator(raw: str) -> str:
    """Brief: Decode a Zeek ``#separator`` header value such as ``\\x09``.

    Inputs:
      - raw: Escaped separator text from the header line.

    Outputs:
      - The literal separator character(s).
    """

    return raw.encode("utf-8").decode("unicode_escape")


def _read_tsv(first_line: str, it: Iterator[str]) -> Iterator[Dict[str, Any]]:
    """Parse the Zeek ASCII format given the first header line."""

    headers: Dict[str, str] = {}
    line = first_line.rstrip("\r\n")
    sep = "\t"
    while True:
        if line.startswith("#separator"):
            sep = _decode_separator(line.split(None, 1)[1])
        elif line.startswith("#"):
            parts = line[1:].split(sep, 1)
            if len(parts) == 2:
                headers[parts[0]] = parts[1]
        if line.startswith("#types"):
            break
        try:
            line = next(it).rstrip("\r\n")
        except StopIteration:
            return

    fields = headers.get("fields", "").split(sep)
    types = headers.get("types", "").split(sep)
    set_sep = headers.get("set_separator", ",")
    empty = headers.get("empty_field", "(empty)")
    unset = headers.get("unset_field", "-")
    vectors = {
        name
        for name, typ in zip(fields, types)
        if typ.startswith("vector[") or typ.startswith("set[")
    }

    for row in it:
        row = row.rstrip("\r\n")
        if not row:
            continue
        if row.startswith("#"):
            if row.startswith("#close"):
                break
            continue
        rec: Dict[str, Any] = {}
        for name, raw in zip(fields, row.split(sep)):
            if raw == unset:
                rec[name] = None
            elif name in vectors:
                rec[name] = [] if raw == empty else raw.split(set_sep)
            else:
                rec[name] = raw
        yield rec


def read_zeek_dns(fileobj: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """Brief: Yield dns.log records as dicts from either Zeek log format.

    Inputs:
      - fileobj: Iterable of text lines.

    Outputs:
      - Iterator of record dicts keyed by Zeek field name. Vector fields are
        lists; unset fields are None.

    Notes:
      - The format is sniffed from the first non-blank line: ``{`` means
        JSON lines, ``#`` means the ASCII header format.
    """

    it = iter(fileobj)
    first = ""
    for first in it:
        if first.strip():
            break
    else:
        return

    if first.lstrip().startswith("{"):
        for line in chain([first], it):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                logger.debug("Discarding undecodable JSON log line: %r", line[:120])
                yield {}
                continue
            yield obj if isinstance(obj, dict) else {}
        return

    yield from _read_tsv(first, it)


# ----------------------------------------------------------------------
# Record normalization
# ----------------------------------------------------------------------
def _epoch_seconds(value: float) -> Optional[int]:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if not 0 <= value <= MAX_TS:
        return None
    return int(value)


def _parse_ts(raw: Any) -> Optional[int]:
    """Convert a Zeek ``ts`` value (epoch float or ISO-8601 string) to whole seconds."""

    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        return _epoch_seconds(raw)
    text = str(raw).strip()
    try:
        return _epoch_seconds(float(text))
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return _epoch_seconds(dt.timestamp())


def _parse_ttl(raw: Any) -> int:
    if raw is None or raw == "-":
        return 0
    try:
        ttl = int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(MAX_TTL, ttl))


def _record_type(rec: Dict[str, Any]) -> Optional[str]:
    name = rec.get("qtype_name")
    if isinstance(name, str) and name and name != "-":
        return name.upper()
    code = rec.get("qtype")
    if code is None:
        return None
    try:
        code_i = int(code)
    except (TypeError, ValueError):
        return str(code).upper()
    return str(QTYPE.get(code_i, f"TYPE{code_i}"))


def _as_list(raw: Any) -> List[Any]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    return [raw]


def parse_record(
    rec: Dict[str, Any],
) -> Optional[Tuple[int, str, str, List[Tuple[str, int]]]]:
    """Brief: Extract one observation from a dns.log record.

    Inputs:
      - rec: Record dict from read_zeek_dns().

    Outputs:
      - (ts, query, qtype, [(answer, ttl), ...]) or None when the record has
        no usable query, timestamp, type or answers.
    """

    ts = _parse_ts(rec.get("ts"))
    query = rec.get("query")
    if ts is None or not isinstance(query, str):
        return None
    query = normalize_name(query)
    if not query or query == "-":
        return None
    qtype = _record_type(rec)
    if not qtype:
        return None

    answers: List[Tuple[str, int]] = []
    for answer, ttl in zip_longest(_as_list(rec.get("answers")), _as_list(rec.get("TTLs"))):
        if answer is None:
            break
        value = normalize_name(str(answer))
        if value:
            answers.append((value, _parse_ttl(ttl)))
    if not answers:
        return None
    return ts, query, qtype, answers


def aggregate_records(records: Iterable[Dict[str, Any]]) -> AggregationResult:
    """Brief: Aggregate dns.log records into a single batch result.

    Inputs:
      - records: Iterable of record dicts.

    Outputs:
      - AggregationResult with tuple/individual states and record counters.
    """

    start = time.perf_counter()
    result = AggregationResult()
    for rec in records:
        result.total_records += 1
        obs = parse_record(rec)
        if obs is None:
            result.skipped_records += 1
            continue
        ts, query, qtype, answers = obs
        result.add_individual(Which.QUERY, query, ts)
        for answer, ttl in answers:
            result.add_tuple(query, qtype, answer, ttl, ts)
            result.add_individual(Which.ANSWER, answer, ts)
    result.duration = time.perf_counter() - start
    return result


def aggregate_file(path: str) -> AggregationResult:
    """Aggregate one dns.log file; see aggregate_records().

    A truncated or corrupt gzip stream raises IngestError (stage
    ``read-log``); unreadable files raise OSError.
    """

    try:
        with open_log(path) as fh:
            result = aggregate_records(read_zeek_dns(fh))
    except (EOFError, zlib.error) as exc:
        raise IngestError("aggregate", f"{path}: {exc}", stage="read-log") from exc
    logger.info(
        "Aggregated %s: %d records (%d skipped) -> %d tuples, %d individual in %.2fs",
        path,
        result.total_records,
        result.skipped_records,
        len(result.tuples),
        len(result.individual),
        result.duration,
    )
    return result
