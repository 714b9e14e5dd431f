"""Combinable aggregate state for tuple and individual statistics.

Brief:
  Every aggregate column is modelled as an explicit merge state with a
  combine function instead of a mutable counter. Combining two partial
  summaries yields the summary of the union of their inputs, so batches can
  be merged in any grouping and any order.

  - MinState: minimum (first seen).
  - MaxState: maximum (last seen).
  - SumState: sum (count).
  - LastState: last write wins, ordered by observation time (ttl).

Outputs:
  - TupleState and IndividualState bundle these per aggregate row.
  - merge_all() folds a non-empty iterable of states.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import reduce
from typing import Iterable, TypeVar


@dataclass(frozen=True)
class MinState:
    value: int

    def combine(self, other: "MinState") -> "MinState":
        return self if self.value <= other.value else other


@dataclass(frozen=True)
class MaxState:
    value: int

    def combine(self, other: "MaxState") -> "MaxState":
        return self if self.value >= other.value else other


@dataclass(frozen=True)
class SumState:
    value: int

    def combine(self, other: "SumState") -> "SumState":
        return SumState(self.value + other.value)


@dataclass(frozen=True)
class LastState:
    """Brief: Last-write-wins state keyed by observation time.

    Inputs (fields):
      - value: Payload (for example, a TTL).
      - at: Observation time (Unix seconds) used to order writes.

    Outputs:
      - combine() keeps the state with the later ``at``; on a tie the
        right-hand operand wins.
    """

    value: int
    at: int

    def combine(self, other: "LastState") -> "LastState":
        return other if other.at >= self.at else self


@dataclass(frozen=True)
class TupleState:
    """Aggregate state for one (query, type, answer) tuple."""

    ttl: LastState
    first: MinState
    last: MaxState
    count: SumState

    @classmethod
    def observe(cls, ts: int, ttl: int, count: int = 1) -> "TupleState":
        """Build the state for ``count`` observations at a single time."""

        return cls(
            ttl=LastState(ttl, ts),
            first=MinState(ts),
            last=MaxState(ts),
            count=SumState(count),
        )

    def combine(self, other: "TupleState") -> "TupleState":
        return TupleState(
            ttl=self.ttl.combine(other.ttl),
            first=self.first.combine(other.first),
            last=self.last.combine(other.last),
            count=self.count.combine(other.count),
        )


@dataclass(frozen=True)
class IndividualState:
    """Aggregate state for one (which, value) individual."""

    first: MinState
    last: MaxState
    count: SumState

    @classmethod
    def observe(cls, ts: int, count: int = 1) -> "IndividualState":
        return cls(first=MinState(ts), last=MaxState(ts), count=SumState(count))

    def combine(self, other: "IndividualState") -> "IndividualState":
        return IndividualState(
            first=self.first.combine(other.first),
            last=self.last.combine(other.last),
            count=self.count.combine(other.count),
        )


_S = TypeVar("_S", TupleState, IndividualState, MinState, MaxState, SumState, LastState)


def merge_all(states: Iterable[_S]) -> _S:
    """Brief: Fold an iterable of same-typed states with combine().

    Inputs:
      - states: Non-empty iterable of states of a single type.

    Outputs:
      - The combined state.

    Raises:
      - ValueError: When ``states`` is empty.
    """

    items = list(states)
    if not items:
        raise ValueError("merge_all() requires at least one state")
    return reduce(lambda a, b: a.combine(b), items)
