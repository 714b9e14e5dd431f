"""
Brief: End-to-end tests for SqliteDnsStore: staging, merging, ledger and lookups.

Inputs:
  - sqlite_store fixture (in-memory database)

Outputs:
  - None
"""

from datetime import timezone

import pytest

from dnsagg.aggregate import AggregationResult, Which, aggregate_records
from dnsagg.errors import IngestError, QueryError, StoreError, UnsupportedOperation
from dnsagg.ingest import index_result
from dnsagg.stores.sqlite import SqliteDnsStore


def _rec(ts, query, answers, qtype="A", ttls=None):
    return {
        "ts": ts,
        "query": query,
        "qtype_name": qtype,
        "answers": list(answers),
        "TTLs": list(ttls) if ttls is not None else [300] * len(answers),
    }


def _batch(*records):
    return aggregate_records(records)


def _snapshot(store, term):
    return (store.like_tuples(term), store.like_individual(term))


def test_same_tuple_twice_at_one_time(sqlite_store):
    """
    Brief: Two identical observations give count 2 with first == last.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts merged tuple
    """
    sqlite_store.update(
        _batch(
            _rec(1000, "www.example.com", ["93.184.216.34"]),
            _rec(1000, "www.example.com", ["93.184.216.34"]),
        )
    )
    rows = sqlite_store.find_query_tuples("www.example.com")
    assert len(rows) == 1
    row = rows[0]
    assert (row.query, row.type, row.answer, row.ttl, row.count) == (
        "www.example.com",
        "A",
        "93.184.216.34",
        300,
        2,
    )
    assert row.first == row.last
    assert row.first.tzinfo == timezone.utc
    assert int(row.first.timestamp()) == 1000


def test_update_reports_inserted_then_updated(sqlite_store):
    """
    Brief: New keys count as inserted, existing keys as updated.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts UpdateResult counters
    """
    batch = _batch(_rec(1000, "www.example.com", ["93.184.216.34"]))
    first = sqlite_store.update(batch)
    assert (first.inserted, first.updated) == (3, 0)
    second = sqlite_store.update(batch)
    assert (second.inserted, second.updated) == (0, 3)
    assert second.duration >= 0


def test_like_matches_name_and_subdomains_only(sqlite_store):
    """
    Brief: Suffix lookup matches the name and labels below it, not lookalikes.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts matched query names and answers
    """
    sqlite_store.update(
        _batch(
            _rec(10, "example.com", ["1.1.1.1"]),
            _rec(11, "www.example.com", ["1.1.1.2"]),
            _rec(12, "mail.example.com", ["1.1.1.3"]),
            _rec(13, "notexample.com", ["1.1.1.4"]),
            _rec(14, "alias.other.net", ["cdn.example.com"], qtype="CNAME"),
        )
    )

    rows = sqlite_store.like_tuples("Example.COM.")
    pairs = {(r.query, r.answer) for r in rows}
    assert pairs == {
        ("example.com", "1.1.1.1"),
        ("www.example.com", "1.1.1.2"),
        ("mail.example.com", "1.1.1.3"),
        ("alias.other.net", "cdn.example.com"),
    }

    values = {(r.which, r.value) for r in sqlite_store.like_individual("example.com")}
    assert (Which.QUERY, "notexample.com") not in values
    assert (Which.QUERY, "mail.example.com") in values
    assert (Which.ANSWER, "cdn.example.com") in values


def test_find_tuples_matches_query_or_answer(sqlite_store):
    """
    Brief: find_tuples searches both directions; find_query_tuples only queries.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts lookup results
    """
    sqlite_store.update(
        _batch(
            _rec(10, "www.example.com", ["web.example.net"], qtype="CNAME"),
            _rec(11, "web.example.net", ["93.184.216.34"]),
        )
    )
    both = sqlite_store.find_tuples("web.example.net")
    assert {(r.query, r.answer) for r in both} == {
        ("www.example.com", "web.example.net"),
        ("web.example.net", "93.184.216.34"),
    }
    only_query = sqlite_store.find_query_tuples("web.example.net")
    assert [(r.query, r.answer) for r in only_query] == [
        ("web.example.net", "93.184.216.34")
    ]
    assert sqlite_store.find_tuples("example.net") == []


def test_individual_which_filter(sqlite_store):
    """
    Brief: The same name as query and as answer is told apart by ``which``.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts which discrimination
    """
    sqlite_store.update(
        _batch(
            _rec(10, "example.com", ["1.1.1.1"]),
            _rec(20, "alias.example.org", ["example.com"], qtype="CNAME"),
            _rec(30, "alias.example.org", ["example.com"], qtype="CNAME"),
        )
    )

    both = sqlite_store.find_individual("example.com")
    assert {(r.which, r.value, r.count) for r in both} == {
        (Which.QUERY, "example.com", 1),
        (Which.ANSWER, "example.com", 2),
    }

    only_q = sqlite_store.find_individual("example.com", which="Q")
    assert [(r.which, r.value) for r in only_q] == [(Which.QUERY, "example.com")]

    only_a = sqlite_store.find_individual("example.com", which=Which.ANSWER)
    assert len(only_a) == 1
    assert only_a[0].which is Which.ANSWER
    assert int(only_a[0].first.timestamp()) == 20
    assert int(only_a[0].last.timestamp()) == 30

    with pytest.raises(QueryError) as excinfo:
        sqlite_store.like_individual("example.com", which="X")
    assert excinfo.value.operation == "like_individual"


def test_empty_search_term_returns_nothing(sqlite_store):
    """
    Brief: Blank search terms never match every row.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts empty results
    """
    sqlite_store.update(_batch(_rec(10, "example.com", ["1.1.1.1"])))
    assert sqlite_store.like_tuples("") == []
    assert sqlite_store.like_individual(".") == []
    assert sqlite_store.find_query_tuples("  ") == []
    assert sqlite_store.find_individual("") == []


def test_clear_empties_tables_and_ledger(sqlite_store):
    """
    Brief: clear() removes aggregates and ledger records.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts empty lookups and ledger
    """
    index_result(sqlite_store, "/logs/a.log", _batch(_rec(10, "example.com", ["1.1.1.1"])))
    assert sqlite_store.is_indexed("/logs/a.log")

    sqlite_store.clear()

    assert sqlite_store.like_tuples("example.com") == []
    assert sqlite_store.find_individual("example.com") == []
    assert not sqlite_store.is_indexed("/logs/a.log")


def test_ledger_gate_prevents_double_counting(sqlite_store):
    """
    Brief: A batch is merged once through the ledger; merging it again bypassing
    the ledger doubles the counts.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts counts with and without the gate
    """
    batch = _batch(_rec(10, "example.com", ["1.1.1.1"]))

    first = index_result(sqlite_store, "/logs/a.log", batch)
    again = index_result(sqlite_store, "/logs/a.log", batch)
    assert not first.skipped
    assert again.skipped
    assert sqlite_store.find_query_tuples("example.com")[0].count == 1

    sqlite_store.update(batch)
    assert sqlite_store.find_query_tuples("example.com")[0].count == 2


def test_merge_order_does_not_change_results():
    """
    Brief: Merging [A, B] then [C] equals merging [C] then [A, B].

    Inputs:
      - None

    Outputs:
      - None: Asserts identical lookups on two stores
    """
    a = [_rec(100, "www.example.com", ["1.1.1.1"], ttls=[300])]
    b = [
        _rec(300, "www.example.com", ["1.1.1.1"], ttls=[60]),
        _rec(150, "mail.example.com", ["2.2.2.2"]),
    ]
    c = [_rec(200, "www.example.com", ["1.1.1.1"], ttls=[120])]

    forward = SqliteDnsStore()
    backward = SqliteDnsStore()
    try:
        forward.update(aggregate_records(a + b))
        forward.update(aggregate_records(c))
        backward.update(aggregate_records(c))
        backward.update(aggregate_records(a + b))

        assert _snapshot(forward, "example.com") == _snapshot(backward, "example.com")
        www = forward.find_query_tuples("www.example.com")[0]
        assert (www.ttl, www.count) == (60, 3)
        assert int(www.first.timestamp()) == 100
        assert int(www.last.timestamp()) == 300
    finally:
        forward.close()
        backward.close()


def test_failed_merge_rolls_back_whole_batch(sqlite_store, monkeypatch):
    """
    Brief: A failure in the individual merge leaves no tuple rows behind.

    Inputs:
      - sqlite_store: fixture
      - monkeypatch: pytest fixture

    Outputs:
      - None: Asserts IngestError stage and empty store
    """

    def boom():
        raise StoreError("commit_merge", "disk full")

    monkeypatch.setattr(sqlite_store, "_merge_individuals", boom)

    with pytest.raises(IngestError) as excinfo:
        sqlite_store.update(_batch(_rec(10, "example.com", ["1.1.1.1"])))

    assert excinfo.value.stage == "merge-individuals"
    assert sqlite_store.find_query_tuples("example.com") == []


def test_count_overflow_fails_batch_and_keeps_prior_total(sqlite_store):
    """
    Brief: Counts past the signed 64-bit limit fail the batch and roll back.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts IngestError stages and the unchanged count
    """
    limit = 2**63 - 1

    def batch(count):
        result = AggregationResult()
        result.add_tuple("big.example.com", "A", "1.1.1.1", 60, 10, count=count)
        return result

    sqlite_store.update(batch(limit))

    with pytest.raises(IngestError) as excinfo:
        sqlite_store.update(batch(1))
    assert excinfo.value.stage == "merge-tuples"

    with pytest.raises(IngestError) as excinfo:
        sqlite_store.update(batch(limit + 1))
    assert excinfo.value.stage == "load-tuples"

    rows = sqlite_store.find_query_tuples("big.example.com")
    assert [r.count for r in rows] == [limit]


def test_explicit_transaction_and_unsupported_retention(sqlite_store):
    """
    Brief: begin()/commit() wrap an update; retention is unsupported.

    Inputs:
      - sqlite_store: fixture

    Outputs:
      - None: Asserts committed data and UnsupportedOperation
    """
    sqlite_store.begin()
    sqlite_store.update(_batch(_rec(10, "example.com", ["1.1.1.1"])))
    sqlite_store.commit()
    assert sqlite_store.find_query_tuples("example.com")

    with pytest.raises(UnsupportedOperation):
        sqlite_store.delete_older_than(30)


def test_file_database_persists_between_instances(tmp_path):
    """
    Brief: A file-backed store keeps aggregates across reopen.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts persisted data and health_check
    """
    db_path = str(tmp_path / "nested" / "dnsagg.db")
    store = SqliteDnsStore(db_path=db_path)
    store.update(_batch(_rec(10, "example.com", ["1.1.1.1"])))
    assert store.health_check()
    store.close()
    assert not store.health_check()

    reopened = SqliteDnsStore(db_path=db_path)
    try:
        assert reopened.find_query_tuples("example.com")[0].count == 1
    finally:
        reopened.close()
