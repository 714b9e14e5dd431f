"""
Brief: Tests for store backend discovery and load_store_backend().

Inputs:
  - None

Outputs:
  - None
"""

import pytest

from dnsagg.stores import StoreBackendConfig, load_store_backend
from dnsagg.stores.clickhouse import ClickHouseStore
from dnsagg.stores.registry import (
    _derived_alias,
    discover_store_backends,
    get_store_backend_class,
)
from dnsagg.stores.sqlite import SqliteDnsStore


def test_discovery_registers_declared_and_derived_aliases():
    """
    Brief: Both backends are discoverable by declared and class-derived aliases.

    Inputs:
      - None

    Outputs:
      - None: Asserts registry contents
    """
    registry = discover_store_backends()
    assert registry["clickhouse"] is ClickHouseStore
    assert registry["ch"] is ClickHouseStore
    assert registry["click_house"] is ClickHouseStore
    assert registry["sqlite"] is SqliteDnsStore
    assert registry["sqlite3"] is SqliteDnsStore
    assert _derived_alias(SqliteDnsStore) == "sqlite"


def test_get_store_backend_class_by_alias_and_path():
    """
    Brief: Identifiers resolve case-insensitively or via dotted import path.

    Inputs:
      - None

    Outputs:
      - None: Asserts resolved classes and errors
    """
    assert get_store_backend_class(" SQLite ") is SqliteDnsStore
    assert get_store_backend_class("dnsagg.stores.clickhouse.ClickHouseStore") is ClickHouseStore

    with pytest.raises(KeyError) as excinfo:
        get_store_backend_class("clickhous")
    assert "clickhouse" in str(excinfo.value)

    with pytest.raises(TypeError):
        get_store_backend_class("dnsagg.stores.base.StoreBackendConfig")


def test_load_store_backend_merges_defaults_and_filters_keys(tmp_path):
    """
    Brief: Config dicts build a named backend; unknown keys are dropped.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts the constructed store
    """
    db_path = tmp_path / "agg.db"
    store = load_store_backend(
        {
            "backend": "sqlite",
            "name": "Local-Agg",
            "config": {"db_path": str(db_path), "url": "http://ignored"},
        }
    )
    try:
        assert isinstance(store, SqliteDnsStore)
        assert store.name == "local_agg"
        assert db_path.exists()
    finally:
        store.close()


def test_load_store_backend_accepts_model_and_flat_mapping(tmp_path):
    """
    Brief: StoreBackendConfig instances and flat mappings are both accepted.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts backend names
    """
    model = StoreBackendConfig(backend="sqlite3", config={"db_path": ":memory:"})
    store = load_store_backend(model)
    assert store.name == "sqlite3"
    store.close()

    flat = load_store_backend({"backend": "sqlite", "db_path": str(tmp_path / "flat.db")})
    assert (tmp_path / "flat.db").exists()
    flat.close()
