"""DNS aggregate store backends.

Brief:
  Re-exports the backend interface and result types, and provides
  load_store_backend(), which turns the ``store`` configuration block into a
  ready backend (ClickHouse, SQLite, or any BaseDnsStore subclass named by
  dotted path).
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Dict, FrozenSet, Mapping, Optional, Type, Union

from .base import (
    BaseDnsStore,
    IndividualResult,
    MergeResult,
    StoreBackendConfig,
    TupleResult,
    UpdateResult,
)
from .registry import get_store_backend_class

__all__ = [
    "BaseDnsStore",
    "IndividualResult",
    "MergeResult",
    "StoreBackendConfig",
    "TupleResult",
    "UpdateResult",
    "load_store_backend",
]

logger = logging.getLogger(__name__)

_NAMED_KINDS = (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)


def _canonical_name(raw: str) -> str:
    return raw.strip().lower().replace("-", "_")


def _constructor_options(cls: Type[BaseDnsStore]) -> FrozenSet[str]:
    """Names a backend constructor accepts explicitly (``**kwargs`` excluded)."""

    params = inspect.signature(cls.__init__).parameters.values()
    return frozenset(p.name for p in params if p.name != "self" and p.kind in _NAMED_KINDS)


def _backend_options(cls: Type[BaseDnsStore], user: Mapping[str, Any]) -> Dict[str, Any]:
    """Brief: Overlay user options on the backend defaults, keeping known keys.

    Inputs:
      - cls: Backend class (its ``default_config`` supplies the defaults).
      - user: Options from the configuration file.

    Outputs:
      - Keyword arguments for ``cls(...)``.
    """

    options: Dict[str, Any] = dict(getattr(cls, "default_config", None) or {})
    options.update(user)
    accepted = _constructor_options(cls)
    ignored = sorted(set(options) - accepted)
    if ignored:
        logger.debug("%s ignores options %s", cls.__name__, ignored)
    return {key: value for key, value in options.items() if key in accepted}


def _as_model(store_cfg: Union[Mapping[str, Any], StoreBackendConfig, None]) -> StoreBackendConfig:
    if isinstance(store_cfg, StoreBackendConfig):
        return store_cfg
    raw = dict(store_cfg or {})
    options = raw.get("config")
    if not isinstance(options, dict):
        # Flat form: backend options sit next to ``backend``.
        options = {k: v for k, v in raw.items() if k not in ("backend", "name")}
    return StoreBackendConfig(
        name=raw.get("name"),
        backend=str(raw.get("backend") or "clickhouse"),
        config=options,
    )


def load_store_backend(
    store_cfg: Optional[Union[Mapping[str, Any], StoreBackendConfig]],
) -> BaseDnsStore:
    """Brief: Construct the configured store backend.

    Inputs:
      - store_cfg: The ``store`` block (backend, optional name, config) as a
        mapping or StoreBackendConfig. None selects ClickHouse defaults.

    Outputs:
      - BaseDnsStore instance with a ``name`` attribute (the configured
        name, else the backend identifier).

    Raises:
      - KeyError/ValueError/TypeError: Unknown or invalid backend identifier.
      - StoreConnectionError: The backend cannot reach its database.
    """

    model = _as_model(store_cfg)
    identifier = (model.backend or "clickhouse").strip()
    if "." not in identifier:
        identifier = _canonical_name(identifier)
    backend_cls = get_store_backend_class(identifier)

    backend = backend_cls(**_backend_options(backend_cls, model.config or {}))
    backend.name = _canonical_name(model.name) if model.name else identifier
    logger.debug("Loaded %s store backend as %r", backend_cls.__name__, backend.name)
    return backend
