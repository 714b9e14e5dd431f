"""Alias resolution for DNS aggregate store backends.

Brief:
  Backends are plain BaseDnsStore subclasses living in ``dnsagg.stores.*``.
  Each one is reachable under:
    - every name in its ``aliases`` class attribute, and
    - a name derived from the class itself (``ClickHouseStore`` ->
      ``click_house``, ``SqliteDnsStore`` -> ``sqlite``).
  A dotted import path (``package.module.Class``) bypasses the alias table,
  which lets deployments plug in a backend kept outside this package.

Outputs:
  - discover_store_backends(): cached alias -> class table.
  - get_store_backend_class(): identifier -> class.
"""

from __future__ import annotations

import difflib
import importlib
import inspect
import pkgutil
import re
from types import ModuleType
from typing import Dict, Iterator, Type

from cachetools import LRUCache, cached

from .base import BaseDnsStore

_WORD_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_CLASS_SUFFIXES = ("DnsStore", "Store")


@cached(cache=LRUCache(maxsize=256))
def _snake_case(name: str) -> str:
    """``ClickHouse`` -> ``click_house``; ``HTTPStore`` -> ``http_store``."""

    return _WORD_BOUNDARY.sub("_", name).lower()


def _canonical(alias: str) -> str:
    return alias.strip().lower().replace("-", "_")


def _derived_alias(cls: Type[BaseDnsStore]) -> str:
    """Brief: Alias implied by a backend's class name.

    Inputs:
      - cls: Backend class.

    Outputs:
      - snake_case class name without a trailing DnsStore/Store.
    """

    stem = cls.__name__
    for suffix in _CLASS_SUFFIXES:
        if stem.endswith(suffix) and stem != suffix:
            stem = stem[: -len(suffix)]
            break
    return _snake_case(stem)


def _aliases_for(cls: Type[BaseDnsStore]) -> Iterator[str]:
    seen = set()
    for raw in tuple(getattr(cls, "aliases", ()) or ()) + (_derived_alias(cls),):
        alias = _canonical(raw)
        if alias and alias not in seen:
            seen.add(alias)
            yield alias


def _store_classes(module: ModuleType) -> Iterator[Type[BaseDnsStore]]:
    for _, member in inspect.getmembers(module, inspect.isclass):
        if issubclass(member, BaseDnsStore) and member is not BaseDnsStore:
            yield member


def _backend_modules(package_name: str) -> Iterator[ModuleType]:
    package = importlib.import_module(package_name)
    prefix = package.__name__ + "."
    for info in pkgutil.walk_packages(package.__path__, prefix):
        yield importlib.import_module(info.name)


@cached(cache=LRUCache(maxsize=8))
def discover_store_backends(
    package_name: str = "dnsagg.stores",
) -> Dict[str, Type[BaseDnsStore]]:
    """Brief: Build the alias table for every backend under ``package_name``.

    Inputs:
      - package_name: Package scanned recursively for BaseDnsStore subclasses.

    Outputs:
      - Mapping of canonical alias to backend class.

    Raises:
      - ValueError: Two different classes claim one alias.
    """

    table: Dict[str, Type[BaseDnsStore]] = {}
    for module in _backend_modules(package_name):
        for cls in _store_classes(module):
            for alias in _aliases_for(cls):
                owner = table.setdefault(alias, cls)
                if owner is not cls:
                    raise ValueError(
                        f"Store alias {alias!r} is claimed by both "
                        f"{owner.__module__}.{owner.__qualname__} and "
                        f"{cls.__module__}.{cls.__qualname__}"
                    )
    return table


def _import_backend(path: str) -> Type[BaseDnsStore]:
    module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Invalid store backend path {path!r}")
    candidate = getattr(importlib.import_module(module_name), attr)
    if not (inspect.isclass(candidate) and issubclass(candidate, BaseDnsStore)):
        raise TypeError(f"{path} does not name a BaseDnsStore subclass")
    return candidate


def get_store_backend_class(
    identifier: str, registry: Dict[str, Type[BaseDnsStore]] | None = None
) -> Type[BaseDnsStore]:
    """Brief: Resolve a configured backend identifier.

    Inputs:
      - identifier: Alias such as "clickhouse", or a dotted class path.
      - registry: Alias table to use instead of discover_store_backends().

    Outputs:
      - The backend class.

    Raises:
      - KeyError: Unknown alias; the message lists close matches.
      - ValueError/TypeError: Malformed dotted path, or one that names
        something other than a backend class.
    """

    text = str(identifier or "").strip()
    if "." in text:
        return _import_backend(text)

    table = registry or discover_store_backends()
    alias = _canonical(text)
    if alias in table:
        return table[alias]
    close = difflib.get_close_matches(alias, table.keys(), n=3)
    hint = f" Did you mean: {', '.join(close)}?" if close else ""
    raise KeyError(
        f"Unknown store backend {identifier!r}. Known: {', '.join(sorted(table))}.{hint}"
    )
