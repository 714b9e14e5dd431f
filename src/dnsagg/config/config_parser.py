"""Configuration parsing and normalization helpers for dnsagg.

Brief:
  Reads the YAML config file used by the CLI and turns it into a validated
  mapping. It centralizes:
    - reading YAML config files
    - merging variables from config/env/CLI and expanding ``${NAME}``
      placeholders
    - JSON Schema validation
    - extracting the ``store`` block as a StoreBackendConfig

Inputs:
  - YAML config paths and parsed dicts.

Outputs:
  - Normalized config dicts and StoreBackendConfig instances.
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from ..stores.base import StoreBackendConfig
from .config_schema import validate_config

_VAR_NAME = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_VAR_REF = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment variable value as YAML.

    Inputs:
      - text: String containing a YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (falls back to the original string on parse errors).
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables.

    Inputs:
      - cfg: Parsed YAML configuration mapping (``vars`` is removed).
      - cli_vars: Optional list of CLI ``KEY=YAML`` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: Merged variables.

    Precedence:
      - CLI overrides environment overrides config-file variables. Only
        ALL_UPPERCASE names are considered.

    Example:
      >>> cfg = {'vars': {'TIMEOUT': 5}}
      >>> parse_config_variables(cfg, cli_vars=['TIMEOUT=10'], environ={})['TIMEOUT']
      10
    """

    base = cfg.pop("vars", None)
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ConfigError("config.vars must be a mapping when present")

    env = os.environ if environ is None else environ
    for k, v in env.items():
        if isinstance(k, str) and _VAR_NAME.match(k):
            merged[k] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ConfigError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _VAR_NAME.match(k):
            raise ConfigError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
                % k
            )
        merged[k] = _parse_yaml_value(raw)

    return merged


def expand_variables(obj: Any, variables: Dict[str, Any]) -> Any:
    """Brief: Substitute ``${NAME}`` placeholders throughout a parsed config.

    Inputs:
      - obj: Parsed YAML value (dict/list/scalar).
      - variables: Mapping of variable names to values.

    Outputs:
      - New value with placeholders replaced. A string that is exactly one
        placeholder takes the variable's value unchanged (so ints and bools
        survive); embedded placeholders are replaced with str(value).

    Raises:
      - ConfigError: For references to undefined variables.
    """

    if isinstance(obj, dict):
        return {k: expand_variables(v, variables) for k, v in obj.items()}
    if isinstance(obj, list):
        return [expand_variables(v, variables) for v in obj]
    if not isinstance(obj, str):
        return obj

    whole = _VAR_REF.fullmatch(obj)
    if whole:
        name = whole.group(1)
        if name not in variables:
            raise ConfigError(f"Undefined variable ${{{name}}} in configuration")
        return variables[name]

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in variables:
            raise ConfigError(f"Undefined variable ${{{name}}} in configuration")
        return str(variables[name])

    return _VAR_REF.sub(_sub, obj)


def parse_config_file(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Read, variable-expand and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML config.
      - cli_vars: Optional ``KEY=YAML`` overrides.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: Validated configuration mapping without the ``vars`` block.

    Raises:
      - ConfigError: File missing/unreadable, invalid YAML, or schema errors.
    """

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ConfigError("Configuration root must be a mapping")

    variables = parse_config_variables(cfg, cli_vars=cli_vars, environ=environ)
    cfg = expand_variables(cfg, variables)
    validate_config(cfg, config_path=config_path)
    return cfg


def store_config_from(cfg: Dict[str, Any]) -> StoreBackendConfig:
    """Brief: Build the StoreBackendConfig for the ``store`` block.

    Inputs:
      - cfg: Validated configuration mapping.

    Outputs:
      - StoreBackendConfig; defaults to the ClickHouse backend when the block
        is absent.
    """

    block = cfg.get("store") or {}
    try:
        return StoreBackendConfig(
            name=block.get("name"),
            backend=block.get("backend") or "clickhouse",
            config=dict(block.get("config") or {}),
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid store configuration: {exc}") from exc
