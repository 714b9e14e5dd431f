"""JSON Schema validation of dnsagg configuration files.

The schema ships inside the package as ``config-schema.json`` next to this
module and is read once per path.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from cachetools import LRUCache, cached
from jsonschema import Draft202012Validator, SchemaError, ValidationError

from ..errors import ConfigError

logger = logging.getLogger(__name__)

SCHEMA_FILENAME = "config-schema.json"


def get_default_schema_path() -> Path:
    """Location of the packaged schema document."""

    return Path(__file__).resolve().with_name(SCHEMA_FILENAME)


@cached(cache=LRUCache(maxsize=4))
def _validator_for(schema_file: str) -> Draft202012Validator:
    with open(schema_file, "r", encoding="utf-8") as fh:
        schema = json.load(fh)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _describe(err: ValidationError) -> str:
    where = "/".join(str(part) for part in err.absolute_path) or "<root>"
    rule = "/".join(str(part) for part in err.absolute_schema_path)
    return f"- {where}: {err.message} (schema: {rule})"


def _report(errors: Iterable[ValidationError], source: Optional[str]) -> str:
    """Brief: Render validation errors as one block of text.

    Inputs:
      - errors: jsonschema errors, already ordered.
      - source: YAML path shown in the heading, if known.

    Outputs:
      - Multi-line message, one bullet per error.
    """

    heading = f"Invalid configuration in {source or '<config dict>'}:"
    return "\n".join([heading, *(_describe(err) for err in errors)])


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
) -> None:
    """Brief: Check a parsed config mapping against the JSON Schema.

    Inputs:
      - cfg: Mapping loaded from YAML, after variable expansion.
      - schema_path: Alternative schema file (defaults to the packaged one).
      - config_path: YAML path, used only in messages.

    Outputs:
      - None when the mapping is valid.

    Raises:
      - ConfigError: Lists every violation with its instance path; also
        raised when the schema itself cannot be loaded.

    Example:
      >>> validate_config({"store": {"backend": "sqlite", "config": {"db_path": ":memory:"}}})
    """

    schema_file = str(schema_path or get_default_schema_path())
    try:
        validator = _validator_for(schema_file)
    except (OSError, ValueError, SchemaError) as exc:
        raise ConfigError(f"Cannot load configuration schema {schema_file}: {exc}") from exc

    errors = sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.absolute_path])
    if errors:
        raise ConfigError(_report(errors, config_path))
    logger.debug("%s passed schema validation", config_path or "Configuration mapping")
