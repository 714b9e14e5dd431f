from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional, TextIO

from .config import init_logging, parse_config_file, store_config_from
from .errors import ConfigError, StoreError
from .ingest import index_files
from .stores import IndividualResult, TupleResult, load_store_backend

DEFAULT_CONFIG = "config.yaml"

logger = logging.getLogger("dnsagg.main")


def _load_config(path: Optional[str], cli_vars: Optional[List[str]]) -> Dict[str, Any]:
    """Brief: Load the YAML config, tolerating an absent default file.

    Inputs:
      - path: Value of --config, or None when not given.
      - cli_vars: -v/--var assignments.

    Outputs:
      - dict: Validated config; empty when no file was given and the default
        config.yaml does not exist (built-in defaults apply).

    Raises:
      - ConfigError: An explicitly named file is missing or invalid.
    """

    if path is None:
        if not os.path.exists(DEFAULT_CONFIG):
            return {}
        path = DEFAULT_CONFIG
    return parse_config_file(path, cli_vars=cli_vars)


def _open_store(cfg: Dict[str, Any]):
    """Build the configured backend; unknown backends become ConfigError."""

    store_cfg = store_config_from(cfg)
    try:
        return load_store_backend(store_cfg)
    except (KeyError, ValueError, TypeError) as exc:
        raise ConfigError(f"Cannot load store backend {store_cfg.backend!r}: {exc}") from exc


def _format_tuple(row: TupleResult) -> str:
    return "\t".join(
        [
            row.query,
            row.type,
            row.answer,
            str(row.ttl),
            row.first.isoformat(),
            row.last.isoformat(),
            str(row.count),
        ]
    )


def _format_individual(row: IndividualResult) -> str:
    return "\t".join(
        [
            row.which.value,
            row.value,
            row.first.isoformat(),
            row.last.isoformat(),
            str(row.count),
        ]
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dnsagg", description="Aggregate DNS tuple and name statistics"
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to YAML config (default: ./{DEFAULT_CONFIG} when present)",
    )
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Set a config variable; overrides the environment and config vars",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the aggregate and ledger tables")
    sub.add_parser("clear", help="Delete all aggregate and ledger rows")

    p_index = sub.add_parser("index", help="Aggregate and merge Zeek dns.log files")
    p_index.add_argument("files", nargs="+", metavar="FILE")
    p_index.add_argument(
        "--force", action="store_true", help="Merge files already in the ledger"
    )

    p_query = sub.add_parser("query", help="Tuples for an exact query name")
    p_query.add_argument("value")

    p_find = sub.add_parser("find", help="Tuples whose query or answer matches")
    p_find.add_argument("value")

    p_like = sub.add_parser("like", help="Tuples for a name and everything below it")
    p_like.add_argument("value")

    p_ind = sub.add_parser("individual", help="Per-name query/answer statistics")
    p_ind.add_argument("value")
    p_ind.add_argument("--like", action="store_true", help="Suffix match")
    p_ind.add_argument("--which", choices=["Q", "A"], default=None)

    return parser


def _run(store: Any, args: argparse.Namespace, out: TextIO) -> int:
    cmd = args.command
    if cmd == "init":
        store.init()
        logger.info("Schema ready")
        return 0
    if cmd == "clear":
        store.clear()
        logger.info("All aggregate and ledger rows deleted")
        return 0
    if cmd == "index":
        outcomes, failures = index_files(store, args.files, force=args.force)
        merged = sum(1 for o in outcomes if not o.skipped)
        skipped = len(outcomes) - merged
        logger.info(
            "Indexed %d file(s), skipped %d, failed %d", merged, skipped, failures
        )
        return 1 if failures else 0

    if cmd == "individual":
        lookup = store.like_individual if args.like else store.find_individual
        for row in lookup(args.value, which=args.which):
            print(_format_individual(row), file=out)
        return 0

    lookups = {
        "query": store.find_query_tuples,
        "find": store.find_tuples,
        "like": store.like_tuples,
    }
    for row in lookups[cmd](args.value):
        print(_format_tuple(row), file=out)
    return 0


def main(argv: List[str] | None = None, out: TextIO | None = None) -> int:
    """
    Command line entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).
        out: Stream for result lines (defaults to sys.stdout).

    Returns:
        0 on success; 1 on configuration or store errors, or when any file
        failed to index.

    Example use:
        dnsagg --config config.yaml index /var/log/zeek/dns.*.log.gz
        dnsagg like example.com
        dnsagg individual --which A 93.184.216.34
    """
    args = _build_parser().parse_args(argv)
    out = out or sys.stdout

    try:
        cfg = _load_config(args.config, args.var)
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    init_logging(cfg.get("logging"))

    store = None
    try:
        store = _open_store(cfg)
        return _run(store, args, out)
    except (StoreError, ConfigError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        if store is not None:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
