"""Root logger setup for the dnsagg CLI.

Every line carries a bracketed lowercase level (``[info]``, ``[warn]``) and,
outside syslog, a UTC ``YYYY-MM-DDTHH:MM:SSZ`` stamp.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_SHORT_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "crit",
}

LINE_FORMAT = "%(asctime)s %(level_tag)s %(name)s: %(message)s"
DEFAULT_SYSLOG_TAG = "dnsagg"


def level_tag(levelno: int) -> str:
    """``logging.WARNING`` -> ``[warn]``; unnamed levels render as ``[lvlN]``."""
    return "[%s]" % _SHORT_NAMES.get(levelno, f"lvl{levelno}")


class BracketLevelFormatter(logging.Formatter):
    """Adds ``level_tag`` to records and stamps them in UTC."""

    def formatTime(self, record, datefmt=None):
        when = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return when.strftime(datefmt or "%Y-%m-%dT%H:%M:%SZ")

    def format(self, record):
        record.level_tag = level_tag(record.levelno)
        return super().format(record)


class SyslogFormatter(logging.Formatter):
    """No timestamp; the syslog daemon adds its own."""

    def format(self, record):
        record.level_tag = level_tag(record.levelno)
        text = "%s %s: %s" % (record.level_tag, record.name, record.getMessage())
        if record.exc_info:
            text += " (%r)" % (record.exc_info[1],)
        return text


def _file_handler(raw_path: str, formatter: logging.Formatter) -> logging.Handler:
    path = os.path.abspath(os.path.expanduser(raw_path))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _syslog_handler(options: Any) -> logging.Handler:
    """Brief: Build a SysLogHandler from ``logging.syslog``.

    Inputs:
      - options: True for defaults, or a mapping with ``address`` (socket
        path or [host, port]), ``facility`` (e.g. "local0") and ``tag``.

    Outputs:
      - Handler whose messages are prefixed with ``"<tag>: "``.
    """

    opts = options if isinstance(options, dict) else {}
    syslog_cls = logging.handlers.SysLogHandler

    address = opts.get("address", "/dev/log")
    if isinstance(address, (list, tuple)):
        host, port = address
        address = (str(host), int(port))

    facility_name = "LOG_" + str(opts.get("facility", "user")).upper()
    facility = getattr(syslog_cls, facility_name, syslog_cls.LOG_USER)

    handler = syslog_cls(address=address, facility=facility)
    handler.ident = "%s: " % (opts.get("tag") or DEFAULT_SYSLOG_TAG)
    handler.setFormatter(SyslogFormatter())
    return handler


def init_logging(cfg: Optional[Dict[str, Any]]) -> List[logging.Handler]:
    """
    Replace the root logger's handlers according to the ``logging`` block.

    Args:
        cfg: Mapping with optional keys
            - level: debug, info, warn, error or crit (unknown -> info)
            - stderr: write to stderr (default True)
            - file: append to this path, creating parent directories
            - syslog: True, or {address, facility, tag}; tag defaults to "dnsagg"

    Returns:
        The handlers now attached to the root logger.

    Example config:
        logging:
          level: debug
          file: ./var/dnsagg.log
          syslog: {tag: dnsagg-ingest}
    """
    cfg = cfg or {}
    root = logging.getLogger()
    root.setLevel(LEVEL_NAMES.get(str(cfg.get("level", "info")).lower(), logging.INFO))
    for existing in list(root.handlers):
        root.removeHandler(existing)

    formatter = BracketLevelFormatter(fmt=LINE_FORMAT)
    handlers: List[logging.Handler] = []

    if cfg.get("stderr", True):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        handlers.append(console)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        handlers.append(_file_handler(file_path.strip(), formatter))

    syslog_opts = cfg.get("syslog")
    if syslog_opts:
        try:
            handlers.append(_syslog_handler(syslog_opts))
        except (OSError, ValueError) as exc:  # pragma: no cover - depends on host syslog
            root.warning("Syslog unavailable, continuing without it: %s", exc)

    for handler in handlers:
        root.addHandler(handler)
    logging.captureWarnings(True)
    return list(root.handlers)
