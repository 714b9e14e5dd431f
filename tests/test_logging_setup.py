"""
Brief: Tests for dnsagg.config.logging_config.init_logging.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import logging.handlers

import pytest

from dnsagg.config.logging_config import (
    BracketLevelFormatter,
    SyslogFormatter,
    init_logging,
    level_tag,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """
    Brief: Restore root logger handlers and level after each test.

    Inputs:
      - None

    Outputs:
      - None
    """
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)


def test_init_logging_stderr_and_file(tmp_path):
    """
    Brief: Level, stderr handler and file handler follow the config.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts handlers and written log line
    """
    log_path = tmp_path / "logs" / "dnsagg.log"
    handlers = init_logging({"level": "warn", "file": str(log_path)})

    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert len(handlers) == 2
    assert isinstance(handlers[1], logging.FileHandler)

    logging.getLogger("dnsagg.test").warning("merged %d rows", 3)
    for h in handlers:
        h.flush()
    text = log_path.read_text(encoding="utf-8")
    assert "[warn] dnsagg.test: merged 3 rows" in text
    assert text.split(" ", 1)[0].endswith("Z")


def test_init_logging_without_stderr_unknown_level():
    """
    Brief: stderr can be disabled and unknown levels fall back to info.

    Inputs:
      - None

    Outputs:
      - None: Asserts no handlers and INFO level
    """
    assert init_logging({"stderr": False, "level": "chatty"}) == []
    assert logging.getLogger().level == logging.INFO


def test_init_logging_syslog_tag(monkeypatch):
    """
    Brief: The syslog handler is tagged via its ident prefix.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None: Asserts handler configuration without a real syslog socket
    """
    created = {}

    class _FakeSysLogHandler(logging.Handler):
        LOG_USER = logging.handlers.SysLogHandler.LOG_USER
        LOG_LOCAL0 = logging.handlers.SysLogHandler.LOG_LOCAL0

        def __init__(self, address=None, facility=None):
            super().__init__()
            created["address"] = address
            created["facility"] = facility

        def emit(self, record):  # pragma: no cover - not exercised
            pass

    monkeypatch.setattr(logging.handlers, "SysLogHandler", _FakeSysLogHandler)
    handlers = init_logging(
        {
            "stderr": False,
            "syslog": {"address": ["127.0.0.1", 514], "facility": "local0", "tag": "agg"},
        }
    )
    assert len(handlers) == 1
    assert handlers[0].ident == "agg: "
    assert isinstance(handlers[0].formatter, SyslogFormatter)
    assert created == {
        "address": ("127.0.0.1", 514),
        "facility": logging.handlers.SysLogHandler.LOG_LOCAL0,
    }


def test_formatters_use_bracket_tags():
    """
    Brief: Both formatters render bracketed lowercase level tags.

    Inputs:
      - None

    Outputs:
      - None: Asserts formatted strings
    """
    record = logging.LogRecord("dnsagg.x", logging.ERROR, __file__, 1, "bad %s", ("thing",), None)
    assert SyslogFormatter().format(record) == "[error] dnsagg.x: bad thing"
    line = BracketLevelFormatter(fmt="%(level_tag)s %(message)s").format(record)
    assert line == "[error] bad thing"
    assert level_tag(5) == "[lvl5]"
