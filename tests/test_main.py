"""
Brief: Tests for the dnsagg command line entry point.

Inputs:
  - None

Outputs:
  - None
"""

import io
import json
import logging

import pytest

from dnsagg.main import main


@pytest.fixture(autouse=True)
def restore_root_logger():
    """
    Brief: main() reconfigures logging; put the root logger back afterwards.

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
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)


@pytest.fixture
def config_path(tmp_path):
    db_path = tmp_path / "dnsagg.db"
    path = tmp_path / "config.yaml"
    path.write_text(
        "logging:\n"
        "  stderr: false\n"
        "store:\n"
        "  backend: sqlite\n"
        "  config:\n"
        f"    db_path: {db_path}\n",
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture
def dns_log(tmp_path):
    records = [
        {"ts": 100, "query": "www.example.com", "qtype_name": "A", "answers": ["93.184.216.34"], "TTLs": [300]},
        {"ts": 200, "query": "mail.example.com", "qtype_name": "A", "answers": ["93.184.216.35"], "TTLs": [60]},
        {"ts": 300, "query": "notexample.com", "qtype_name": "A", "answers": ["10.0.0.1"], "TTLs": [60]},
    ]
    path = tmp_path / "dns.log"
    path.write_text("".join(json.dumps(r) + "\n" for r in records), encoding="utf-8")
    return str(path)


def _run(*argv):
    out = io.StringIO()
    code = main(list(argv), out=out)
    return code, out.getvalue().splitlines()


def test_init_index_and_lookups(config_path, dns_log):
    """
    Brief: init, index and the lookup subcommands work end to end.

    Inputs:
      - config_path: sqlite config fixture
      - dns_log: JSON dns.log fixture

    Outputs:
      - None: Asserts exit codes and tab-separated output
    """
    assert _run("--config", config_path, "init") == (0, [])
    assert _run("--config", config_path, "index", dns_log) == (0, [])

    code, lines = _run("--config", config_path, "like", "example.com")
    assert code == 0
    assert [line.split("\t")[0] for line in lines] == ["mail.example.com", "www.example.com"]
    fields = lines[1].split("\t")
    assert fields[1:4] == ["A", "93.184.216.34", "300"]
    assert fields[4].startswith("1970-01-01T00:01:40")
    assert fields[6] == "1"

    code, lines = _run("--config", config_path, "query", "www.example.com")
    assert code == 0 and len(lines) == 1

    code, lines = _run("--config", config_path, "find", "93.184.216.35")
    assert code == 0
    assert lines[0].split("\t")[0] == "mail.example.com"

    code, lines = _run("--config", config_path, "individual", "--like", "--which", "Q", "example.com")
    assert code == 0
    assert sorted(line.split("\t")[1] for line in lines) == ["mail.example.com", "www.example.com"]
    assert all(line.startswith("Q\t") for line in lines)

    code, lines = _run("--config", config_path, "individual", "10.0.0.1")
    assert code == 0
    assert lines[0].split("\t")[:2] == ["A", "10.0.0.1"]


def test_index_is_gated_by_ledger_unless_forced(config_path, dns_log):
    """
    Brief: Re-indexing a file is skipped; --force merges it again.

    Inputs:
      - config_path: sqlite config fixture
      - dns_log: JSON dns.log fixture

    Outputs:
      - None: Asserts counts after repeated runs
    """
    _run("--config", config_path, "index", dns_log)
    _run("--config", config_path, "index", dns_log)
    _, lines = _run("--config", config_path, "query", "www.example.com")
    assert lines[0].split("\t")[-1] == "1"

    _run("--config", config_path, "index", "--force", dns_log)
    _, lines = _run("--config", config_path, "query", "www.example.com")
    assert lines[0].split("\t")[-1] == "2"

    assert _run("--config", config_path, "clear") == (0, [])
    assert _run("--config", config_path, "query", "www.example.com") == (0, [])


def test_failures_exit_nonzero(config_path, tmp_path, capsys):
    """
    Brief: Missing configs, unknown backends and failed files exit with 1.

    Inputs:
      - config_path: sqlite config fixture
      - tmp_path: pytest temporary directory
      - capsys: pytest fixture

    Outputs:
      - None: Asserts exit codes
    """
    assert _run("--config", str(tmp_path / "absent.yaml"), "init")[0] == 1
    assert "absent.yaml" in capsys.readouterr().err

    bad_backend = tmp_path / "bad.yaml"
    bad_backend.write_text("logging:\n  stderr: false\nstore:\n  backend: nosuch\n", encoding="utf-8")
    assert _run("--config", str(bad_backend), "init")[0] == 1

    assert _run("--config", config_path, "index", str(tmp_path / "missing.log"))[0] == 1


def test_subcommand_is_required():
    """
    Brief: Running without a subcommand is a usage error.

    Inputs:
      - None

    Outputs:
      - None: Asserts argparse exit status
    """
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2
