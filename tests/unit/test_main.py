# tests/unit/test_main.py — v1
"""Tests for main.py — CLI entry point."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from scrapegate.main import _build_parser, main


@pytest.fixture
def workdir(tmp_path, monkeypatch) -> Path:
    """Empty working directory with a sqlite store and a one-source file."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STORE_PATH", str(tmp_path / "scrapegate.db"))
    monkeypatch.setenv("BLOB_ROOT", str(tmp_path / "blobs"))
    (tmp_path / "sources.json").write_text(json.dumps({
        "adapters": ["conftest.FakeAdapter"],
        "sources": [{"source_key": "acme", "adapter": "fake"}],
    }), encoding="utf-8")
    yield tmp_path
    logging.getLogger("scrapegate").handlers.clear()


# ---------------------------------------------------------------------------
# Parser tests
# ---------------------------------------------------------------------------

class TestBuildParser:
    def test_version_flag(self):
        with pytest.raises(SystemExit) as exc_info:
            _build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0

    def test_run_subcommand(self):
        args = _build_parser().parse_args(["run", "acme", "globex", "--max-concurrent", "2"])
        assert args.command == "run"
        assert args.sources == ["acme", "globex"]
        assert args.max_concurrent == 2

    def test_run_defaults_to_all(self):
        args = _build_parser().parse_args(["run"])
        assert args.sources == []
        assert args.max_concurrent is None

    def test_global_options(self):
        args = _build_parser().parse_args(["-v", "--sources-file", "s.json", "status", "acme"])
        assert args.verbose
        assert args.sources_file == Path("s.json")
        assert args.source == "acme"

    def test_safe_mode_choices(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["safe-mode", "acme", "maybe"])


# ---------------------------------------------------------------------------
# main() tests
# ---------------------------------------------------------------------------

class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage:" in capsys.readouterr().out

    def test_configuration_error(self, workdir, monkeypatch, capsys):
        monkeypatch.setenv("GATE_FULL_THRESHOLD", "0.3")
        monkeypatch.setenv("GATE_PARTIAL_THRESHOLD", "0.6")
        assert main(["sweep-locks"]) == 2
        assert "Configuration error" in capsys.readouterr().err

    def test_run_then_inspect(self, workdir, capsys):
        assert main(["run"]) == 0
        out = capsys.readouterr().out
        assert "acme" in out and "success" in out and "new=10" in out

        assert main(["runs", "acme"]) == 0
        assert "success" in capsys.readouterr().out

        assert main(["status", "acme"]) == 0
        out = capsys.readouterr().out
        assert "State:                enabled" in out
        assert "Last status:          success" in out

    def test_disable_enable(self, workdir, capsys):
        assert main(["disable", "acme", "--reason", "vendor outage"]) == 0
        assert main(["status", "acme"]) == 0
        out = capsys.readouterr().out
        assert "manually_disabled" in out
        assert "vendor outage" in out

        assert main(["run", "acme"]) == 0
        assert "skipped (disabled)" in capsys.readouterr().out

        assert main(["enable", "acme"]) == 0
        assert main(["status", "acme"]) == 0
        assert "State:                enabled" in capsys.readouterr().out

    def test_safe_mode(self, workdir, capsys):
        assert main(["safe-mode", "acme", "on"]) == 0
        assert main(["run", "acme"]) == 0
        assert "partial_success" in capsys.readouterr().out

    def test_sweep_locks(self, workdir, capsys):
        assert main(["sweep-locks"]) == 0
        assert "Removed 0 expired lock(s)" in capsys.readouterr().out

    def test_no_runs_yet(self, workdir, capsys):
        assert main(["runs", "acme"]) == 0
        assert "No runs recorded for acme" in capsys.readouterr().out

    def test_unknown_source_status_fails(self, workdir):
        assert main(["status", "nope"]) == 1

    def test_missing_explicit_sources_file(self, workdir):
        assert main(["--sources-file", str(workdir / "missing.json"), "run"]) == 1
