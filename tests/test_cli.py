"""Tests for the command line entry point."""

import json
import sys
from pathlib import Path

import pytest

from mnemo import cli


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("MNEMO_DATA_DIR", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    # Handlers would outlive the captured stdout of each test
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    return tmp_path


def run(monkeypatch: pytest.MonkeyPatch, *args: str) -> int:
    monkeypatch.setattr(sys, "argv", ["mnemo", *args])
    return cli.main()


def test_no_command_prints_usage(data_dir, monkeypatch, capsys):
    assert run(monkeypatch) == 1
    assert "Usage: mnemo" in capsys.readouterr().out


def test_unknown_command(data_dir, monkeypatch, capsys):
    assert run(monkeypatch, "frobnicate") == 1
    assert "Unknown command: frobnicate" in capsys.readouterr().out


def test_init_creates_database(data_dir, monkeypatch):
    assert run(monkeypatch, "init") == 0
    assert (data_dir / "mnemo.db").exists()


def test_stats_prints_json(data_dir, monkeypatch, capsys):
    assert run(monkeypatch, "--debug", "stats") == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["service"]["instances"] == 0
    assert "database" in stats


def test_evolve_requires_ids(data_dir, monkeypatch):
    assert run(monkeypatch, "evolve", "1") == 1


def test_evolve_prints_decision(data_dir, monkeypatch, capsys):
    assert run(monkeypatch, "evolve", "1", "alice") == 0
    out = capsys.readouterr().out
    assert "Decision: Low average fitness, Scheduled evolution" in out


def test_scan(data_dir, monkeypatch, capsys):
    assert run(monkeypatch, "scan") == 0
    assert "Contexts checked: 0, contaminated: 0" in capsys.readouterr().out
