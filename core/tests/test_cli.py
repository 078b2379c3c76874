"""Tests for the blockflow command line."""

import json
from pathlib import Path

import pytest

from blockflow import cli
from blockflow.generation import MockGenerationAdapter


def _graph_file(tmp_path: Path, cyclic: bool = False) -> Path:
    connections = [{"id": "c1", "from_id": "a", "to_id": "b"}]
    if cyclic:
        connections.append({"id": "c2", "from_id": "b", "to_id": "a"})
    document = {
        "blocks": [
            {"id": "b", "label": "B01", "type": "text", "instruction": "say [A01]"},
            {"id": "a", "label": "A01", "type": "text", "instruction": "hello", "x": 10},
        ],
        "connections": connections,
        "viewport": {"zoom": 1.0},
    }
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _no_user_config(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("BLOCKFLOW_CONFIG", str(tmp_path / "no-config.json"))


def test_validate_valid(tmp_path: Path, capsys):
    exit_code = cli.main(["validate", str(_graph_file(tmp_path))])

    assert exit_code == 0
    assert "valid" in capsys.readouterr().out


def test_validate_cycle(tmp_path: Path, capsys):
    exit_code = cli.main(["validate", str(_graph_file(tmp_path, cyclic=True))])

    out = capsys.readouterr().out
    assert exit_code == 1
    assert out.count("circular_dependency") == 2


def test_validate_missing_file(tmp_path: Path, capsys):
    exit_code = cli.main(["validate", str(tmp_path / "nope.json")])

    assert exit_code == 1
    assert "File not found" in capsys.readouterr().err


def test_plan(tmp_path: Path, capsys):
    exit_code = cli.main(["plan", str(_graph_file(tmp_path))])

    lines = capsys.readouterr().out.splitlines()
    assert exit_code == 0
    assert lines[0].strip().startswith("1. A01")
    assert "<- A01" in lines[1]


def test_run_with_mock_adapter(tmp_path: Path, capsys):
    exit_code = cli.main(["run", str(_graph_file(tmp_path))])

    result = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert result["status"] == "completed"
    assert [r["output"] for r in result["results"]] == ["hello", "say hello"]


def test_run_with_adapter_factory(tmp_path: Path, capsys, monkeypatch):
    adapter = MockGenerationAdapter()
    loaded: list[str] = []

    def fake_load(target, config):
        loaded.append(target)
        return adapter

    monkeypatch.setattr(cli, "_load_adapter", fake_load)

    exit_code = cli.main(["run", str(_graph_file(tmp_path)), "--adapter", "pkg.mod:make"])

    assert exit_code == 0
    assert loaded == ["pkg.mod:make"]
    assert len(adapter.calls) == 2


def test_run_bad_adapter_target(tmp_path: Path, capsys):
    exit_code = cli.main(["run", str(_graph_file(tmp_path)), "--adapter", "no_colon"])

    assert exit_code == 1
    assert "module:factory" in capsys.readouterr().err


def test_run_invalid_graph(tmp_path: Path, capsys):
    exit_code = cli.main(["run", str(_graph_file(tmp_path, cyclic=True))])

    assert exit_code == 1
    assert "validation failed" in capsys.readouterr().err
