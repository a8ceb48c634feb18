import importlib.util
import json
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SAMPLE = ROOT / "scripts" / "samples" / "mean_reversion.strat"


@pytest.fixture(scope="module")
def cli():
    spec = importlib.util.spec_from_file_location("compile_strategy", ROOT / "scripts" / "compile_strategy.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_check_clean_file(cli):
    assert cli.main([str(SAMPLE), "--check"]) == 0


def test_compile_writes_output_and_map(cli, tmp_path):
    out = tmp_path / "mean_reversion.py"
    assert cli.main([str(SAMPLE), "-o", str(out), "--source-map"]) == 0
    assert out.read_text(encoding="utf-8").startswith("# Generated by strategy_dsl from ")
    assert json.loads((tmp_path / "mean_reversion.py.map").read_text(encoding="utf-8"))["version"] == 3


def test_errors_exit_with_status_two(cli, tmp_path, capsys):
    bad = tmp_path / "bad.strat"
    bad.write_text("strategy S { rules { when (x) { buy(1) } } }", encoding="utf-8")
    assert cli.main([str(bad), "--json"]) == 2
    report = json.loads(capsys.readouterr().err)
    assert report["errors"][0]["message"] == "Expected ';' but found '}'"


def test_missing_file(cli, tmp_path):
    assert cli.main([str(tmp_path / "nope.strat")]) == 1
