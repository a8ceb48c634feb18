from pathlib import Path

import pytest

from strategy_dsl import CompileOptions, compile_source

SAMPLES = Path(__file__).resolve().parents[1] / "scripts" / "samples"


@pytest.mark.parametrize("optimization", ["none", "basic", "aggressive"])
def test_identical_input_identical_output(optimization):
    source = (SAMPLES / "mean_reversion.strat").read_text(encoding="utf-8")
    options = CompileOptions(optimization=optimization, source_map=True, filename="mean_reversion.strat")
    first = compile_source(source, options)
    second = compile_source(source, options)
    assert first.code == second.code
    assert first.source_map == second.source_map
    assert first.diagnostics() == second.diagnostics()


def test_identical_broken_input_identical_diagnostics():
    source = "strategy S {\n  params { a: int = ; b: = 2; }\n  rules { when () { } }\n}"
    first = compile_source(source)
    second = compile_source(source)
    assert first.errors
    assert first.diagnostics() == second.diagnostics()
