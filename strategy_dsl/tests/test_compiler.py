# strategy_dsl/tests/test_compiler.py

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from strategy_dsl import (
    CompileOptions,
    Compiler,
    InternalError,
    LexicalError,
    ParseError,
    compile_source,
    parse_with_diagnostics,
)
from strategy_dsl.src import compiler as compiler_module

SAMPLES = Path(__file__).resolve().parents[2] / "scripts" / "samples"


def test_errors_mean_no_code():
    result = compile_source("strategy S {\n  rules { when (x > 1) { buy(1) } }\n  @\n}", CompileOptions(filename="e.strat"))
    assert not result.ok
    assert result.code == "" and result.source_map is None
    kinds = {type(e) for e in result.errors}
    assert kinds == {LexicalError, ParseError}
    assert all(e.file == "e.strat" for e in result.errors)
    assert result.ast is not None


def test_clean_compile_returns_ast_and_warnings():
    result = compile_source("strategy S { params { n: int = 1; } }")
    assert result.ok and result.code
    assert result.ast.strategies[0].name == "S"
    assert [w.code for w in result.warnings] == ["NO_RULES", "NO_RISK_MGMT"]
    report = result.diagnostics()
    assert report["errors"] == [] and len(report["warnings"]) == 2


def test_parse_with_diagnostics_skips_codegen():
    parsed = parse_with_diagnostics("strategy S { rules { when (a) { buy(1); } } }", "p.strat")
    assert parsed.errors == ()
    assert [w.code for w in parsed.warnings] == ["NO_RISK_MGMT"]
    assert parsed.warnings[0].file == "p.strat"
    assert not hasattr(parsed, "code")


def test_parse_with_diagnostics_does_not_validate_broken_input():
    parsed = parse_with_diagnostics("strategy S { rules { when (a) { buy(1) } } }")
    assert parsed.errors and parsed.warnings == ()


def test_internal_errors_propagate(monkeypatch):
    def broken(program, options):
        raise InternalError("codegen saw an unknown node")

    monkeypatch.setattr(compiler_module, "generate_code", broken)
    with pytest.raises(InternalError):
        compile_source("strategy S { }")


def test_one_compiler_serves_many_threads():
    compiler = Compiler(CompileOptions(optimization="aggressive"))
    sources = [f"strategy S{i} {{ rules {{ when (close > {i}) {{ buy({i + 1}); }} }} risk {{ cap = {i}; }} }}" for i in range(16)]
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(compiler.compile, sources))
    for i, result in enumerate(results):
        assert result.ok and result.warnings == ()
        assert f"class S{i}(BaseStrategy):" in result.code


@pytest.mark.parametrize("path", sorted(SAMPLES.glob("*.strat")), ids=lambda p: p.name)
def test_samples_compile_to_valid_python(path):
    source = path.read_text(encoding="utf-8")
    for target in ("python", "python-async"):
        result = compile_source(source, CompileOptions(filename=path.name, target=target, source_map=True))
        assert result.errors == (), [e.render(source) for e in result.errors]
        compile(result.code, path.name, "exec")
