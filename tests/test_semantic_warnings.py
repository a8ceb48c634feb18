from strategy_dsl import SemanticWarning, compile_source


def test_strategy_without_rules_or_risk_warns_twice():
    source = """
    strategy Idle {
      params { lookback: int = 20; }
      indicators { avg = SMA(close, lookback); }
    }
    """
    result = compile_source(source)
    assert result.errors == ()
    assert len(result.warnings) == 2
    assert all(isinstance(w, SemanticWarning) for w in result.warnings)
    messages = [w.message for w in result.warnings]
    assert any("no trading rules defined" in m for m in messages)
    assert any("no risk management defined" in m for m in messages)
    # warnings never block code generation
    assert "class Idle(BaseStrategy):" in result.code


def test_warning_renders_as_warning():
    result = compile_source("strategy Idle { rules { when (x) { buy(1); } } }")
    (warning,) = result.warnings
    assert warning.render().startswith("<input>:1:1: warning: ")
