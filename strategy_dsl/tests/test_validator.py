# strategy_dsl/tests/test_validator.py

import pytest

from strategy_dsl.src.ast_builder import build_ast
from strategy_dsl.src.diagnostics import Diagnostics, SemanticWarning
from strategy_dsl.src.dsl_parser import parse_source
from strategy_dsl.src.validator import awaits_dropped, indicator_arity_problem, is_builtin_indicator, validate


def warnings_for(source, target="python"):
    diagnostics = Diagnostics("v.strat")
    program = build_ast(parse_source(source, diagnostics))
    assert diagnostics.errors == []
    validate(program, diagnostics, target)
    return diagnostics.warnings


def codes(warnings):
    return [w.code for w in warnings]


COMPLETE = """
strategy Ok {
  indicators { r = RSI(close, 14); }
  rules { when (r < 30) { buy(10); } }
  risk { max_position = 100; }
}
"""


def test_complete_strategy_has_no_warnings():
    assert warnings_for(COMPLETE) == []


def test_missing_rules_and_risk():
    warnings = warnings_for("strategy Empty {\n  params { size: int = 1; }\n}")
    assert codes(warnings) == ["NO_RULES", "NO_RISK_MGMT"]
    assert warnings[0].message == "Strategy 'Empty' has no trading rules defined"
    assert warnings[1].message == "Strategy 'Empty' has no risk management defined"
    assert all(isinstance(w, SemanticWarning) for w in warnings)
    assert (warnings[0].line, warnings[0].col, warnings[0].file) == (1, 1, "v.strat")


def test_empty_rules_block_counts_as_missing():
    warnings = warnings_for("strategy S { rules { } risk { stop = 1; } }")
    assert codes(warnings) == ["NO_RULES"]


def test_duplicate_blocks_and_names():
    source = """
    strategy S {
      params { size: int = 1; size: int = 2; }
      rules { when (x) { buy(1); } }
      rules { when (y) { sell(1); } }
      risk { stop = 1; }
    }
    """
    warnings = warnings_for(source)
    assert codes(warnings) == ["DUPLICATE_BLOCK", "DUPLICATE_NAME"]
    assert "'rules' block more than once" in warnings[0].message
    assert warnings[1].line == 3


def test_risk_limits_sharing_a_constant():
    source = """
    strategy S {
      rules { when (x) { buy(1); } }
      risk { maxPos = 1; stop = 2; max_pos = 3; }
    }
    """
    (warning,) = warnings_for(source)
    assert warning.code == "DUPLICATE_NAME"
    assert warning.message == "Risk limits 'maxPos' and 'max_pos' of strategy 'S' both become the constant MAX_POS"
    assert warning.line == 4


def test_unknown_indicator_function():
    source = """
    import { ewma } from "./lib/ta.strat";
    indicator spread(a: float, b: float) = a - b;
    strategy S {
      indicators {
        a = ewma(close, 5);
        b = spread(high, low);
        c = SMA(close, 20);
        d = mystery(close);
      }
      rules { when (a > c) { buy(1); } }
      risk { stop = 1; }
    }
    """
    warnings = warnings_for(source)
    assert codes(warnings) == ["UNKNOWN_INDICATOR"]
    assert warnings[0].message == "Indicator 'd' calls unknown function 'mystery'"


def test_indicator_arity_is_checked_everywhere():
    source = """
    indicator bad() = stddev(close);
    strategy S {
      indicators { w = WMA(close); }
      rules { when (crossover(a, b, c)) { buy(1); } }
      risk { stop = 1; }
    }
    """
    warnings = warnings_for(source)
    assert codes(warnings) == ["INDICATOR_ARITY"] * 3
    assert warnings[0].message == "Indicator 'stddev' accepts 2 argument(s), got 1"


def test_declared_indicator_shadows_builtin_arity():
    source = "indicator sma(x: float) = x; indicator use() = sma(1);"
    assert warnings_for(source) == []


def test_arity_helpers():
    assert is_builtin_indicator("SMA") and is_builtin_indicator("macd")
    assert not is_builtin_indicator("mystery")
    assert indicator_arity_problem("SMA", 2) is None
    assert indicator_arity_problem("mystery", 9) is None
    assert indicator_arity_problem("macd", 2) == "Indicator 'macd' accepts 1 or 3 or 4 argument(s), got 2"


def test_await_warnings_depend_on_target():
    source = """
    indicator slow() = await fetch();
    strategy S {
      params { size: int = await load(); }
      rules { when (await ready()) { buy(1); } }
      risk { stop = 1; }
    }
    """
    sync = warnings_for(source, "python")
    assert codes(sync) == ["AWAIT_DROPPED"] * 3

    async_warnings = warnings_for(source, "python-async")
    assert codes(async_warnings) == ["AWAIT_DROPPED"] * 2
    assert "target 'python-async'" in async_warnings[0].message


def test_awaits_dropped_rejects_unknown_target():
    program = build_ast(parse_source("indicator f() = 1;"))
    with pytest.raises(ValueError):
        list(awaits_dropped(program, "javascript"))
