# strategy_dsl/tests/test_dsl_parser.py

import pytest

from strategy_dsl.src.cst_nodes import Rule
from strategy_dsl.src.diagnostics import Diagnostics, ParseError
from strategy_dsl.src.dsl_lexer import tokenize
from strategy_dsl.src.dsl_parser import MAX_NESTING_DEPTH, Parser, parse_source


def parse(source):
    diagnostics = Diagnostics("test.strat")
    cst = parse_source(source, diagnostics, "test.strat")
    return cst, diagnostics


def parse_expr(text):
    cst, diagnostics = parse(f"indicator f() = {text};")
    assert diagnostics.errors == [], [e.message for e in diagnostics.errors]
    return cst.nodes()[0].nodes()[-1]


def leaf(node):
    """Text of a PRIMARY node."""
    assert node.rule is Rule.PRIMARY
    return node.children[0].value


def test_parse_full_strategy_without_errors():
    source = """
    strategy Momentum {
      params { fast: int = 10; slow: int = 30; }
      indicators { f = EMA(close, fast); s = EMA(close, slow); }
      signals { up = f > s; }
      rules {
        when (up) { buy(100); }
        when (not up) { sell(100, close); }
      }
      risk { max_position = 1000; }
      event {
        on_fill(fill: Fill) { count = count + 1; }
      }
    }
    """
    cst, diagnostics = parse(source)
    assert diagnostics.is_clean()
    (strategy,) = cst.nodes()
    assert strategy.rule is Rule.STRATEGY_DECL
    blocks = [n.rule for n in strategy.nodes()]
    assert blocks == [
        Rule.PARAMS_BLOCK,
        Rule.INDICATORS_BLOCK,
        Rule.SIGNALS_BLOCK,
        Rule.RULES_BLOCK,
        Rule.RISK_BLOCK,
        Rule.EVENT_HANDLERS,
    ]
    rules = strategy.node(Rule.RULES_BLOCK).nodes(Rule.TRADING_RULE)
    assert len(rules) == 2
    actions = rules[1].nodes(Rule.TRADING_ACTION)
    assert actions[0].children[0].kind == "sell"


def test_additive_binds_looser_than_multiplicative():
    node = parse_expr("a + b * c")
    assert node.rule is Rule.ADDITIVE
    left, op, right = node.children
    assert leaf(left) == "a" and op.kind == "PLUS"
    assert right.rule is Rule.MULTIPLICATIVE


def test_binary_operators_are_left_associative():
    node = parse_expr("a - b - c")
    left, _op, right = node.children
    assert left.rule is Rule.ADDITIVE
    assert leaf(right) == "c"


def test_power_is_right_associative():
    node = parse_expr("a ** b ** c")
    base, _op, exponent = node.children
    assert leaf(base) == "a"
    assert exponent.rule is Rule.POWER


def test_prefix_minus_applies_to_whole_power():
    node = parse_expr("-a ** b")
    assert node.rule is Rule.UNARY
    op, operand = node.children
    assert op.kind == "MINUS"
    assert operand.rule is Rule.POWER


def test_not_in_is_one_membership_operator():
    node = parse_expr("sym not in watchlist and ok")
    assert node.rule is Rule.LOGICAL_AND
    membership = node.children[0]
    assert membership.rule is Rule.MEMBERSHIP
    assert [t.kind for t in membership.tokens()] == ["not", "in"]


def test_ternary_is_right_nested():
    node = parse_expr("a ? b : c ? d : e")
    assert node.rule is Rule.CONDITIONAL
    assert node.children[-1].rule is Rule.CONDITIONAL


def test_postfix_chain_and_keyword_member():
    node = parse_expr("bars[0].order.fill(1)[1:2]")
    assert node.rule is Rule.POSTFIX
    suffixes = [n.rule for n in node.children[1:]]
    assert suffixes == [
        Rule.INDEX_SUFFIX,
        Rule.MEMBER_SUFFIX,
        Rule.MEMBER_SUFFIX,
        Rule.CALL_SUFFIX,
        Rule.SLICE_SUFFIX,
    ]


def test_comprehension_and_literals():
    node = parse_expr("[x * 2 for x in xs if x > 0]")
    assert node.rule is Rule.COMPREHENSION
    assert parse_expr("[1, 2, 3]").rule is Rule.ARRAY_LITERAL
    assert parse_expr("{ a: 1, 'b': 2, c }").rule is Rule.OBJECT_LITERAL


def test_three_independent_mistakes_are_all_reported():
    source = """
    strategy Broken {
      indicators {
        fast = SMA(close, ;
        slow = SMA(close 50);
        mid = ;
        ok = SMA(close, 20);
      }
    }
    """
    cst, diagnostics = parse(source)
    errors = diagnostics.errors
    assert len(errors) == 3
    assert all(isinstance(e, ParseError) for e in errors)
    assert [e.line for e in errors] == [4, 5, 6]
    # recovery keeps the good binding
    block = cst.nodes()[0].node(Rule.INDICATORS_BLOCK)
    names = [b.children[0].value for b in block.nodes(Rule.INDICATOR_BINDING)]
    assert names == ["ok"]
    assert diagnostics.is_clean() is False


def test_error_message_names_expected_and_found():
    _cst, diagnostics = parse("strategy S { params { size: int = 10 } }")
    (err,) = diagnostics.errors
    assert err.message == "Expected ';' but found '}'"
    assert err.expected == ("SEMI",)
    assert (err.line, err.col) == (1, 38)


def test_program_level_recovery_skips_to_next_declaration():
    source = "garbage here; strategy A { rules { when (x) { buy(1); } } }"
    cst, diagnostics = parse(source)
    (err,) = diagnostics.errors
    assert err.message.startswith("Expected a declaration but found identifier 'garbage'")
    assert [n.rule for n in cst.nodes()] == [Rule.STRATEGY_DECL]


def test_recovery_state_returns_to_normal():
    _cst, diagnostics = parse("strategy S { rules { when ( { buy(1); } } }")
    assert diagnostics.has_errors()
    assert diagnostics.state.value == "normal"


def test_unclosed_blocks_report_only_the_first_error():
    # the missing '}' of both enclosing blocks fail on the same end of input
    _cst, diagnostics = parse("strategy S { params { size: int = 10")
    (err,) = diagnostics.errors
    assert err.message == "Expected ';' but found end of input"
    assert diagnostics.state.value == "normal"


def test_nesting_limit_is_a_parse_error_not_a_crash():
    depth = MAX_NESTING_DEPTH + 10
    _cst, diagnostics = parse("indicator f() = " + "(" * depth + "1" + ")" * depth + ";")
    messages = [e.message for e in diagnostics.errors]
    assert any("Nesting deeper than" in m for m in messages)


def test_assignment_only_at_statement_level():
    _cst, diagnostics = parse("indicator f() = a = 1;")
    assert [e.message for e in diagnostics.errors] == ["Assignment is only allowed as a statement"]

    _cst, diagnostics = parse("event E { on_tick() { a = b = 1; total += a; } }")
    assert diagnostics.errors == []


def test_invalid_assignment_target():
    _cst, diagnostics = parse("event E { on_tick() { f(x) = 1; } }")
    assert [e.message for e in diagnostics.errors] == ["Invalid assignment target"]


def test_rule_actions_must_be_calls():
    _cst, diagnostics = parse("strategy S { rules { when (x) { notify(1); } when (y) { flag; } } }")
    assert [e.message for e in diagnostics.errors] == ["Expected a trading action or a function call"]


def test_declaration_sections_in_cst():
    source = """
    data Quote { bid: float; ask: float; venue?: string; metrics { mid: float = (bid + ask) / 2; } }
    portfolio Book { cash: float = 0; metrics { gross: float = cash; } constraints { max_gross = 10; } }
    backtest Run { start = 2024-01-02; costs { commission = 0.001; } output { report = "html"; } }
    microstructure Maker {
      inventory: int = 0;
      detect { toxic = inventory > 10; }
      quote { bid_offset = -1; }
      hedging { when (inventory > 5) { inventory = 5; } }
    }
    """
    cst, diagnostics = parse(source)
    assert diagnostics.errors == []
    data, portfolio, backtest, micro = cst.nodes()
    assert len(data.nodes(Rule.DATA_FIELD)) == 3
    assert data.node(Rule.METRICS_BLOCK) is not None
    assert portfolio.node(Rule.CONSTRAINTS_BLOCK) is not None
    assert backtest.node(Rule.COSTS_BLOCK) is not None and backtest.node(Rule.OUTPUT_BLOCK) is not None
    assert [n.rule for n in micro.nodes()] == [
        Rule.DATA_FIELD,
        Rule.DETECT_BLOCK,
        Rule.QUOTE_BLOCK,
        Rule.HEDGING_BLOCK,
    ]


def test_import_forms():
    source = """
    import { ewma, zscore } from "./lib/ta.strat";
    import ta from "./lib/ta.strat";
    import "./lib/helpers.strat" as helpers;
    """
    cst, diagnostics = parse(source)
    assert diagnostics.errors == []
    assert [n.rule for n in cst.nodes()] == [Rule.IMPORT_DECL] * 3


def test_parser_requires_eof_token():
    with pytest.raises(ValueError):
        Parser([])
    tokens = tokenize("strategy S {}")
    with pytest.raises(ValueError):
        Parser(tokens[:-1])
