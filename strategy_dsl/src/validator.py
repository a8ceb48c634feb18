"""
Semantic checks over a lowered Program.

Everything reported here is a SemanticWarning: the program is well formed
and will still compile, but it is probably not what the author meant.

- NO_RULES / NO_RISK_MGMT: strategy without trading rules / risk limits
- DUPLICATE_BLOCK: a strategy sub-block kind declared more than once
- DUPLICATE_NAME: a name bound twice in one params/indicators/signals/risk block
  (or two risk limits, like maxPos and max_pos, that share one class constant)
- UNKNOWN_INDICATOR: an indicator binding calls a function nobody defines
- INDICATOR_ARITY: a builtin indicator called with an unsupported arg count
- AWAIT_DROPPED: ``await`` where the generated code cannot await
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Iterator, Set, Tuple

from .ast_nodes import (
    ASTNode,
    Await,
    Call,
    EventDecl,
    Identifier,
    Program,
    StrategyDecl,
    walk,
)
from .diagnostics import Diagnostics

logger = logging.getLogger(__name__)

# Builtin indicator name (lower case) -> accepted argument counts. Calls are
# matched case-insensitively, SMA(close, 20) and sma(close, 20) are the same.
BUILTIN_INDICATORS: Dict[str, Tuple[int, ...]] = {
    "sma": (1, 2),
    "ema": (1, 2),
    "wma": (2,),
    "rsi": (1, 2),
    "macd": (1, 3, 4),
    "macd_signal": (1, 4),
    "macd_hist": (1, 4),
    "bbands": (1, 3),
    "bbupper": (1, 3),
    "bblower": (1, 3),
    "atr": (1, 4),
    "adx": (1, 4),
    "stoch": (3, 5),
    "stddev": (2,),
    "vwap": (0, 2),
    "obv": (2,),
    "roc": (2,),
    "momentum": (2,),
    "highest": (2,),
    "lowest": (2,),
    "shift": (2,),
    "crossover": (2,),
    "crossunder": (2,),
}

# DSL math builtin -> Python spelling. Entries with a dot need the module import.
MATH_FUNCTIONS: Dict[str, str] = {
    "abs": "abs",
    "min": "min",
    "max": "max",
    "round": "round",
    "pow": "pow",
    "sum": "sum",
    "len": "len",
    "sqrt": "math.sqrt",
    "log": "math.log",
    "exp": "math.exp",
    "floor": "math.floor",
    "ceil": "math.ceil",
    "mean": "statistics.fmean",
    "stdev": "statistics.stdev",
}

# Calls into the runtime strategy object. Camel-case spellings are accepted.
RUNTIME_HELPERS: Dict[str, str] = {
    "get_position": "get_position",
    "getPosition": "get_position",
    "get_portfolio": "get_portfolio",
    "getPortfolio": "get_portfolio",
    "get_indicator": "get_indicator",
    "getIndicator": "get_indicator",
    "get_signal": "get_signal",
    "getSignal": "get_signal",
}

TARGETS = ("python", "python-async")


def is_builtin_indicator(name: str) -> bool:
    return name.lower() in BUILTIN_INDICATORS


def indicator_arity_problem(name: str, argc: int) -> str | None:
    """
    Check the argument count of a builtin indicator call.

    Returns a message when ``argc`` is not accepted, None when it is (or the
    name is not a builtin indicator at all).
    """
    allowed = BUILTIN_INDICATORS.get(name.lower())
    if allowed is None or argc in allowed:
        return None
    choices = " or ".join(str(n) for n in allowed)
    return f"Indicator '{name}' accepts {choices} argument(s), got {argc}"


def constant_name(name: str) -> str:
    """``maxPosition`` / ``max_position`` -> ``MAX_POSITION``."""
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", name).upper()


def awaits_dropped(program: Program, target: str) -> Iterator[Await]:
    """
    Yield the ``await`` expressions the generator will drop for ``target``.

    The synchronous target drops all of them. The async target keeps those
    inside strategy callbacks (indicator, signal and rule evaluation plus
    event handlers) and event declaration handlers.
    """
    if target not in TARGETS:
        raise ValueError(f"unknown target {target!r}")
    for decl in program.declarations:
        if target == "python-async":
            roots: Iterable[ASTNode | None]
            if isinstance(decl, StrategyDecl):
                roots = (decl.params, decl.risk)
            elif isinstance(decl, EventDecl):
                roots = ()
            else:
                roots = (decl,)
        else:
            roots = (decl,)
        for root in roots:
            if root is None:
                continue
            for node in walk(root):
                if isinstance(node, Await):
                    yield node


def _known_callables(program: Program) -> Set[str]:
    known: Set[str] = set(MATH_FUNCTIONS) | set(RUNTIME_HELPERS)
    known.update(decl.name for decl in program.indicators)
    for imp in program.imports:
        known.update(imp.names)
        if imp.default:
            known.add(imp.default)
        if imp.alias:
            known.add(imp.alias)
    return known


def _check_duplicates(strategy: StrategyDecl, diagnostics: Diagnostics) -> None:
    for kind in strategy.duplicate_blocks:
        diagnostics.warn(
            f"Strategy '{strategy.name}' declares the '{kind}' block more than once; the blocks were merged",
            code="DUPLICATE_BLOCK",
            line=strategy.span.line,
            col=strategy.span.column,
        )
    groups = {
        "params": strategy.params.params if strategy.params else (),
        "indicators": strategy.indicators.bindings if strategy.indicators else (),
        "signals": strategy.signals.signals if strategy.signals else (),
        "risk": strategy.risk.limits if strategy.risk else (),
    }
    for block, items in groups.items():
        seen: Set[str] = set()
        for item in items:
            if item.name in seen:
                diagnostics.warn(
                    f"'{item.name}' is bound more than once in the {block} block of strategy '{strategy.name}'",
                    code="DUPLICATE_NAME",
                    line=item.span.line,
                    col=item.span.column,
                )
            seen.add(item.name)
    constants: Dict[str, str] = {}
    for limit in groups["risk"]:
        constant = constant_name(limit.name)
        first = constants.setdefault(constant, limit.name)
        if first != limit.name:
            diagnostics.warn(
                f"Risk limits '{first}' and '{limit.name}' of strategy '{strategy.name}' both become the constant {constant}",
                code="DUPLICATE_NAME",
                line=limit.span.line,
                col=limit.span.column,
            )


def _check_indicators(strategy: StrategyDecl, known: Set[str], diagnostics: Diagnostics) -> None:
    if strategy.indicators is None:
        return
    for binding in strategy.indicators.bindings:
        value = binding.value
        if not (isinstance(value, Call) and isinstance(value.func, Identifier)):
            continue
        fn = value.func.name
        if is_builtin_indicator(fn) or fn in known:
            continue
        diagnostics.warn(
            f"Indicator '{binding.name}' calls unknown function '{fn}'",
            code="UNKNOWN_INDICATOR",
            line=value.span.line,
            col=value.span.column,
        )


def _check_arity(program: Program, diagnostics: Diagnostics) -> None:
    # A declared indicator with a builtin's name shadows the builtin.
    declared = {decl.name.lower() for decl in program.indicators}
    calls = (node for decl in program.declarations for node in walk(decl) if isinstance(node, Call))
    for node in calls:
        if not isinstance(node.func, Identifier) or node.func.name.lower() in declared:
            continue
        problem = indicator_arity_problem(node.func.name, len(node.args))
        if problem:
            diagnostics.warn(problem, code="INDICATOR_ARITY", line=node.span.line, col=node.span.column)


def validate(program: Program, diagnostics: Diagnostics, target: str = "python") -> None:
    """Append the semantic warnings for ``program`` to ``diagnostics``."""
    known = _known_callables(program)
    for strategy in program.strategies:
        where = {"line": strategy.span.line, "col": strategy.span.column}
        if strategy.rules is None or not strategy.rules.rules:
            diagnostics.warn(f"Strategy '{strategy.name}' has no trading rules defined", code="NO_RULES", **where)
        if strategy.risk is None or not strategy.risk.limits:
            diagnostics.warn(f"Strategy '{strategy.name}' has no risk management defined", code="NO_RISK_MGMT", **where)
        _check_duplicates(strategy, diagnostics)
        _check_indicators(strategy, known, diagnostics)
    _check_arity(program, diagnostics)
    for node in awaits_dropped(program, target):
        diagnostics.warn(
            f"'await' has no effect here with target '{target}' and was dropped",
            code="AWAIT_DROPPED",
            line=node.span.line,
            col=node.span.column,
        )
    logger.debug("validation finished with %d warning(s)", len(diagnostics.warnings))
