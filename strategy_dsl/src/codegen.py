"""
AST -> Python source generation.

Main entry point:
- generate_code(program, options) -> GeneratedCode(code, source_map)

Each strategy becomes a BaseStrategy subclass whose ``evaluate(bar)`` method
computes indicators and signals as locals and runs the trading rules; the
other declarations become module-level functions, dataclasses and dicts.
Output depends only on the AST and the options: no timestamps, and every
collection is emitted in source order.

Expression emission is precedence driven. Each Python operator gets a
binding strength and an operand that binds looser than its context is
wrapped in parentheses. Comparison operands are always required to bind
tighter than a comparison, so DSL comparisons never turn into Python
comparison chains.
"""

from __future__ import annotations

import keyword
import logging
import math
import re
from contextlib import contextmanager
from dataclasses import dataclass, field, fields, replace
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from .ast_nodes import (
    ASTNode,
    Action,
    ArrayLiteral,
    ArrayType,
    Assignment,
    Await,
    BacktestDecl,
    BinaryOp,
    Binding,
    Block,
    Break,
    Call,
    Comprehension,
    ComputedField,
    Conditional,
    Continue,
    CustomAction,
    DataDecl,
    DataField,
    EventDecl,
    EventHandler,
    Expr,
    ExprStmt,
    For,
    FunctionType,
    Identifier,
    If,
    ImportDecl,
    Index,
    IndicatorDecl,
    Literal,
    MapType,
    Member,
    MicrostructureDecl,
    NamedType,
    ObjectLiteral,
    OptionalType,
    OrderDecl,
    Param,
    PortfolioDecl,
    PrimitiveType,
    Program,
    Return,
    Slice,
    Span,
    Stmt,
    StrategyDecl,
    TradingAction,
    TradingRule,
    TypeNode,
    UnaryOp,
    UnionType,
    VarDecl,
    When,
    While,
    walk,
)
from .diagnostics import InternalError
from .options import CompileOptions
from .source_map import SourceMapBuilder
from .validator import BUILTIN_INDICATORS, MATH_FUNCTIONS, RUNTIME_HELPERS, constant_name

logger = logging.getLogger(__name__)

INDENT = "    "
PRICE_FIELDS = ("open", "high", "low", "close", "volume")

# Names generated code relies on (the bar argument, module imports); DSL locals are renamed around them.
GENERATED_NAMES = frozenset(
    {"bar", "self", "indicators", "BaseStrategy", "math", "statistics", "datetime", "dataclass", "field", "Callable"}
)

# Python binding strength, loosest first.
PREC_CONDITIONAL = 1
PREC_OR = 2
PREC_AND = 3
PREC_NOT = 4
PREC_COMPARE = 5
PREC_ADD = 10
PREC_MUL = 11
PREC_UNARY = 12
PREC_POWER = 13
PREC_AWAIT = 14
PREC_ATOM = 15

BINARY_PRECEDENCE: Dict[str, int] = {
    "or": PREC_OR,
    "and": PREC_AND,
    "in": PREC_COMPARE,
    "not in": PREC_COMPARE,
    "==": PREC_COMPARE,
    "!=": PREC_COMPARE,
    "<": PREC_COMPARE,
    "<=": PREC_COMPARE,
    ">": PREC_COMPARE,
    ">=": PREC_COMPARE,
    "+": PREC_ADD,
    "-": PREC_ADD,
    "*": PREC_MUL,
    "/": PREC_MUL,
    "%": PREC_MUL,
    "**": PREC_POWER,
}

ARITHMETIC_OPS = frozenset({"+", "-", "*", "/", "%", "**"})

PRIMITIVE_ANNOTATIONS = {
    "int": "int",
    "float": "float",
    "string": "str",
    "boolean": "bool",
    "datetime": "datetime",
    "void": "None",
}

# isinstance() targets for type_checks
TYPE_CHECKS = {
    "int": "int",
    "float": "(int, float)",
    "string": "str",
    "boolean": "bool",
    "datetime": "datetime",
}


@dataclass(frozen=True)
class GeneratedCode:
    code: str
    source_map: Optional[str]


@dataclass(frozen=True)
class _StrategyInfo:
    params: FrozenSet[str]
    indicators: FrozenSet[str]
    signals: FrozenSet[str]
    risk: Dict[str, str]  # DSL name -> class constant


@dataclass
class _Scope:
    """
    Name resolution context.

    kind is one of: module, params (PARAMS dict display), class (strategy
    class body), evaluate, method, function, record (dataclass methods).
    """

    kind: str
    strategy: Optional[_StrategyInfo] = None
    locals: Set[str] = field(default_factory=set)
    fields: FrozenSet[str] = frozenset()
    param_code: Dict[str, str] = field(default_factory=dict)
    # DSL local -> Python name, for locals renamed away from a reserved name
    names: Dict[str, str] = field(default_factory=dict)
    can_await: bool = False

    @property
    def has_self(self) -> bool:
        return self.kind in ("evaluate", "method", "record")

    def local(self, name: str) -> str:
        return self.names.get(name, py_name(name))


def py_name(name: str) -> str:
    """DSL identifier -> Python identifier (Python keywords get a trailing underscore)."""
    if keyword.iskeyword(name) or name == "self":
        return name + "_"
    return name


def module_path(source: str) -> str:
    """Turn an import source such as ``./lib/ta-extra.strat`` into ``lib.ta_extra``."""
    path = source.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    for ext in (".strat", ".dsl", ".py"):
        if path.endswith(ext):
            path = path[: -len(ext)]
    parts = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        part = re.sub(r"\W", "_", part)
        parts.append("_" + part if part[0].isdigit() else part)
    return ".".join(parts) or "_"


def format_number(value: int | float) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return 'float("nan")'
        if math.isinf(value):
            return 'float("inf")' if value > 0 else '-float("inf")'
        return repr(value)
    return str(value)


def _is_number(node: ASTNode) -> bool:
    return isinstance(node, Literal) and node.kind == "number"


def _arithmetic(op: str, a: int | float, b: int | float) -> int | float | None:
    if op == "**" and (abs(b) > 64 or abs(a) > 2**64):
        return None
    try:
        if op == "+":
            result = a + b
        elif op == "-":
            result = a - b
        elif op == "*":
            result = a * b
        elif op == "/":
            result = a / b
        elif op == "%":
            result = a % b
        else:
            result = a**b
    except ArithmeticError:
        return None
    if isinstance(result, complex) or (isinstance(result, float) and not math.isfinite(result)):
        return None
    return result


def fold_constants(node: Expr) -> Expr:
    """Fold arithmetic whose operands are numeric literals, bottom-up."""
    updates = {}
    for f in fields(node):
        value = getattr(node, f.name)
        if isinstance(value, ASTNode):
            folded = fold_constants(value)
            if folded is not value:
                updates[f.name] = folded
        elif isinstance(value, tuple) and value and all(isinstance(v, ASTNode) for v in value):
            folded_items = tuple(fold_constants(v) for v in value)
            if any(a is not b for a, b in zip(folded_items, value)):
                updates[f.name] = folded_items
    if updates:
        node = replace(node, **updates)

    if isinstance(node, UnaryOp) and node.op in ("-", "+") and _is_number(node.operand):
        value = -node.operand.value if node.op == "-" else node.operand.value
        return Literal("number", value, format_number(value), node.span)
    if isinstance(node, BinaryOp) and node.op in ARITHMETIC_OPS and _is_number(node.left) and _is_number(node.right):
        value = _arithmetic(node.op, node.left.value, node.right.value)
        if value is not None:
            return Literal("number", value, format_number(value), node.span)
    return node


class CodeGenerator:
    """Emits one Python module per Program. Not thread-safe; build one per call."""

    def __init__(self, options: CompileOptions | None = None):
        self.options = options or CompileOptions()
        self._lines: List[Tuple[str, Optional[Span]]] = []
        self._level = 0
        self._uses: Set[str] = set()
        self._declared_indicators: Set[str] = set()
        self._imported: Set[str] = set()
        self._reserved: Set[str] = set(GENERATED_NAMES)

    @property
    def is_async(self) -> bool:
        return self.options.target == "python-async"

    @property
    def aggressive(self) -> bool:
        return self.options.optimization == "aggressive"

    # ----- output helpers -----

    def _line(self, text: str, origin: ASTNode | None = None) -> None:
        self._lines.append((INDENT * self._level + text, origin.span if origin is not None else None))

    def _blank(self, count: int = 1) -> None:
        if not self._lines or self._lines[-1][0].endswith(":"):
            return
        trailing = 0
        for text, _ in reversed(self._lines):
            if text:
                break
            trailing += 1
        for _ in range(count - trailing):
            self._lines.append(("", None))

    @contextmanager
    def _indented(self) -> Iterator[None]:
        """Indent one level; an empty suite gets a ``pass``."""
        self._level += 1
        start = len(self._lines)
        yield
        if len(self._lines) == start:
            self._line("pass")
        self._level -= 1

    def _def(self) -> str:
        return "async def" if self.is_async else "def"

    # ----- module -----

    def generate(self, program: Program) -> GeneratedCode:
        self._lines = []
        self._level = 0
        self._uses = set()
        self._declared_indicators = {d.name for d in program.indicators}
        self._imported = set()
        for imp in program.imports:
            self._imported.update(imp.names)
            self._imported.update(n for n in (imp.default, imp.alias) if n)
        # a local named after a function it calls would shadow that function
        self._reserved = set(GENERATED_NAMES)
        self._reserved.update(py_name(n) for n in self._declared_indicators | self._imported)
        self._reserved.update(t for t in MATH_FUNCTIONS.values() if "." not in t)

        for decl in program.declarations:
            if isinstance(decl, ImportDecl):
                continue
            self._blank(2)
            self._declaration(decl)

        header = self._header(program.imports)
        body = list(self._lines)
        if body:
            header.extend(["", ""])
        code = "\n".join(header + [text for text, _ in body]) + "\n"

        source_map = None
        if self.options.source_map:
            builder = SourceMapBuilder(_generated_name(self.options.filename), self.options.filename)
            for i, (text, span) in enumerate(body):
                if span is not None:
                    builder.add(len(header) + i, len(text) - len(text.lstrip()), span.line, span.column)
            source_map = builder.to_json()
        logger.debug("generated %d line(s) of Python", code.count("\n"))
        return GeneratedCode(code, source_map)

    def _header(self, imports: Tuple[ImportDecl, ...]) -> List[str]:
        filename = self.options.filename.replace("\n", " ")
        lines = [f"# Generated by strategy_dsl from {filename}. Do not edit.", "from __future__ import annotations"]
        stdlib = []
        if "math" in self._uses:
            stdlib.append("import math")
        if "statistics" in self._uses:
            stdlib.append("import statistics")
        if "dataclass" in self._uses:
            names = "dataclass, field" if "field" in self._uses else "dataclass"
            stdlib.append(f"from dataclasses import {names}")
        if "datetime" in self._uses:
            stdlib.append("from datetime import datetime")
        if "Callable" in self._uses:
            stdlib.append("from typing import Callable")
        if stdlib:
            lines.append("")
            lines.extend(stdlib)
        lines.append("")
        lines.append(f"from {self.options.runtime_module} import BaseStrategy, indicators")
        lines.extend(self._import_line(imp) for imp in imports)
        return lines

    def _import_line(self, imp: ImportDecl) -> str:
        module = module_path(imp.source)
        if imp.names:
            return f"from {module} import {', '.join(py_name(n) for n in imp.names)}"
        if imp.default or imp.alias:
            return f"import {module} as {py_name(imp.default or imp.alias)}"
        return f"import {module}"

    def _declaration(self, decl: ASTNode) -> None:
        match decl:
            case StrategyDecl():
                self._strategy(decl)
            case IndicatorDecl():
                self._function(decl)
            case DataDecl():
                self._record(decl, decl.fields, decl.metrics)
            case OrderDecl():
                self._record(decl, decl.fields, ())
            case PortfolioDecl():
                self._record(decl, decl.fields, decl.metrics, constraints=decl.constraints)
            case EventDecl():
                self._event_class(decl)
            case BacktestDecl():
                self._backtest(decl)
            case MicrostructureDecl():
                self._microstructure(decl)
            case _:
                raise InternalError(f"cannot generate code for {type(decl).__name__}")

    # ----- strategies -----

    def _strategy(self, decl: StrategyDecl) -> None:
        params = decl.params.params if decl.params else ()
        limits = decl.risk.limits if decl.risk else ()
        info = _StrategyInfo(
            params=frozenset(p.name for p in params),
            indicators=frozenset(b.name for b in decl.indicators.bindings) if decl.indicators else frozenset(),
            signals=frozenset(s.name for s in decl.signals.signals) if decl.signals else frozenset(),
            risk={limit.name: constant_name(limit.name) for limit in limits},
        )
        self._line(f"class {py_name(decl.name)}(BaseStrategy):", decl)
        with self._indented():
            self._params_dict(params, info)
            if limits:
                self._blank()
                self._risk_limits(limits, info)
            self._blank()
            self._init(params)
            self._blank()
            self._evaluate(decl, info)
            self._handlers(decl, info)

    def _params_dict(self, params: Tuple[Param, ...], info: _StrategyInfo) -> None:
        if not params:
            self._line("PARAMS = {}")
            return
        scope = _Scope("params", info)
        self._line("PARAMS = {")
        with self._indented():
            for p in params:
                value = self._code(p.default, scope) if p.default is not None else "None"
                self._line(f'"{p.name}": {value},', p)
                if p.default is not None:
                    scope.param_code[p.name] = value
        self._line("}")

    def _risk_limits(self, limits: Tuple, info: _StrategyInfo) -> None:
        scope = _Scope("class", info)
        for limit in limits:
            self._line(f"{info.risk[limit.name]} = {self._code(limit.value, scope)}", limit)
        self._line("RISK_LIMITS = {")
        with self._indented():
            for name, const in info.risk.items():
                self._line(f'"{name}": {const},')
        self._line("}")

    def _init(self, params: Tuple[Param, ...]) -> None:
        self._line("def __init__(self, params=None, **kwargs):")
        with self._indented():
            self._line("super().__init__(**kwargs)")
            self._line("self.params = {**self.PARAMS, **(params or {})}")
            for p in params:
                if p.default is not None:
                    continue
                self._line(f'if self.params.get("{p.name}") is None:', p)
                with self._indented():
                    self._line(f"raise ValueError(\"missing required parameter '{p.name}'\")")
            if not self.options.type_checks:
                return
            for p in params:
                if not isinstance(p.type, PrimitiveType) or p.type.name not in TYPE_CHECKS:
                    continue
                if p.type.name == "datetime":
                    self._uses.add("datetime")
                ref = f'self.params["{p.name}"]'
                self._line(f"if {ref} is not None and not isinstance({ref}, {TYPE_CHECKS[p.type.name]}):", p)
                with self._indented():
                    self._line(f"raise TypeError(\"parameter '{p.name}' must be {p.type.name}\")")

    def _price_fields(self, decl: StrategyDecl, info: _StrategyInfo) -> List[str]:
        shadowed = info.params | info.indicators | info.signals | set(info.risk)
        if self.options.optimization == "none":
            return [name for name in PRICE_FIELDS if name not in shadowed]
        roots: List[ASTNode] = [b for b in (decl.indicators, decl.signals, decl.rules) if b is not None]
        used = {
            node.name
            for root in roots
            for node in walk(root)
            if isinstance(node, Identifier) and node.name in PRICE_FIELDS
        }
        return [name for name in PRICE_FIELDS if name in used and name not in shadowed]

    def _evaluate(self, decl: StrategyDecl, info: _StrategyInfo) -> None:
        scope = _Scope("evaluate", info, can_await=self.is_async)
        self._line(f"{self._def()} evaluate(self, bar):")
        with self._indented():
            for name in self._price_fields(decl, info):
                self._line(f"{self._bind_local(name, scope)} = bar.{name}")
            for binding in decl.indicators.bindings if decl.indicators else ():
                value = self._code(binding.value, scope)
                local = self._bind_local(binding.name, scope)
                self._line(f"{local} = {value}", binding)
                self._line(f'self.set_indicator("{binding.name}", {local})')
            for signal in decl.signals.signals if decl.signals else ():
                value = self._code(signal.value, scope)
                local = self._bind_local(signal.name, scope)
                self._line(f"{local} = bool({value})", signal)
                self._line(f'self.set_signal("{signal.name}", {local})')
            for rule in decl.rules.rules if decl.rules else ():
                self._trading_rule(rule, scope)

    def _trading_rule(self, rule: TradingRule, scope: _Scope) -> None:
        condition = fold_constants(rule.condition) if self.aggressive else rule.condition
        if self.aggressive and isinstance(condition, Literal) and condition.kind == "bool":
            if not condition.value:
                logger.debug("dropped rule at line %d, its condition is always false", rule.span.line)
                return
            for action in rule.actions:
                self._action(action, scope)
            return
        self._line(f"if {self._code(condition, scope)}:", rule)
        with self._indented():
            for action in rule.actions:
                self._action(action, scope)

    def _action(self, action: Action, scope: _Scope) -> None:
        match action:
            case TradingAction():
                args = ["bar.symbol", self._code(action.quantity, scope)]
                if action.price is not None:
                    args.append(self._code(action.price, scope))
                call = f"self.{action.kind}({', '.join(args)})"
                self._line(f"await {call}" if self.is_async else call, action)
            case CustomAction():
                self._line(self._code(action.call, scope), action)
            case _:
                raise InternalError(f"unknown trading action {type(action).__name__}")

    def _handlers(self, decl: StrategyDecl, info: _StrategyInfo) -> None:
        handlers = decl.events.handlers if decl.events else ()
        if not any(h.name == "on_bar" for h in handlers):
            self._blank()
            self._line(f"{self._def()} on_bar(self, bar):")
            with self._indented():
                self._line(f"{'await ' if self.is_async else ''}self.evaluate(bar)")
        for handler in handlers:
            self._blank()
            self._method(handler, _Scope("method", info, can_await=self.is_async), evaluate_first=handler.name == "on_bar")

    def _method(self, handler: EventHandler, scope: _Scope, evaluate_first: bool = False) -> None:
        params = handler.params
        scope.locals.update(p.name for p in params)
        arg_list = self._param_list(params, _Scope("module"))
        if evaluate_first and not params:
            arg_list = "bar"
            scope.locals.add("bar")
        self._line(f"{self._def()} {py_name(handler.name)}(self{', ' + arg_list if arg_list else ''}):", handler)
        with self._indented():
            if evaluate_first:
                bar = py_name(params[0].name) if params else "bar"
                self._line(f"{'await ' if self.is_async else ''}self.evaluate({bar})")
            self._block(handler.body, scope)

    def _param_list(self, params: Tuple[Param, ...], scope: _Scope) -> str:
        parts = []
        seen_default = keyword_only = False
        for p in params:
            text = f"{py_name(p.name)}: {self._annotation(p.type)}"
            if p.default is not None:
                seen_default = True
                text += f" = {self._code(p.default, scope)}"
            elif seen_default and not keyword_only:
                # a required parameter after a defaulted one can only be keyword-only
                parts.append("*")
                keyword_only = True
            parts.append(text)
        return ", ".join(parts)

    # ----- other declarations -----

    def _function(self, decl: IndicatorDecl) -> None:
        scope = _Scope("function", locals={p.name for p in decl.params})
        returns = f" -> {self._annotation(decl.returns)}" if decl.returns is not None else ""
        self._line(f"def {py_name(decl.name)}({self._param_list(decl.params, _Scope('module'))}){returns}:", decl)
        with self._indented():
            if decl.expr is not None:
                self._line(f"return {self._code(decl.expr, scope)}", decl.expr)
            elif decl.body is not None:
                self._block(decl.body, scope)

    def _record(self, decl, fields_: Tuple[DataField, ...], metrics: Tuple[ComputedField, ...], constraints: Tuple[Binding, ...] = ()) -> None:
        self._uses.add("dataclass")
        self._line("@dataclass(kw_only=True)")
        self._line(f"class {py_name(decl.name)}:", decl)
        with self._indented():
            self._record_body(fields_, metrics, constraints)

    def _record_body(self, fields_: Tuple[DataField, ...], metrics: Tuple[ComputedField, ...], constraints: Tuple[Binding, ...]) -> _Scope:
        module = _Scope("module")
        for f in fields_:
            annotation = self._annotation(f.type)
            if f.optional:
                annotation += " | None"
            if f.default is not None:
                value = self._code(f.default, module)
                if isinstance(f.default, (ArrayLiteral, ObjectLiteral, Comprehension)):
                    self._uses.add("field")
                    value = f"field(default_factory=lambda: {value})"
                self._line(f"{py_name(f.name)}: {annotation} = {value}", f)
            elif f.optional:
                self._line(f"{py_name(f.name)}: {annotation} = None", f)
            else:
                self._line(f"{py_name(f.name)}: {annotation}", f)
        if constraints:
            self._blank()
            self._line("CONSTRAINTS = {")
            with self._indented():
                for c in constraints:
                    self._line(f'"{c.name}": {self._code(c.value, module)},', c)
            self._line("}")
        record = _Scope("record", fields=frozenset(f.name for f in fields_) | frozenset(m.name for m in metrics))
        for metric in metrics:
            self._blank()
            self._line("@property")
            self._line(f"def {py_name(metric.name)}(self) -> {self._annotation(metric.type)}:", metric)
            with self._indented():
                self._line(f"return {self._code(metric.value, record)}", metric)
        return record

    def _event_class(self, decl: EventDecl) -> None:
        self._line(f"class {py_name(decl.name)}:", decl)
        with self._indented():
            for handler in decl.handlers:
                self._blank()
                self._method(handler, _Scope("method", can_await=self.is_async))

    def _backtest(self, decl: BacktestDecl) -> None:
        module = _Scope("module")
        self._line(f"{constant_name(decl.name)} = {{", decl)
        with self._indented():
            for b in decl.settings:
                self._line(f'"{b.name}": {self._code(b.value, module)},', b)
            for section, bindings in (("costs", decl.costs), ("output", decl.output)):
                if not bindings:
                    continue
                self._line(f'"{section}": {{')
                with self._indented():
                    for b in bindings:
                        self._line(f'"{b.name}": {self._code(b.value, module)},', b)
                self._line("},")
        self._line("}")

    def _microstructure(self, decl: MicrostructureDecl) -> None:
        self._uses.add("dataclass")
        self._line("@dataclass(kw_only=True)")
        self._line(f"class {py_name(decl.name)}:", decl)
        with self._indented():
            record = self._record_body(decl.fields, (), ())
            for method, bindings in (("detect", decl.detections), ("quote", decl.quotes)):
                self._blank()
                self._line(f"def {method}(self) -> dict:")
                with self._indented():
                    if not bindings:
                        self._line("return {}")
                        continue
                    self._line("return {")
                    with self._indented():
                        for b in bindings:
                            self._line(f'"{b.name}": {self._code(b.value, record)},', b)
                    self._line("}")
            self._blank()
            self._line("def hedge(self) -> None:")
            with self._indented():
                for rule in decl.hedging:
                    scope = replace(record, locals=set(), names={})
                    self._line(f"if {self._code(rule.condition, scope)}:", rule)
                    with self._indented():
                        self._block(rule.body, scope)

    # ----- statements -----

    def _block(self, block: Block, scope: _Scope) -> None:
        for stmt in block.body:
            self._statement(stmt, scope)

    def _statement(self, stmt: Stmt, scope: _Scope) -> None:
        match stmt:
            case ExprStmt(expr=Assignment() as assignment):
                self._assignment(assignment, scope, stmt)
            case ExprStmt():
                self._line(self._code(stmt.expr, scope), stmt)
            case VarDecl():
                value = self._code(stmt.value, scope)
                name = self._bind_local(stmt.name, scope)
                self._line(f"{name}: {self._annotation(stmt.type)} = {value}", stmt)
            case Block():
                self._block(stmt, scope)
            case If():
                self._line(f"if {self._code(stmt.test, scope)}:", stmt)
                with self._indented():
                    self._block(stmt.body, scope)
                for clause in stmt.elifs:
                    self._line(f"elif {self._code(clause.test, scope)}:", clause)
                    with self._indented():
                        self._block(clause.body, scope)
                if stmt.orelse is not None:
                    self._line("else:")
                    with self._indented():
                        self._block(stmt.orelse, scope)
            case While():
                self._line(f"while {self._code(stmt.test, scope)}:", stmt)
                with self._indented():
                    self._block(stmt.body, scope)
            case For():
                iterable = self._code(stmt.iterable, scope)
                self._line(f"for {self._bind_local(stmt.target, scope)} in {iterable}:", stmt)
                with self._indented():
                    self._block(stmt.body, scope)
            case Return():
                self._line("return" if stmt.value is None else f"return {self._code(stmt.value, scope)}", stmt)
            case Break():
                self._line("break", stmt)
            case Continue():
                self._line("continue", stmt)
            case When():
                self._line(f"if {self._code(stmt.test, scope)}:", stmt)
                with self._indented():
                    self._block(stmt.body, scope)
            case _:
                raise InternalError(f"cannot generate code for statement {type(stmt).__name__}")

    def _assignment(self, assignment: Assignment, scope: _Scope, origin: ASTNode) -> None:
        if assignment.op != "=":
            if isinstance(assignment.value, Assignment):
                raise InternalError("augmented assignment cannot be chained", line=origin.span.line, col=origin.span.column)
            value = self._code(assignment.value, scope)
            self._line(f"{self._target(assignment.target, scope)} {assignment.op} {value}", origin)
            return
        targets = [assignment.target]
        value_node = assignment.value
        while isinstance(value_node, Assignment):
            if value_node.op != "=":
                raise InternalError("augmented assignment cannot be chained", line=origin.span.line, col=origin.span.column)
            targets.append(value_node.target)
            value_node = value_node.value
        value = self._code(value_node, scope)
        lhs = " = ".join(self._target(t, scope) for t in targets)
        self._line(f"{lhs} = {value}", origin)

    def _target(self, node: Expr, scope: _Scope) -> str:
        if isinstance(node, Identifier):
            name = node.name
            if name in scope.locals:
                return scope.local(name)
            info = scope.strategy
            if info is not None and scope.kind in ("evaluate", "method"):
                if name in info.params:
                    return f'self.params["{name}"]'
                if name in info.risk:
                    return f"self.{info.risk[name]}"
            if scope.kind == "record" and name in scope.fields:
                return f"self.{py_name(name)}"
            return self._bind_local(name, scope)
        if isinstance(node, (Member, Index, Slice)):
            return self._expr(node, scope, PREC_ATOM)
        raise InternalError(f"cannot assign to {type(node).__name__}", line=node.span.line, col=node.span.column)

    def _bind_local(self, name: str, scope: _Scope) -> str:
        """Bind a DSL local; one that would shadow a reserved name gets trailing underscores."""
        if name in scope.locals:
            return scope.local(name)
        taken = {scope.local(n) for n in scope.locals}
        local = py_name(name)
        while local in self._reserved or local in taken:
            local += "_"
        scope.locals.add(name)
        if local != py_name(name):
            scope.names[name] = local
        return local

    # ----- expressions -----

    def _code(self, node: Expr, scope: _Scope, prec: int = 0) -> str:
        if self.aggressive:
            node = fold_constants(node)
        return self._expr(node, scope, prec)

    def _expr(self, node: Expr, scope: _Scope, prec: int) -> str:
        own = PREC_ATOM
        match node:
            case Literal():
                text = self._literal(node)
                if text.startswith("-"):
                    own = PREC_UNARY
            case Identifier():
                text = self._name(node.name, scope)
            case BinaryOp():
                own = BINARY_PRECEDENCE.get(node.op, -1)
                if own < 0:
                    raise InternalError(f"unknown operator '{node.op}'", line=node.span.line, col=node.span.column)
                if own == PREC_COMPARE:
                    left_prec = right_prec = PREC_COMPARE + 1
                elif own == PREC_POWER:
                    left_prec, right_prec = PREC_AWAIT, PREC_UNARY
                else:
                    left_prec, right_prec = own, own + 1
                text = f"{self._expr(node.left, scope, left_prec)} {node.op} {self._expr(node.right, scope, right_prec)}"
            case UnaryOp(op="not"):
                own = PREC_NOT
                text = f"not {self._expr(node.operand, scope, PREC_NOT)}"
            case UnaryOp():
                own = PREC_UNARY
                text = f"{node.op}{self._expr(node.operand, scope, PREC_UNARY)}"
            case Await():
                if not scope.can_await:
                    return self._expr(node.value, scope, prec)
                own = PREC_AWAIT
                text = f"await {self._expr(node.value, scope, PREC_ATOM)}"
            case Call():
                text = self._call(node, scope)
            case Member():
                text = self._member(node, scope)
            case Index():
                text = f"{self._expr(node.value, scope, PREC_ATOM)}[{self._expr(node.index, scope, 0)}]"
            case Slice():
                parts = [self._expr(p, scope, 0) if p is not None else "" for p in (node.lower, node.upper)]
                if node.step is not None:
                    parts.append(self._expr(node.step, scope, 0))
                text = f"{self._expr(node.value, scope, PREC_ATOM)}[{':'.join(parts)}]"
            case Conditional():
                own = PREC_CONDITIONAL
                body = self._expr(node.body, scope, PREC_OR)
                test = self._expr(node.test, scope, PREC_OR)
                text = f"{body} if {test} else {self._expr(node.orelse, scope, PREC_CONDITIONAL)}"
            case ArrayLiteral():
                text = "[" + ", ".join(self._expr(e, scope, 0) for e in node.elements) + "]"
            case ObjectLiteral():
                items = (f"{p.key!r}: {self._expr(p.value, scope, 0)}" for p in node.properties)
                text = "{" + ", ".join(items) + "}"
            case Comprehension():
                iterable = self._expr(node.iterable, scope, PREC_OR)
                names = {**scope.names, node.target: py_name(node.target)}
                inner = replace(scope, locals=scope.locals | {node.target}, names=names)
                text = f"[{self._expr(node.element, inner, 0)} for {py_name(node.target)} in {iterable}"
                if node.condition is not None:
                    text += f" if {self._expr(node.condition, inner, PREC_OR)}"
                text += "]"
            case Assignment():
                raise InternalError("assignment is only valid as a statement", line=node.span.line, col=node.span.column)
            case _:
                raise InternalError(f"cannot generate code for expression {type(node).__name__}")
        return f"({text})" if own < prec else text

    def _literal(self, node: Literal) -> str:
        match node.kind:
            case "number":
                return format_number(node.value)
            case "string":
                return repr(node.value)
            case "date":
                self._uses.add("datetime")
                iso = node.value[:-1] + "+00:00" if node.value.endswith("Z") else node.value
                return f'datetime.fromisoformat("{iso}")'
            case "bool":
                return "True" if node.value else "False"
            case "null":
                return "None"
        raise InternalError(f"unknown literal kind '{node.kind}'", line=node.span.line, col=node.span.column)

    def _param_ref(self, name: str, scope: _Scope) -> str:
        if scope.kind == "params":
            code = scope.param_code.get(name)
            return f"({code})" if code is not None else "None"
        if scope.kind == "class":
            return f'PARAMS["{name}"]'
        return f'self.params["{name}"]'

    def _name(self, name: str, scope: _Scope) -> str:
        if name in scope.locals:
            return scope.local(name)
        info = scope.strategy
        if info is not None:
            if name in info.params:
                return self._param_ref(name, scope)
            if name in info.risk:
                return info.risk[name] if scope.kind == "class" else f"self.{info.risk[name]}"
            if scope.has_self and name in info.indicators:
                return f'self.get_indicator("{name}")'
            if scope.has_self and name in info.signals:
                return f'self.get_signal("{name}")'
        if scope.kind == "record" and name in scope.fields:
            return f"self.{py_name(name)}"
        return py_name(name)

    def _call(self, node: Call, scope: _Scope) -> str:
        args = ", ".join(self._expr(a, scope, 0) for a in node.args)
        func = node.func
        if isinstance(func, Identifier) and func.name not in scope.locals:
            name = func.name
            if name in self._declared_indicators or name in self._imported:
                return f"{py_name(name)}({args})"
            if name.lower() in BUILTIN_INDICATORS:
                return f"indicators.{name.lower()}({args})"
            if name in RUNTIME_HELPERS and scope.has_self:
                return f"self.{RUNTIME_HELPERS[name]}({args})"
            if name in MATH_FUNCTIONS:
                target = MATH_FUNCTIONS[name]
                if "." in target:
                    self._uses.add(target.split(".")[0])
                return f"{target}({args})"
        return f"{self._expr(func, scope, PREC_ATOM)}({args})"

    def _member(self, node: Member, scope: _Scope) -> str:
        value = node.value
        if (
            isinstance(value, Identifier)
            and value.name == "params"
            and "params" not in scope.locals
            and scope.strategy is not None
        ):
            return self._param_ref(node.attr, scope)
        base = self._expr(value, scope, PREC_ATOM)
        if _is_number(value):
            base = f"({base})"
        if keyword.iskeyword(node.attr):
            return f'getattr({base}, "{node.attr}")'
        return f"{base}.{node.attr}"

    def _annotation(self, node: TypeNode) -> str:
        match node:
            case PrimitiveType():
                if node.name == "datetime":
                    self._uses.add("datetime")
                return PRIMITIVE_ANNOTATIONS.get(node.name, node.name)
            case ArrayType():
                return f"list[{self._annotation(node.element)}]"
            case MapType():
                return f"dict[{self._annotation(node.key)}, {self._annotation(node.value)}]"
            case NamedType():
                if not node.args:
                    return node.name
                return f"{node.name}[{', '.join(self._annotation(a) for a in node.args)}]"
            case FunctionType():
                self._uses.add("Callable")
                params = ", ".join(self._annotation(p) for p in node.params)
                return f"Callable[[{params}], {self._annotation(node.returns)}]"
            case UnionType():
                return " | ".join(self._annotation(m) for m in node.members)
            case OptionalType():
                return f"{self._annotation(node.inner)} | None"
            case _:
                raise InternalError(f"cannot generate an annotation for {type(node).__name__}")


def _generated_name(filename: str) -> str:
    if filename.startswith("<"):
        return "generated.py"
    stem = filename.rsplit("/", 1)[-1]
    return (stem.rsplit(".", 1)[0] if "." in stem else stem) + ".py"


def generate_code(program: Program, options: CompileOptions | None = None) -> GeneratedCode:
    """Generate the Python module (and optional source map) for ``program``."""
    return CodeGenerator(options).generate(program)
