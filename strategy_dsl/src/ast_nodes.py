"""
AST node definitions for the strategy DSL.

Every node is a frozen dataclass whose last field is the Span it was lowered
from. Sequences are tuples so a whole tree is hashable and immutable once the
builder hands it over.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, fields
from typing import Iterator, Optional, Tuple, Union


@dataclass(frozen=True)
class Span:
    """Source range of a node: 0-based offsets (end exclusive), 1-based line/column."""

    start: int
    end: int
    line: int
    column: int
    end_line: int
    end_column: int


class ASTNode:
    """Base class for all AST nodes."""

    span: Span


# ----- Expressions -----


@dataclass(frozen=True)
class Literal(ASTNode):
    """
    Literal value with its decoded Python value and the source text.

    Examples:
        30          -> kind='number', value=30
        "AAPL"      -> kind='string', value='AAPL'
        2024-01-02  -> kind='date',   value='2024-01-02'
        true        -> kind='bool',   value=True
        null        -> kind='null',   value=None
    """

    kind: str
    value: object
    raw: str
    span: Span


@dataclass(frozen=True)
class Identifier(ASTNode):
    name: str
    span: Span


@dataclass(frozen=True)
class BinaryOp(ASTNode):
    """
    Binary operation node. ``op`` is normalized: ``&&`` becomes ``and``,
    ``||`` becomes ``or``; ``not in`` keeps its two words.
    """

    op: str
    left: Expr
    right: Expr
    span: Span


@dataclass(frozen=True)
class UnaryOp(ASTNode):
    """Prefix ``+``, ``-``, ``~`` or ``not`` (``!`` is normalized to ``not``)."""

    op: str
    operand: Expr
    span: Span


@dataclass(frozen=True)
class Await(ASTNode):
    value: Expr
    span: Span


@dataclass(frozen=True)
class Call(ASTNode):
    """
    Function call node.

    Examples:
        SMA(close, 20)          -> func=Identifier('SMA')
        self.get_position(sym)  -> func=Member(...)
    """

    func: Expr
    args: Tuple[Expr, ...]
    span: Span


@dataclass(frozen=True)
class Member(ASTNode):
    value: Expr
    attr: str
    span: Span


@dataclass(frozen=True)
class Index(ASTNode):
    value: Expr
    index: Expr
    span: Span


@dataclass(frozen=True)
class Slice(ASTNode):
    value: Expr
    lower: Optional[Expr]
    upper: Optional[Expr]
    step: Optional[Expr]
    span: Span


@dataclass(frozen=True)
class Conditional(ASTNode):
    """``test ? body : orelse``"""

    test: Expr
    body: Expr
    orelse: Expr
    span: Span


@dataclass(frozen=True)
class Assignment(ASTNode):
    target: Expr
    op: str
    value: Expr
    span: Span


@dataclass(frozen=True)
class ArrayLiteral(ASTNode):
    elements: Tuple[Expr, ...]
    span: Span


@dataclass(frozen=True)
class Property(ASTNode):
    key: str
    value: Expr
    shorthand: bool
    span: Span


@dataclass(frozen=True)
class ObjectLiteral(ASTNode):
    properties: Tuple[Property, ...]
    span: Span


@dataclass(frozen=True)
class Comprehension(ASTNode):
    """``[element for target in iterable if condition]``"""

    element: Expr
    target: str
    iterable: Expr
    condition: Optional[Expr]
    span: Span


Expr = Union[
    Literal,
    Identifier,
    BinaryOp,
    UnaryOp,
    Await,
    Call,
    Member,
    Index,
    Slice,
    Conditional,
    Assignment,
    ArrayLiteral,
    ObjectLiteral,
    Comprehension,
]


# ----- Types -----


@dataclass(frozen=True)
class PrimitiveType(ASTNode):
    name: str
    span: Span


@dataclass(frozen=True)
class ArrayType(ASTNode):
    element: TypeNode
    span: Span


@dataclass(frozen=True)
class MapType(ASTNode):
    key: TypeNode
    value: TypeNode
    span: Span


@dataclass(frozen=True)
class NamedType(ASTNode):
    name: str
    args: Tuple[TypeNode, ...]
    span: Span


@dataclass(frozen=True)
class FunctionType(ASTNode):
    params: Tuple[TypeNode, ...]
    returns: TypeNode
    span: Span


@dataclass(frozen=True)
class UnionType(ASTNode):
    members: Tuple[TypeNode, ...]
    span: Span


@dataclass(frozen=True)
class OptionalType(ASTNode):
    inner: TypeNode
    span: Span


TypeNode = Union[PrimitiveType, ArrayType, MapType, NamedType, FunctionType, UnionType, OptionalType]


# ----- Statements -----


@dataclass(frozen=True)
class ExprStmt(ASTNode):
    expr: Expr
    span: Span


@dataclass(frozen=True)
class VarDecl(ASTNode):
    name: str
    type: TypeNode
    value: Expr
    span: Span


@dataclass(frozen=True)
class Block(ASTNode):
    body: Tuple[Stmt, ...]
    span: Span


@dataclass(frozen=True)
class ElifClause(ASTNode):
    test: Expr
    body: Block
    span: Span


@dataclass(frozen=True)
class If(ASTNode):
    test: Expr
    body: Block
    elifs: Tuple[ElifClause, ...]
    orelse: Optional[Block]
    span: Span


@dataclass(frozen=True)
class While(ASTNode):
    test: Expr
    body: Block
    span: Span


@dataclass(frozen=True)
class For(ASTNode):
    target: str
    iterable: Expr
    body: Block
    span: Span


@dataclass(frozen=True)
class Return(ASTNode):
    value: Optional[Expr]
    span: Span


@dataclass(frozen=True)
class Break(ASTNode):
    span: Span


@dataclass(frozen=True)
class Continue(ASTNode):
    span: Span


@dataclass(frozen=True)
class When(ASTNode):
    """Statement-level guard; behaves like an ``if`` without branches."""

    test: Expr
    body: Block
    span: Span


Stmt = Union[ExprStmt, VarDecl, Block, If, While, For, Return, Break, Continue, When]


# ----- Declarations -----


@dataclass(frozen=True)
class ImportDecl(ASTNode):
    """
    Import declaration.

    Examples:
        import { RSI, MACD } from "ta";   -> source='ta', names=('RSI', 'MACD')
        import helpers from "lib/helpers"; -> source='lib/helpers', default='helpers'
        import "risk" as r;               -> source='risk', alias='r'
    """

    source: str
    names: Tuple[str, ...]
    default: Optional[str]
    alias: Optional[str]
    span: Span


@dataclass(frozen=True)
class Param(ASTNode):
    """A strategy parameter or a function parameter; no default means required."""

    name: str
    type: TypeNode
    default: Optional[Expr]
    span: Span


@dataclass(frozen=True)
class ParamsBlock(ASTNode):
    params: Tuple[Param, ...]
    span: Span


@dataclass(frozen=True)
class IndicatorBinding(ASTNode):
    name: str
    value: Expr
    span: Span


@dataclass(frozen=True)
class IndicatorsBlock(ASTNode):
    bindings: Tuple[IndicatorBinding, ...]
    span: Span


@dataclass(frozen=True)
class SignalBinding(ASTNode):
    name: str
    value: Expr
    span: Span


@dataclass(frozen=True)
class SignalsBlock(ASTNode):
    signals: Tuple[SignalBinding, ...]
    span: Span


@dataclass(frozen=True)
class TradingAction(ASTNode):
    """buy/sell/short/cover; ``price`` None means a market order."""

    kind: str
    quantity: Expr
    price: Optional[Expr]
    span: Span


@dataclass(frozen=True)
class CustomAction(ASTNode):
    call: Call
    span: Span


Action = Union[TradingAction, CustomAction]


@dataclass(frozen=True)
class TradingRule(ASTNode):
    condition: Expr
    actions: Tuple[Action, ...]
    span: Span


@dataclass(frozen=True)
class RulesBlock(ASTNode):
    rules: Tuple[TradingRule, ...]
    span: Span


@dataclass(frozen=True)
class RiskLimit(ASTNode):
    name: str
    value: Expr
    span: Span


@dataclass(frozen=True)
class RiskBlock(ASTNode):
    limits: Tuple[RiskLimit, ...]
    span: Span


@dataclass(frozen=True)
class EventHandler(ASTNode):
    name: str
    params: Tuple[Param, ...]
    body: Block
    span: Span


@dataclass(frozen=True)
class EventHandlers(ASTNode):
    handlers: Tuple[EventHandler, ...]
    span: Span


@dataclass(frozen=True)
class StrategyDecl(ASTNode):
    """
    Top-level strategy node.

    Sub-blocks that appear more than once are merged in source order; the
    kinds that repeated are listed in ``duplicate_blocks``.
    """

    name: str
    params: Optional[ParamsBlock]
    indicators: Optional[IndicatorsBlock]
    signals: Optional[SignalsBlock]
    rules: Optional[RulesBlock]
    risk: Optional[RiskBlock]
    events: Optional[EventHandlers]
    duplicate_blocks: Tuple[str, ...]
    span: Span


@dataclass(frozen=True)
class IndicatorDecl(ASTNode):
    """User indicator; exactly one of ``body`` and ``expr`` is set."""

    name: str
    params: Tuple[Param, ...]
    returns: Optional[TypeNode]
    body: Optional[Block]
    expr: Optional[Expr]
    span: Span


@dataclass(frozen=True)
class DataField(ASTNode):
    name: str
    type: TypeNode
    optional: bool
    default: Optional[Expr]
    span: Span


@dataclass(frozen=True)
class ComputedField(ASTNode):
    name: str
    type: TypeNode
    value: Expr
    span: Span


@dataclass(frozen=True)
class Binding(ASTNode):
    """``name = value;`` inside backtest, constraints, detect and quote blocks."""

    name: str
    value: Expr
    span: Span


@dataclass(frozen=True)
class DataDecl(ASTNode):
    name: str
    fields: Tuple[DataField, ...]
    metrics: Tuple[ComputedField, ...]
    span: Span


@dataclass(frozen=True)
class OrderDecl(ASTNode):
    name: str
    fields: Tuple[DataField, ...]
    span: Span


@dataclass(frozen=True)
class EventDecl(ASTNode):
    name: str
    handlers: Tuple[EventHandler, ...]
    span: Span


@dataclass(frozen=True)
class PortfolioDecl(ASTNode):
    name: str
    fields: Tuple[DataField, ...]
    metrics: Tuple[ComputedField, ...]
    constraints: Tuple[Binding, ...]
    span: Span


@dataclass(frozen=True)
class BacktestDecl(ASTNode):
    name: str
    settings: Tuple[Binding, ...]
    costs: Tuple[Binding, ...]
    output: Tuple[Binding, ...]
    span: Span


@dataclass(frozen=True)
class HedgingRule(ASTNode):
    condition: Expr
    body: Block
    span: Span


@dataclass(frozen=True)
class MicrostructureDecl(ASTNode):
    name: str
    fields: Tuple[DataField, ...]
    detections: Tuple[Binding, ...]
    quotes: Tuple[Binding, ...]
    hedging: Tuple[HedgingRule, ...]
    span: Span


Declaration = Union[
    ImportDecl,
    StrategyDecl,
    IndicatorDecl,
    DataDecl,
    OrderDecl,
    EventDecl,
    PortfolioDecl,
    BacktestDecl,
    MicrostructureDecl,
]


@dataclass(frozen=True)
class Program(ASTNode):
    """
    Root node. The per-kind tuples are views of ``declarations``, which keeps
    every declaration in source order.
    """

    imports: Tuple[ImportDecl, ...]
    strategies: Tuple[StrategyDecl, ...]
    indicators: Tuple[IndicatorDecl, ...]
    data: Tuple[DataDecl, ...]
    orders: Tuple[OrderDecl, ...]
    events: Tuple[EventDecl, ...]
    portfolios: Tuple[PortfolioDecl, ...]
    backtests: Tuple[BacktestDecl, ...]
    microstructures: Tuple[MicrostructureDecl, ...]
    declarations: Tuple[Declaration, ...]
    span: Span


def iter_child_nodes(node: ASTNode) -> Iterator[ASTNode]:
    """Yield the direct child nodes of ``node`` in field order."""
    for f in fields(node):
        value = getattr(node, f.name)
        if isinstance(value, ASTNode):
            yield value
        elif isinstance(value, tuple):
            for item in value:
                if isinstance(item, ASTNode):
                    yield item


def walk(node: ASTNode) -> Iterator[ASTNode]:
    """Breadth-first iteration over ``node`` and all its descendants."""
    todo = deque([node])
    while todo:
        current = todo.popleft()
        todo.extend(iter_child_nodes(current))
        yield current
