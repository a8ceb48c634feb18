"""
CST -> AST lowering.

Each CST rule maps onto one AST constructor. Positions come straight from the
tokens underneath a node, and literal values are decoded here (numbers to
int/float, string escapes resolved). Anything the grammar cannot produce is
reported as InternalError: it means the parser and the builder disagree,
never that the user wrote something wrong.

A CST that was recovered from parse errors lowers fine; the items that failed
to parse are simply missing from it.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from .ast_nodes import (
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
    Declaration,
    ElifClause,
    EventDecl,
    EventHandler,
    EventHandlers,
    Expr,
    ExprStmt,
    For,
    FunctionType,
    HedgingRule,
    Identifier,
    If,
    ImportDecl,
    Index,
    IndicatorBinding,
    IndicatorDecl,
    IndicatorsBlock,
    Literal,
    MapType,
    Member,
    MicrostructureDecl,
    NamedType,
    ObjectLiteral,
    OptionalType,
    OrderDecl,
    Param,
    ParamsBlock,
    PortfolioDecl,
    PrimitiveType,
    Program,
    Property,
    Return,
    RiskBlock,
    RiskLimit,
    RulesBlock,
    SignalBinding,
    SignalsBlock,
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
)
from .cst_nodes import CstChild, CstNode, Rule
from .diagnostics import InternalError
from .dsl_lexer import Token

logger = logging.getLogger(__name__)

T = TypeVar("T")

BINARY_RULES = frozenset(
    {
        Rule.LOGICAL_OR,
        Rule.LOGICAL_AND,
        Rule.MEMBERSHIP,
        Rule.EQUALITY,
        Rule.RELATIONAL,
        Rule.ADDITIVE,
        Rule.MULTIPLICATIVE,
        Rule.POWER,
    }
)

OPERATOR_ALIASES = {"&&": "and", "||": "or", "!": "not"}

STRING_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "0": "\0",
    "\\": "\\",
    '"': '"',
    "'": "'",
}

STRATEGY_BLOCK_NAMES = {
    Rule.PARAMS_BLOCK: "params",
    Rule.INDICATORS_BLOCK: "indicators",
    Rule.SIGNALS_BLOCK: "signals",
    Rule.RULES_BLOCK: "rules",
    Rule.RISK_BLOCK: "risk",
    Rule.EVENT_HANDLERS: "event",
}


def token_span(tok: Token) -> Span:
    return Span(tok.start, tok.end, tok.line, tok.col, tok.line, tok.col + (tok.end - tok.start))


def span_between(first: Token, last: Token) -> Span:
    return Span(first.start, last.end, first.line, first.col, last.line, last.col + (last.end - last.start))


def node_span(node: CstChild) -> Span:
    if isinstance(node, Token):
        return token_span(node)
    return span_between(node.first_token(), node.last_token())


def decode_number(raw: str) -> int | float:
    if any(ch in raw for ch in ".eE"):
        return float(raw)
    return int(raw)


def decode_string(raw: str) -> str:
    """Strip the quotes of a string token and resolve its escapes."""
    body = raw[1:-1]
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\" or i + 1 >= len(body):
            out.append(ch)
            i += 1
            continue
        esc = body[i + 1]
        if esc == "u" and _is_hex(body[i + 2 : i + 6]):
            out.append(chr(int(body[i + 2 : i + 6], 16)))
            i += 6
            continue
        out.append(STRING_ESCAPES.get(esc, esc))
        i += 2
    return "".join(out)


def _is_hex(text: str) -> bool:
    return len(text) == 4 and all(ch in "0123456789abcdefABCDEF" for ch in text)


def _bad_shape(node: CstChild, what: str) -> InternalError:
    if isinstance(node, Token):
        return InternalError(f"unexpected token {node.kind} while lowering {what}", line=node.line, col=node.col)
    tok = node.first_token() if node.children else None
    return InternalError(
        f"unexpected CST rule '{node.rule.value}' while lowering {what}",
        line=tok.line if tok else None,
        col=tok.col if tok else None,
    )


def _after(node: CstNode, kind: str) -> Optional[CstChild]:
    """The child directly following the first token of ``kind``, if any."""
    for i, child in enumerate(node.children):
        if isinstance(child, Token) and child.kind == kind:
            if i + 1 >= len(node.children):
                raise _bad_shape(node, f"the operand of {kind}")
            return node.children[i + 1]
    return None


def _as_node(child: Optional[CstChild], what: str) -> CstNode:
    if not isinstance(child, CstNode):
        raise InternalError(f"expected a CST node for {what}, got {child!r}")
    return child


class AstBuilder:
    """Stateless CST -> AST transform; one instance may lower many trees."""

    # ----- program & declarations -----

    def program(self, node: CstNode) -> Program:
        if node.rule is not Rule.PROGRAM:
            raise _bad_shape(node, "a program")
        declarations = tuple(self.declaration(child) for child in node.nodes())
        if node.children:
            span = node_span(node)
        else:
            span = Span(0, 0, 1, 1, 1, 1)

        def of(cls: type) -> tuple:
            return tuple(d for d in declarations if isinstance(d, cls))

        return Program(
            imports=of(ImportDecl),
            strategies=of(StrategyDecl),
            indicators=of(IndicatorDecl),
            data=of(DataDecl),
            orders=of(OrderDecl),
            events=of(EventDecl),
            portfolios=of(PortfolioDecl),
            backtests=of(BacktestDecl),
            microstructures=of(MicrostructureDecl),
            declarations=declarations,
            span=span,
        )

    def declaration(self, node: CstNode) -> Declaration:
        match node.rule:
            case Rule.IMPORT_DECL:
                return self._import(node)
            case Rule.STRATEGY_DECL:
                return self._strategy(node)
            case Rule.INDICATOR_DECL:
                return self._indicator_decl(node)
            case Rule.DATA_DECL:
                return DataDecl(
                    name=self._name(node),
                    fields=self._fields(node),
                    metrics=self._section(node, Rule.METRICS_BLOCK, Rule.COMPUTED_FIELD, self._computed_field),
                    span=node_span(node),
                )
            case Rule.ORDER_DECL:
                return OrderDecl(name=self._name(node), fields=self._fields(node), span=node_span(node))
            case Rule.EVENT_DECL:
                handlers = tuple(self._event_handler(h) for h in node.nodes(Rule.EVENT_HANDLER))
                return EventDecl(name=self._name(node), handlers=handlers, span=node_span(node))
            case Rule.PORTFOLIO_DECL:
                return PortfolioDecl(
                    name=self._name(node),
                    fields=self._fields(node),
                    metrics=self._section(node, Rule.METRICS_BLOCK, Rule.COMPUTED_FIELD, self._computed_field),
                    constraints=self._section(node, Rule.CONSTRAINTS_BLOCK, Rule.NAMED_VALUE, self._binding),
                    span=node_span(node),
                )
            case Rule.BACKTEST_DECL:
                return BacktestDecl(
                    name=self._name(node),
                    settings=tuple(self._binding(n) for n in node.nodes(Rule.NAMED_VALUE)),
                    costs=self._section(node, Rule.COSTS_BLOCK, Rule.NAMED_VALUE, self._binding),
                    output=self._section(node, Rule.OUTPUT_BLOCK, Rule.NAMED_VALUE, self._binding),
                    span=node_span(node),
                )
            case Rule.MICROSTRUCTURE_DECL:
                return MicrostructureDecl(
                    name=self._name(node),
                    fields=self._fields(node),
                    detections=self._section(node, Rule.DETECT_BLOCK, Rule.NAMED_VALUE, self._binding),
                    quotes=self._section(node, Rule.QUOTE_BLOCK, Rule.NAMED_VALUE, self._binding),
                    hedging=self._section(node, Rule.HEDGING_BLOCK, Rule.HEDGING_RULE, self._hedging_rule),
                    span=node_span(node),
                )
            case _:
                raise _bad_shape(node, "a declaration")

    def _name(self, node: CstNode) -> str:
        tok = node.token("IDENT")
        if tok is None:
            raise _bad_shape(node, "a declaration name")
        return tok.value

    def _section(self, node: CstNode, block_rule: Rule, item_rule: Rule, build: Callable[[CstNode], T]) -> tuple[T, ...]:
        """Items of every ``block_rule`` child, merged in source order."""
        return tuple(build(item) for block in node.nodes(block_rule) for item in block.nodes(item_rule))

    def _fields(self, node: CstNode) -> tuple[DataField, ...]:
        return tuple(self._data_field(f) for f in node.nodes(Rule.DATA_FIELD))

    def _import(self, node: CstNode) -> ImportDecl:
        source_tok = node.token("STRING")
        if source_tok is None:
            raise _bad_shape(node, "an import source")
        idents = [t.value for t in node.tokens("IDENT")]
        names: tuple[str, ...] = ()
        default = alias = None
        if node.has("LBRACE"):
            names = tuple(idents)
        elif node.has("from"):
            default = idents[0]
        elif node.has("as"):
            alias = idents[0]
        return ImportDecl(
            source=decode_string(source_tok.value),
            names=names,
            default=default,
            alias=alias,
            span=node_span(node),
        )

    def _strategy(self, node: CstNode) -> StrategyDecl:
        grouped: dict[Rule, list[CstNode]] = {}
        for child in node.nodes():
            if child.rule not in STRATEGY_BLOCK_NAMES:
                raise _bad_shape(child, "a strategy block")
            grouped.setdefault(child.rule, []).append(child)
        duplicates = tuple(STRATEGY_BLOCK_NAMES[rule] for rule, blocks in grouped.items() if len(blocks) > 1)

        def merged(rule: Rule, item_rule: Rule, build: Callable[[CstNode], T]) -> Optional[tuple[tuple[T, ...], Span]]:
            blocks = grouped.get(rule)
            if not blocks:
                return None
            items = tuple(build(item) for block in blocks for item in block.nodes(item_rule))
            return items, span_between(blocks[0].first_token(), blocks[-1].last_token())

        params = merged(Rule.PARAMS_BLOCK, Rule.STRATEGY_PARAM, self._strategy_param)
        indicators = merged(Rule.INDICATORS_BLOCK, Rule.INDICATOR_BINDING, self._indicator_binding)
        signals = merged(Rule.SIGNALS_BLOCK, Rule.SIGNAL_BINDING, self._signal_binding)
        rules = merged(Rule.RULES_BLOCK, Rule.TRADING_RULE, self._trading_rule)
        risk = merged(Rule.RISK_BLOCK, Rule.RISK_LIMIT, self._risk_limit)
        events = merged(Rule.EVENT_HANDLERS, Rule.EVENT_HANDLER, self._event_handler)

        return StrategyDecl(
            name=self._name(node),
            params=ParamsBlock(*params) if params else None,
            indicators=IndicatorsBlock(*indicators) if indicators else None,
            signals=SignalsBlock(*signals) if signals else None,
            rules=RulesBlock(*rules) if rules else None,
            risk=RiskBlock(*risk) if risk else None,
            events=EventHandlers(*events) if events else None,
            duplicate_blocks=duplicates,
            span=node_span(node),
        )

    def _strategy_param(self, node: CstNode) -> Param:
        default = _after(node, "ASSIGN")
        return Param(
            name=node.children[0].value,
            type=self.type_node(_as_node(_after(node, "COLON"), "a parameter type")),
            default=self.expr(_as_node(default, "a default")) if default is not None else None,
            span=node_span(node),
        )

    def _named(self, node: CstNode) -> tuple[str, Expr]:
        name, _assign, value, _semi = node.children
        return name.value, self.expr(_as_node(value, "a bound value"))

    def _indicator_binding(self, node: CstNode) -> IndicatorBinding:
        name, value = self._named(node)
        return IndicatorBinding(name=name, value=value, span=node_span(node))

    def _signal_binding(self, node: CstNode) -> SignalBinding:
        name, value = self._named(node)
        return SignalBinding(name=name, value=value, span=node_span(node))

    def _risk_limit(self, node: CstNode) -> RiskLimit:
        name, value = self._named(node)
        return RiskLimit(name=name, value=value, span=node_span(node))

    def _binding(self, node: CstNode) -> Binding:
        name, value = self._named(node)
        return Binding(name=name, value=value, span=node_span(node))

    def _trading_rule(self, node: CstNode) -> TradingRule:
        condition = _as_node(_after(node, "LPAREN"), "a rule condition")
        actions = tuple(self._trading_action(a) for a in node.nodes(Rule.TRADING_ACTION))
        return TradingRule(condition=self.expr(condition), actions=actions, span=node_span(node))

    def _trading_action(self, node: CstNode) -> Action:
        head = node.children[0]
        if isinstance(head, Token):
            args = node.nodes()
            return TradingAction(
                kind=head.value,
                quantity=self.expr(args[0]),
                price=self.expr(args[1]) if len(args) > 1 else None,
                span=node_span(node),
            )
        call = self.expr(head)
        if not isinstance(call, Call):
            raise _bad_shape(head, "a custom action")
        return CustomAction(call=call, span=node_span(node))

    def _event_handler(self, node: CstNode) -> EventHandler:
        params_node = node.node(Rule.PARAMETER_LIST)
        return EventHandler(
            name=node.children[0].value,
            params=self.parameters(params_node) if params_node else (),
            body=self.block(_as_node(node.node(Rule.BLOCK), "a handler body")),
            span=node_span(node),
        )

    def _indicator_decl(self, node: CstNode) -> IndicatorDecl:
        params_node = node.node(Rule.PARAMETER_LIST)
        returns = _after(node, "ARROW")
        value = _after(node, "ASSIGN")
        body = node.node(Rule.BLOCK)
        if (body is None) == (value is None):
            raise _bad_shape(node, "an indicator body")
        return IndicatorDecl(
            name=self._name(node),
            params=self.parameters(params_node) if params_node else (),
            returns=self.type_node(_as_node(returns, "a return type")) if returns is not None else None,
            body=self.block(body) if body is not None else None,
            expr=self.expr(_as_node(value, "an indicator expression")) if value is not None else None,
            span=node_span(node),
        )

    def _data_field(self, node: CstNode) -> DataField:
        default = _after(node, "ASSIGN")
        return DataField(
            name=node.children[0].value,
            type=self.type_node(_as_node(_after(node, "COLON"), "a field type")),
            optional=node.has("QUESTION"),
            default=self.expr(_as_node(default, "a field default")) if default is not None else None,
            span=node_span(node),
        )

    def _computed_field(self, node: CstNode) -> ComputedField:
        return ComputedField(
            name=node.children[0].value,
            type=self.type_node(_as_node(_after(node, "COLON"), "a field type")),
            value=self.expr(_as_node(_after(node, "ASSIGN"), "a computed value")),
            span=node_span(node),
        )

    def _hedging_rule(self, node: CstNode) -> HedgingRule:
        condition, body = node.nodes()
        return HedgingRule(condition=self.expr(condition), body=self.block(body), span=node_span(node))

    def parameters(self, node: CstNode) -> tuple[Param, ...]:
        return tuple(self._strategy_param(p) for p in node.nodes(Rule.PARAMETER))

    # ----- types -----

    def type_node(self, node: CstNode) -> TypeNode:
        match node.rule:
            case Rule.UNION_TYPE:
                return UnionType(tuple(self.type_node(n) for n in node.nodes()), node_span(node))
            case Rule.PRIMARY_TYPE:
                core = node.children[0]
                if isinstance(core, Token):
                    inner: TypeNode = PrimitiveType(core.value, token_span(core))
                else:
                    inner = self.type_node(core)
                if node.has("QUESTION"):
                    return OptionalType(inner, node_span(node))
                return inner
            case Rule.ARRAY_TYPE:
                (element,) = node.nodes()
                return ArrayType(self.type_node(element), node_span(node))
            case Rule.MAP_TYPE:
                key, value = node.nodes()
                return MapType(self.type_node(key), self.type_node(value), node_span(node))
            case Rule.NAMED_TYPE:
                args = tuple(self.type_node(n) for n in node.nodes())
                return NamedType(node.children[0].value, args, node_span(node))
            case Rule.FUNCTION_TYPE:
                *params, returns = node.nodes()
                return FunctionType(tuple(self.type_node(p) for p in params), self.type_node(returns), node_span(node))
            case _:
                raise _bad_shape(node, "a type")

    # ----- statements -----

    def block(self, node: CstNode) -> Block:
        if node.rule is not Rule.BLOCK:
            raise _bad_shape(node, "a block")
        return Block(tuple(self.statement(s) for s in node.nodes()), node_span(node))

    def statement(self, node: CstNode) -> Stmt:
        span = node_span(node)
        match node.rule:
            case Rule.BLOCK:
                return self.block(node)
            case Rule.EXPRESSION_STATEMENT:
                return ExprStmt(self.expr(_as_node(node.children[0], "a statement")), span)
            case Rule.VARIABLE_DECLARATION:
                type_node, value = node.nodes()
                return VarDecl(node.children[0].value, self.type_node(type_node), self.expr(value), span)
            case Rule.IF_STATEMENT:
                return self._if(node)
            case Rule.WHILE_STATEMENT:
                test, body = node.nodes()
                return While(self.expr(test), self.block(body), span)
            case Rule.WHEN_STATEMENT:
                test, body = node.nodes()
                return When(self.expr(test), self.block(body), span)
            case Rule.FOR_STATEMENT:
                iterable, body = node.nodes()
                return For(node.children[1].value, self.expr(iterable), self.block(body), span)
            case Rule.RETURN_STATEMENT:
                values = node.nodes()
                return Return(self.expr(values[0]) if values else None, span)
            case Rule.BREAK_STATEMENT:
                return Break(span)
            case Rule.CONTINUE_STATEMENT:
                return Continue(span)
            case _:
                raise _bad_shape(node, "a statement")

    def _if(self, node: CstNode) -> If:
        tests = [n for n in node.nodes() if n.rule is not Rule.BLOCK]
        blocks = node.nodes(Rule.BLOCK)
        has_else = node.has("else")
        if len(blocks) != len(tests) + (1 if has_else else 0):
            raise _bad_shape(node, "an if statement")
        elifs = tuple(
            ElifClause(self.expr(test), self.block(body), span_between(kw, body.last_token()))
            for kw, test, body in zip(node.tokens("elif"), tests[1:], blocks[1:])
        )
        return If(
            test=self.expr(tests[0]),
            body=self.block(blocks[0]),
            elifs=elifs,
            orelse=self.block(blocks[-1]) if has_else else None,
            span=node_span(node),
        )

    # ----- expressions -----

    def expr(self, node: CstNode) -> Expr:
        span = node_span(node)
        match node.rule:
            case Rule.PRIMARY:
                return self._atom(node.children[0])
            case Rule.PAREN_EXPR:
                return self.expr(_as_node(node.children[1], "a parenthesized expression"))
            case Rule.ASSIGNMENT:
                target, op, value = node.children
                return Assignment(self.expr(target), op.value, self.expr(value), span)
            case Rule.CONDITIONAL:
                test, body, orelse = node.nodes()
                return Conditional(self.expr(test), self.expr(body), self.expr(orelse), span)
            case rule if rule in BINARY_RULES:
                left, *ops, right = node.children
                op = " ".join(t.value for t in ops)
                return BinaryOp(OPERATOR_ALIASES.get(op, op), self.expr(left), self.expr(right), span)
            case Rule.UNARY:
                op, operand = node.children
                if op.kind == "await":
                    return Await(self.expr(operand), span)
                return UnaryOp(OPERATOR_ALIASES.get(op.value, op.value), self.expr(operand), span)
            case Rule.POSTFIX:
                return self._postfix(node)
            case Rule.ARRAY_LITERAL:
                return ArrayLiteral(tuple(self.expr(n) for n in node.nodes()), span)
            case Rule.COMPREHENSION:
                parts = node.nodes()
                target = node.token("IDENT")
                if target is None or len(parts) not in (2, 3):
                    raise _bad_shape(node, "a comprehension")
                condition = self.expr(parts[2]) if len(parts) == 3 else None
                return Comprehension(self.expr(parts[0]), target.value, self.expr(parts[1]), condition, span)
            case Rule.OBJECT_LITERAL:
                return ObjectLiteral(tuple(self._property(p) for p in node.nodes(Rule.OBJECT_PROPERTY)), span)
            case _:
                raise _bad_shape(node, "an expression")

    def _atom(self, tok: CstChild) -> Expr:
        if not isinstance(tok, Token):
            raise _bad_shape(tok, "a primary expression")
        span = token_span(tok)
        match tok.kind:
            case "IDENT" | "params":
                return Identifier(tok.value, span)
            case "NUMBER":
                return Literal("number", decode_number(tok.value), tok.value, span)
            case "STRING":
                return Literal("string", decode_string(tok.value), tok.value, span)
            case "DATE":
                return Literal("date", tok.value, tok.value, span)
            case "true" | "false":
                return Literal("bool", tok.kind == "true", tok.value, span)
            case "null":
                return Literal("null", None, tok.value, span)
            case _:
                raise _bad_shape(tok, "a primary expression")

    def _postfix(self, node: CstNode) -> Expr:
        head, *suffixes = node.children
        value = self.expr(_as_node(head, "a postfix operand"))
        first = node.first_token()
        for suffix in suffixes:
            suffix = _as_node(suffix, "a postfix suffix")
            span = span_between(first, suffix.last_token())
            match suffix.rule:
                case Rule.MEMBER_SUFFIX:
                    value = Member(value, suffix.children[1].value, span)
                case Rule.INDEX_SUFFIX:
                    value = Index(value, self.expr(suffix.children[1]), span)
                case Rule.SLICE_SUFFIX:
                    parts: list[Optional[Expr]] = [None]
                    for child in suffix.children[1:-1]:
                        if isinstance(child, Token):
                            parts.append(None)
                        else:
                            parts[-1] = self.expr(child)
                    lower, upper, step = (parts + [None, None])[:3]
                    value = Slice(value, lower, upper, step, span)
                case Rule.CALL_SUFFIX:
                    arg_list = suffix.node(Rule.ARGUMENT_LIST)
                    args = tuple(self.expr(a) for a in arg_list.nodes()) if arg_list else ()
                    value = Call(value, args, span)
                case _:
                    raise _bad_shape(suffix, "a postfix suffix")
        return value

    def _property(self, node: CstNode) -> Property:
        key_tok = node.children[0]
        key = decode_string(key_tok.value) if key_tok.kind == "STRING" else key_tok.value
        span = node_span(node)
        if len(node.children) == 1:
            return Property(key, Identifier(key, token_span(key_tok)), True, span)
        return Property(key, self.expr(_as_node(node.children[2], "a property value")), False, span)


def build_ast(cst: CstNode) -> Program:
    """Lower a PROGRAM CST node into a Program."""
    program = AstBuilder().program(cst)
    logger.debug("lowered %d declaration(s)", len(program.declarations))
    return program
