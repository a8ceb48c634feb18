"""
Recursive descent parser for the strategy DSL.

The parser turns the token stream into a CST (see cst_nodes.Rule for the
rule names) and never raises for bad input: every grammar violation becomes
a ParseError in the Diagnostics collector, after which the parser skips to a
synchronization point and carries on. Two kinds of synchronization exist:

- inside a ``{ ... }`` list, to the end of the broken item (the next ``;`` at
  the same brace depth, the end of a balanced ``{ ... }`` group, or the
  closing ``}`` of the list);
- at program level, to the next declaration keyword at brace depth zero.

Binary operators are parsed by precedence climbing over BINARY_LEVELS.
Prefix operators sit above power, so ``-a ** b`` is ``-(a ** b)``, and the
exponent is parsed as a unary expression, which makes ``**`` right
associative.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator

from .cst_nodes import CstNode, Rule
from .diagnostics import Diagnostics, ParseError
from .dsl_lexer import KEYWORDS, Token, describe_kind, tokenize

logger = logging.getLogger(__name__)

MAX_NESTING_DEPTH = 64

DECLARATION_KEYWORDS = (
    "import",
    "strategy",
    "indicator",
    "data",
    "order",
    "event",
    "portfolio",
    "backtest",
    "microstructure",
)
STRATEGY_MEMBERS = ("params", "indicators", "signals", "rules", "risk", "event")
ACTION_KEYWORDS = ("buy", "sell", "short", "cover")
HANDLER_NAMES = ("on_bar", "on_tick", "on_book", "on_fill", "on_reject", "IDENT")
PRIMITIVE_TYPES = ("int", "float", "string", "boolean", "datetime", "void")
TYPE_STARTS = PRIMITIVE_TYPES + ("Array", "Map", "IDENT", "LPAREN")
ASSIGN_OPS = ("ASSIGN", "PLUS_ASSIGN", "MINUS_ASSIGN", "TIMES_ASSIGN", "DIV_ASSIGN", "MOD_ASSIGN")
PREFIX_OPS = ("PLUS", "MINUS", "BANG", "not", "TILDE", "await")
LITERAL_KINDS = ("NUMBER", "STRING", "DATE", "true", "false", "null", "IDENT")
# `params.x` reads a strategy parameter, so the keyword doubles as a name
PRIMARY_KINDS = LITERAL_KINDS + ("params",)
EXPRESSION_STARTS = PRIMARY_KINDS + ("LPAREN", "LBRACK", "LBRACE") + PREFIX_OPS

# Lowest to highest; all left associative.
BINARY_LEVELS = (
    (Rule.LOGICAL_OR, ("OR_OR", "or")),
    (Rule.LOGICAL_AND, ("AND_AND", "and")),
    (Rule.MEMBERSHIP, ("in",)),  # plus 'not' 'in'
    (Rule.EQUALITY, ("EQ", "NE")),
    (Rule.RELATIONAL, ("LT", "LE", "GT", "GE")),
    (Rule.ADDITIVE, ("PLUS", "MINUS")),
    (Rule.MULTIPLICATIVE, ("TIMES", "DIV", "MOD")),
)
_LEVEL_OF = {kind: level for level, (_rule, kinds) in enumerate(BINARY_LEVELS) for kind in kinds}
_MEMBERSHIP_LEVEL = 2


class Parser:
    """Parser state for one token stream; build a new one per call."""

    def __init__(self, tokens: list[Token], diagnostics: Diagnostics | None = None, filename: str = "<input>"):
        if not tokens or tokens[-1].kind != "EOF":
            raise ValueError("token stream must end with an EOF token")
        self.tokens = tokens
        self.pos = 0
        self.filename = filename
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics(filename)
        self._depth = 0

    # --- token helpers ---

    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def check(self, *kinds: str) -> bool:
        return self.peek().kind in kinds

    def at_end(self) -> bool:
        return self.peek().kind == "EOF"

    def advance(self) -> Token:
        tok = self.peek()
        if tok.kind != "EOF":
            self.pos += 1
            # consuming a token after synchronizing ends recovery
            self.diagnostics.end_recovery()
        return tok

    def expect(self, *kinds: str) -> Token:
        tok = self.peek()
        if tok.kind in kinds:
            return self.advance()
        raise self._error_at(tok, kinds)

    def _error_at(self, tok: Token, expected: tuple[str, ...], what: str | None = None) -> ParseError:
        if what is None:
            names = [describe_kind(k) for k in expected]
            what = names[0] if len(names) == 1 else "one of " + ", ".join(names)
        return ParseError(
            f"Expected {what} but found {tok.describe()}",
            expected=expected,
            file=self.filename,
            line=tok.line,
            col=tok.col,
            offset=tok.start,
        )

    def _error(self, tok: Token, message: str) -> ParseError:
        return ParseError(message, file=self.filename, line=tok.line, col=tok.col, offset=tok.start)

    @contextmanager
    def _nesting(self) -> Iterator[None]:
        self._depth += 1
        try:
            if self._depth > MAX_NESTING_DEPTH:
                raise self._error(self.peek(), f"Nesting deeper than {MAX_NESTING_DEPTH} levels")
            yield
        finally:
            self._depth -= 1

    # --- recovery ---

    def _recover(self, error: ParseError, synchronize: Callable[[], None]) -> None:
        self.diagnostics.add_error(error)
        start = self.pos
        synchronize()
        self.diagnostics.begin_recovery()
        logger.debug("recovered from %r, skipped %d token(s)", error.message, self.pos - start)

    def _sync_item(self) -> None:
        depth = 0
        while not self.at_end():
            kind = self.peek().kind
            if kind == "RBRACE":
                if depth == 0:
                    return
                depth -= 1
                self.advance()
                if depth == 0:
                    return
                continue
            if kind == "LBRACE":
                depth += 1
            elif kind == "SEMI" and depth == 0:
                self.advance()
                return
            self.advance()

    def _sync_declaration(self) -> None:
        depth = 0
        while not self.at_end():
            kind = self.peek().kind
            if depth == 0 and kind in DECLARATION_KEYWORDS:
                return
            if kind == "LBRACE":
                depth += 1
            elif kind == "RBRACE":
                depth = max(depth - 1, 0)
            self.advance()

    def _item_list(self, parse_item: Callable[[], CstNode], stop: tuple[str, ...] = ("RBRACE",)) -> list[CstNode]:
        items: list[CstNode] = []
        while not self.check(*stop) and not self.at_end():
            start = self.pos
            try:
                items.append(parse_item())
            except ParseError as err:
                self._recover(err, self._sync_item)
                if self.pos == start and not self.check("RBRACE") and not self.at_end():
                    self.pos += 1
        return items

    # --- program & declarations ---

    def parse_program(self) -> CstNode:
        children: list[CstNode] = []
        while not self.at_end():
            start = self.pos
            try:
                children.append(self._declaration())
            except ParseError as err:
                self._recover(err, self._sync_declaration)
                if self.pos == start and not self.at_end():
                    self.pos += 1
        self.diagnostics.end_recovery()
        return CstNode(Rule.PROGRAM, tuple(children))

    def _declaration(self) -> CstNode:
        kind = self.peek().kind
        if kind == "import":
            return self._import_decl()
        if kind == "strategy":
            return self._strategy_decl()
        if kind == "indicator":
            return self._indicator_decl()
        if kind == "data":
            return self._fields_decl(Rule.DATA_DECL, "data", sections=("metrics",))
        if kind == "order":
            return self._fields_decl(Rule.ORDER_DECL, "order", sections=())
        if kind == "event":
            return self._event_decl()
        if kind == "portfolio":
            return self._fields_decl(Rule.PORTFOLIO_DECL, "portfolio", sections=("metrics", "constraints"))
        if kind == "backtest":
            return self._backtest_decl()
        if kind == "microstructure":
            return self._microstructure_decl()
        raise self._error_at(self.peek(), DECLARATION_KEYWORDS, "a declaration")

    def _import_decl(self) -> CstNode:
        children: list = [self.expect("import")]
        if self.check("LBRACE"):
            children.append(self.advance())
            children.append(self.expect("IDENT"))
            while self.check("COMMA"):
                children.append(self.advance())
                children.append(self.expect("IDENT"))
            children.append(self.expect("RBRACE"))
            children.append(self.expect("from"))
            children.append(self.expect("STRING"))
        elif self.check("IDENT"):
            children.append(self.advance())
            children.append(self.expect("from"))
            children.append(self.expect("STRING"))
        else:
            children.append(self.expect("STRING", "IDENT", "LBRACE"))
            if self.check("as"):
                children.append(self.advance())
                children.append(self.expect("IDENT"))
        children.append(self.expect("SEMI"))
        return CstNode(Rule.IMPORT_DECL, tuple(children))

    def _strategy_decl(self) -> CstNode:
        children: list = [self.expect("strategy"), self.expect("IDENT"), self.expect("LBRACE")]
        children.extend(self._item_list(self._strategy_member))
        children.append(self.expect("RBRACE"))
        return CstNode(Rule.STRATEGY_DECL, tuple(children))

    def _strategy_member(self) -> CstNode:
        kind = self.peek().kind
        if kind == "params":
            return self._keyword_block(Rule.PARAMS_BLOCK, "params", self._strategy_param)
        if kind == "indicators":
            return self._keyword_block(Rule.INDICATORS_BLOCK, "indicators", lambda: self._named_value(Rule.INDICATOR_BINDING))
        if kind == "signals":
            return self._keyword_block(Rule.SIGNALS_BLOCK, "signals", lambda: self._named_value(Rule.SIGNAL_BINDING))
        if kind == "rules":
            return self._keyword_block(Rule.RULES_BLOCK, "rules", self._trading_rule)
        if kind == "risk":
            return self._keyword_block(Rule.RISK_BLOCK, "risk", lambda: self._named_value(Rule.RISK_LIMIT))
        if kind == "event":
            return self._keyword_block(Rule.EVENT_HANDLERS, "event", self._event_handler)
        raise self._error_at(self.peek(), STRATEGY_MEMBERS, "a strategy block")

    def _keyword_block(self, rule: Rule, keyword: str, parse_item: Callable[[], CstNode]) -> CstNode:
        children: list = [self.expect(keyword), self.expect("LBRACE")]
        children.extend(self._item_list(parse_item))
        children.append(self.expect("RBRACE"))
        return CstNode(rule, tuple(children))

    def _named_value(self, rule: Rule = Rule.NAMED_VALUE) -> CstNode:
        # ID '=' expr ';'
        return CstNode(rule, (self.expect("IDENT"), self.expect("ASSIGN"), self._expression(), self.expect("SEMI")))

    def _strategy_param(self) -> CstNode:
        children: list = [self.expect("IDENT"), self.expect("COLON"), self._type()]
        if self.check("ASSIGN"):
            children.append(self.advance())
            children.append(self._expression())
        children.append(self.expect("SEMI"))
        return CstNode(Rule.STRATEGY_PARAM, tuple(children))

    def _trading_rule(self) -> CstNode:
        children: list = [self.expect("when"), self.expect("LPAREN"), self._expression(), self.expect("RPAREN")]
        children.append(self.expect("LBRACE"))
        children.extend(self._item_list(self._trading_action))
        children.append(self.expect("RBRACE"))
        return CstNode(Rule.TRADING_RULE, tuple(children))

    def _trading_action(self) -> CstNode:
        if self.check(*ACTION_KEYWORDS):
            children: list = [self.advance(), self.expect("LPAREN"), self._expression()]
            if self.check("COMMA"):
                children.append(self.advance())
                children.append(self._expression())
            children.append(self.expect("RPAREN"))
            children.append(self.expect("SEMI"))
            return CstNode(Rule.TRADING_ACTION, tuple(children))
        if not self.check("IDENT"):
            raise self._error_at(self.peek(), ACTION_KEYWORDS + ("IDENT",), "a trading action")
        start = self.peek()
        call = self._postfix()
        if not _is_call(call):
            raise self._error(start, "Expected a trading action or a function call")
        return CstNode(Rule.TRADING_ACTION, (call, self.expect("SEMI")))

    def _event_handler(self) -> CstNode:
        children: list = [self.expect(*HANDLER_NAMES), self.expect("LPAREN")]
        if not self.check("RPAREN"):
            children.append(self._parameter_list())
        children.append(self.expect("RPAREN"))
        children.append(self._block())
        return CstNode(Rule.EVENT_HANDLER, tuple(children))

    def _indicator_decl(self) -> CstNode:
        children: list = [self.expect("indicator"), self.expect("IDENT"), self.expect("LPAREN")]
        if not self.check("RPAREN"):
            children.append(self._parameter_list())
        children.append(self.expect("RPAREN"))
        if self.check("ARROW"):
            children.append(self.advance())
            children.append(self._type())
        if self.check("LBRACE"):
            children.append(self._block())
        else:
            children.append(self.expect("ASSIGN", "LBRACE"))
            children.append(self._expression())
            children.append(self.expect("SEMI"))
        return CstNode(Rule.INDICATOR_DECL, tuple(children))

    def _fields_decl(self, rule: Rule, keyword: str, sections: tuple[str, ...]) -> CstNode:
        """data / order / portfolio: fields first, then the optional sections in order."""
        children: list = [self.expect(keyword), self.expect("IDENT"), self.expect("LBRACE")]
        children.extend(self._item_list(self._data_field, stop=("RBRACE",) + sections))
        for section in sections:
            if not self.check(section):
                continue
            if section == "metrics":
                children.append(self._keyword_block(Rule.METRICS_BLOCK, "metrics", self._computed_field))
            else:
                children.append(self._keyword_block(Rule.CONSTRAINTS_BLOCK, "constraints", self._named_value))
        children.append(self.expect("RBRACE"))
        return CstNode(rule, tuple(children))

    def _data_field(self) -> CstNode:
        children: list = [self.expect("IDENT")]
        if self.check("QUESTION"):
            children.append(self.advance())
        children.append(self.expect("COLON"))
        children.append(self._type())
        if self.check("ASSIGN"):
            children.append(self.advance())
            children.append(self._expression())
        children.append(self.expect("SEMI"))
        return CstNode(Rule.DATA_FIELD, tuple(children))

    def _computed_field(self) -> CstNode:
        children = (
            self.expect("IDENT"),
            self.expect("COLON"),
            self._type(),
            self.expect("ASSIGN"),
            self._expression(),
            self.expect("SEMI"),
        )
        return CstNode(Rule.COMPUTED_FIELD, children)

    def _event_decl(self) -> CstNode:
        children: list = [self.expect("event"), self.expect("IDENT"), self.expect("LBRACE")]
        children.extend(self._item_list(self._event_handler))
        children.append(self.expect("RBRACE"))
        return CstNode(Rule.EVENT_DECL, tuple(children))

    def _backtest_decl(self) -> CstNode:
        children: list = [self.expect("backtest"), self.expect("IDENT"), self.expect("LBRACE")]
        children.extend(self._item_list(self._named_value, stop=("RBRACE", "costs", "output")))
        if self.check("costs"):
            children.append(self._keyword_block(Rule.COSTS_BLOCK, "costs", self._named_value))
        if self.check("output"):
            children.append(self._keyword_block(Rule.OUTPUT_BLOCK, "output", self._named_value))
        children.append(self.expect("RBRACE"))
        return CstNode(Rule.BACKTEST_DECL, tuple(children))

    def _microstructure_decl(self) -> CstNode:
        children: list = [self.expect("microstructure"), self.expect("IDENT"), self.expect("LBRACE")]
        children.extend(self._item_list(self._microstructure_member))
        children.append(self.expect("RBRACE"))
        return CstNode(Rule.MICROSTRUCTURE_DECL, tuple(children))

    def _microstructure_member(self) -> CstNode:
        kind = self.peek().kind
        if kind == "IDENT":
            return self._data_field()
        if kind == "detect":
            return self._keyword_block(Rule.DETECT_BLOCK, "detect", self._named_value)
        if kind == "quote":
            return self._keyword_block(Rule.QUOTE_BLOCK, "quote", self._named_value)
        if kind == "hedging":
            return self._keyword_block(Rule.HEDGING_BLOCK, "hedging", self._hedging_rule)
        raise self._error_at(self.peek(), ("IDENT", "detect", "quote", "hedging"), "a microstructure member")

    def _hedging_rule(self) -> CstNode:
        children = (
            self.expect("when"),
            self.expect("LPAREN"),
            self._expression(),
            self.expect("RPAREN"),
            self._block(),
        )
        return CstNode(Rule.HEDGING_RULE, children)

    # --- types ---

    def _type(self) -> CstNode:
        with self._nesting():
            first = self._primary_type()
            if not self.check("PIPE"):
                return first
            children: list = [first]
            while self.check("PIPE"):
                children.append(self.advance())
                children.append(self._primary_type())
            return CstNode(Rule.UNION_TYPE, tuple(children))

    def _primary_type(self) -> CstNode:
        tok = self.peek()
        core: CstNode | Token
        if tok.kind in PRIMITIVE_TYPES:
            core = self.advance()
        elif tok.kind == "Array":
            core = CstNode(Rule.ARRAY_TYPE, (self.advance(), self.expect("LT"), self._type(), self.expect("GT")))
        elif tok.kind == "Map":
            core = CstNode(
                Rule.MAP_TYPE,
                (self.advance(), self.expect("LT"), self._type(), self.expect("COMMA"), self._type(), self.expect("GT")),
            )
        elif tok.kind == "IDENT":
            children: list = [self.advance()]
            if self.check("LT"):
                children.append(self.advance())
                children.append(self._type())
                while self.check("COMMA"):
                    children.append(self.advance())
                    children.append(self._type())
                children.append(self.expect("GT"))
            core = CstNode(Rule.NAMED_TYPE, tuple(children))
        elif tok.kind == "LPAREN":
            children = [self.advance()]
            if not self.check("RPAREN"):
                children.append(self._type())
                while self.check("COMMA"):
                    children.append(self.advance())
                    children.append(self._type())
            children.append(self.expect("RPAREN"))
            children.append(self.expect("ARROW"))
            children.append(self._type())
            core = CstNode(Rule.FUNCTION_TYPE, tuple(children))
        else:
            raise self._error_at(tok, TYPE_STARTS, "a type")
        if self.check("QUESTION"):
            return CstNode(Rule.PRIMARY_TYPE, (core, self.advance()))
        return CstNode(Rule.PRIMARY_TYPE, (core,))

    # --- expressions ---

    def _expression(self, allow_assignment: bool = False) -> CstNode:
        with self._nesting():
            return self._assignment(allow_assignment)

    def _assignment(self, allowed: bool, chained: bool = False) -> CstNode:
        target = self._conditional()
        if not self.check(*ASSIGN_OPS):
            return target
        op = self.advance()
        if not allowed or (chained and op.kind != "ASSIGN"):
            self.diagnostics.add_error(self._error(op, "Assignment is only allowed as a statement"))
        elif not _is_assignable(target):
            self.diagnostics.add_error(self._error(target.first_token(), "Invalid assignment target"))
        with self._nesting():
            value = self._assignment(allowed and op.kind == "ASSIGN", chained=True)
        return CstNode(Rule.ASSIGNMENT, (target, op, value))

    def _conditional(self) -> CstNode:
        test = self._binary(0)
        if not self.check("QUESTION"):
            return test
        with self._nesting():
            question = self.advance()
            consequent = self._conditional()
            colon = self.expect("COLON")
            alternate = self._conditional()
        return CstNode(Rule.CONDITIONAL, (test, question, consequent, colon, alternate))

    def _binary_level(self) -> int | None:
        tok = self.peek()
        if tok.kind == "not":
            return _MEMBERSHIP_LEVEL if self.peek(1).kind == "in" else None
        return _LEVEL_OF.get(tok.kind)

    def _binary(self, min_level: int) -> CstNode:
        left = self._unary()
        while True:
            level = self._binary_level()
            if level is None or level < min_level:
                return left
            if self.check("not"):
                ops: tuple[Token, ...] = (self.advance(), self.expect("in"))
            else:
                ops = (self.advance(),)
            right = self._binary(level + 1)
            left = CstNode(BINARY_LEVELS[level][0], (left, *ops, right))

    def _unary(self) -> CstNode:
        if not self.check(*PREFIX_OPS):
            return self._power()
        with self._nesting():
            op = self.advance()
            operand = self._unary()
        return CstNode(Rule.UNARY, (op, operand))

    def _power(self) -> CstNode:
        base = self._postfix()
        if not self.check("POWER"):
            return base
        with self._nesting():
            op = self.advance()
            exponent = self._unary()
        return CstNode(Rule.POWER, (base, op, exponent))

    def _postfix(self) -> CstNode:
        primary = self._primary()
        suffixes: list[CstNode] = []
        while True:
            if self.check("DOT"):
                dot = self.advance()
                suffixes.append(CstNode(Rule.MEMBER_SUFFIX, (dot, self._property_name())))
            elif self.check("LBRACK"):
                suffixes.append(self._index_suffix())
            elif self.check("LPAREN"):
                children: list = [self.advance()]
                if not self.check("RPAREN"):
                    children.append(self._argument_list())
                children.append(self.expect("RPAREN"))
                suffixes.append(CstNode(Rule.CALL_SUFFIX, tuple(children)))
            else:
                break
        if not suffixes:
            return primary
        return CstNode(Rule.POSTFIX, (primary, *suffixes))

    def _property_name(self) -> Token:
        tok = self.peek()
        if tok.kind == "IDENT" or tok.kind in KEYWORDS:
            return self.advance()
        raise self._error_at(tok, ("IDENT",), "a property name")

    def _index_suffix(self) -> CstNode:
        children: list = [self.expect("LBRACK")]
        if not self.check("COLON"):
            children.append(self._expression())
        rule = Rule.INDEX_SUFFIX
        if self.check("COLON"):
            rule = Rule.SLICE_SUFFIX
            children.append(self.advance())
            if not self.check("COLON", "RBRACK"):
                children.append(self._expression())
            if self.check("COLON"):
                children.append(self.advance())
                if not self.check("RBRACK"):
                    children.append(self._expression())
        children.append(self.expect("RBRACK"))
        return CstNode(rule, tuple(children))

    def _argument_list(self) -> CstNode:
        children: list = [self._expression()]
        while self.check("COMMA"):
            children.append(self.advance())
            children.append(self._expression())
        return CstNode(Rule.ARGUMENT_LIST, tuple(children))

    def _primary(self) -> CstNode:
        tok = self.peek()
        if tok.kind in PRIMARY_KINDS:
            return CstNode(Rule.PRIMARY, (self.advance(),))
        if tok.kind == "LPAREN":
            return CstNode(Rule.PAREN_EXPR, (self.advance(), self._expression(), self.expect("RPAREN")))
        if tok.kind == "LBRACK":
            return self._array_or_comprehension()
        if tok.kind == "LBRACE":
            return self._object_literal()
        raise self._error_at(tok, EXPRESSION_STARTS, "an expression")

    def _array_or_comprehension(self) -> CstNode:
        children: list = [self.expect("LBRACK")]
        if self.check("RBRACK"):
            children.append(self.advance())
            return CstNode(Rule.ARRAY_LITERAL, tuple(children))
        children.append(self._expression())
        if self.check("for"):
            children.append(self.advance())
            children.append(self.expect("IDENT"))
            children.append(self.expect("in"))
            children.append(self._expression())
            if self.check("if"):
                children.append(self.advance())
                children.append(self._expression())
            children.append(self.expect("RBRACK"))
            return CstNode(Rule.COMPREHENSION, tuple(children))
        while self.check("COMMA"):
            children.append(self.advance())
            children.append(self._expression())
        children.append(self.expect("RBRACK"))
        return CstNode(Rule.ARRAY_LITERAL, tuple(children))

    def _object_literal(self) -> CstNode:
        children: list = [self.expect("LBRACE")]
        if not self.check("RBRACE"):
            children.append(self._object_property())
            while self.check("COMMA"):
                children.append(self.advance())
                children.append(self._object_property())
        children.append(self.expect("RBRACE"))
        return CstNode(Rule.OBJECT_LITERAL, tuple(children))

    def _object_property(self) -> CstNode:
        tok = self.peek()
        if tok.kind == "STRING":
            return CstNode(Rule.OBJECT_PROPERTY, (self.advance(), self.expect("COLON"), self._expression()))
        if tok.kind == "IDENT" or tok.kind in KEYWORDS:
            key = self.advance()
            if self.check("COLON"):
                return CstNode(Rule.OBJECT_PROPERTY, (key, self.advance(), self._expression()))
            if key.kind != "IDENT":
                raise self._error_at(self.peek(), ("COLON",))
            return CstNode(Rule.OBJECT_PROPERTY, (key,))
        raise self._error_at(tok, ("IDENT", "STRING"), "an object property")

    # --- statements ---

    def _block(self) -> CstNode:
        with self._nesting():
            children: list = [self.expect("LBRACE")]
            children.extend(self._item_list(self._statement))
            children.append(self.expect("RBRACE"))
        return CstNode(Rule.BLOCK, tuple(children))

    def _statement(self) -> CstNode:
        kind = self.peek().kind
        if kind == "LBRACE":
            return self._block()
        if kind == "if":
            return self._if_statement()
        if kind == "while":
            return self._guarded(Rule.WHILE_STATEMENT, "while")
        if kind == "when":
            return self._guarded(Rule.WHEN_STATEMENT, "when")
        if kind == "for":
            children = (self.advance(), self.expect("IDENT"), self.expect("in"), self._expression(), self._block())
            return CstNode(Rule.FOR_STATEMENT, children)
        if kind == "return":
            ret: list = [self.advance()]
            if not self.check("SEMI"):
                ret.append(self._expression())
            ret.append(self.expect("SEMI"))
            return CstNode(Rule.RETURN_STATEMENT, tuple(ret))
        if kind == "break":
            return CstNode(Rule.BREAK_STATEMENT, (self.advance(), self.expect("SEMI")))
        if kind == "continue":
            return CstNode(Rule.CONTINUE_STATEMENT, (self.advance(), self.expect("SEMI")))
        if kind == "IDENT" and self.peek(1).kind == "COLON":
            return self._variable_declaration()
        expr = self._expression(allow_assignment=True)
        return CstNode(Rule.EXPRESSION_STATEMENT, (expr, self.expect("SEMI")))

    def _guarded(self, rule: Rule, keyword: str) -> CstNode:
        children = (self.expect(keyword), self.expect("LPAREN"), self._expression(), self.expect("RPAREN"), self._block())
        return CstNode(rule, children)

    def _if_statement(self) -> CstNode:
        children: list = [self.expect("if"), self.expect("LPAREN"), self._expression(), self.expect("RPAREN"), self._block()]
        while self.check("elif"):
            children.extend((self.advance(), self.expect("LPAREN"), self._expression(), self.expect("RPAREN"), self._block()))
        if self.check("else"):
            children.extend((self.advance(), self._block()))
        return CstNode(Rule.IF_STATEMENT, tuple(children))

    def _variable_declaration(self) -> CstNode:
        children = (
            self.expect("IDENT"),
            self.expect("COLON"),
            self._type(),
            self.expect("ASSIGN"),
            self._expression(),
            self.expect("SEMI"),
        )
        return CstNode(Rule.VARIABLE_DECLARATION, children)

    def _parameter_list(self) -> CstNode:
        children: list = [self._parameter()]
        while self.check("COMMA"):
            children.append(self.advance())
            children.append(self._parameter())
        return CstNode(Rule.PARAMETER_LIST, tuple(children))

    def _parameter(self) -> CstNode:
        children: list = [self.expect("IDENT"), self.expect("COLON"), self._type()]
        if self.check("ASSIGN"):
            children.append(self.advance())
            children.append(self._expression())
        return CstNode(Rule.PARAMETER, tuple(children))


def _is_call(node: CstNode) -> bool:
    if node.rule is not Rule.POSTFIX:
        return False
    last = node.children[-1]
    return isinstance(last, CstNode) and last.rule is Rule.CALL_SUFFIX


def _is_assignable(node: CstNode) -> bool:
    if node.rule is Rule.PRIMARY:
        return node.children[0].kind == "IDENT"
    if node.rule is Rule.POSTFIX:
        last = node.children[-1]
        return isinstance(last, CstNode) and last.rule in (Rule.MEMBER_SUFFIX, Rule.INDEX_SUFFIX)
    return False


def parse_tokens(tokens: list[Token], diagnostics: Diagnostics | None = None, filename: str = "<input>") -> CstNode:
    """Parse a token stream (ending in EOF) into a PROGRAM CST node."""
    return Parser(tokens, diagnostics, filename).parse_program()


def parse_source(source: str, diagnostics: Diagnostics | None = None, filename: str = "<input>") -> CstNode:
    """Tokenize and parse DSL text; problems end up in ``diagnostics``."""
    if diagnostics is None:
        diagnostics = Diagnostics(filename)
    tokens = tokenize(source, diagnostics, filename)
    return parse_tokens(tokens, diagnostics, filename)
