"""
Concrete syntax tree produced by the parser.

A CstNode is tagged with the grammar rule that produced it and keeps its
children (nodes and tokens) in source order. Nodes never point back at their
parents; the tree is consumed once by the AST builder and thrown away.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Union

from .dsl_lexer import Token


class Rule(str, Enum):
    PROGRAM = "program"
    IMPORT_DECL = "importDecl"
    STRATEGY_DECL = "strategyDecl"
    PARAMS_BLOCK = "paramsBlock"
    STRATEGY_PARAM = "strategyParam"
    INDICATORS_BLOCK = "indicatorsBlock"
    INDICATOR_BINDING = "indicatorBinding"
    SIGNALS_BLOCK = "signalsBlock"
    SIGNAL_BINDING = "signalBinding"
    RULES_BLOCK = "rulesBlock"
    TRADING_RULE = "tradingRule"
    TRADING_ACTION = "tradingAction"
    RISK_BLOCK = "riskBlock"
    RISK_LIMIT = "riskLimit"
    EVENT_HANDLERS = "eventHandlers"
    EVENT_HANDLER = "eventHandler"
    INDICATOR_DECL = "indicatorDecl"
    DATA_DECL = "dataDecl"
    DATA_FIELD = "dataField"
    METRICS_BLOCK = "metricsBlock"
    COMPUTED_FIELD = "computedField"
    ORDER_DECL = "orderDecl"
    EVENT_DECL = "eventDecl"
    PORTFOLIO_DECL = "portfolioDecl"
    CONSTRAINTS_BLOCK = "constraintsBlock"
    BACKTEST_DECL = "backtestDecl"
    COSTS_BLOCK = "costsBlock"
    OUTPUT_BLOCK = "outputBlock"
    NAMED_VALUE = "namedValue"
    MICROSTRUCTURE_DECL = "microstructureDecl"
    DETECT_BLOCK = "detectBlock"
    QUOTE_BLOCK = "quoteBlock"
    HEDGING_BLOCK = "hedgingBlock"
    HEDGING_RULE = "hedgingRule"
    # types
    UNION_TYPE = "unionType"
    PRIMARY_TYPE = "primaryType"
    ARRAY_TYPE = "arrayType"
    MAP_TYPE = "mapType"
    NAMED_TYPE = "namedType"
    FUNCTION_TYPE = "functionType"
    # expressions
    ASSIGNMENT = "assignmentExpression"
    CONDITIONAL = "conditionalExpression"
    LOGICAL_OR = "logicalOrExpression"
    LOGICAL_AND = "logicalAndExpression"
    MEMBERSHIP = "inExpression"
    EQUALITY = "equalityExpression"
    RELATIONAL = "relationalExpression"
    ADDITIVE = "additiveExpression"
    MULTIPLICATIVE = "multiplicativeExpression"
    POWER = "powerExpression"
    UNARY = "unaryExpression"
    POSTFIX = "postfixExpression"
    MEMBER_SUFFIX = "memberSuffix"
    INDEX_SUFFIX = "indexSuffix"
    SLICE_SUFFIX = "sliceSuffix"
    CALL_SUFFIX = "callSuffix"
    ARGUMENT_LIST = "argumentList"
    PRIMARY = "primaryExpression"
    PAREN_EXPR = "parenExpression"
    ARRAY_LITERAL = "arrayLiteral"
    OBJECT_LITERAL = "objectLiteral"
    OBJECT_PROPERTY = "objectProperty"
    COMPREHENSION = "comprehension"
    # statements
    BLOCK = "block"
    EXPRESSION_STATEMENT = "expressionStatement"
    VARIABLE_DECLARATION = "variableDeclaration"
    IF_STATEMENT = "ifStatement"
    WHILE_STATEMENT = "whileStatement"
    FOR_STATEMENT = "forStatement"
    RETURN_STATEMENT = "returnStatement"
    BREAK_STATEMENT = "breakStatement"
    CONTINUE_STATEMENT = "continueStatement"
    WHEN_STATEMENT = "whenStatement"
    PARAMETER_LIST = "parameterList"
    PARAMETER = "parameter"


CstChild = Union["CstNode", Token]


@dataclass(frozen=True)
class CstNode:
    rule: Rule
    children: tuple[CstChild, ...]

    def nodes(self, rule: Rule | None = None) -> list[CstNode]:
        """Child nodes, optionally only those produced by ``rule``."""
        return [c for c in self.children if isinstance(c, CstNode) and (rule is None or c.rule is rule)]

    def node(self, rule: Rule) -> CstNode | None:
        found = self.nodes(rule)
        return found[0] if found else None

    def tokens(self, kind: str | None = None) -> list[Token]:
        """Direct child tokens, optionally only those of ``kind``."""
        return [c for c in self.children if isinstance(c, Token) and (kind is None or c.kind == kind)]

    def token(self, kind: str) -> Token | None:
        found = self.tokens(kind)
        return found[0] if found else None

    def has(self, kind: str) -> bool:
        return any(isinstance(c, Token) and c.kind == kind for c in self.children)

    def walk_tokens(self) -> Iterator[Token]:
        for child in self.children:
            if isinstance(child, Token):
                yield child
            else:
                yield from child.walk_tokens()

    def first_token(self) -> Token:
        if not self.children:
            raise ValueError(f"empty CST node {self.rule.value}")
        child = self.children[0]
        return child if isinstance(child, Token) else child.first_token()

    def last_token(self) -> Token:
        if not self.children:
            raise ValueError(f"empty CST node {self.rule.value}")
        child = self.children[-1]
        return child if isinstance(child, Token) else child.last_token()

    def pretty(self, indent: int = 0) -> str:
        """Indented dump, handy when debugging the grammar."""
        pad = "  " * indent
        lines = [f"{pad}{self.rule.value}"]
        for child in self.children:
            if isinstance(child, Token):
                lines.append(f"{pad}  {child.kind} {child.value!r}")
            else:
                lines.append(child.pretty(indent + 1))
        return "\n".join(lines)
