"""
Lexer for the strategy DSL.

The token table below is tried in order at every position. Multi-character
operators come before their single-character prefixes, and date literals
before numbers, so the first matching alternative is also the longest one.
Identifiers are checked against KEYWORDS afterwards: a keyword wins only when
the whole identifier text is identical to it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .diagnostics import Diagnostics, LexicalError

# Keyword text -> token kind. Keyword kinds are the keyword text itself, all
# other kinds are upper-case names.
KEYWORDS = frozenset(
    {
        # declarations
        "strategy", "indicator", "data", "order", "event", "portfolio",
        "backtest", "microstructure", "import", "from", "as",
        # strategy blocks
        "params", "indicators", "signals", "rules", "risk", "when",
        # trading actions
        "buy", "sell", "short", "cover",
        # declaration sub-blocks
        "metrics", "constraints", "costs", "output", "detect", "quote", "hedging",
        # lifecycle callbacks
        "on_bar", "on_tick", "on_book", "on_fill", "on_reject",
        # control flow
        "if", "elif", "else", "for", "while", "in", "break", "continue", "return",
        # operators and literals
        "not", "and", "or", "true", "false", "null", "await",
        # types
        "int", "float", "string", "boolean", "datetime", "void", "Array", "Map",
    }
)

TOKEN_SPEC = [
    ("WHITESPACE", r"[ \t\r\n]+"),
    ("LINE_COMMENT", r"//[^\n]*"),
    ("BLOCK_COMMENT", r"/\*(?:[^*]|\*(?!/))*\*/"),
    ("UNTERMINATED_COMMENT", r"/\*"),
    ("DATE", r"\d{4}-\d{2}-\d{2}(?:T\d{2}:\d{2}:\d{2}(?:\.\d{3})?Z?)?"),
    ("NUMBER", r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?"),
    ("STRING", r"\"(?:[^\"\\\n]|\\.)*\"|'(?:[^'\\\n]|\\.)*'"),
    ("UNTERMINATED_STRING", r"[\"'][^\n]*"),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("ARROW", r"->"),
    ("EQ", r"=="),
    ("NE", r"!="),
    ("LE", r"<="),
    ("GE", r">="),
    ("AND_AND", r"&&"),
    ("OR_OR", r"\|\|"),
    ("PLUS_ASSIGN", r"\+="),
    ("MINUS_ASSIGN", r"-="),
    ("TIMES_ASSIGN", r"\*="),
    ("DIV_ASSIGN", r"/="),
    ("MOD_ASSIGN", r"%="),
    ("POWER", r"\*\*"),
    ("LT", r"<"),
    ("GT", r">"),
    ("ASSIGN", r"="),
    ("PLUS", r"\+"),
    ("MINUS", r"-"),
    ("TIMES", r"\*"),
    ("DIV", r"/"),
    ("MOD", r"%"),
    ("PIPE", r"\|"),
    ("TILDE", r"~"),
    ("BANG", r"!"),
    ("DOT", r"\."),
    ("COMMA", r","),
    ("COLON", r":"),
    ("SEMI", r";"),
    ("QUESTION", r"\?"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("LBRACE", r"\{"),
    ("RBRACE", r"\}"),
    ("LBRACK", r"\["),
    ("RBRACK", r"\]"),
    ("MISMATCH", r"."),
]

TOK_REGEX = re.compile("|".join("(?P<%s>%s)" % pair for pair in TOKEN_SPEC), re.DOTALL)

SKIPPED = frozenset({"WHITESPACE", "LINE_COMMENT", "BLOCK_COMMENT"})

# Human-readable spelling of token kinds, used in "expected ..." messages.
TOKEN_DISPLAY = {
    "EOF": "end of input",
    "IDENT": "identifier",
    "NUMBER": "number",
    "STRING": "string",
    "DATE": "date",
    "ARROW": "'->'",
    "EQ": "'=='",
    "NE": "'!='",
    "LE": "'<='",
    "GE": "'>='",
    "AND_AND": "'&&'",
    "OR_OR": "'||'",
    "PLUS_ASSIGN": "'+='",
    "MINUS_ASSIGN": "'-='",
    "TIMES_ASSIGN": "'*='",
    "DIV_ASSIGN": "'/='",
    "MOD_ASSIGN": "'%='",
    "POWER": "'**'",
    "LT": "'<'",
    "GT": "'>'",
    "ASSIGN": "'='",
    "PLUS": "'+'",
    "MINUS": "'-'",
    "TIMES": "'*'",
    "DIV": "'/'",
    "MOD": "'%'",
    "PIPE": "'|'",
    "TILDE": "'~'",
    "BANG": "'!'",
    "DOT": "'.'",
    "COMMA": "','",
    "COLON": "':'",
    "SEMI": "';'",
    "QUESTION": "'?'",
    "LPAREN": "'('",
    "RPAREN": "')'",
    "LBRACE": "'{'",
    "RBRACE": "'}'",
    "LBRACK": "'['",
    "RBRACK": "']'",
}


def describe_kind(kind: str) -> str:
    """Return the spelling of a token kind for diagnostics."""
    if kind in KEYWORDS:
        return f"'{kind}'"
    return TOKEN_DISPLAY.get(kind, kind)


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    start: int
    end: int
    line: int
    col: int

    def describe(self) -> str:
        if self.kind in ("IDENT", "NUMBER", "STRING", "DATE"):
            return f"{describe_kind(self.kind)} {self.value!r}"
        return describe_kind(self.kind)


def tokenize(source: str, diagnostics: Diagnostics | None = None, filename: str = "<input>") -> list[Token]:
    """
    Convert DSL text into a list of tokens terminated by an EOF token.

    Lexical problems are reported to ``diagnostics`` and skipped so the caller
    always receives a best-effort stream. Without a collector the first
    problem is raised as LexicalError.
    """
    tokens: list[Token] = []
    line = 1
    line_start = 0
    for mo in TOK_REGEX.finditer(source):
        kind = mo.lastgroup
        value = mo.group()
        start = mo.start()
        col = start - line_start + 1

        if kind == "IDENT" and value in KEYWORDS:
            kind = value

        if kind in SKIPPED:
            pass
        elif kind == "MISMATCH":
            _report(diagnostics, f"Unexpected character: {value!r}", filename, line, col, start)
        elif kind == "UNTERMINATED_STRING":
            _report(diagnostics, "Unterminated string literal", filename, line, col, start)
        elif kind == "UNTERMINATED_COMMENT":
            _report(diagnostics, "Unterminated block comment", filename, line, col, start)
            # the rest of the input belongs to the comment
            break
        else:
            tokens.append(Token(kind, value, start, mo.end(), line, col))

        newlines = value.count("\n")
        if newlines:
            line += newlines
            line_start = start + value.rfind("\n") + 1

    end = len(source)
    line = source.count("\n", 0, end) + 1
    last_newline = source.rfind("\n")
    tokens.append(Token("EOF", "", end, end, line, end - last_newline))
    return tokens


def _report(diagnostics: Diagnostics | None, message: str, filename: str, line: int, col: int, offset: int) -> None:
    error = LexicalError(message, file=filename, line=line, col=col, offset=offset)
    if diagnostics is None:
        raise error
    diagnostics.add_error(error)
