"""
Diagnostics shared by every compiler stage.

Errors and warnings are exception objects so a stage may either raise them
(InternalError always is) or hand them to a Diagnostics collector, which is
what the lexer and parser do in order to report several problems per call.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class RecoveryState(str, Enum):
    """Parser recovery state, see Diagnostics.begin_recovery()."""

    NORMAL = "normal"
    RECOVERING = "recovering"


class DSLError(Exception):
    """Base class for compiler diagnostics, with optional position info."""

    code = "DSL_ERROR"
    severity = Severity.ERROR

    def __init__(
        self,
        message: str,
        file: str | None = None,
        line: int | None = None,
        col: int | None = None,
        offset: int | None = None,
        code: str | None = None,
    ):
        self.message = message
        self.file = file
        self.line = line
        self.col = col
        self.offset = offset
        if code is not None:
            self.code = code
        if line is not None and col is not None:
            super().__init__(f"{message} (line {line}, col {col})")
        else:
            super().__init__(message)

    @property
    def location(self) -> str:
        file = self.file or "<input>"
        if self.line is None:
            return file
        return f"{file}:{self.line}:{self.col or 1}"

    def render(self, source: str | None = None) -> str:
        """Render as ``file:line:col: severity: message`` plus a caret excerpt."""
        out = f"{self.location}: {self.severity.value}: {self.message}"
        if source is None or self.line is None:
            return out
        lines = source.splitlines()
        if not 1 <= self.line <= len(lines):
            return out
        text = lines[self.line - 1].replace("\t", " ")
        gutter = f"{self.line:>5} | "
        caret_pad = " " * (len(gutter) - 2) + "| " + " " * max((self.col or 1) - 1, 0)
        return f"{out}\n{gutter}{text}\n{caret_pad}^"

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "column": self.col,
            "severity": self.severity.value,
            "code": self.code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DSLError:
        """Inverse of to_dict(), used when diagnostics come back from the cache."""
        return cls(
            data["message"],
            file=data.get("file"),
            line=data.get("line"),
            col=data.get("column"),
            code=data.get("code"),
        )


class LexicalError(DSLError):
    """An unrecognized character sequence."""

    code = "LEX_ERROR"


class ParseError(DSLError):
    """A grammar violation; ``expected`` lists what the parser would have accepted."""

    code = "PARSE_ERROR"

    def __init__(self, message: str, expected: tuple[str, ...] = (), **kwargs: Any):
        super().__init__(message, **kwargs)
        self.expected = tuple(expected)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["expected"] = list(self.expected)
        return data


class SemanticWarning(DSLError):
    """A non-fatal advisory about a well-formed program."""

    code = "SEMANTIC_WARNING"
    severity = Severity.WARNING


class InternalError(DSLError):
    """A stage received input violating an invariant of an earlier stage."""

    code = "INTERNAL_ERROR"


class Diagnostics:
    """
    Collects the diagnostics of one compile call.

    It also tracks the parser's recovery state. After a parse error the parser
    skips to a synchronization point and calls begin_recovery(); consuming the
    next token calls end_recovery():
    NORMAL --(error, synchronized)--> RECOVERING --(token consumed)--> NORMAL.
    A parse error reported while RECOVERING failed on the token recovery
    stopped at, so it is dropped as a cascade of the one already reported.
    """

    def __init__(self, filename: str = "<input>"):
        self.filename = filename
        self._errors: list[DSLError] = []
        self._warnings: list[SemanticWarning] = []
        self._seen: set[tuple[str, int | None, int | None, str]] = set()
        self.state = RecoveryState.NORMAL

    # --- recording ---

    def add_error(self, error: DSLError) -> bool:
        """Record an error; return False when it was suppressed or a duplicate."""
        if isinstance(error, ParseError) and self.state is RecoveryState.RECOVERING:
            logger.debug("suppressed cascading parse error: %s", error)
            return False
        key = (type(error).__name__, error.line, error.col, error.message)
        if key in self._seen:
            return False
        self._seen.add(key)
        if error.file is None:
            error.file = self.filename
        self._errors.append(error)
        return True

    def add_warning(self, warning: SemanticWarning) -> None:
        if warning.file is None:
            warning.file = self.filename
        self._warnings.append(warning)

    def warn(self, message: str, code: str, line: int | None = None, col: int | None = None) -> None:
        self.add_warning(SemanticWarning(message, file=self.filename, line=line, col=col, code=code))

    # --- recovery state machine ---

    def begin_recovery(self) -> None:
        self.state = RecoveryState.RECOVERING

    def end_recovery(self) -> None:
        self.state = RecoveryState.NORMAL

    # --- queries ---

    @property
    def errors(self) -> list[DSLError]:
        return list(self._errors)

    @property
    def warnings(self) -> list[SemanticWarning]:
        return list(self._warnings)

    def has_errors(self) -> bool:
        return bool(self._errors)

    def is_clean(self) -> bool:
        return self.state is RecoveryState.NORMAL and not self._errors

    def clear(self) -> None:
        self._errors.clear()
        self._warnings.clear()
        self._seen.clear()
        self.state = RecoveryState.NORMAL

    def format_report(self, source: str | None = None) -> str:
        """Format every diagnostic with a source excerpt, errors first."""
        parts: list[str] = []
        if self._errors:
            parts.append(f"Found {len(self._errors)} error(s):")
            parts.extend(e.render(source) for e in self._errors)
        if self._warnings:
            parts.append(f"Found {len(self._warnings)} warning(s):")
            parts.extend(w.render(source) for w in self._warnings)
        return "\n\n".join(parts)

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "errors": [e.to_dict() for e in self._errors],
            "warnings": [w.to_dict() for w in self._warnings],
        }
