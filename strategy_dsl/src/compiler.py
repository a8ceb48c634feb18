"""
Compiler entry points.

- compile_source(source, options) -> CompileResult
- parse_with_diagnostics(source, filename) -> ParseResult (no code generation)

One call runs lex -> parse -> lower -> validate -> generate with a fresh
Diagnostics collector. Lexical and parse errors are collected, not raised;
when any exist the generated code is the empty string. InternalError always
propagates to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .ast_builder import build_ast
from .ast_nodes import Program
from .cache import CacheEntry, CompileCache, cache_key
from .codegen import generate_code
from .diagnostics import Diagnostics, DSLError, SemanticWarning
from .dsl_lexer import tokenize
from .dsl_parser import parse_tokens
from .options import CompileOptions
from .profiling import StageTimer
from .validator import validate

logger = logging.getLogger(__name__)

# Shared by compile_source() calls that ask for caching without passing a cache.
_default_cache = CompileCache()


@dataclass(frozen=True)
class CompileResult:
    code: str
    source_map: Optional[str]
    errors: tuple[DSLError, ...]
    warnings: tuple[SemanticWarning, ...]
    ast: Optional[Program]
    cache_hit: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def diagnostics(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass(frozen=True)
class ParseResult:
    ast: Optional[Program]
    errors: tuple[DSLError, ...] = field(default_factory=tuple)
    warnings: tuple[SemanticWarning, ...] = field(default_factory=tuple)


class Compiler:
    """
    Holds the options plus an optional shared cache and timer.

    Each call builds its own lexer/parser state, so one Compiler can serve
    several threads at once.
    """

    def __init__(
        self,
        options: CompileOptions | None = None,
        cache: CompileCache | None = None,
        timer: StageTimer | None = None,
    ):
        self.options = options or CompileOptions()
        if cache is None and self.options.use_cache:
            cache = CompileCache(self.options.cache_dir)
        self.cache = cache
        self.timer = timer or StageTimer()

    def _front_end(self, source: str, diagnostics: Diagnostics) -> Program:
        filename = self.options.filename
        with self.timer.measure("lex"):
            tokens = tokenize(source, diagnostics, filename)
        with self.timer.measure("parse"):
            cst = parse_tokens(tokens, diagnostics, filename)
        with self.timer.measure("lower"):
            program = build_ast(cst)
        logger.debug(
            "%s: %d token(s), %d error(s) after parsing", filename, len(tokens), len(diagnostics.errors)
        )
        return program

    def parse(self, source: str) -> ParseResult:
        diagnostics = Diagnostics(self.options.filename)
        program = self._front_end(source, diagnostics)
        if not diagnostics.has_errors():
            with self.timer.measure("validate"):
                validate(program, diagnostics, self.options.target)
        return ParseResult(program, tuple(diagnostics.errors), tuple(diagnostics.warnings))

    def compile(self, source: str) -> CompileResult:
        key = None
        if self.options.use_cache and self.cache is not None:
            key = cache_key(source, self.options)
            entry = self.cache.get(key)
            if entry is not None:
                logger.info("cache hit for %s (%s)", self.options.filename, key[:12])
                warnings = tuple(SemanticWarning.from_dict(w) for w in entry.warnings)
                return CompileResult(entry.code, entry.source_map, (), warnings, entry.ast, cache_hit=True)

        diagnostics = Diagnostics(self.options.filename)
        program = self._front_end(source, diagnostics)
        if diagnostics.has_errors():
            logger.debug("skipping code generation for %s", self.options.filename)
            return CompileResult("", None, tuple(diagnostics.errors), tuple(diagnostics.warnings), program)

        with self.timer.measure("validate"):
            validate(program, diagnostics, self.options.target)
        with self.timer.measure("generate"):
            generated = generate_code(program, self.options)

        warnings = tuple(diagnostics.warnings)
        if key is not None:
            entry = CacheEntry(generated.code, generated.source_map, tuple(w.to_dict() for w in warnings), program)
            self.cache.put(key, entry)
        return CompileResult(generated.code, generated.source_map, (), warnings, program)


def compile_source(
    source: str,
    options: CompileOptions | None = None,
    *,
    cache: CompileCache | None = None,
    timer: StageTimer | None = None,
) -> CompileResult:
    """
    Compile DSL text to Python.

    Parameters
    ----------
    source : str
        Complete DSL source unit.
    options : CompileOptions, optional
        Defaults to CompileOptions().
    cache : CompileCache, optional
        Used when ``options.use_cache`` is set. Without one, a process-wide
        memory cache is used (or a disk cache when ``options.cache_dir`` is set).
    timer : StageTimer, optional
        Receives the per-stage timings.

    Returns
    -------
    CompileResult
        ``code`` is empty whenever ``errors`` is not.
    """
    options = options or CompileOptions()
    if cache is None and options.use_cache:
        cache = CompileCache(options.cache_dir) if options.cache_dir is not None else _default_cache
    return Compiler(options, cache=cache, timer=timer).compile(source)


def parse_with_diagnostics(source: str, filename: str = "<input>") -> ParseResult:
    """Parse and validate without generating code; meant for editor tooling."""
    return Compiler(CompileOptions(filename=filename)).parse(source)
