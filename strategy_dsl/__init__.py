"""
Compiler for the strategy DSL: declarative trading strategies in, Python out.

    from strategy_dsl import compile_source

    result = compile_source(source)
    if result.errors:
        ...
"""

from .src.cache import CompileCache
from .src.compiler import CompileResult, Compiler, ParseResult, compile_source, parse_with_diagnostics
from .src.diagnostics import DSLError, InternalError, LexicalError, ParseError, SemanticWarning
from .src.options import CompileOptions
from .src.profiling import StageTimer

__all__ = [
    "CompileCache",
    "CompileOptions",
    "CompileResult",
    "Compiler",
    "DSLError",
    "InternalError",
    "LexicalError",
    "ParseError",
    "ParseResult",
    "SemanticWarning",
    "StageTimer",
    "compile_source",
    "parse_with_diagnostics",
]

__version__ = "0.1.0"
