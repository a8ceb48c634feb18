"""Compile options shared by every stage."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Target = Literal["python", "python-async"]
Optimization = Literal["none", "basic", "aggressive"]

# Options that only change how a result is looked up, not what it contains.
CACHE_ONLY_FIELDS = frozenset({"use_cache", "cache_dir"})


class CompileOptions(BaseModel):
    """Options for one compile call. Immutable; unknown keys are rejected."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    target: Target = Field(default="python", description="Dialect of the generated code")
    type_checks: bool = Field(
        default=False, description="Emit isinstance checks for primitive-typed strategy parameters"
    )
    optimization: Optimization = Field(
        default="basic",
        description="'none' emits verbatim, 'basic' binds only the bar fields in use, "
        "'aggressive' also folds numeric constants and drops constant-false rules",
    )
    source_map: bool = Field(default=False, description="Produce a Source Map v3 JSON document")
    use_cache: bool = Field(default=False, description="Consult and populate the compile cache")
    cache_dir: Path | None = Field(default=None, description="Directory of the on-disk cache layer")
    filename: str = Field(default="<input>", description="Source name used in diagnostics and output")
    runtime_module: str = Field(
        default="strategy_runtime", description="Module the generated code imports BaseStrategy from"
    )

    @field_validator("runtime_module")
    @classmethod
    def validate_runtime_module(cls, value: str) -> str:
        if not value or not all(part.isidentifier() for part in value.split(".")):
            raise ValueError(f"'{value}' is not a dotted module name")
        return value

    def cache_key_payload(self) -> dict[str, Any]:
        """The options that influence compile output, in JSON-friendly form."""
        return self.model_dump(mode="json", exclude=set(CACHE_ONLY_FIELDS))
