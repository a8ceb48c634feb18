# strategy_dsl/tests/test_options.py

from pathlib import Path

import pytest
from pydantic import ValidationError

from strategy_dsl import CompileOptions


def test_defaults():
    options = CompileOptions()
    assert options.target == "python"
    assert options.optimization == "basic"
    assert not options.type_checks and not options.source_map and not options.use_cache
    assert options.cache_dir is None
    assert options.filename == "<input>"
    assert options.runtime_module == "strategy_runtime"


def test_options_are_frozen():
    options = CompileOptions()
    with pytest.raises(ValidationError):
        options.target = "python-async"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"target": "javascript"},
        {"optimization": "max"},
        {"runtime_module": "not a module"},
        {"runtime_module": ""},
        {"unknown_flag": True},
    ],
)
def test_bad_values_are_rejected(kwargs):
    with pytest.raises(ValidationError):
        CompileOptions(**kwargs)


def test_cache_dir_is_a_path():
    assert CompileOptions(cache_dir="/tmp/strategy-cache").cache_dir == Path("/tmp/strategy-cache")


def test_cache_key_payload_leaves_out_lookup_fields():
    payload = CompileOptions(use_cache=True, cache_dir="x", runtime_module="acme.runtime").cache_key_payload()
    assert "use_cache" not in payload and "cache_dir" not in payload
    assert payload["runtime_module"] == "acme.runtime"
    assert set(payload) == {"target", "type_checks", "optimization", "source_map", "filename", "runtime_module"}
