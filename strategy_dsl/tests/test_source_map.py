# strategy_dsl/tests/test_source_map.py

import json

import pytest

from strategy_dsl import CompileOptions, compile_source
from strategy_dsl.src.source_map import SourceMapBuilder, decode_mappings, decode_vlq, encode_vlq


def test_vlq_encoding():
    assert encode_vlq(0) == "A"
    assert encode_vlq(1) == "C"
    assert encode_vlq(-1) == "D"
    assert encode_vlq(16) == "gB"
    assert decode_vlq("gB") == [16]
    assert decode_vlq("AAAA") == [0, 0, 0, 0]
    assert decode_vlq(encode_vlq(-1234) + encode_vlq(99)) == [-1234, 99]


def test_truncated_vlq_is_rejected():
    with pytest.raises(ValueError):
        decode_vlq("g")


def test_builder_emits_relative_segments():
    builder = SourceMapBuilder("out.py", "in.strat")
    builder.add(0, 4, 3, 5)
    builder.add(2, 0, 1, 1)
    assert builder.mappings() == "IAEI;;AAFJ"
    assert decode_mappings(builder.mappings()) == [[(4, 0, 2, 4)], [], [(0, 0, 0, 0)]]
    data = builder.to_dict()
    assert data["version"] == 3
    assert data["file"] == "out.py" and data["sources"] == ["in.strat"]


def test_empty_builder():
    assert SourceMapBuilder("a.py", "a.strat").mappings() == ""


def test_compiled_lines_point_back_at_dsl():
    source = "\nstrategy RsiDip {\n  rules { when (rsi < 30) { buy(100); } }\n  risk { cap = 1; }\n}\n"
    result = compile_source(source, CompileOptions(source_map=True, filename="rsi_dip.strat"))
    data = json.loads(result.source_map)
    assert data["file"] == "rsi_dip.py"
    assert data["sources"] == ["rsi_dip.strat"]

    lines = result.code.splitlines()
    decoded = decode_mappings(data["mappings"])
    class_line = lines.index("class RsiDip(BaseStrategy):")
    assert decoded[class_line] == [(0, 0, 1, 0)]
    rule_line = lines.index("        if rsi < 30:")
    assert decoded[rule_line] == [(8, 0, 2, 10)]
    # header lines carry no mapping
    assert decoded[0] == []


def test_source_map_is_off_by_default():
    assert compile_source("strategy S { }").source_map is None
