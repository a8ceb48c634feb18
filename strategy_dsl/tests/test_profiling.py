# strategy_dsl/tests/test_profiling.py

import pytest

from strategy_dsl import CompileOptions, Compiler, StageTimer
from strategy_dsl.src.profiling import SUMMARY_COLUMNS


def test_summary_has_one_row_per_stage_in_pipeline_order():
    timer = StageTimer()
    compiler = Compiler(CompileOptions(), timer=timer)
    for _ in range(3):
        assert compiler.compile("strategy S { risk { cap = 1; } }").ok

    frame = timer.summary()
    assert list(frame.columns) == SUMMARY_COLUMNS
    assert list(frame.index) == ["lex", "parse", "lower", "validate", "generate"]
    assert (frame["count"] == 3).all()
    assert (frame["min_ms"] <= frame["max_ms"]).all()
    assert (frame["total_ms"] >= frame["max_ms"]).all()


def test_extra_stages_sort_after_the_pipeline():
    timer = StageTimer()
    with timer.measure("zzz"):
        pass
    with timer.measure("generate"):
        pass
    assert list(timer.summary().index) == ["generate", "zzz"]


def test_failed_stage_is_still_timed():
    timer = StageTimer()
    with pytest.raises(RuntimeError):
        with timer.measure("parse"):
            raise RuntimeError("boom")
    assert timer.counts() == {"parse": 1}


def test_empty_and_reset():
    timer = StageTimer()
    assert timer.summary().empty
    with timer.measure("lex"):
        pass
    assert timer.count("lex") == 1 and timer.count("parse") == 0
    timer.reset()
    assert timer.counts() == {}
