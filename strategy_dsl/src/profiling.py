"""
Per-stage timing for the compiler pipeline.

A StageTimer is passed to the Compiler (or compile_source); every stage that
runs is wrapped in ``measure(stage)``. The counts double as a cheap way to
see which stages a call actually ran, e.g. that a cache hit skipped parsing.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List

import numpy as np
import pandas as pd

STAGES = ("lex", "parse", "lower", "validate", "generate")

SUMMARY_COLUMNS = ["count", "total_ms", "mean_ms", "min_ms", "max_ms", "p95_ms"]


class StageTimer:
    def __init__(self) -> None:
        self._samples: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    @contextmanager
    def measure(self, stage: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            with self._lock:
                self._samples.setdefault(stage, []).append(elapsed)

    def count(self, stage: str) -> int:
        """How many times ``stage`` has run."""
        with self._lock:
            return len(self._samples.get(stage, ()))

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {stage: len(samples) for stage, samples in self._samples.items()}

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()

    def summary(self) -> pd.DataFrame:
        """
        Timing table, one row per stage (pipeline order first).

        Returns
        -------
        pd.DataFrame
            Indexed by stage, with columns count, total_ms, mean_ms, min_ms,
            max_ms and p95_ms.
        """
        with self._lock:
            samples = {stage: list(values) for stage, values in self._samples.items()}
        order = [s for s in STAGES if s in samples] + sorted(s for s in samples if s not in STAGES)
        rows = []
        for stage in order:
            ms = np.asarray(samples[stage], dtype=float) * 1000.0
            rows.append(
                {
                    "stage": stage,
                    "count": int(ms.size),
                    "total_ms": float(ms.sum()),
                    "mean_ms": float(ms.mean()),
                    "min_ms": float(ms.min()),
                    "max_ms": float(ms.max()),
                    "p95_ms": float(np.percentile(ms, 95)),
                }
            )
        frame = pd.DataFrame(rows, columns=["stage"] + SUMMARY_COLUMNS)
        return frame.set_index("stage")
