#!/usr/bin/env python3
"""
Benchmark: compile one DSL file repeatedly and print per-stage timings.

Usage:
  python scripts/benchmark_compiler.py scripts/samples/mean_reversion.strat --runs 200
  python scripts/benchmark_compiler.py scripts/samples/mean_reversion.strat --cache

With --cache every run after the first is a cache hit, so only the first run
shows up in the stage counts.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time


def _ensure_root_on_path():
    here = os.path.dirname(os.path.abspath(__file__))
    root = os.path.dirname(here)
    if root not in sys.path:
        sys.path.insert(0, root)


def main(argv=None):
    _ensure_root_on_path()
    import pandas as pd

    from strategy_dsl import CompileCache, CompileOptions, StageTimer, compile_source

    parser = argparse.ArgumentParser(description="Time the strategy DSL compiler stage by stage")
    parser.add_argument('source', help='Path to the DSL source file')
    parser.add_argument('--runs', type=int, default=100, help='Number of compiles (default: 100)')
    parser.add_argument('--optimization', choices=['none', 'basic', 'aggressive'], default='basic')
    parser.add_argument('--target', choices=['python', 'python-async'], default='python')
    parser.add_argument('--source-map', action='store_true', help='Also build source maps')
    parser.add_argument('--cache', action='store_true', help='Use an in-memory compile cache')
    parser.add_argument('--csv', help='Also write the timing table to this CSV file')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING)

    with open(args.source, encoding='utf-8') as fh:
        source = fh.read()

    options = CompileOptions(
        target=args.target,
        optimization=args.optimization,
        source_map=args.source_map,
        use_cache=args.cache,
        filename=args.source,
    )
    cache = CompileCache() if args.cache else None
    timer = StageTimer()

    started = time.perf_counter()
    for _ in range(args.runs):
        result = compile_source(source, options, cache=cache, timer=timer)
        if result.errors:
            for e in result.errors:
                print(e.render(source))
            return 2
    wall = time.perf_counter() - started

    table = timer.summary()
    with pd.option_context('display.float_format', '{:.3f}'.format):
        print(table)
    print()
    print(f"{args.runs} compile(s) in {wall * 1000:.1f} ms ({wall * 1000 / max(args.runs, 1):.3f} ms/compile)")
    if cache is not None:
        print(f"cache: {cache.hits} hit(s), {cache.misses} miss(es)")
    if args.csv:
        table.to_csv(args.csv)
        print(f"Timings exported to {args.csv}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
