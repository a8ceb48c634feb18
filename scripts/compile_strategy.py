#!/usr/bin/env python3
"""
CLI: compile a strategy DSL file to Python, or only check it.

Usage:
  python scripts/compile_strategy.py path/to/momentum.strat -o momentum.py
  python scripts/compile_strategy.py path/to/momentum.strat --check

Exit status is 0 when the file compiled without errors (warnings allowed),
2 when any lexical or parse error was reported.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path


def _ensure_root_on_path():
    here = os.path.dirname(os.path.abspath(__file__))
    root = os.path.dirname(here)
    if root not in sys.path:
        sys.path.insert(0, root)


def main(argv=None):
    _ensure_root_on_path()
    from strategy_dsl import CompileOptions, compile_source, parse_with_diagnostics

    parser = argparse.ArgumentParser(description="Compile a trading strategy DSL file to Python")
    parser.add_argument('source', help='Path to the DSL source file')
    parser.add_argument('-o', '--output', help='Write generated Python here (default: stdout)')
    parser.add_argument('--check', action='store_true', help='Only parse and validate; do not generate code')
    parser.add_argument('--target', choices=['python', 'python-async'], default='python', help='Output dialect (default: python)')
    parser.add_argument('--optimization', choices=['none', 'basic', 'aggressive'], default='basic', help='Optimization level (default: basic)')
    parser.add_argument('--type-checks', action='store_true', help='Emit runtime isinstance checks for strategy parameters')
    parser.add_argument('--source-map', action='store_true', help='Write a source map next to the output (<output>.map)')
    parser.add_argument('--cache-dir', help='Directory for the on-disk compile cache (enables caching)')
    parser.add_argument('--runtime-module', default='strategy_runtime', help='Module the generated code imports BaseStrategy from')
    parser.add_argument('--json', action='store_true', help='Print diagnostics as JSON instead of text')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    path = Path(args.source)
    try:
        source = path.read_text(encoding='utf-8')
    except OSError as e:
        print(f"ERROR: cannot read {path}: {e}", file=sys.stderr)
        return 1

    if args.check:
        result = parse_with_diagnostics(source, filename=str(path))
        _report(result.errors, result.warnings, source, args.json)
        return 2 if result.errors else 0

    if args.source_map and not args.output:
        print("ERROR: --source-map needs --output", file=sys.stderr)
        return 1

    options = CompileOptions(
        target=args.target,
        type_checks=args.type_checks,
        optimization=args.optimization,
        source_map=args.source_map,
        use_cache=args.cache_dir is not None,
        cache_dir=args.cache_dir,
        filename=str(path),
        runtime_module=args.runtime_module,
    )
    result = compile_source(source, options)
    _report(result.errors, result.warnings, source, args.json)
    if result.errors:
        return 2

    if args.output:
        out = Path(args.output)
        out.write_text(result.code, encoding='utf-8')
        if result.source_map is not None:
            out.with_name(out.name + '.map').write_text(result.source_map, encoding='utf-8')
        print(f"Wrote {out}{' (from cache)' if result.cache_hit else ''}", file=sys.stderr)
    else:
        sys.stdout.write(result.code)
    return 0


def _report(errors, warnings, source, as_json):
    if as_json:
        payload = {
            "errors": [e.to_dict() for e in errors],
            "warnings": [w.to_dict() for w in warnings],
        }
        print(json.dumps(payload, indent=2), file=sys.stderr)
        return
    for diagnostic in (*errors, *warnings):
        print(diagnostic.render(source), file=sys.stderr)
        print(file=sys.stderr)
    if errors:
        print(f"{len(errors)} error(s), {len(warnings)} warning(s)", file=sys.stderr)


if __name__ == '__main__':
    sys.exit(main())
