"""
Source Map v3 support for generated code.

Only line-level mappings are produced: each generated statement line points
at the DSL position it was generated from. Segments use the usual
base64 VLQ encoding with four fields (generated column, source index, source
line, source column), all relative to the previous segment.
"""

from __future__ import annotations

import json
from typing import List, Tuple

BASE64_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
BASE64_INDEX = {ch: i for i, ch in enumerate(BASE64_CHARS)}

VLQ_SHIFT = 5
VLQ_CONTINUATION = 1 << VLQ_SHIFT
VLQ_MASK = VLQ_CONTINUATION - 1

# (generated column, source index, source line, source column), all 0-based
Segment = Tuple[int, int, int, int]


def encode_vlq(value: int) -> str:
    vlq = (-value << 1) | 1 if value < 0 else value << 1
    out = []
    while True:
        digit = vlq & VLQ_MASK
        vlq >>= VLQ_SHIFT
        if vlq:
            digit |= VLQ_CONTINUATION
        out.append(BASE64_CHARS[digit])
        if not vlq:
            return "".join(out)


def decode_vlq(text: str) -> List[int]:
    """Decode a run of VLQ digits (one segment) into its integers."""
    values: List[int] = []
    shift = 0
    acc = 0
    for ch in text:
        digit = BASE64_INDEX[ch]
        acc += (digit & VLQ_MASK) << shift
        if digit & VLQ_CONTINUATION:
            shift += VLQ_SHIFT
            continue
        values.append(-(acc >> 1) if acc & 1 else acc >> 1)
        acc = 0
        shift = 0
    if shift:
        raise ValueError(f"truncated VLQ sequence {text!r}")
    return values


def decode_mappings(mappings: str) -> List[List[Segment]]:
    """Decode a ``mappings`` string into absolute segments, one list per line."""
    lines: List[List[Segment]] = []
    source = src_line = src_col = 0
    for group in mappings.split(";"):
        col = 0
        segments: List[Segment] = []
        for raw in filter(None, group.split(",")):
            fields = decode_vlq(raw)
            if len(fields) < 4:
                raise ValueError(f"segment {raw!r} has no source position")
            col += fields[0]
            source += fields[1]
            src_line += fields[2]
            src_col += fields[3]
            segments.append((col, source, src_line, src_col))
        lines.append(segments)
    return lines


class SourceMapBuilder:
    """Collects mappings for one generated file with a single source."""

    def __init__(self, file: str, source: str):
        self.file = file
        self.source = source
        self._lines: dict[int, List[Tuple[int, int, int]]] = {}

    def add(self, generated_line: int, generated_column: int, source_line: int, source_column: int) -> None:
        """Map a 0-based generated position to a 1-based DSL line/column."""
        self._lines.setdefault(generated_line, []).append(
            (generated_column, source_line - 1, max(source_column - 1, 0))
        )

    def mappings(self) -> str:
        if not self._lines:
            return ""
        groups = []
        prev_source_line = prev_source_col = 0
        prev_source_index = 0
        for line in range(max(self._lines) + 1):
            segments = []
            prev_col = 0
            for col, src_line, src_col in sorted(self._lines.get(line, ())):
                segments.append(
                    encode_vlq(col - prev_col)
                    + encode_vlq(0 - prev_source_index)
                    + encode_vlq(src_line - prev_source_line)
                    + encode_vlq(src_col - prev_source_col)
                )
                prev_col = col
                prev_source_line, prev_source_col = src_line, src_col
            groups.append(",".join(segments))
        return ";".join(groups)

    def to_dict(self) -> dict:
        return {
            "version": 3,
            "file": self.file,
            "sources": [self.source],
            "names": [],
            "mappings": self.mappings(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)
