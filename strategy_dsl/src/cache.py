"""
Content-addressed compile cache.

Keys are the SHA-256 of the source bytes plus the canonical JSON of the
options that affect output, so any byte change in either is a new key. Only
error-free results are stored. The memory layer is shared between threads
under a lock; the optional disk layer writes each entry to a temporary file
and renames it into place, so readers never see a half-written entry.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .ast_nodes import Program
from .options import CompileOptions

logger = logging.getLogger(__name__)

CACHE_FORMAT = 1


@dataclass(frozen=True)
class CacheEntry:
    code: str
    source_map: Optional[str]
    warnings: tuple[dict[str, Any], ...]
    # Only kept in memory; entries loaded from disk have no AST.
    ast: Optional[Program] = None

    def to_json(self, key: str) -> str:
        return json.dumps(
            {
                "format": CACHE_FORMAT,
                "key": key,
                "code": self.code,
                "source_map": self.source_map,
                "warnings": list(self.warnings),
            },
            sort_keys=True,
        )


def cache_key(source: str, options: CompileOptions) -> str:
    payload = json.dumps(options.cache_key_payload(), sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256()
    digest.update(source.encode("utf-8"))
    digest.update(b"\0")
    digest.update(payload.encode("utf-8"))
    return digest.hexdigest()


class CompileCache:
    """Memory cache with an optional on-disk layer under ``directory``."""

    def __init__(self, directory: Path | str | None = None):
        self.directory = Path(directory) if directory is not None else None
        self._memory: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._memory)

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._memory.get(key)
        if entry is None and self.directory is not None:
            entry = self._read(key)
            if entry is not None:
                with self._lock:
                    self._memory.setdefault(key, entry)
        with self._lock:
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
        return entry

    def put(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._memory[key] = entry
        if self.directory is None:
            return
        try:
            self._write(key, entry)
        except OSError as exc:
            logger.warning("could not write cache entry %s: %s", key[:12], exc)

    def clear(self) -> None:
        with self._lock:
            self._memory.clear()
            self.hits = 0
            self.misses = 0

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _read(self, key: str) -> CacheEntry | None:
        path = self._path(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("could not read cache entry %s: %s", path, exc)
            return None
        try:
            data = json.loads(raw)
            if data["format"] != CACHE_FORMAT or data["key"] != key:
                raise ValueError("entry does not match its key or format")
            return CacheEntry(
                code=data["code"],
                source_map=data["source_map"],
                warnings=tuple(data["warnings"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("ignoring corrupt cache entry %s: %s", path, exc)
            return None

    def _write(self, key: str, entry: CacheEntry) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key[:12]}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(entry.to_json(key))
            os.replace(tmp, self._path(key))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug("wrote cache entry %s", key[:12])
