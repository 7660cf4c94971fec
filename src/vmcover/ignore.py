"""Support for in-source coverage directives."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, Optional
from urllib.parse import unquote, urlparse

if TYPE_CHECKING:
    from .resolver import Resolver


IGNORE_LINE = "// coverage:ignore-line"
IGNORE_START = "// coverage:ignore-start"
IGNORE_END = "// coverage:ignore-end"
IGNORE_FILE = "// coverage:ignore-file"


def find_ignored_lines(lines: Iterable[str]) -> FrozenSet[int]:
    """Returns the (1-based) numbers of the lines excluded from coverage."""
    lines = list(lines)

    if any(IGNORE_FILE in l for l in lines):
        return frozenset(range(1, len(lines)+1))

    ignored = set()
    start = None
    for n, text in enumerate(lines, start=1):
        if start is not None:
            if IGNORE_END in text:
                ignored.update(range(start, n+1))
                start = None
        elif IGNORE_START in text:
            if IGNORE_END in text.split(IGNORE_START, 1)[1]:
                ignored.add(n)  # region opens and closes on this line
            else:
                start = n
        elif IGNORE_LINE in text:
            ignored.add(n)

    if start is not None:   # unterminated region runs to the end of the file
        ignored.update(range(start, len(lines)+1))

    return frozenset(ignored)


class IgnoreSetCache:
    """Caches the lines ignored in each source file, by absolute path.

    A file is read only the first time it's needed: later changes to it
    (even its removal) don't affect its entry.  Files that can't be resolved
    or read are taken to ignore nothing, and are retried on the next request.
    """

    def __init__(self, resolver: Optional[Resolver] = None):
        self.resolver = resolver

        # mutex protecting _cache and _locks; each path has its own lock so
        # that reading one file doesn't hold up lookups for the others
        self.lock = threading.RLock()
        self._cache: Dict[str, FrozenSet[int]] = dict()
        self._locks: Dict[str, threading.Lock] = dict()

    def _resolve(self, uri: str) -> Optional[str]:
        if self.resolver is not None:
            return self.resolver.resolve(uri)
        if uri.startswith('file:'):
            return unquote(urlparse(uri).path)
        return uri if Path(uri).is_absolute() else None

    def ignored_lines(self, uri: str) -> FrozenSet[int]:
        path = self._resolve(uri)
        if path is None:
            return frozenset()

        with self.lock:
            if (found := self._cache.get(path)) is not None:
                return found
            path_lock = self._locks.setdefault(path, threading.Lock())

        with path_lock:
            with self.lock:
                if (found := self._cache.get(path)) is not None:
                    return found

            try:
                text = Path(path).read_text(encoding='utf-8', errors='replace')
            except OSError:
                return frozenset()

            ignored = find_ignored_lines(text.splitlines())
            with self.lock:
                self._cache[path] = ignored

        return ignored

    def __contains__(self, path: str) -> bool:
        with self.lock:
            return path in self._cache
