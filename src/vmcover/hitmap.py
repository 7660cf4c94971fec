from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from .report import LineObservation

if TYPE_CHECKING:
    from .ignore import IgnoreSetCache
    from .schemas import ScriptCoverage


# source URI -> line -> hit count; 0 means the line was only ever seen missed
HitMap = Dict[str, Dict[int, int]]


def merge_hitmaps(into: HitMap, other: HitMap) -> HitMap:
    """Adds the counts in ``other`` to ``into``, returning ``into``."""
    for source, lines in other.items():
        dest = into.setdefault(source, dict())
        for line, count in lines.items():
            dest[line] = dest.get(line, 0) + count
    return into


def hitmap_from_json(coverage: List[ScriptCoverage],
                     ignore_cache: Optional[IgnoreSetCache] = None) -> HitMap:
    """Builds a hit map from the 'coverage' list of a CodeCoverage document."""
    hitmap: HitMap = dict()

    for entry in coverage:
        source = entry['source']
        hits = entry['hits']
        if len(hits) % 2:
            raise ValueError(f"odd number of elements in hits for {source}")

        ignored = ignore_cache.ignored_lines(source) if ignore_cache else frozenset()
        lines = hitmap.setdefault(source, dict())
        for line, count in zip(hits[::2], hits[1::2]):
            if line not in ignored:
                lines[line] = lines.get(line, 0) + count

    return hitmap


class HitMapAccumulator:
    """Running total of line coverage, shared by any number of collections.

    ``merge`` may be called concurrently from multiple threads; ``drain``
    returns everything merged so far, leaving the accumulator empty.
    """

    def __init__(self, ignore_cache: Optional[IgnoreSetCache] = None):
        self.ignore_cache = ignore_cache

        # mutex protecting this state
        self.lock = threading.RLock()
        self.hitmap: HitMap = dict()

    def _unignored(self, observations: Iterable[LineObservation]) -> List[LineObservation]:
        if self.ignore_cache is None:
            return list(observations)

        # computed before taking the lock, as it may need to read files
        ignored = dict()
        kept = []
        for obs in observations:
            if obs.source not in ignored:
                ignored[obs.source] = self.ignore_cache.ignored_lines(obs.source)
            if obs.line not in ignored[obs.source]:
                kept.append(obs)

        return kept

    def merge(self, observations: Iterable[LineObservation]) -> None:
        observations = self._unignored(observations)

        with self.lock:
            for source, line, hit in observations:
                lines = self.hitmap.setdefault(source, dict())
                if hit:
                    lines[line] = lines.get(line, 0) + 1
                else:
                    lines.setdefault(line, 0)

    def merge_hitmap(self, hitmap: HitMap) -> None:
        if self.ignore_cache is not None:
            filtered = dict()
            for source, lines in hitmap.items():
                ignored = self.ignore_cache.ignored_lines(source)
                filtered[source] = {line: count for line, count in lines.items() if line not in ignored}
            hitmap = filtered

        with self.lock:
            merge_hitmaps(self.hitmap, hitmap)

    def drain(self) -> HitMap:
        """Returns the accumulated hit map, leaving an empty one in its place."""
        with self.lock:
            hitmap = self.hitmap
            self.hitmap = dict()

        return hitmap

    def is_empty(self) -> bool:
        with self.lock:
            return not self.hitmap
