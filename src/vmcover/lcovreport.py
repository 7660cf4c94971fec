"""LCOV reporting for vmcover"""

from __future__ import annotations

import io
import sys
from typing import TYPE_CHECKING, Dict, List, Optional

from .hitmap import HitMap

if TYPE_CHECKING:
    from typing import IO

    from .resolver import Resolver


class LcovReporter:
    """A reporter for writing LCOV-style coverage results."""

    def __init__(
        self,
        hitmap: HitMap,
        resolver: Optional[Resolver] = None,
        test_name: Optional[str] = None,
        comments: Optional[List[str]] = None,
    ) -> None:
        self.hitmap = hitmap
        self.resolver = resolver
        self.test_name = test_name
        self.comments = comments or []

    def source_path(self, source: str) -> str:
        """Returns the path to use for a source, or the URI itself if it can't be resolved."""
        if self.resolver is not None and (path := self.resolver.resolve(source)):
            return path
        return source

    def report(self, outfile: IO[str] | None = None) -> None:
        """Generate an LCOV-compatible coverage report.

        `outfile` is a file object to write the LCOV data to.

        """
        outfile = outfile or sys.stdout

        for comment in self.comments:
            outfile.write(f"# {comment}\n")

        files = {self.source_path(source): lines for source, lines in self.hitmap.items()}
        for file_path, lines in sorted(files.items()):
            self._write_file_coverage(outfile, file_path, lines)

    def _write_file_coverage(
        self, outfile: IO[str], file_path: str, lines: Dict[int, int]
    ) -> None:
        """Write LCOV coverage data for a single file."""

        # TN: Test Name (optional)
        if self.test_name is not None:
            outfile.write(f"TN:{self.test_name}\n")

        # SF: Source File
        outfile.write(f"SF:{file_path}\n")

        # DA: Line coverage data
        # Format: DA:<line number>,<execution count>
        for line, count in sorted(lines.items()):
            outfile.write(f"DA:{line},{count}\n")

        # LF: Lines Found, LH: Lines Hit
        outfile.write(f"LF:{len(lines)}\n")
        outfile.write(f"LH:{sum(1 for c in lines.values() if c > 0)}\n")

        outfile.write("end_of_record\n")


def format_lcov(hitmap: HitMap, resolver: Optional[Resolver] = None, **kwargs) -> str:
    """Formats a hit map as LCOV; usable as a ``finalize_coverage`` formatter."""
    out = io.StringIO()
    LcovReporter(hitmap, resolver, **kwargs).report(out)
    return out.getvalue()


def parse_lcov(text: str) -> HitMap:
    """Reads the line data in an LCOV tracefile back into a hit map, keyed by SF path."""
    hitmap: HitMap = dict()
    lines = None

    for n, record in enumerate(text.splitlines(), start=1):
        record = record.strip()
        if record.startswith("SF:"):
            lines = hitmap.setdefault(record[3:], dict())
        elif record.startswith("DA:"):
            if lines is None:
                raise ValueError(f"line {n}: DA record outside of a source file")
            line, count, *_ = record[3:].split(",")
            lines[int(line)] = lines.get(int(line), 0) + int(count)
        elif record == "end_of_record":
            lines = None

    return hitmap
