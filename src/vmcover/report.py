from __future__ import annotations

from typing import List, NamedTuple

from .service import MalformedResponse, SourceReport


class LineObservation(NamedTuple):
    source: str
    line: int
    hit: bool


def parse_report(report: SourceReport) -> List[LineObservation]:
    """Converts a source report into line observations.

    Reports are always requested with line granularity, so each position is
    already a 1-based line number.  Within a range, hits come before misses;
    ranges without coverage data (e.g., for code that wasn't compiled) are
    skipped.
    """
    observations: List[LineObservation] = []

    for r in report.ranges:
        if r.coverage is None:
            continue

        if not 0 <= r.script_index < len(report.scripts):
            raise MalformedResponse(f"script index {r.script_index} out of range "
                                    f"({len(report.scripts)} scripts in report)")

        uri = report.scripts[r.script_index].uri
        observations.extend(LineObservation(uri, line, True) for line in r.coverage.hits)
        observations.extend(LineObservation(uri, line, False) for line in r.coverage.misses)

    return observations
