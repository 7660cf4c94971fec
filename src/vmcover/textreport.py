from __future__ import annotations

import sys
from typing import Dict, List, Optional

from .hitmap import HitMap


def summarize(hitmap: HitMap) -> Dict[str, float]:
    covered = sum(1 for lines in hitmap.values() for c in lines.values() if c > 0)
    total = sum(len(lines) for lines in hitmap.values())
    return {
        'covered_lines': covered,
        'missing_lines': total - covered,
        'percent_covered': 100.0 if total == 0 else 100*covered/total,
    }


def format_missing(missing_lines: List[int], executed_lines: List[int]) -> str:
    """Formats ranges of missing lines, including lines not reported at all (e.g., comments)
       that fall between missed ones"""

    def find_ranges():
        executed = set(executed_lines)
        it = iter(missing_lines)    # assumed sorted
        a = next(it, None)
        while a is not None:
            b = a
            n = next(it, None)
            while n is not None:
                if any(l in executed for l in range(b+1, n+1)):
                    break

                b = n
                n = next(it, None)

            yield str(a) if a == b else f"{a}-{b}"

            a = n

    return ", ".join(find_ranges())


def print_coverage(hitmap: HitMap, outfile=sys.stdout, *, skip_covered: bool = False,
                   missing_width: Optional[int] = None) -> None:
    from tabulate import tabulate

    def table():
        for source, lines in sorted(hitmap.items()):
            executed = sorted(l for l, c in lines.items() if c > 0)
            missing = sorted(l for l, c in lines.items() if c == 0)
            pct = 100.0 if not lines else 100*len(executed)/len(lines)

            if skip_covered and pct == 100.0:
                continue

            yield [source, len(lines), len(missing), round(pct), format_missing(missing, executed)]

        if len(hitmap) > 1:
            yield ['---'] + [''] * 4

            s = summarize(hitmap)
            yield ['(summary)', s['covered_lines']+s['missing_lines'], s['missing_lines'],
                   round(s['percent_covered']), '']

    print("", file=outfile)
    headers = ["File", "#lines", "#l.miss", "Cover%", "Missing"]
    maxcolwidths = [None] * (len(headers)-1) + [missing_width]
    print(tabulate(table(), headers=headers, maxcolwidths=maxcolwidths), file=outfile)
