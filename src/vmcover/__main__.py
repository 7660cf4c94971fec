import sys
import json
import warnings
from pathlib import Path
import vmcover as vc


def load_hitmaps(args, ignore_cache):
    """Reads and merges CodeCoverage documents, returning None if any can't be read."""
    merged: vc.HitMap = dict()

    for f in args.files:
        try:
            with f.open() as jf:
                doc = json.load(jf)
            if doc.get('type') != 'CodeCoverage':
                raise ValueError("not a CodeCoverage document")
            vc.merge_hitmaps(merged, vc.hitmap_from_json(doc['coverage'], ignore_cache))
        except Exception as e:
            warnings.warn(f"Error reading in {f}: {e}")
            return None

    return merged


def main():
    import argparse

    ap = argparse.ArgumentParser(prog='vmcover',
                                 description="merge and report coverage collected from VM services")
    ap.add_argument('files', nargs='+', type=Path, help="CodeCoverage JSON files to merge")
    g = ap.add_mutually_exclusive_group()
    g.add_argument('--json', action='store_true', help="select JSON (hit map) output")
    g.add_argument('--lcov', action='store_true', help="select LCOV output")
    ap.add_argument('--pretty-print', action='store_true', help="pretty-print JSON output")
    ap.add_argument('--out', type=Path, help="specify output file name")
    ap.add_argument('--packages', type=Path,
                    help="package configuration file, used to find sources and honor coverage:ignore comments")
    ap.add_argument('--skip-covered', action='store_true', help="omit fully covered files (from text output)")
    ap.add_argument('--fail-under', type=float, default=0,
                    help="fail execution with RC 2 if the overall coverage lays lower than this")
    ap.add_argument('--missing-width', type=int, default=80, metavar="WIDTH",
                    help="maximum width for `missing' column")
    ap.add_argument('--version', action='version',
                    version=f"%(prog)s v{vc.__version__} (Python {'.'.join(map(str, sys.version_info[:3]))})")

    args = ap.parse_args(sys.argv[1:])

    resolver = None
    if args.packages:
        try:
            resolver = vc.PackageResolver.from_file(args.packages)
        except Exception as e:
            warnings.warn(f"Error reading in {args.packages}: {e}")
            return 1

    hitmap = load_hitmaps(args, vc.IgnoreSetCache(resolver) if resolver else None)
    if hitmap is None:
        return 1

    def printit(outfile):
        if args.json:
            doc = {source: {str(line): count for line, count in sorted(lines.items())}
                   for source, lines in sorted(hitmap.items())}
            print(json.dumps(doc, indent=(4 if args.pretty_print else None)), file=outfile)
        elif args.lcov:
            outfile.write(vc.format_lcov(hitmap, resolver))
        else:
            vc.print_coverage(hitmap, outfile=outfile, skip_covered=args.skip_covered,
                              missing_width=args.missing_width)

    try:
        if args.out:
            with args.out.open("w", encoding='utf-8') as outfile:
                printit(outfile)
        else:
            printit(sys.stdout)
    except OSError as e:
        warnings.warn(f"Error writing {args.out}: {e}")
        return 1

    if args.fail_under:
        from vmcover.textreport import summarize
        if summarize(hitmap)['percent_covered'] < args.fail_under:
            return 2

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
