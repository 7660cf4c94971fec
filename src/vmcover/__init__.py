from .version import __version__
from .service import (
    VmService, Sentinel, Version, IsolateRef, VM, ScriptRef, ScriptList,
    SourceReport, SourceReportRange, SourceReportCoverage,
    CoverageError, MalformedResponse, RPCError, ConnectionFailure
)
from .report import LineObservation, parse_report
from .topology import TopologyWalker, CollectedReport, IsolateFailure, LIBRARY_FILTERS_VERSION
from .ignore import IgnoreSetCache, find_ignored_lines
from .hitmap import HitMap, HitMapAccumulator, merge_hitmaps, hitmap_from_json
from .resolver import Resolver, PackageResolver
from .collector import CoverageCollector, collect
from .lcovreport import LcovReporter, format_lcov, parse_lcov
from .textreport import print_coverage
from .timing import Phase, PhaseTimer
