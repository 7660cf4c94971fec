from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

from .hitmap import HitMap, HitMapAccumulator, merge_hitmaps
from .ignore import IgnoreSetCache
from .lcovreport import format_lcov, parse_lcov
from .report import LineObservation, parse_report
from .resolver import PackageResolver
from .service import ConnectionFailure, CoverageError, SourceReport, VmService
from .timing import Phase
from .topology import IsolateFailure, TopologyWalker

if TYPE_CHECKING:
    from .resolver import Resolver
    from .schemas import CodeCoverage, ScriptCoverage
    from .timing import PhaseTimer


Connector = Callable[[Optional[str]], VmService]


# left unescaped by JavaScript's encodeURIComponent, besides what quote() always keeps
_URI_COMPONENT_SAFE = "!*'()"


def script_id(isolate_id: str, uri: str) -> str:
    return f"libraries/{isolate_id}/scripts/{quote(uri, safe=_URI_COMPONENT_SAFE)}"


def script_coverage_json(isolate_id: str, uri: str, lines: dict) -> ScriptCoverage:
    hits: List[int] = []
    for line, count in lines.items():
        hits.extend((line, count))

    return {
        'source': uri,
        'script': {
            'type': '@Script',
            'fixedId': True,
            'id': script_id(isolate_id, uri),
            'uri': uri,
            '_kind': 'library',
        },
        'hits': hits,
    }


class _Phases:
    """Brackets phases for an optional recorder."""

    def __init__(self, recorder: Optional[PhaseTimer]):
        self.recorder = recorder

    def start(self, phase: Phase) -> None:
        if self.recorder is not None:
            self.recorder.start(phase)

    def stop(self, phase: Phase) -> None:
        if self.recorder is not None:
            self.recorder.stop(phase)


def _gather(service_uri: Optional[str], library_names: Optional[Iterable[str]],
            connector: Connector, phases: _Phases,
            log: Callable[[str], None]) -> Tuple[Dict[str, List[LineObservation]], List[IsolateFailure]]:
    """Connects, retrieves every isolate's coverage and parses it.

    Returns the observations for each isolate that was collected successfully, along
    with the failures of those that weren't; a failed isolate contributes no observations.
    """

    phases.start(Phase.CONNECT)
    try:
        service = connector(service_uri)
    except CoverageError:
        raise
    except Exception as e:
        raise ConnectionFailure(f"unable to connect to {service_uri or 'the VM service'}: {e}") from e
    finally:
        phases.stop(Phase.CONNECT)

    try:
        phases.start(Phase.COLLECT)
        try:
            walker = TopologyWalker(service, library_names, log=log)
            collected = walker.walk()
        finally:
            phases.stop(Phase.COLLECT)
    finally:
        service.dispose()

    failures = list(walker.failures)

    phases.start(Phase.PARSE)
    try:
        reports: Dict[str, List[SourceReport]] = dict()
        for c in collected:
            reports.setdefault(c.isolate_id, []).append(c.report)

        gathered: Dict[str, List[LineObservation]] = dict()
        for isolate_id, isolate_reports in reports.items():
            try:
                gathered[isolate_id] = [obs for r in isolate_reports for obs in parse_report(r)]
            except CoverageError as e:
                log(f"unable to parse coverage for isolate {isolate_id}: {e}")
                failures.append(IsolateFailure(isolate_id, e))

        return gathered, failures
    finally:
        phases.stop(Phase.PARSE)


def collect(service_uri: Optional[str], library_names: Optional[Iterable[str]], *,
            connector: Connector,
            ignore_cache: Optional[IgnoreSetCache] = None,
            time_recorder: Optional[PhaseTimer] = None,
            log: Optional[Callable[[str], None]] = None) -> CodeCoverage:
    """Collects coverage once from a VM service, returning it as a CodeCoverage document.

    `library_names` restricts collection to those packages; None accepts them all.
    Isolates whose coverage can't be retrieved or parsed are reported through `log`
    and left out of the document.
    """
    gathered, _ = _gather(service_uri, library_names, connector, _Phases(time_recorder),
                          log or (lambda message: None))

    coverage: List[ScriptCoverage] = []
    for isolate_id, observations in gathered.items():
        acc = HitMapAccumulator(ignore_cache)
        acc.merge(observations)
        for uri, lines in acc.drain().items():
            coverage.append(script_coverage_json(isolate_id, uri, lines))

    return {'type': 'CodeCoverage', 'coverage': coverage}


class CoverageCollector:
    """Accumulates coverage across any number of test devices.

    Call `collect_coverage` once per device (from as many threads as convenient),
    then `finalize_coverage` to retrieve everything collected so far.
    """

    def __init__(self, library_names: Optional[Iterable[str]] = None, verbose: bool = True,
                 packages_path: Optional[str] = None, resolver: Optional[Resolver] = None,
                 time_recorder: Optional[PhaseTimer] = None):
        self.library_names = None if library_names is None else set(library_names)
        self.verbose = verbose
        self.packages_path = packages_path
        if resolver is None and packages_path is not None:
            resolver = CoverageCollector.get_resolver(packages_path)
        self.resolver = resolver
        self.time_recorder = time_recorder

        self.ignore_cache = IgnoreSetCache(resolver)
        self.accumulator = HitMapAccumulator(self.ignore_cache)

    @staticmethod
    def get_resolver(packages_path) -> PackageResolver:
        return PackageResolver.from_file(packages_path)

    def _log_message(self, message: str) -> None:
        if self.verbose:
            print(message, file=sys.stderr)

    def collect_coverage(self, device: Any, *, connector: Connector) -> None:
        """Collects coverage from a device, adding it to what was collected before.

        `device` only needs a `vm_service_uri` attribute, which may be None;
        it's passed on to `connector`.

        If some isolate's coverage can't be retrieved or parsed, the other isolates'
        coverage is still merged; that isolate's is left out entirely, and its error
        is raised once the merge is done.
        """
        phases = _Phases(self.time_recorder)
        service_uri = getattr(device, 'vm_service_uri', None)

        self._log_message(f"collecting coverage data from {device}...")
        gathered, failures = _gather(service_uri, self.library_names, connector, phases,
                                     self._log_message)

        self._log_message("merging coverage data...")
        phases.start(Phase.ADD_HITMAP)
        try:
            self.accumulator.merge([obs for observations in gathered.values() for obs in observations])
        finally:
            phases.stop(Phase.ADD_HITMAP)

        self._log_message("done merging coverage data into global coverage map.")

        if failures:
            raise failures[0].error

    def finalize_coverage(self, formatter: Optional[Callable[[HitMap], Any]] = None) -> Any:
        """Returns the coverage collected so far, formatted, and clears it.

        The default formatter produces LCOV.
        """
        phases = _Phases(self.time_recorder)
        phases.start(Phase.FINALIZE)
        try:
            hitmap = self.accumulator.drain()
            if formatter is None:
                return format_lcov(hitmap, self.resolver)
            return formatter(hitmap)
        finally:
            phases.stop(Phase.FINALIZE)

    def collect_coverage_data(self, coverage_path, merge_base=None) -> bool:
        """Writes the collected coverage to an LCOV file, clearing it.

        If `merge_base` names an LCOV file, its data is added to the output.
        Returns False if there was nothing to write.  If `merge_base` can't be
        read or parsed, the error propagates and the collected coverage is kept.
        """
        base: Optional[HitMap] = None
        if merge_base is not None:
            if not Path(merge_base).is_file():
                self._log_message(f'Missing "{merge_base}". Unable to merge coverage data.')
                return False
            base = parse_lcov(Path(merge_base).read_text())

        hitmap = self.finalize_coverage(formatter=lambda hitmap: hitmap)
        self._log_message("coverage information collection complete")
        if not hitmap:
            self._log_message("no coverage data was collected")
            return False

        data = format_lcov(hitmap, self.resolver)
        if base is not None:
            data = format_lcov(merge_hitmaps(parse_lcov(data), base))

        coverage_path = Path(coverage_path)
        coverage_path.parent.mkdir(parents=True, exist_ok=True)
        coverage_path.write_text(data)
        self._log_message(f"wrote coverage data to {coverage_path} (size={len(data)})")
        return True
