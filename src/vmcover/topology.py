from __future__ import annotations

from typing import Callable, Iterable, List, NamedTuple, Optional, Set

from .service import CoverageError, Sentinel, SourceReport, VmService, Version

# first protocol version whose getSourceReport accepts 'libraryFilters'
LIBRARY_FILTERS_VERSION = (3, 57)

COVERAGE_REPORT = 'Coverage'


def library_prefix(name: str) -> str:
    return f"package:{name}/"


def supports_library_filters(version: Version) -> bool:
    return version.at_least(*LIBRARY_FILTERS_VERSION)


class CollectedReport(NamedTuple):
    isolate_id: str
    report: SourceReport


class IsolateFailure(NamedTuple):
    isolate_id: str
    error: CoverageError


class TopologyWalker:
    """Walks a VM's isolates, retrieving a coverage report for each.

    With a service recent enough to filter libraries itself, each isolate is
    asked for a single report.  Older services would send coverage for every
    loaded library (the SDK's included), so for those we list the isolate's
    scripts and request reports only for the ones we're interested in.
    """

    def __init__(self, service: VmService, library_names: Optional[Iterable[str]] = None,
                 log: Optional[Callable[[str], None]] = None):
        self.service = service
        self.library_names: Optional[Set[str]] = None if library_names is None else set(library_names)
        self.log = log or (lambda message: None)
        self.failures: List[IsolateFailure] = []

    def prefixes(self) -> Optional[List[str]]:
        if self.library_names is None:
            return None
        return [library_prefix(name) for name in sorted(self.library_names)]

    def wants(self, uri: str) -> bool:
        if self.library_names is None:
            return True
        return any(uri.startswith(prefix) for prefix in self.prefixes())

    def _source_report(self, isolate_id: str, **kwargs) -> Optional[SourceReport]:
        report = self.service.get_source_report(isolate_id, [COVERAGE_REPORT],
                                                force_compile=True, report_lines=True, **kwargs)
        if isinstance(report, Sentinel):
            self.log(f"isolate {isolate_id} went away while getting its coverage")
            return None
        return report

    def _filtered_reports(self, isolate_id: str) -> List[SourceReport]:
        report = self._source_report(isolate_id, library_filters=self.prefixes())
        return [report] if report else []

    def _per_script_reports(self, isolate_id: str) -> List[SourceReport]:
        script_list = self.service.get_scripts(isolate_id)
        if isinstance(script_list, Sentinel):
            self.log(f"isolate {isolate_id} went away while listing its scripts")
            return []

        reports = []
        for script in script_list.scripts:
            if not self.wants(script.uri):
                continue

            if (report := self._source_report(isolate_id, script_id=script.id)):
                reports.append(report)

        return reports

    def walk(self) -> List[CollectedReport]:
        """Returns the reports of every isolate that could be queried.

        An isolate whose requests fail (e.g., with a malformed response) contributes
        nothing; its error is kept in `failures` and the remaining isolates are still walked.
        """
        version = self.service.get_version()
        filtered = supports_library_filters(version)

        self.failures = []
        collected: List[CollectedReport] = []
        for isolate in self.service.get_vm().isolates:
            if isolate.is_system_isolate:
                continue

            try:
                reports = self._filtered_reports(isolate.id) if filtered \
                          else self._per_script_reports(isolate.id)
            except CoverageError as e:
                self.log(f"unable to get coverage for isolate {isolate.id}: {e}")
                self.failures.append(IsolateFailure(isolate.id, e))
                continue

            collected.extend(CollectedReport(isolate.id, r) for r in reports)

        return collected
