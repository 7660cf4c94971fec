"""Client-side view of a VM service connection.

Responses are decoded at this boundary into small dataclasses.  Calls that
target an isolate may instead return a ``Sentinel``, meaning the isolate (or
script) went away between enumeration and the request; callers are expected
to check for it with ``isinstance`` rather than catch anything.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


class CoverageError(Exception):
    """Base class for errors raised while collecting coverage."""


class MalformedResponse(CoverageError, ValueError):
    """A response didn't have the shape its RPC promises."""


class RPCError(CoverageError):
    """The service answered a request with an error object."""

    def __init__(self, method: str, code: int, message: str):
        super().__init__(f"{method}: {message} ({code})")
        self.method = method
        self.code = code


class ConnectionFailure(CoverageError):
    """Unable to reach the VM service."""


@dataclass(frozen=True)
class Sentinel:
    kind: Optional[str] = None
    value_as_string: Optional[str] = None


@dataclass(frozen=True)
class Version:
    major: int
    minor: int

    def at_least(self, major: int, minor: int) -> bool:
        return (self.major, self.minor) >= (major, minor)


@dataclass(frozen=True)
class IsolateRef:
    id: str
    name: Optional[str] = None
    is_system_isolate: bool = False


@dataclass(frozen=True)
class VM:
    isolates: List[IsolateRef] = field(default_factory=list)


@dataclass(frozen=True)
class ScriptRef:
    id: str
    uri: str


@dataclass(frozen=True)
class ScriptList:
    scripts: List[ScriptRef] = field(default_factory=list)


@dataclass(frozen=True)
class SourceReportCoverage:
    hits: List[int] = field(default_factory=list)
    misses: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class SourceReportRange:
    script_index: int
    compiled: bool = True
    start_pos: int = -1
    end_pos: int = -1
    coverage: Optional[SourceReportCoverage] = None


@dataclass(frozen=True)
class SourceReport:
    ranges: List[SourceReportRange] = field(default_factory=list)
    scripts: List[ScriptRef] = field(default_factory=list)


def _expect(json: Any, *types: str) -> Dict[str, Any]:
    if not isinstance(json, dict):
        raise MalformedResponse(f"expected a JSON object, got {type(json).__name__}")
    t = json.get('type')
    if t not in types:
        raise MalformedResponse(f"expected type {' or '.join(types)}, got {t!r}")
    return json


def _int_list(json: Dict[str, Any], key: str) -> List[int]:
    value = json.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, int) for v in value):
        raise MalformedResponse(f"'{key}' must be a list of integers")
    return value


def _required(json: Dict[str, Any], key: str, kind: type) -> Any:
    value = json.get(key)
    if not isinstance(value, kind):
        raise MalformedResponse(f"missing or invalid '{key}' in {json.get('type')}")
    return value


def parse_sentinel(json: Dict[str, Any]) -> Sentinel:
    return Sentinel(kind=json.get('kind'), value_as_string=json.get('valueAsString'))


def parse_version(json: Any) -> Version:
    json = _expect(json, 'Version')
    return Version(major=_required(json, 'major', int), minor=_required(json, 'minor', int))


def parse_isolate_ref(json: Any) -> IsolateRef:
    json = _expect(json, '@Isolate')
    return IsolateRef(id=_required(json, 'id', str), name=json.get('name'),
                      is_system_isolate=bool(json.get('isSystemIsolate', False)))


def parse_vm(json: Any) -> VM:
    json = _expect(json, 'VM')
    return VM(isolates=[parse_isolate_ref(i) for i in json.get('isolates') or []])


def parse_script_ref(json: Any) -> ScriptRef:
    json = _expect(json, '@Script', 'Script')
    return ScriptRef(id=_required(json, 'id', str), uri=_required(json, 'uri', str))


def parse_script_list(json: Any) -> Union[ScriptList, Sentinel]:
    json = _expect(json, 'ScriptList', 'Sentinel')
    if json['type'] == 'Sentinel':
        return parse_sentinel(json)
    return ScriptList(scripts=[parse_script_ref(s) for s in json.get('scripts') or []])


def parse_source_report(json: Any) -> Union[SourceReport, Sentinel]:
    json = _expect(json, 'SourceReport', 'Sentinel')
    if json['type'] == 'Sentinel':
        return parse_sentinel(json)

    ranges = []
    for r in json.get('ranges') or []:
        if not isinstance(r, dict):
            raise MalformedResponse("source report range must be a JSON object")

        coverage = None
        if (c := r.get('coverage')) is not None:
            if not isinstance(c, dict):
                raise MalformedResponse("'coverage' must be a JSON object")
            coverage = SourceReportCoverage(hits=_int_list(c, 'hits'), misses=_int_list(c, 'misses'))

        ranges.append(SourceReportRange(script_index=_required(r, 'scriptIndex', int),
                                        compiled=bool(r.get('compiled', True)),
                                        start_pos=r.get('startPos', -1),
                                        end_pos=r.get('endPos', -1),
                                        coverage=coverage))

    return SourceReport(ranges=ranges, scripts=[parse_script_ref(s) for s in json.get('scripts') or []])


class VmService:
    """A connection to a VM service.

    Transports subclass this and implement ``_call``, which sends one request
    and returns the decoded JSON ``result`` object (raising ``RPCError`` if the
    service answered with an error).  The typed wrappers below use the
    protocol's own parameter names.
    """

    def _call(self, method: str, params: Dict[str, Any]) -> Any:
        raise NotImplementedError

    def get_version(self) -> Version:
        return parse_version(self._call('getVersion', {}))

    def get_vm(self) -> VM:
        return parse_vm(self._call('getVM', {}))

    def get_scripts(self, isolate_id: str) -> Union[ScriptList, Sentinel]:
        return parse_script_list(self._call('getScripts', {'isolateId': isolate_id}))

    def get_source_report(self, isolate_id: str, reports: List[str], *,
                          script_id: Optional[str] = None,
                          force_compile: Optional[bool] = None,
                          report_lines: Optional[bool] = None,
                          library_filters: Optional[List[str]] = None) -> Union[SourceReport, Sentinel]:
        params: Dict[str, Any] = {'isolateId': isolate_id, 'reports': list(reports)}
        if script_id is not None:
            params['scriptId'] = script_id
        if force_compile is not None:
            params['forceCompile'] = force_compile
        if report_lines is not None:
            params['reportLines'] = report_lines
        if library_filters is not None:
            params['libraryFilters'] = list(library_filters)

        return parse_source_report(self._call('getSourceReport', params))

    def dispose(self) -> None:
        """Releases the connection; the default does nothing."""
