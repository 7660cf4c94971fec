import pytest
import threading
from concurrent.futures import ThreadPoolExecutor

import vmcover as vc
from fake_service import (
    FakeVmService, FakeDevice, FakeRequest, version, vm, scripts, sentinel, source_report,
    report_request, foo_report, bar_report, foo_and_bar_service, expected_foo_json,
    expected_bar_json, write_foo_bar_packages, FOO, BAR
)


def connect_to(service):
    def connector(uri):
        return service
    return connector


def test_collect_handles_sentinel_scripts():
    service = FakeVmService([
        version(3, 51),
        vm('1'),
        FakeRequest('getScripts', sentinel(), args={'isolateId': '1'}),
    ])

    result = vc.collect(None, {'foo'}, connector=connect_to(service))

    assert {'type': 'CodeCoverage', 'coverage': []} == result
    assert not service.has_remaining_expectations
    assert service.disposed


def test_collect_processes_coverage_and_script_data():
    service = FakeVmService([
        version(3, 51),
        vm('1'),
        scripts('1', FOO, BAR),
        report_request('1', foo_report(), script_id='1'),
    ])

    result = vc.collect(None, {'foo'}, connector=connect_to(service))

    assert {'type': 'CodeCoverage', 'coverage': [expected_foo_json()]} == result
    assert not service.has_remaining_expectations


def test_collect_with_no_library_names_accepts_all_libraries():
    service = foo_and_bar_service()

    result = vc.collect(None, None, connector=connect_to(service))

    assert {'type': 'CodeCoverage', 'coverage': [expected_foo_json(), expected_bar_json()]} == result
    assert not service.has_remaining_expectations


def test_collect_with_library_filters():
    service = FakeVmService([
        version(3, 57),
        vm('1'),
        report_request('1', foo_report(), library_filters=['package:foo/']),
    ])

    result = vc.collect(None, {'foo'}, connector=connect_to(service))

    assert {'type': 'CodeCoverage', 'coverage': [expected_foo_json()]} == result
    assert not service.has_remaining_expectations


def test_collect_with_library_filters_and_no_library_names():
    service = FakeVmService([
        version(3, 57),
        vm('1'),
        report_request('1', foo_report()),
    ])

    result = vc.collect(None, None, connector=connect_to(service))

    assert {'type': 'CodeCoverage', 'coverage': [expected_foo_json()]} == result
    assert not service.has_remaining_expectations


def test_collect_passes_uri_to_connector():
    seen = []

    def connector(uri):
        seen.append(uri)
        return FakeVmService([version(3, 57), vm()])

    assert [] == vc.collect("ws://127.0.0.1:8181/ws", None, connector=connector)['coverage']
    assert ["ws://127.0.0.1:8181/ws"] == seen


def test_collect_uses_isolate_id_in_script_id():
    service = FakeVmService([
        version(4, 0),
        vm('isolates/42'),
        report_request('isolates/42', foo_report(), library_filters=['package:foo/']),
    ])

    result = vc.collect(None, ['foo'], connector=connect_to(service))

    assert 'libraries/isolates/42/scripts/package%3Afoo%2Ffoo.dart' == result['coverage'][0]['script']['id']


def test_collect_connection_failure():
    def connector(uri):
        raise OSError("connection refused")

    with pytest.raises(vc.ConnectionFailure, match="connection refused"):
        vc.collect(None, None, connector=connector)


def test_collect_malformed_report():
    service = FakeVmService([
        version(3, 57),
        vm('1'),
        report_request('1', {'type': 'Instance'}),
    ])
    messages = []

    result = vc.collect(None, None, connector=connect_to(service), log=messages.append)

    assert {'type': 'CodeCoverage', 'coverage': []} == result
    assert any("isolate 1" in m for m in messages)
    assert service.disposed


def test_collect_malformed_report_keeps_other_isolates():
    service = FakeVmService([
        version(3, 57),
        vm('1', '2', '3'),
        report_request('1', foo_report()),
        report_request('2', {'type': 'Instance'}),
        # an out of range script index only shows up while parsing
        report_request('3', source_report([(3, [5], [])], [FOO])),
    ])

    result = vc.collect(None, None, connector=connect_to(service))

    assert {'type': 'CodeCoverage', 'coverage': [expected_foo_json()]} == result
    assert not service.has_remaining_expectations


def test_collect_applies_ignore_cache(tmp_path):
    src = tmp_path / "foo.dart"
    src.write_text("hit\nnohit but ignored // coverage:ignore-line\nhit\n")
    uri = src.as_uri()

    service = FakeVmService([
        version(3, 57),
        vm('1'),
        report_request('1', source_report([(0, [1, 3], [2])], [('1', uri)])),
    ])

    result = vc.collect(None, None, connector=connect_to(service), ignore_cache=vc.IgnoreSetCache())

    assert [1, 1, 3, 1] == result['coverage'][0]['hits']


def test_collect_records_phases():
    timer = vc.PhaseTimer()
    vc.collect(None, None, connector=connect_to(foo_and_bar_service()), time_recorder=timer)

    messages = timer.messages()
    assert len(vc.Phase) == len(messages)
    assert all(m.startswith("Runtime for phase ") for m in messages)


def make_collector(tmp_path, **kwargs):
    packages = write_foo_bar_packages(tmp_path)
    foo_file = (tmp_path / "foo" / "foo.dart").resolve()
    foo_file.write_text("hit\nnohit but ignored // coverage:ignore-line\nhit\n")

    collector = vc.CoverageCollector(library_names={'foo', 'bar'}, verbose=False,
                                     packages_path=str(packages), **kwargs)
    return collector, foo_file


def get_hitmap(collector):
    gotten = dict()

    def formatter(hitmap):
        gotten.update(hitmap)
        return ''

    assert '' == collector.finalize_coverage(formatter=formatter)
    return gotten


def test_collector_caches_read_files(tmp_path):
    collector, foo_file = make_collector(tmp_path)

    def get_hitmap_and_verify():
        hitmap = get_hitmap(collector)
        assert ['package:bar/bar.dart', 'package:foo/foo.dart'] == sorted(hitmap)
        assert {1: 1, 3: 1} == hitmap['package:foo/foo.dart']
        assert {21: 1, 32: 0, 47: 1, 86: 0} == hitmap['package:bar/bar.dart']

    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))
    get_hitmap_and_verify()

    # finalizing clears what was collected
    assert {} == get_hitmap(collector)

    # line 2 stays ignored even though the file is gone
    foo_file.unlink()
    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))
    get_hitmap_and_verify()


def test_collector_accumulates_across_devices(tmp_path):
    collector, _ = make_collector(tmp_path)

    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))
    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))

    hitmap = get_hitmap(collector)
    assert {1: 2, 3: 2} == hitmap['package:foo/foo.dart']
    assert {21: 2, 32: 0, 47: 2, 86: 0} == hitmap['package:bar/bar.dart']


def test_collector_concurrent_collection_is_order_independent(tmp_path):
    collector, _ = make_collector(tmp_path)

    def services():
        yield foo_and_bar_service()
        yield FakeVmService([version(3, 57), vm('1'),
                             report_request('1', bar_report(), library_filters=['package:bar/', 'package:foo/'])])
        yield FakeVmService([version(3, 57), vm('2'),
                             report_request('2', source_report([(0, [2], [5])], [FOO]),
                                            library_filters=['package:bar/', 'package:foo/'])])

    barrier = threading.Barrier(3)

    def run(service):
        barrier.wait()
        collector.collect_coverage(FakeDevice(), connector=connect_to(service))

    with ThreadPoolExecutor(max_workers=3) as pool:
        list(pool.map(run, services()))

    hitmap = get_hitmap(collector)
    # line 2 is ignored in foo.dart, whichever device hit it
    assert {1: 1, 3: 1, 5: 0} == hitmap['package:foo/foo.dart']
    assert {21: 2, 32: 0, 47: 2, 86: 0} == hitmap['package:bar/bar.dart']


def test_collector_passes_device_uri(tmp_path):
    collector, _ = make_collector(tmp_path)
    seen = []

    def connector(uri):
        seen.append(uri)
        return foo_and_bar_service()

    collector.collect_coverage(FakeDevice("ws://127.0.0.1:1234/abc=/ws"), connector=connector)
    assert ["ws://127.0.0.1:1234/abc=/ws"] == seen


def test_collector_failed_isolate_keeps_other_isolates(tmp_path):
    collector, _ = make_collector(tmp_path)
    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))

    broken = FakeVmService([
        version(3, 51),
        vm('1', '2'),
        scripts('1', FOO),
        report_request('1', bar_report(), script_id='1'),
        scripts('2', FOO),
        report_request('2', {'type': 'SourceReport', 'ranges': [{'scriptIndex': 3, 'coverage': {}}],
                             'scripts': []}, script_id='1'),
    ])
    with pytest.raises(vc.MalformedResponse):
        collector.collect_coverage(FakeDevice(), connector=connect_to(broken))

    # isolate 1's coverage was merged; isolate 2 added nothing
    hitmap = get_hitmap(collector)
    assert {1: 1, 3: 1} == hitmap['package:foo/foo.dart']
    assert {21: 2, 32: 0, 47: 2, 86: 0} == hitmap['package:bar/bar.dart']


def test_collector_malformed_response_keeps_other_isolates(tmp_path):
    collector, _ = make_collector(tmp_path)

    service = FakeVmService([
        version(3, 57),
        vm('1', '2'),
        report_request('1', foo_report(), library_filters=['package:bar/', 'package:foo/']),
        report_request('2', {'type': 'Instance'}, library_filters=['package:bar/', 'package:foo/']),
    ])
    with pytest.raises(vc.MalformedResponse):
        collector.collect_coverage(FakeDevice(), connector=connect_to(service))

    assert not service.has_remaining_expectations
    assert service.disposed
    assert {'package:foo/foo.dart': {1: 1, 3: 1}} == get_hitmap(collector)


def test_collector_rpc_error_keeps_other_isolates(tmp_path):
    collector, _ = make_collector(tmp_path)

    service = FakeVmService([
        version(3, 57),
        vm('1', '2'),
        report_request('1', vc.RPCError('getSourceReport', 113, "isolate is reloading"),
                       library_filters=['package:bar/', 'package:foo/']),
        report_request('2', bar_report(), library_filters=['package:bar/', 'package:foo/']),
    ])
    with pytest.raises(vc.RPCError):
        collector.collect_coverage(FakeDevice(), connector=connect_to(service))

    assert {'package:bar/bar.dart': {21: 1, 32: 0, 47: 1, 86: 0}} == get_hitmap(collector)


def test_collector_connection_failure_is_propagated(tmp_path):
    collector, _ = make_collector(tmp_path)

    def connector(uri):
        raise ConnectionRefusedError()

    with pytest.raises(vc.ConnectionFailure):
        collector.collect_coverage(FakeDevice(), connector=connector)

    assert {} == get_hitmap(collector)


def test_collector_records_test_timings(tmp_path):
    timer = vc.PhaseTimer()
    collector, _ = make_collector(tmp_path, time_recorder=timer)

    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))

    # one message per phase, and something took time
    messages = timer.messages()
    assert len(vc.Phase) == len(messages)
    assert timer.totals[vc.Phase.COLLECT] > 0
    assert timer.totals[vc.Phase.FINALIZE] == 0


def test_finalize_defaults_to_lcov(tmp_path):
    collector, foo_file = make_collector(tmp_path)
    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))

    lcov = collector.finalize_coverage()

    bar_path = (tmp_path / "bar" / "bar.dart").resolve()
    assert lcov == (f"SF:{bar_path}\nDA:21,1\nDA:32,0\nDA:47,1\nDA:86,0\nLF:4\nLH:2\nend_of_record\n"
                    f"SF:{foo_file}\nDA:1,1\nDA:3,1\nLF:2\nLH:2\nend_of_record\n")
    assert "" == collector.finalize_coverage()


def test_collect_coverage_data(tmp_path):
    collector, foo_file = make_collector(tmp_path)
    out = tmp_path / "coverage" / "lcov.info"

    assert not collector.collect_coverage_data(out)
    assert not out.exists()

    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))
    assert collector.collect_coverage_data(out)

    hitmap = vc.parse_lcov(out.read_text())
    assert {1: 1, 3: 1} == hitmap[str(foo_file)]


def test_collect_coverage_data_merges_base(tmp_path):
    collector, foo_file = make_collector(tmp_path)
    base = tmp_path / "lcov.base.info"
    base.write_text(f"SF:{foo_file}\nDA:1,3\nDA:7,0\nend_of_record\nSF:/other.dart\nDA:1,1\nend_of_record\n")
    out = tmp_path / "lcov.info"

    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))
    assert collector.collect_coverage_data(out, merge_base=base)

    hitmap = vc.parse_lcov(out.read_text())
    assert {1: 4, 3: 1, 7: 0} == hitmap[str(foo_file)]
    assert {1: 1} == hitmap["/other.dart"]


def test_collect_coverage_data_missing_base(tmp_path):
    collector, _ = make_collector(tmp_path)
    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))

    assert not collector.collect_coverage_data(tmp_path / "lcov.info", merge_base=tmp_path / "nope.info")

    # nothing was drained
    assert 'package:foo/foo.dart' in get_hitmap(collector)


def test_collect_coverage_data_malformed_base(tmp_path):
    collector, _ = make_collector(tmp_path)
    base = tmp_path / "lcov.base.info"
    base.write_text("DA:1,1\nend_of_record\n")
    out = tmp_path / "lcov.info"

    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))
    with pytest.raises(ValueError):
        collector.collect_coverage_data(out, merge_base=base)

    assert not out.exists()
    hitmap = get_hitmap(collector)
    assert {1: 1, 3: 1} == hitmap['package:foo/foo.dart']
    assert {21: 1, 32: 0, 47: 1, 86: 0} == hitmap['package:bar/bar.dart']


def test_verbose_messages(tmp_path, capsys):
    collector, _ = make_collector(tmp_path)
    collector.verbose = True

    collector.collect_coverage(FakeDevice(), connector=connect_to(foo_and_bar_service()))

    assert "merging coverage data" in capsys.readouterr().err
