"""
Tests for Current/Historical divergence detection and repair.
"""
import pytest

from cloudaudit.core.exceptions import ResultStoreError
from cloudaudit.schemas.consistency import IssueKind
from cloudaudit.schemas.inspection import RunStatus
from cloudaudit.services.consistency_service import ConsistencyService
from cloudaudit.services.history_service import ResultRecordService
from cloudaudit.services.inspection_run import InspectionRun, ItemResult
from cloudaudit.utils.item_keys import RecordType
from fakes import make_finding


def _run(run_id, findings=None, account_id="a1", check_id="public-access"):
    run = InspectionRun(account_id=account_id, check_set=check_id, run_id=run_id)
    run.transition(RunStatus.IN_PROGRESS)
    run.add_item_result(ItemResult(check_id=check_id, service="S3", findings=findings or [], resources_scanned=1))
    run.transition(RunStatus.COMPLETED)
    return run


def _records(record_service, run, time_ms):
    return record_service.build_records(run, run.item_results[0], time_ms)


def _write_both(record_service, run, time_ms):
    history, current = _records(record_service, run, time_ms)
    record_service.store.put_history(history)
    record_service.store.put_current(current)
    return history, current


def test_fully_written_run_is_consistent(record_service, consistency_service):
    _write_both(record_service, _run("r1", [make_finding()]), 1000)

    report = consistency_service.validate("a1", "r1")
    assert report.is_consistent
    assert report.run_known
    assert report.issues == []


def test_unknown_run_is_consistent_but_not_known(consistency_service):
    report = consistency_service.validate("a1", "nope")
    assert report.is_consistent
    assert report.run_known is False


def test_lost_current_write_is_timestamp_divergence(record_service, consistency_service):
    _write_both(record_service, _run("r1", [make_finding("x"), make_finding("y")]), 1000)
    history, _ = _records(record_service, _run("r2"), 2000)
    record_service.store.put_history(history)  # crash before the Current write

    report = consistency_service.validate("a1", "r2")

    assert not report.is_consistent
    assert [issue.kind for issue in report.issues] == [IssueKind.TIMESTAMP_DIVERGENCE]
    assert report.issues[0].current_run_id == "r1"
    assert report.recoverable

    result = consistency_service.repair("a1", "r2")

    assert result.is_consistent
    assert result.recoverable
    current = record_service.get_current("a1", "public-access")
    assert current.run_id == "r2"
    assert current.inspection_time == 2000
    assert current.findings == []


def test_newer_run_on_current_is_not_divergence(record_service, consistency_service):
    _write_both(record_service, _run("r1"), 1000)
    _write_both(record_service, _run("r2"), 2000)

    assert consistency_service.validate("a1", "r1").is_consistent


def test_lost_history_write_is_reconstructed(record_service, consistency_service):
    _, current = _records(record_service, _run("r3", [make_finding()]), 3000)
    record_service.store.put_current(current)  # Historical never written

    report = consistency_service.validate("a1", "r3")
    assert [issue.kind for issue in report.issues] == [IssueKind.HISTORY_MISSING]
    assert report.issues[0].recoverable

    result = consistency_service.repair("a1", "r3")

    assert result.is_consistent
    history = record_service.scan_history("a1", "public-access")
    assert len(history) == 1
    assert history[0].run_id == "r3"
    assert history[0].reconstructed is True
    assert history[0].metadata["reconstructed"] is True
    assert history[0].metadata["source_items"] == 1
    assert history[0].findings == current.findings
    assert history[0].summary.total_findings == 1


def test_missing_everything_is_unrecoverable_and_writes_nothing(record_service, registry, consistency_service):
    registry.add(_run("r3", [make_finding()]))  # completed, but nothing was saved

    report = consistency_service.validate("a1", "r3")
    assert report.run_known
    assert not report.is_consistent
    assert report.recoverable is False

    result = consistency_service.repair("a1", "r3")

    assert result.recoverable is False
    assert result.is_consistent is False
    assert [action.action for action in result.actions] == ["skipped"]
    assert record_service.store.list_accounts() == []


def test_missing_item_result_is_regenerated(record_service, consistency_service):
    history, _ = _records(record_service, _run("r1", [make_finding()]), 1000)
    record_service.store.put_history(history)

    report = consistency_service.validate("a1", "r1")
    assert [issue.kind for issue in report.issues] == [IssueKind.ITEM_RESULTS_MISSING]

    result = consistency_service.repair("a1", "r1")
    assert result.is_consistent
    assert record_service.get_current("a1", "public-access").findings == history.findings


def test_item_result_that_lost_its_findings_is_regenerated(record_service, consistency_service):
    history, current = _records(record_service, _run("r1", [make_finding()]), 1000)
    record_service.store.put_history(history)
    record_service.store.put_current(current.model_copy(update={"findings": []}))

    report = consistency_service.validate("a1", "r1")
    assert [issue.kind for issue in report.issues] == [IssueKind.ITEM_RESULTS_MISSING]

    assert consistency_service.repair("a1", "r1").is_consistent
    assert len(record_service.get_current("a1", "public-access").findings) == 1


def test_same_run_skew_uses_tolerance(record_service, consistency_service):
    history, current = _records(record_service, _run("r1"), 1000)
    record_service.store.put_history(history)
    record_service.store.put_current(current.model_copy(update={"inspection_time": 1000 + 30_000}))
    assert consistency_service.validate("a1", "r1").is_consistent

    record_service.store.put_current(current.model_copy(update={"inspection_time": 1000 + 120_000}))
    report = consistency_service.validate("a1", "r1")
    assert [issue.kind for issue in report.issues] == [IssueKind.TIMESTAMP_DIVERGENCE]

    assert consistency_service.repair("a1", "r1").is_consistent
    assert record_service.get_current("a1", "public-access").inspection_time == 1000


def test_repair_is_idempotent(record_service, consistency_service):
    _, current = _records(record_service, _run("r3", [make_finding()]), 3000)
    record_service.store.put_current(current)

    first = consistency_service.repair("a1", "r3")
    second = consistency_service.repair("a1", "r3")

    assert first.is_consistent and second.is_consistent
    assert second.actions == []
    assert len(record_service.scan_history("a1", "public-access")) == 1


class UnreachableStore:
    """Fails every read; records whether anything tried to write."""

    def __init__(self):
        self.writes = 0

    def query_by_run(self, account_id, run_id):
        raise ResultStoreError("connection refused")

    def put_history(self, record):
        self.writes += 1
        return True

    def put_current(self, record, force=False):
        self.writes += 1
        return True


def test_store_failure_reports_error_and_mutates_nothing():
    store = UnreachableStore()
    service = ConsistencyService(ResultRecordService(store))

    report = service.validate("a1", "r1")
    assert report.error
    assert report.is_consistent is False
    assert report.recoverable is False

    result = service.repair("a1", "r1")
    assert result.error
    assert result.actions == []
    assert store.writes == 0


@pytest.mark.parametrize("record_type", [RecordType.CURRENT, RecordType.HISTORY])
def test_other_accounts_are_ignored(record_service, consistency_service, record_type):
    history, current = _records(record_service, _run("r1", account_id="a2"), 1000)
    if record_type is RecordType.CURRENT:
        record_service.store.put_current(current)
    else:
        record_service.store.put_history(history)

    report = consistency_service.validate("a1", "r1")
    assert report.is_consistent
    assert report.run_known is False
