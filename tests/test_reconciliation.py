"""
Tests for the periodic consistency sweep.
"""
from cloudaudit.schemas.records import ResultRecord
from cloudaudit.services.reconciliation import ReconciliationWorker
from cloudaudit.utils.item_keys import RecordType
from fakes import make_finding


def _current(run_id, time_ms):
    return ResultRecord(
        account_id="a1",
        check_id="open-ssh",
        record_type=RecordType.CURRENT,
        run_id=run_id,
        inspection_time=time_ms,
        findings=[make_finding()],
    )


def test_sweep_reports_without_repairing(store, consistency_service):
    store.put_current(_current("r1", 1000))
    worker = ReconciliationWorker(store, consistency_service, auto_repair=False)

    stats = worker.run_once()

    assert stats["runs_checked"] == 1
    assert stats["inconsistent"] == 1
    assert stats["repaired"] == 0
    assert store.query_prefix("a1", "HISTORY#") == []


def test_sweep_repairs_when_enabled(store, consistency_service):
    store.put_current(_current("r1", 1000))
    worker = ReconciliationWorker(store, consistency_service, auto_repair=True)

    stats = worker.run_once()

    assert stats["repaired"] == 1
    assert len(store.query_prefix("a1", "HISTORY#")) == 1
    assert worker.run_once()["inconsistent"] == 0


def test_start_and_stop(store, consistency_service):
    worker = ReconciliationWorker(store, consistency_service, interval_seconds=3600)
    worker.start()
    worker.stop(timeout=1)
    assert worker._thread is None
