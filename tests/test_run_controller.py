"""
Tests for the run lifecycle: state transitions, progress and persistence.
"""
import pytest

from cloudaudit.core.exceptions import CredentialError, InvalidStateTransition
from cloudaudit.schemas.inspection import RunStatus
from cloudaudit.schemas.records import ItemStatus
from cloudaudit.services.check_catalog import CheckCatalog
from cloudaudit.services.check_runner import CheckRunner
from cloudaudit.services.inspection_run import InspectionRun, ItemResult
from cloudaudit.services.run_controller import RunController, finalize_findings, progress_plan
from fakes import ROLE_ARN, FakeConnection, FakeCredentialProvider, StaticCheck, make_finding


class SteppingClock:
    """Returns the given readings in order, then repeats the last one."""

    def __init__(self, *readings):
        self.readings = list(readings)

    def __call__(self):
        if len(self.readings) > 1:
            return self.readings.pop(0)
        return self.readings[0]


@pytest.fixture
def observer(hub):
    connection = FakeConnection("observer")
    hub.register(connection)
    return connection


def _controller(run, catalog, record_service, hub, credential_provider=None, clock=None, timeout=30):
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return RunController(
        run=run,
        catalog=catalog,
        credential_provider=credential_provider or FakeCredentialProvider(),
        runner=CheckRunner(max_retries=1, base_delay=0),
        record_service=record_service,
        hub=hub,
        timeout_seconds=timeout,
        **kwargs,
    )


def test_successful_run_completes_and_persists(catalog, record_service, hub, observer):
    run = InspectionRun(account_id="a1", check_set="open-ssh", role_arn=ROLE_ARN)
    hub.subscribe(observer, run.run_id)

    _controller(run, catalog, record_service, hub).execute()

    assert run.status is RunStatus.COMPLETED
    assert run.save_successful is True
    assert run.started_at is not None and run.ended_at >= run.started_at
    assert len(run.findings) == 1

    current = record_service.get_current("a1", "open-ssh")
    history = record_service.scan_history("a1", "open-ssh")
    assert current.run_id == run.run_id
    assert current.inspection_time == run.ended_at
    assert history[0].findings == current.findings
    assert current.resources_scanned == 3


def test_progress_is_monotonic_and_precedes_status_change(catalog, record_service, hub, observer):
    run = InspectionRun(account_id="a1", check_set="open-ssh", role_arn=ROLE_ARN)
    hub.subscribe(observer, run.run_id)

    _controller(run, catalog, record_service, hub).execute()

    types = observer.types()
    progress = [m["data"]["progress"]["percentage"] for m in observer.of_type("progress_update")]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    assert types.index("status_change") > max(i for i, t in enumerate(types) if t == "progress_update")
    assert types[-1] == "inspection_complete"

    status_change = observer.of_type("status_change")[0]["data"]
    assert status_change["status"] == "COMPLETED"
    assert status_change["save_successful"] is True
    assert status_change["inspection_id"] == run.run_id


def test_unknown_check_fails_without_credentials(catalog, record_service, hub):
    provider = FakeCredentialProvider()
    run = InspectionRun(account_id="a1", check_set="no-such-check", role_arn=ROLE_ARN)

    _controller(run, catalog, record_service, hub, credential_provider=provider).execute()

    assert run.status is RunStatus.FAILED
    assert "Unknown check" in run.error
    assert "open-ssh" in run.error
    assert provider.requests == []
    assert run.started_at is None
    assert record_service.list_current("a1") == []


def test_credential_failure_fails_the_run(catalog, record_service, hub):
    provider = FakeCredentialProvider(error=CredentialError("AccessDenied"))
    run = InspectionRun(account_id="a1", check_set="open-ssh", role_arn=ROLE_ARN)

    _controller(run, catalog, record_service, hub, credential_provider=provider).execute()

    assert run.status is RunStatus.FAILED
    assert run.error.startswith("Credential error")
    assert run.item_results == []


def test_check_error_keeps_partial_findings(record_service, hub):
    catalog = CheckCatalog()
    catalog.add(StaticCheck("open-ssh", findings=[make_finding()], error=RuntimeError("boom")))
    run = InspectionRun(account_id="a1", check_set="open-ssh", role_arn=ROLE_ARN)

    _controller(run, catalog, record_service, hub).execute()

    assert run.status is RunStatus.FAILED
    assert run.partial is True
    history = record_service.scan_history("a1", "open-ssh")[0]
    assert history.partial is True
    assert history.status == ItemStatus.ERROR
    assert len(history.findings) == 1
    assert "boom" in history.error


def test_sweep_stops_at_first_failing_check(record_service, hub):
    catalog = CheckCatalog()
    first = StaticCheck("a-check", error=RuntimeError("boom"))
    second = StaticCheck("b-check")
    catalog.add(first)
    catalog.add(second)
    run = InspectionRun(account_id="a1", check_set="all", role_arn=ROLE_ARN)

    _controller(run, catalog, record_service, hub).execute()

    assert run.status is RunStatus.FAILED
    assert first.calls == 1
    assert second.calls == 0


def test_timeout_checked_between_checks(catalog, record_service, hub):
    # start, first checkpoint, then past the limit at the second checkpoint
    clock = SteppingClock(0, 0, 1000)
    run = InspectionRun(account_id="a1", check_set="all", role_arn=ROLE_ARN)

    _controller(run, catalog, record_service, hub, clock=clock, timeout=30).execute()

    assert run.status is RunStatus.FAILED
    assert "timed out" in run.error
    assert run.partial is True
    assert [item.check_id for item in run.item_results] == ["open-ssh"]
    assert record_service.get_current("a1", "open-ssh").partial is True


def test_post_process_failure_marks_partial(catalog, record_service, hub, monkeypatch):
    run = InspectionRun(account_id="a1", check_set="open-ssh", role_arn=ROLE_ARN)
    controller = _controller(run, catalog, record_service, hub)

    def broken():
        raise RuntimeError("dedupe failed")

    monkeypatch.setattr(controller, "post_process", broken)
    controller.execute()

    assert run.status is RunStatus.FAILED
    assert run.partial is True
    assert "Post-processing failed" in run.error


def test_save_failure_is_reported_not_raised(catalog, record_service, hub, observer, monkeypatch):
    run = InspectionRun(account_id="a1", check_set="open-ssh", role_arn=ROLE_ARN)
    hub.subscribe(observer, run.run_id)

    def failing_write(_run):
        raise RuntimeError("store down")

    monkeypatch.setattr(record_service, "write_run_results", failing_write)
    _controller(run, catalog, record_service, hub).execute()

    assert run.status is RunStatus.COMPLETED
    assert run.save_successful is False
    assert observer.of_type("status_change")[0]["data"]["save_successful"] is False


def test_batch_runs_publish_on_the_batch_channel(catalog, record_service, hub, observer):
    run = InspectionRun(account_id="a1", check_set="open-ssh", role_arn=ROLE_ARN, batch_id="batch-1")
    hub.subscribe(observer, "batch-1")

    _controller(run, catalog, record_service, hub).execute()

    assert "status_change" in observer.types()
    # Batch completion is announced by the batch orchestrator, not the run
    assert "inspection_complete" not in observer.types()


def test_terminal_runs_reject_further_changes():
    run = InspectionRun(account_id="a1", check_set="open-ssh")
    run.transition(RunStatus.IN_PROGRESS)
    run.transition(RunStatus.COMPLETED)

    with pytest.raises(InvalidStateTransition):
        run.transition(RunStatus.FAILED)
    with pytest.raises(InvalidStateTransition):
        run.add_item_result(ItemResult(check_id="open-ssh"))


def test_pending_cannot_complete_directly():
    run = InspectionRun(account_id="a1", check_set="open-ssh")
    with pytest.raises(InvalidStateTransition):
        run.transition(RunStatus.COMPLETED)


def test_update_progress_never_goes_backwards():
    run = InspectionRun(account_id="a1", check_set="open-ssh")
    run.update_progress(40, "halfway")
    progress = run.update_progress(20, "late event")
    assert progress.percentage == 40
    assert run.update_progress(250).percentage == 100


def test_progress_plan_and_finalize():
    before, span, after = progress_plan("S3")
    assert before + span + after == 100
    assert progress_plan("unknown") == progress_plan(None)

    duplicate = make_finding("sg-1")
    assert finalize_findings([duplicate, duplicate, make_finding("sg-2")]) == [duplicate, make_finding("sg-2")]
