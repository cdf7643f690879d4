"""
Run Controller: drives one inspection run from PENDING to a terminal state.

Sequence: resolve the catalog entry, obtain and validate credentials, run
the checks one after another (soft timeout checked before each), post-process,
then publish the final progress, transition, dual-write and publish the
status change. ``execute`` never raises; failures end in FAILED with
whatever findings were collected.
"""
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from cloudaudit.core.exceptions import CredentialError, RunTimeoutError
from cloudaudit.schemas.inspection import RunStatus
from cloudaudit.schemas.records import Finding
from cloudaudit.services.check_catalog import CheckCatalog, EntryKind
from cloudaudit.services.check_runner import CheckRunner
from cloudaudit.services.history_service import ResultRecordService
from cloudaudit.services.inspection_run import InspectionRun, ItemResult
from cloudaudit.services.progress_hub import ProgressHub

logger = logging.getLogger(__name__)

# (step name, weight) per service; first two steps happen before checks,
# the last one after, everything in between is spread over the checks
INSPECTION_STEPS: Dict[str, List[Tuple[str, int]]] = {
    "EC2": [
        ("Initializing EC2 inspection", 5),
        ("Assuming role in customer account", 10),
        ("Retrieving security groups", 15),
        ("Analyzing security group rules", 25),
        ("Retrieving EC2 instances", 15),
        ("Analyzing instance configurations", 20),
        ("Finalizing inspection results", 10),
    ],
    "S3": [
        ("Initializing S3 inspection", 10),
        ("Assuming role in customer account", 15),
        ("Retrieving S3 buckets", 20),
        ("Analyzing bucket configurations", 35),
        ("Finalizing inspection results", 20),
    ],
    "IAM": [
        ("Initializing IAM inspection", 10),
        ("Assuming role in customer account", 15),
        ("Retrieving IAM resources", 25),
        ("Analyzing IAM policies", 30),
        ("Finalizing inspection results", 20),
    ],
    "default": [
        ("Initializing inspection", 10),
        ("Assuming role in customer account", 20),
        ("Performing service inspection", 50),
        ("Finalizing inspection results", 20),
    ],
}


def progress_plan(service: Optional[str]) -> Tuple[int, int, int]:
    """Split 100% into (before checks, checks, after checks) for a service."""
    steps = INSPECTION_STEPS.get((service or "").upper(), INSPECTION_STEPS["default"])
    total = sum(weight for _, weight in steps)
    before = sum(weight for _, weight in steps[:2]) * 100 // total
    after = steps[-1][1] * 100 // total
    return before, 100 - before - after, after


def finalize_findings(findings: List[Finding]) -> List[Finding]:
    """Drop exact duplicates, keeping first-seen order."""
    seen = set()
    unique = []
    for finding in findings:
        key = (finding.resource_id, finding.resource_type, finding.issue)
        if key in seen:
            continue
        seen.add(key)
        unique.append(finding)
    return unique


class RunController:
    """Owns one InspectionRun for the duration of ``execute``."""

    def __init__(
        self,
        run: InspectionRun,
        catalog: CheckCatalog,
        credential_provider,
        runner: CheckRunner,
        record_service: ResultRecordService,
        hub: ProgressHub,
        timeout_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize run controller.

        Args:
            run: Run in PENDING state
            catalog: Resolves ``run.check_set`` to checks
            credential_provider: Object with ``get_credentials(role_arn, run_id)``
            runner: Executes single checks
            record_service: Performs the dual write
            hub: Receives progress and status events
            timeout_seconds: Soft timeout checked before each check
            clock: Monotonic clock, injectable for tests
        """
        self.run = run
        self.catalog = catalog
        self.credential_provider = credential_provider
        self.runner = runner
        self.record_service = record_service
        self.hub = hub
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._started: Optional[float] = None

    def execute(self) -> InspectionRun:
        run = self.run
        self._started = self.clock()
        try:
            error = self._execute_checks()
        except Exception as e:
            # Anything not already handled still ends the run cleanly
            logger.error(f"Run {run.run_id}: unexpected error: {e}", exc_info=True)
            error = f"Unexpected error: {e}"

        if error is None:
            try:
                self.post_process()
            except Exception as e:
                logger.error(f"Run {run.run_id}: post-processing failed: {e}", exc_info=True)
                error = f"Post-processing failed: {e}"
                self._mark_partial()

        self._finish(RunStatus.FAILED if error else RunStatus.COMPLETED, error)
        return run

    def _execute_checks(self) -> Optional[str]:
        """Returns an error message, or None when every check succeeded."""
        run = self.run

        entry = self.catalog.resolve(run.check_set)
        if entry.kind is EntryKind.UNKNOWN:
            logger.warning(f"Run {run.run_id}: {entry.error}")
            return entry.error

        try:
            credentials = self.credential_provider.get_credentials(run.role_arn, run.run_id)
            if credentials is None:
                raise CredentialError("Credential provider returned no credentials")
            credentials.validate()
        except CredentialError as e:
            logger.warning(f"Run {run.run_id}: credentials unusable: {e}")
            return f"Credential error: {e}"

        service = entry.checks[0].service if entry.kind is EntryKind.CHECK else None
        before, span, _ = progress_plan(service)
        total = len(entry.checks)

        run.transition(RunStatus.IN_PROGRESS)
        self._progress(0, "Inspection started", completed=0, total=total)
        self._progress(before, "Assuming role in customer account", completed=0, total=total)

        for index, check in enumerate(entry.checks):
            try:
                self._checkpoint()
            except RunTimeoutError as e:
                logger.warning(f"Run {run.run_id}: {e}")
                self._mark_partial()
                return str(e)

            self._progress(before + span * index // total, f"Running {check.check_id}",
                           completed=index, total=total)
            outcome = self.runner.run(check, credentials, run.scope)
            item = ItemResult(
                check_id=check.check_id,
                service=check.service,
                findings=outcome.findings,
                resources_scanned=outcome.resources_scanned,
                error=str(outcome.error) if outcome.error else None,
                partial=outcome.error is not None,
            )
            run.add_item_result(item)
            self._progress(before + span * (index + 1) // total, f"Completed {check.check_id}",
                           completed=index + 1, total=total)

            if outcome.error is not None:
                return str(outcome.error)

        try:
            self._checkpoint()
        except RunTimeoutError as e:
            logger.warning(f"Run {run.run_id}: {e}")
            self._mark_partial()
            return str(e)
        return None

    def _checkpoint(self) -> None:
        elapsed = self.clock() - self._started
        if elapsed > self.timeout_seconds:
            raise RunTimeoutError(
                f"Inspection timed out after {int(elapsed)}s (limit {int(self.timeout_seconds)}s)"
            )

    def post_process(self) -> None:
        """Finalize findings of every item result."""
        self._progress(self.run.progress.percentage, "Finalizing inspection results")
        for item in self.run.item_results:
            item.findings = finalize_findings(item.findings)

    def _mark_partial(self) -> None:
        for item in self.run.item_results:
            item.partial = True
        if self.run.item_results:
            self.run.partial = True

    def _finish(self, status: RunStatus, error: Optional[str]) -> None:
        run = self.run
        if status is RunStatus.COMPLETED:
            self._progress(100, "Inspection completed")
        else:
            self._progress(run.progress.percentage, "Inspection failed")

        run.transition(status, error=error)

        try:
            outcome = self.record_service.write_run_results(run)
            run.save_successful = outcome.success
        except Exception as e:
            logger.error(f"Run {run.run_id}: saving results failed: {e}", exc_info=True)
            run.save_successful = False

        self.hub.publish_status_change(
            run.channel,
            run.status.value,
            run_id=run.run_id,
            batch_id=run.batch_id,
            check_id=run.check_set,
            error=run.error,
            partial=run.partial,
            duration_ms=run.duration_ms,
            total_findings=len(run.findings),
            resources_scanned=run.resources_scanned,
            save_successful=run.save_successful,
        )
        if run.batch_id is None:
            self.hub.publish_completion(
                run.run_id,
                run_id=run.run_id,
                status=run.status.value,
                total_findings=len(run.findings),
            )
        logger.info(
            f"Run {run.run_id} finished {run.status.value} in {run.duration_ms}ms "
            f"({len(run.findings)} finding(s), saved={run.save_successful})"
        )

    def _progress(self, percentage: int, step: str,
                  completed: Optional[int] = None, total: Optional[int] = None) -> None:
        progress = self.run.update_progress(percentage, step, completed, total)
        self.hub.publish_progress(self.run.channel, {
            "run_id": self.run.run_id,
            "check_id": self.run.check_set,
            "status": self.run.status.value,
            **progress.model_dump(),
        })
