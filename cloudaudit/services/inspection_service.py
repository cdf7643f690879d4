"""
Batch orchestration: starts one run per selected check on a worker pool and
reports batch-level progress through the progress hub.
"""
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from cloudaudit.schemas.inspection import BatchStatusResponse, RunResultResponse, RunStatusResponse
from cloudaudit.services.check_catalog import SWEEP_ID, CheckCatalog
from cloudaudit.services.check_runner import CheckRunner
from cloudaudit.services.history_service import ResultRecordService
from cloudaudit.services.inspection_run import InspectionRun, RunRegistry
from cloudaudit.services.progress_hub import ProgressHub
from cloudaudit.services.run_controller import RunController
from cloudaudit.utils.clock import now_ms
from cloudaudit.utils.item_keys import normalize_scope

logger = logging.getLogger(__name__)


@dataclass
class BatchState:
    batch_id: str
    account_id: str
    run_ids: List[str]
    started_at: int = field(default_factory=now_ms)
    completed: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return len(self.completed) >= len(self.run_ids)


@dataclass
class BatchHandle:
    """What ``start_inspection`` hands back: ids plus futures to wait on."""
    batch_id: str
    account_id: str
    run_ids: List[str]
    futures: List[Future] = field(default_factory=list)

    def wait(self, timeout: Optional[float] = None) -> List[InspectionRun]:
        done, _ = wait(self.futures, timeout=timeout)
        return [f.result() for f in self.futures if f in done]


class InspectionService:
    """Starts batches of runs and tracks them until they finish."""

    def __init__(
        self,
        catalog: CheckCatalog,
        credential_provider,
        runner: CheckRunner,
        record_service: ResultRecordService,
        hub: ProgressHub,
        registry: RunRegistry,
        max_workers: int = 8,
        timeout_seconds: float = 300,
        cleanup_delay_seconds: float = 30.0,
    ):
        self.catalog = catalog
        self.credential_provider = credential_provider
        self.runner = runner
        self.record_service = record_service
        self.hub = hub
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.cleanup_delay_seconds = cleanup_delay_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="inspection")
        self._batches: Dict[str, BatchState] = {}
        self._timers: List[threading.Timer] = []
        self._lock = threading.Lock()

    def start_inspection(
        self,
        account_id: str,
        role_arn: str,
        selected_items: Optional[Sequence[str]] = None,
        scope: Optional[Sequence[str]] = None,
    ) -> BatchHandle:
        """
        Start one run per selected check, or a single full sweep.

        Args:
            account_id: Customer account to inspect
            role_arn: Role assumed for every run of the batch
            selected_items: Check ids; empty means run every registered check in one run
            scope: Optional sub-scope segments applied to every run

        Returns:
            BatchHandle with the batch id, run ids and futures
        """
        scope = normalize_scope(scope)
        items = list(dict.fromkeys(selected_items or [])) or [SWEEP_ID]
        batch_id = str(uuid.uuid4())

        runs = [
            InspectionRun(account_id=account_id, check_set=item, scope=scope,
                          role_arn=role_arn, batch_id=batch_id)
            for item in items
        ]
        run_ids = [run.run_id for run in runs]
        for run in runs:
            self.registry.add(run)

        with self._lock:
            self._batches[batch_id] = BatchState(batch_id=batch_id, account_id=account_id, run_ids=run_ids)

        # Observers of individual run ids follow the batch from here on
        self.hub.force_move_to_batch(batch_id, run_ids)
        self.hub.publish(batch_id, {
            "type": "progress_update",
            "batch_id": batch_id,
            "progress": {
                "percentage": 0,
                "completed_items": 0,
                "total_items": len(runs),
                "current_step": "Starting inspections",
            },
        })

        logger.info(f"Starting batch {batch_id} for {account_id}: {len(runs)} run(s) ({', '.join(items)})")
        handle = BatchHandle(batch_id=batch_id, account_id=account_id, run_ids=run_ids)
        for run in runs:
            handle.futures.append(self._executor.submit(self._execute, run))
        return handle

    def _execute(self, run: InspectionRun) -> InspectionRun:
        controller = RunController(
            run=run,
            catalog=self.catalog,
            credential_provider=self.credential_provider,
            runner=self.runner,
            record_service=self.record_service,
            hub=self.hub,
            timeout_seconds=self.timeout_seconds,
        )
        try:
            controller.execute()
        finally:
            self._on_run_finished(run)
        return run

    def _on_run_finished(self, run: InspectionRun) -> None:
        if run.batch_id is None:
            return
        with self._lock:
            batch = self._batches.get(run.batch_id)
            if batch is None:
                return
            if run.run_id not in batch.completed:
                batch.completed.append(run.run_id)
            completed = len(batch.completed)
            total = len(batch.run_ids)
            elapsed = now_ms() - batch.started_at
            is_complete = batch.is_complete
            run_ids = list(batch.run_ids)

            percentage = completed * 100 // total
            remaining = int(elapsed * (total - completed) / completed) if completed else None
            # Published under the lock so observers never see the count go backwards
            self.hub.publish(run.batch_id, {
                "type": "progress_update",
                "batch_id": run.batch_id,
                "run_id": run.run_id,
                "progress": {
                    "percentage": percentage,
                    "completed_items": completed,
                    "total_items": total,
                    "current_step": f"Completed {run.check_set}",
                    "estimated_time_remaining_ms": remaining,
                },
            })

        if is_complete:
            runs = [self.registry.get(rid) for rid in run_ids]
            self.hub.publish_completion(
                run.batch_id,
                batch_id=run.batch_id,
                status="COMPLETED" if all(r and r.status.value == "COMPLETED" for r in runs) else "FAILED",
                runs=[r.to_status_response().model_dump(mode="json") for r in runs if r is not None],
                total_findings=sum(len(r.findings) for r in runs if r is not None),
            )
            logger.info(f"Batch {run.batch_id} complete ({total} run(s))")
            self._schedule_cleanup(run.batch_id, run_ids)

    def _schedule_cleanup(self, batch_id: str, run_ids: List[str]) -> None:
        timer = threading.Timer(self.cleanup_delay_seconds, self._cleanup_batch, args=(batch_id, run_ids))
        timer.daemon = True
        with self._lock:
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def _cleanup_batch(self, batch_id: str, run_ids: List[str]) -> None:
        """Forget a finished batch and drop its progress channels."""
        with self._lock:
            self._batches.pop(batch_id, None)
        self.hub.cleanup_batch(batch_id, run_ids)
        logger.debug(f"Batch {batch_id} cleaned up")

    def get_run_status(self, run_id: str) -> Optional[RunStatusResponse]:
        run = self.registry.get(run_id)
        return run.to_status_response() if run is not None else None

    def get_batch_status(self, batch_id: str) -> Optional[BatchStatusResponse]:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return None
            run_ids = list(batch.run_ids)
            completed = len(batch.completed)
            account_id = batch.account_id

        runs = [r for r in (self.registry.get(rid) for rid in run_ids) if r is not None]
        # Finished runs count as 100 whatever their last progress was
        percentages = [100 if r.is_terminal else r.progress.percentage for r in runs]
        return BatchStatusResponse(
            batch_id=batch_id,
            account_id=account_id,
            total_items=len(run_ids),
            completed_items=completed,
            percentage=sum(percentages) // len(percentages) if percentages else 0,
            is_complete=completed >= len(run_ids),
            runs=[r.to_status_response() for r in runs],
        )

    def get_run_result(self, account_id: str, run_id: str) -> Optional[RunResultResponse]:
        return self.record_service.get_run_result(account_id, run_id)

    def shutdown(self, wait_for_runs: bool = True) -> None:
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=wait_for_runs)
