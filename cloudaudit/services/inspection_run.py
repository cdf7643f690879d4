"""
Inspection run state and the in-memory registry of recent runs.
"""
import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from cloudaudit.core.exceptions import InvalidStateTransition
from cloudaudit.schemas.inspection import ItemResultSchema, ProgressInfo, RunStatus, RunStatusResponse
from cloudaudit.schemas.records import Finding
from cloudaudit.utils.clock import now_ms
from cloudaudit.utils.item_keys import normalize_scope

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.IN_PROGRESS, RunStatus.FAILED},
    RunStatus.IN_PROGRESS: {RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
}


@dataclass
class ItemResult:
    """Outcome of one check inside a run."""
    check_id: str
    service: Optional[str] = None
    findings: List[Finding] = field(default_factory=list)
    resources_scanned: int = 0
    error: Optional[str] = None
    partial: bool = False

    def to_schema(self) -> ItemResultSchema:
        return ItemResultSchema(
            check_id=self.check_id,
            service=self.service,
            findings=list(self.findings),
            resources_scanned=self.resources_scanned,
            error=self.error,
            partial=self.partial,
        )


class InspectionRun:
    """
    One execution of a check (or a full sweep) against one account.

    Owned by a single RunController while it executes. Once the status is
    terminal no further transitions or item results are accepted.
    """

    def __init__(
        self,
        account_id: str,
        check_set: str,
        scope: Optional[Tuple[str, ...]] = None,
        role_arn: Optional[str] = None,
        run_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ):
        self.account_id = account_id
        self.check_set = check_set
        self.scope = normalize_scope(scope)
        self.role_arn = role_arn
        self.run_id = run_id or str(uuid.uuid4())
        self.batch_id = batch_id
        self.status = RunStatus.PENDING
        self.created_at = now_ms()
        self.started_at: Optional[int] = None
        self.ended_at: Optional[int] = None
        self.duration_ms: Optional[int] = None
        self.item_results: List[ItemResult] = []
        self.error: Optional[str] = None
        self.partial = False
        self.progress = ProgressInfo()
        self.save_successful: Optional[bool] = None
        self._lock = threading.Lock()

    @property
    def channel(self) -> str:
        """Progress hub id events for this run are published to."""
        return self.batch_id or self.run_id

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def findings(self) -> List[Finding]:
        return [f for item in self.item_results for f in item.findings]

    @property
    def resources_scanned(self) -> int:
        return sum(item.resources_scanned for item in self.item_results)

    def transition(self, target: RunStatus, error: Optional[str] = None) -> None:
        """
        Move to ``target``.

        Raises:
            InvalidStateTransition: target not reachable from the current status
        """
        with self._lock:
            if target not in ALLOWED_TRANSITIONS[self.status]:
                raise InvalidStateTransition(self.run_id, self.status.value, target.value)
            previous = self.status
            self.status = target
            now = now_ms()
            if target == RunStatus.IN_PROGRESS:
                self.started_at = now
            if target.is_terminal:
                self.ended_at = now
                self.duration_ms = now - (self.started_at or self.created_at)
                if error:
                    self.error = error
        logger.info(f"Run {self.run_id} ({self.check_set}) {previous.value} -> {target.value}")

    def add_item_result(self, item: ItemResult) -> None:
        with self._lock:
            if self.status.is_terminal:
                raise InvalidStateTransition(self.run_id, self.status.value, "add_item_result")
            self.item_results.append(item)
            if item.partial:
                self.partial = True

    def update_progress(self, percentage: int, step: Optional[str] = None,
                        completed_steps: Optional[int] = None, total_steps: Optional[int] = None) -> ProgressInfo:
        """Record progress; the percentage never goes backwards and stays within 0..100."""
        with self._lock:
            pct = max(self.progress.percentage, min(100, max(0, int(percentage))))
            elapsed = now_ms() - (self.started_at or self.created_at)
            remaining = None
            if 0 < pct < 100:
                remaining = int(elapsed * (100 - pct) / pct)
            elif pct == 100:
                remaining = 0
            self.progress = ProgressInfo(
                percentage=pct,
                current_step=step if step is not None else self.progress.current_step,
                completed_steps=completed_steps if completed_steps is not None else self.progress.completed_steps,
                total_steps=total_steps if total_steps is not None else self.progress.total_steps,
                elapsed_ms=elapsed,
                estimated_time_remaining_ms=remaining,
            )
            return self.progress

    def to_status_response(self) -> RunStatusResponse:
        return RunStatusResponse(
            run_id=self.run_id,
            account_id=self.account_id,
            batch_id=self.batch_id,
            check_set=self.check_set,
            status=self.status,
            progress=self.progress,
            started_at=self.started_at,
            ended_at=self.ended_at,
            duration_ms=self.duration_ms,
            error=self.error,
            partial=self.partial,
            save_successful=self.save_successful,
        )


class RunRegistry:
    """Thread-safe, bounded map of recent runs, oldest evicted first."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._runs: "OrderedDict[str, InspectionRun]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, run: InspectionRun) -> None:
        with self._lock:
            self._runs[run.run_id] = run
            self._runs.move_to_end(run.run_id)
            self._evict()

    def _evict(self) -> None:
        # Only terminal runs are evicted; live runs stay until they finish
        while len(self._runs) > self.max_entries:
            victim = next((rid for rid, r in self._runs.items() if r.is_terminal), None)
            if victim is None:
                break
            del self._runs[victim]

    def get(self, run_id: str) -> Optional[InspectionRun]:
        with self._lock:
            return self._runs.get(run_id)

    def by_batch(self, batch_id: str) -> List[InspectionRun]:
        with self._lock:
            return [r for r in self._runs.values() if r.batch_id == batch_id]

    def by_account(self, account_id: str) -> List[InspectionRun]:
        with self._lock:
            return [r for r in self._runs.values() if r.account_id == account_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts: Dict[str, int] = {status.value: 0 for status in RunStatus}
            for run in self._runs.values():
                counts[run.status.value] += 1
            return counts
