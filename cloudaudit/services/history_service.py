"""
Dual write of run results and the read paths over Current/Historical records.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from cloudaudit.core.exceptions import ResultStoreError
from cloudaudit.schemas.inspection import RunResultResponse
from cloudaudit.schemas.records import ResultRecord, derive_status, summarize
from cloudaudit.services.inspection_run import InspectionRun, ItemResult
from cloudaudit.services.result_store import ResultStore
from cloudaudit.utils.item_keys import (
    RecordType,
    build_current_key,
    current_prefix,
    history_prefix,
    normalize_scope,
)

logger = logging.getLogger(__name__)


@dataclass
class DualWriteOutcome:
    """What happened to each write of a run's dual write."""
    run_id: str
    history_written: List[str] = field(default_factory=list)
    current_written: List[str] = field(default_factory=list)
    current_skipped: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)  # (item key, error)

    @property
    def success(self) -> bool:
        return not self.failures


class ResultRecordService:
    """Builds result records from runs and reads them back."""

    def __init__(self, store: ResultStore):
        """
        Initialize result record service.

        Args:
            store: Backend holding Current and Historical records
        """
        self.store = store

    def build_records(self, run: InspectionRun, item: ItemResult,
                      inspection_time: int) -> Tuple[ResultRecord, ResultRecord]:
        """
        Build the Historical and Current records for one item result.

        Both share the same finding list and timestamp.
        """
        history = ResultRecord(
            account_id=run.account_id,
            check_id=item.check_id,
            scope=run.scope,
            record_type=RecordType.HISTORY,
            run_id=run.run_id,
            inspection_time=inspection_time,
            service=item.service,
            findings=list(item.findings),
            resources_scanned=item.resources_scanned,
            status=derive_status(item.findings, item.partial),
            summary=summarize(item.findings, item.resources_scanned),
            error=item.error,
            partial=item.partial,
            metadata={
                "batch_id": run.batch_id,
                "role_arn": run.role_arn,
                "duration_ms": run.duration_ms,
                "run_status": run.status.value,
            },
        )
        current = history.as_variant(RecordType.CURRENT)
        return history, current

    def write_run_results(self, run: InspectionRun) -> DualWriteOutcome:
        """
        Persist every item result of a terminal run as Historical then Current.

        The two writes are independent: a failure of one is logged and
        reported, never rolled back. Divergence is left for the consistency
        service to find.
        """
        outcome = DualWriteOutcome(run_id=run.run_id)
        inspection_time = run.ended_at or run.started_at or run.created_at

        for item in run.item_results:
            try:
                history, current = self.build_records(run, item, inspection_time)
            except (ValueError, TypeError) as e:
                logger.error(f"Run {run.run_id}: cannot build records for {item.check_id}: {e}", exc_info=True)
                outcome.failures.append((item.check_id, str(e)))
                continue

            try:
                if self.store.put_history(history):
                    outcome.history_written.append(history.item_key)
            except ResultStoreError as e:
                logger.error(f"Run {run.run_id}: history write failed for {history.item_key}: {e}")
                outcome.failures.append((history.item_key, str(e)))

            try:
                if self.store.put_current(current):
                    outcome.current_written.append(current.item_key)
                else:
                    outcome.current_skipped.append(current.item_key)
            except ResultStoreError as e:
                logger.error(f"Run {run.run_id}: current write failed for {current.item_key}: {e}")
                outcome.failures.append((current.item_key, str(e)))

        logger.info(
            f"Run {run.run_id}: dual write finished "
            f"(history={len(outcome.history_written)}, current={len(outcome.current_written)}, "
            f"skipped={len(outcome.current_skipped)}, failures={len(outcome.failures)})"
        )
        return outcome

    # Read paths

    def get_current(self, account_id: str, check_id: str, scope=None) -> Optional[ResultRecord]:
        return self.store.get(account_id, build_current_key(check_id, scope))

    def list_current(self, account_id: str, check_id: Optional[str] = None) -> List[ResultRecord]:
        """
        Current records of an account, or of one check across all its scopes.

        The unscoped key of a check has no trailing separator, so it is read
        directly and the scoped keys beneath it are range-scanned.
        """
        if check_id is None:
            return self.store.query_prefix(account_id, current_prefix())
        records = []
        unscoped = self.store.get(account_id, build_current_key(check_id))
        if unscoped is not None:
            records.append(unscoped)
        records.extend(self.store.query_prefix(account_id, current_prefix(check_id)))
        return records

    def scan_history(self, account_id: str, check_id: str, scope=None,
                     limit: Optional[int] = None) -> List[ResultRecord]:
        """
        Historical records for one (account, check, scope), newest first.

        Records under deeper scopes share the key prefix and are filtered out.
        """
        wanted = normalize_scope(scope)
        records = [
            r for r in self.store.query_prefix(account_id, history_prefix(check_id, wanted))
            if r.check_id == check_id and r.scope == wanted
        ]
        return records[:limit] if limit is not None else records

    def get_run_records(self, account_id: str, run_id: str,
                        record_type: Optional[RecordType] = None) -> List[ResultRecord]:
        records = self.store.query_by_run(account_id, run_id)
        if record_type is not None:
            records = [r for r in records if r.record_type == record_type]
        return records

    def get_history_for_run(self, account_id: str, run_id: str) -> List[ResultRecord]:
        return self.get_run_records(account_id, run_id, RecordType.HISTORY)

    def get_item_results_for_run(self, account_id: str, run_id: str) -> List[ResultRecord]:
        """Current records whose last writer is ``run_id``."""
        return self.get_run_records(account_id, run_id, RecordType.CURRENT)

    def get_run_result(self, account_id: str, run_id: str) -> Optional[RunResultResponse]:
        """Aggregate of a run's Historical records, or None if it has none."""
        records = self.get_history_for_run(account_id, run_id)
        if not records:
            return None
        return RunResultResponse(
            account_id=account_id,
            run_id=run_id,
            inspection_time=max(r.inspection_time for r in records),
            total_findings=sum(len(r.findings) for r in records),
            resources_scanned=sum(r.resources_scanned for r in records),
            partial=any(r.partial for r in records),
            reconstructed=any(r.reconstructed for r in records),
            records=records,
        )
