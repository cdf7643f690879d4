"""
Detects and repairs divergence between Current and Historical records of a run.

Issue classes:
    HISTORY_MISSING       the run completed but a check has no Historical record
    ITEM_RESULTS_MISSING  a Historical record exists but its Current item result
                          is gone or lost its findings
    TIMESTAMP_DIVERGENCE  Current still holds an older run than this run's
                          history, or holds this run at a different time
                          beyond the tolerance
"""
import logging
from typing import Dict, List, Optional, Tuple

from cloudaudit.core.exceptions import ResultStoreError
from cloudaudit.schemas.consistency import (
    ConsistencyIssue,
    ConsistencyReport,
    IssueKind,
    RepairAction,
    RepairResult,
)
from cloudaudit.schemas.records import ResultRecord, derive_status, summarize
from cloudaudit.services.history_service import ResultRecordService
from cloudaudit.services.inspection_run import RunRegistry
from cloudaudit.utils.clock import now_ms
from cloudaudit.utils.item_keys import RecordType

logger = logging.getLogger(__name__)

ItemId = Tuple[str, Tuple[str, ...]]


class ConsistencyService:
    """Validator and repairer for the dual-written views of a run."""

    def __init__(self, record_service: ResultRecordService, registry: Optional[RunRegistry] = None,
                 tolerance_seconds: int = 60):
        """
        Initialize consistency service.

        Args:
            record_service: Read/write access to result records
            registry: Recent runs; a terminal entry counts as evidence of completion
            tolerance_seconds: Allowed Current/Historical skew for the same run
        """
        self.record_service = record_service
        self.registry = registry
        self.tolerance_ms = tolerance_seconds * 1000

    def validate(self, account_id: str, run_id: str) -> ConsistencyReport:
        try:
            issues, run_known = self._find_issues(account_id, run_id)
        except Exception as e:
            # Unclassified failure: report it and leave the data alone
            logger.error(f"Consistency validation failed for {account_id}/{run_id}: {e}", exc_info=True)
            return ConsistencyReport(
                account_id=account_id,
                run_id=run_id,
                is_consistent=False,
                recoverable=False,
                error=str(e),
                checked_at=now_ms(),
            )

        report = ConsistencyReport(
            account_id=account_id,
            run_id=run_id,
            is_consistent=not issues,
            run_known=run_known,
            recoverable=all(issue.recoverable for issue in issues),
            issues=issues,
            checked_at=now_ms(),
        )
        if issues:
            logger.warning(
                f"Run {run_id} for {account_id} has {len(issues)} consistency issue(s): "
                f"{', '.join(sorted({i.kind.value for i in issues}))}"
            )
        return report

    def _find_issues(self, account_id: str, run_id: str) -> Tuple[List[ConsistencyIssue], bool]:
        history: Dict[ItemId, ResultRecord] = {
            (r.check_id, r.scope): r
            for r in self.record_service.get_history_for_run(account_id, run_id)
        }
        item_results: Dict[ItemId, ResultRecord] = {
            (r.check_id, r.scope): r
            for r in self.record_service.get_item_results_for_run(account_id, run_id)
        }
        run = self.registry.get(run_id) if self.registry is not None else None
        if run is not None and run.account_id != account_id:
            run = None

        issues: List[ConsistencyIssue] = []

        # (a) completion evidenced but no Historical record
        for item_id, current in item_results.items():
            if item_id not in history:
                issues.append(ConsistencyIssue(
                    kind=IssueKind.HISTORY_MISSING,
                    check_id=current.check_id,
                    scope=current.scope,
                    message="Item result exists for this run but its history record is missing",
                    current_run_id=current.run_id,
                    current_time=current.inspection_time,
                ))
        if run is not None and run.is_terminal:
            for item in run.item_results:
                item_id = (item.check_id, run.scope)
                if item_id in history or item_id in item_results:
                    continue
                issues.append(ConsistencyIssue(
                    kind=IssueKind.HISTORY_MISSING,
                    check_id=item.check_id,
                    scope=run.scope,
                    message="Run completed but neither history nor item results were saved",
                    recoverable=False,
                ))

        # (b) and (c), against the Current record for each Historical one
        for (check_id, scope), hist in history.items():
            current = item_results.get((check_id, scope))
            if current is None:
                current = self.record_service.get_current(account_id, check_id, scope)

            if current is None:
                issues.append(ConsistencyIssue(
                    kind=IssueKind.ITEM_RESULTS_MISSING,
                    check_id=check_id,
                    scope=scope,
                    message="History record exists but the item result is missing",
                    history_time=hist.inspection_time,
                ))
                continue

            if current.run_id == run_id:
                if hist.findings and not current.findings:
                    issues.append(ConsistencyIssue(
                        kind=IssueKind.ITEM_RESULTS_MISSING,
                        check_id=check_id,
                        scope=scope,
                        message="Item result for this run carries no findings but its history does",
                        current_run_id=current.run_id,
                        current_time=current.inspection_time,
                        history_time=hist.inspection_time,
                    ))
                elif abs(current.inspection_time - hist.inspection_time) > self.tolerance_ms:
                    issues.append(ConsistencyIssue(
                        kind=IssueKind.TIMESTAMP_DIVERGENCE,
                        check_id=check_id,
                        scope=scope,
                        message=(
                            f"Item result and history differ by "
                            f"{abs(current.inspection_time - hist.inspection_time)}ms"
                        ),
                        current_run_id=current.run_id,
                        current_time=current.inspection_time,
                        history_time=hist.inspection_time,
                    ))
            elif current.inspection_time < hist.inspection_time:
                issues.append(ConsistencyIssue(
                    kind=IssueKind.TIMESTAMP_DIVERGENCE,
                    check_id=check_id,
                    scope=scope,
                    message=f"Item result still holds older run {current.run_id}",
                    current_run_id=current.run_id,
                    current_time=current.inspection_time,
                    history_time=hist.inspection_time,
                ))

        run_known = bool(history) or bool(item_results) or run is not None
        return issues, run_known

    def repair(self, account_id: str, run_id: str) -> RepairResult:
        """
        Repair every recoverable issue of a run, then validate again.

        A consistent run is left untouched. Issues without a surviving
        source are reported as unrecoverable and nothing is written for them.
        """
        report = self.validate(account_id, run_id)
        if report.error is not None:
            return RepairResult(
                account_id=account_id,
                run_id=run_id,
                recoverable=False,
                is_consistent=False,
                remaining_issues=report.issues,
                error=report.error,
            )
        if report.is_consistent:
            return RepairResult(account_id=account_id, run_id=run_id, recoverable=True, is_consistent=True)

        handlers = {
            IssueKind.HISTORY_MISSING: self._reconstruct_history,
            IssueKind.ITEM_RESULTS_MISSING: self._regenerate_item_result,
            IssueKind.TIMESTAMP_DIVERGENCE: self._realign_timestamp,
        }
        actions: List[RepairAction] = []
        for issue in report.issues:
            if not issue.recoverable:
                actions.append(self._action(issue, "skipped", False, "No surviving source to rebuild from"))
                continue
            try:
                actions.append(handlers[issue.kind](account_id, run_id, issue))
            except ResultStoreError as e:
                logger.error(f"Repair of {issue.kind.value} for {run_id}/{issue.check_id} failed: {e}")
                actions.append(self._action(issue, "failed", False, str(e)))

        after = self.validate(account_id, run_id)
        recoverable = all(action.success for action in actions)
        logger.info(
            f"Repair of run {run_id} for {account_id}: {sum(a.success for a in actions)}/{len(actions)} "
            f"action(s) succeeded, consistent={after.is_consistent}"
        )
        return RepairResult(
            account_id=account_id,
            run_id=run_id,
            recoverable=recoverable,
            is_consistent=after.is_consistent,
            actions=actions,
            remaining_issues=after.issues,
            error=after.error,
        )

    @staticmethod
    def _action(issue: ConsistencyIssue, action: str, success: bool, message: str, **details) -> RepairAction:
        return RepairAction(
            kind=issue.kind,
            check_id=issue.check_id,
            scope=issue.scope,
            action=action,
            success=success,
            message=message,
            details=details,
        )

    def _history_record(self, account_id: str, run_id: str, issue: ConsistencyIssue) -> Optional[ResultRecord]:
        for record in self.record_service.get_history_for_run(account_id, run_id):
            if record.check_id == issue.check_id and record.scope == issue.scope:
                return record
        return None

    def _reconstruct_history(self, account_id: str, run_id: str, issue: ConsistencyIssue) -> RepairAction:
        source = self.record_service.get_current(account_id, issue.check_id, issue.scope)
        if source is None or source.run_id != run_id:
            return self._action(issue, "reconstruct_history", False, "No item result left for this run")

        metadata = dict(source.metadata)
        metadata.update({
            "reconstructed": True,
            "reconstruction_time": now_ms(),
            "source_items": 1,
        })
        history = source.as_variant(
            RecordType.HISTORY,
            summary=summarize(source.findings, source.resources_scanned).model_dump(),
            status=derive_status(source.findings, source.partial),
            reconstructed=True,
            metadata=metadata,
        )
        written = self.record_service.store.put_history(history)
        return self._action(
            issue,
            "reconstruct_history",
            True,
            "History record reconstructed from item result" if written else "History record already present",
            item_key=history.item_key,
            findings=len(history.findings),
        )

    def _regenerate_item_result(self, account_id: str, run_id: str, issue: ConsistencyIssue) -> RepairAction:
        history = self._history_record(account_id, run_id, issue)
        if history is None:
            return self._action(issue, "regenerate_item_result", False, "History record disappeared")
        current = history.as_variant(RecordType.CURRENT)
        self.record_service.store.put_current(current, force=True)
        return self._action(
            issue,
            "regenerate_item_result",
            True,
            "Item result regenerated from history",
            item_key=current.item_key,
            findings=len(current.findings),
        )

    def _realign_timestamp(self, account_id: str, run_id: str, issue: ConsistencyIssue) -> RepairAction:
        history = self._history_record(account_id, run_id, issue)
        if history is None:
            return self._action(issue, "realign_timestamp", False, "History record disappeared")

        if issue.current_run_id != run_id:
            # Current write for this run was lost; bring Current up to this run
            current = history.as_variant(RecordType.CURRENT)
            written = self.record_service.store.put_current(current)
            return self._action(
                issue,
                "rewrite_item_result",
                True,
                "Item result updated to this run" if written else "Item result already newer",
                item_key=current.item_key,
                previous_run_id=issue.current_run_id,
            )

        current_key = history.as_variant(RecordType.CURRENT).item_key
        updated = self.record_service.store.update_inspection_time(account_id, current_key, history.inspection_time)
        return self._action(
            issue,
            "realign_timestamp",
            updated,
            "Item result timestamp aligned with history" if updated else "Item result disappeared",
            item_key=current_key,
            inspection_time=history.inspection_time,
        )
