"""
Optional periodic consistency sweep.

Disabled unless RECONCILIATION_ENABLED is set; without it divergence is
only found by calling the consistency endpoints.
"""
import logging
import threading
from typing import Dict, Optional

from cloudaudit.core.exceptions import ResultStoreError
from cloudaudit.services.consistency_service import ConsistencyService
from cloudaudit.services.result_store import ResultStore

logger = logging.getLogger(__name__)


class ReconciliationWorker:
    """Validates (and optionally repairs) every stored run on an interval."""

    def __init__(self, store: ResultStore, consistency_service: ConsistencyService,
                 interval_seconds: int = 3600, auto_repair: bool = False):
        self.store = store
        self.consistency_service = consistency_service
        self.interval_seconds = interval_seconds
        self.auto_repair = auto_repair
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Dict[str, int]:
        """One full pass over all accounts and runs."""
        stats = {"runs_checked": 0, "inconsistent": 0, "repaired": 0, "unrecoverable": 0, "errors": 0}
        try:
            accounts = self.store.list_accounts()
        except ResultStoreError as e:
            logger.error(f"Reconciliation could not list accounts: {e}")
            stats["errors"] += 1
            return stats

        for account_id in accounts:
            try:
                run_ids = self.store.list_run_ids(account_id)
            except ResultStoreError as e:
                logger.error(f"Reconciliation could not list runs for {account_id}: {e}")
                stats["errors"] += 1
                continue

            for run_id in run_ids:
                if self._stop.is_set():
                    return stats
                stats["runs_checked"] += 1
                report = self.consistency_service.validate(account_id, run_id)
                if report.error:
                    stats["errors"] += 1
                    continue
                if report.is_consistent:
                    continue
                stats["inconsistent"] += 1
                if not self.auto_repair:
                    continue
                result = self.consistency_service.repair(account_id, run_id)
                if result.is_consistent:
                    stats["repaired"] += 1
                elif not result.recoverable:
                    stats["unrecoverable"] += 1

        logger.info(
            f"Reconciliation pass: {stats['runs_checked']} run(s), {stats['inconsistent']} inconsistent, "
            f"{stats['repaired']} repaired, {stats['unrecoverable']} unrecoverable"
        )
        return stats

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                # Keep the sweep alive; the next pass retries
                logger.error(f"Reconciliation pass failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reconciliation", daemon=True)
        self._thread.start()
        logger.info(
            f"Reconciliation started: every {self.interval_seconds}s, auto_repair={self.auto_repair}"
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
