"""
Result store: partitioned key/value access to inspection item results.

Records are addressed by (account id, item key). ``query_prefix`` returns
records in ascending key order, which for HISTORY keys is newest first.
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from sqlalchemy import select, update, distinct
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from cloudaudit.core.exceptions import ResultStoreError
from cloudaudit.models.inspection_item_result import InspectionItemResult
from cloudaudit.schemas.records import ResultRecord
from cloudaudit.utils.item_keys import RecordType

logger = logging.getLogger(__name__)


class ResultStore(ABC):
    """Storage contract shared by the SQL and DynamoDB backends."""

    @abstractmethod
    def put_history(self, record: ResultRecord) -> bool:
        """
        Write a Historical record once.

        Returns:
            True if written, False if a record already exists under that key
        """

    @abstractmethod
    def put_current(self, record: ResultRecord, force: bool = False) -> bool:
        """
        Overwrite the Current record unless the stored one is newer.

        ``force`` skips the time check; only repair uses it.

        Returns:
            True if written, False if skipped because it would regress time
        """

    @abstractmethod
    def get(self, account_id: str, item_key: str) -> Optional[ResultRecord]:
        """Point read."""

    @abstractmethod
    def query_prefix(self, account_id: str, prefix: str, limit: Optional[int] = None) -> List[ResultRecord]:
        """Ascending range scan over item keys beginning with ``prefix``."""

    @abstractmethod
    def query_by_run(self, account_id: str, run_id: str) -> List[ResultRecord]:
        """Every record (either variant) whose run id is ``run_id``."""

    @abstractmethod
    def update_inspection_time(self, account_id: str, item_key: str, inspection_time: int) -> bool:
        """Rewrite one record's timestamp in place. Returns False if the record is gone."""

    @abstractmethod
    def list_accounts(self) -> List[str]:
        """Distinct account ids with at least one record."""

    @abstractmethod
    def list_run_ids(self, account_id: str) -> List[str]:
        """Distinct run ids referenced by an account's records."""

    @abstractmethod
    def ping(self) -> bool:
        """Cheap reachability check for health endpoints."""


def _to_row(record: ResultRecord) -> InspectionItemResult:
    return InspectionItemResult(
        customer_id=record.account_id,
        item_key=record.item_key,
        record_type=record.record_type.value,
        check_id=record.check_id,
        run_id=record.run_id,
        inspection_time=record.inspection_time,
        findings_count=len(record.findings),
        payload=record.to_payload(),
    )


def _from_row(row: InspectionItemResult) -> ResultRecord:
    return ResultRecord.from_payload(row.payload)


class SqlResultStore(ResultStore):
    """
    SQLAlchemy-backed result store.

    Opens a short-lived session per call so it can be shared across run threads.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        """
        Initialize SQL result store.

        Args:
            session_factory: sessionmaker (or any zero-arg callable returning a Session)
        """
        self.session_factory = session_factory

    def put_history(self, record: ResultRecord) -> bool:
        if record.record_type != RecordType.HISTORY:
            raise ValueError("put_history expects a HISTORY record")
        db = self.session_factory()
        try:
            key = (record.account_id, record.item_key)
            if db.get(InspectionItemResult, key) is not None:
                logger.info(f"History record already present, not overwriting: {record.account_id}/{record.item_key}")
                return False
            db.add(_to_row(record))
            db.commit()
            return True
        except IntegrityError:
            # Lost a race with another writer for the same key
            db.rollback()
            return False
        except SQLAlchemyError as e:
            db.rollback()
            raise ResultStoreError(f"put_history failed for {record.item_key}: {e}") from e
        finally:
            db.close()

    def put_current(self, record: ResultRecord, force: bool = False) -> bool:
        if record.record_type != RecordType.CURRENT:
            raise ValueError("put_current expects a CURRENT record")
        db = self.session_factory()
        try:
            row = _to_row(record)
            conditions = [
                InspectionItemResult.customer_id == row.customer_id,
                InspectionItemResult.item_key == row.item_key,
            ]
            if not force:
                # Conditional overwrite: only when the stored record is not newer
                conditions.append(InspectionItemResult.inspection_time <= row.inspection_time)
            stmt = (
                update(InspectionItemResult)
                .where(*conditions)
                .values(
                    record_type=row.record_type,
                    check_id=row.check_id,
                    run_id=row.run_id,
                    inspection_time=row.inspection_time,
                    findings_count=row.findings_count,
                    payload=row.payload,
                )
            )
            result = db.execute(stmt)
            if result.rowcount:
                db.commit()
                return True

            if db.get(InspectionItemResult, (row.customer_id, row.item_key)) is not None:
                db.rollback()
                logger.info(
                    f"Skipping Current write for {record.account_id}/{row.item_key}: "
                    f"stored record is newer than {record.inspection_time}"
                )
                return False

            db.add(row)
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            # Concurrent insert won; retry as a conditional update
            return self.put_current(record, force=force)
        except SQLAlchemyError as e:
            db.rollback()
            raise ResultStoreError(f"put_current failed for {record.item_key}: {e}") from e
        finally:
            db.close()

    def get(self, account_id: str, item_key: str) -> Optional[ResultRecord]:
        db = self.session_factory()
        try:
            row = db.get(InspectionItemResult, (account_id, item_key))
            return _from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise ResultStoreError(f"get failed for {account_id}/{item_key}: {e}") from e
        finally:
            db.close()

    def query_prefix(self, account_id: str, prefix: str, limit: Optional[int] = None) -> List[ResultRecord]:
        db = self.session_factory()
        try:
            # Range bounds instead of LIKE so '%' and '_' in keys stay literal
            stmt = (
                select(InspectionItemResult)
                .where(
                    InspectionItemResult.customer_id == account_id,
                    InspectionItemResult.item_key >= prefix,
                    InspectionItemResult.item_key < prefix + "\uffff",
                )
                .order_by(InspectionItemResult.item_key.asc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = db.execute(stmt).scalars().all()
            return [_from_row(row) for row in rows if row.item_key.startswith(prefix)]
        except SQLAlchemyError as e:
            raise ResultStoreError(f"query failed for {account_id}/{prefix}: {e}") from e
        finally:
            db.close()

    def query_by_run(self, account_id: str, run_id: str) -> List[ResultRecord]:
        db = self.session_factory()
        try:
            stmt = (
                select(InspectionItemResult)
                .where(
                    InspectionItemResult.customer_id == account_id,
                    InspectionItemResult.run_id == run_id,
                )
                .order_by(InspectionItemResult.item_key.asc())
            )
            return [_from_row(row) for row in db.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            raise ResultStoreError(f"query by run failed for {account_id}/{run_id}: {e}") from e
        finally:
            db.close()

    def update_inspection_time(self, account_id: str, item_key: str, inspection_time: int) -> bool:
        db = self.session_factory()
        try:
            row = db.get(InspectionItemResult, (account_id, item_key))
            if row is None:
                return False
            payload = dict(row.payload)
            payload["inspection_time"] = inspection_time
            row.payload = payload
            row.inspection_time = inspection_time
            db.commit()
            return True
        except SQLAlchemyError as e:
            db.rollback()
            raise ResultStoreError(f"timestamp update failed for {account_id}/{item_key}: {e}") from e
        finally:
            db.close()

    def list_accounts(self) -> List[str]:
        db = self.session_factory()
        try:
            stmt = select(distinct(InspectionItemResult.customer_id)).order_by(InspectionItemResult.customer_id)
            return list(db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise ResultStoreError(f"listing accounts failed: {e}") from e
        finally:
            db.close()

    def list_run_ids(self, account_id: str) -> List[str]:
        db = self.session_factory()
        try:
            stmt = (
                select(distinct(InspectionItemResult.run_id))
                .where(InspectionItemResult.customer_id == account_id)
                .order_by(InspectionItemResult.run_id)
            )
            return list(db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise ResultStoreError(f"listing runs failed for {account_id}: {e}") from e
        finally:
            db.close()

    def ping(self) -> bool:
        db = self.session_factory()
        try:
            db.execute(select(1))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Result store ping failed: {e}", exc_info=True)
            return False
        finally:
            db.close()
