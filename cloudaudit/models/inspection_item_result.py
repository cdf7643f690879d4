"""Inspection item result database model."""
from sqlalchemy import BigInteger, Column, Index, Integer, JSON, String

from cloudaudit.core.database import Base


class InspectionItemResult(Base):
    """
    One Current or Historical result record.

    (customer_id, item_key) mirrors the partition/sort key pair of the
    DynamoDB table, so range scans by item_key prefix come back in key order.
    """
    __tablename__ = "inspection_item_results"

    customer_id = Column(String(128), primary_key=True)
    item_key = Column(String(1024), primary_key=True)
    record_type = Column(String(16), nullable=False, index=True)
    check_id = Column(String(255), nullable=False)
    run_id = Column(String(128), nullable=False, index=True)
    inspection_time = Column(BigInteger, nullable=False)
    findings_count = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, nullable=False)  # full ResultRecord as JSON

    __table_args__ = (
        Index("ix_item_results_customer_run", "customer_id", "run_id"),
    )
