"""
Findings and persisted result records.
"""
import enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cloudaudit.utils.item_keys import (
    RecordType,
    build_current_key,
    build_history_key,
    normalize_scope,
)

# Each finding costs this much off a perfect item score
FINDING_PENALTY = 10


class Finding(BaseModel):
    """One discovered issue. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    resource_id: str = Field(..., min_length=1)
    resource_type: str = Field(..., min_length=1)
    issue: str = Field(..., min_length=1)
    recommendation: str = Field(..., min_length=1)


class ItemStatus(str, enum.Enum):
    """Outcome of one check as shown to operators."""
    PASS = "PASS"
    FAIL = "FAIL"
    ERROR = "ERROR"


class ResultSummary(BaseModel):
    """Aggregate numbers derived from a finding list."""
    total_findings: int = 0
    resources_affected: int = 0
    resources_scanned: int = 0
    score: int = 100


def compute_score(findings: List[Finding]) -> int:
    return max(0, 100 - FINDING_PENALTY * len(findings))


def summarize(findings: List[Finding], resources_scanned: int) -> ResultSummary:
    """Build the summary block stored alongside every record."""
    return ResultSummary(
        total_findings=len(findings),
        resources_affected=len({f.resource_id for f in findings}),
        resources_scanned=resources_scanned,
        score=compute_score(findings),
    )


def derive_status(findings: List[Finding], partial: bool = False) -> ItemStatus:
    if partial:
        return ItemStatus.ERROR
    return ItemStatus.FAIL if findings else ItemStatus.PASS


class ResultRecord(BaseModel):
    """
    Unit persisted to the result store.

    Current and Historical records carry the same payload and differ only in
    ``record_type`` (and therefore in ``item_key``). For Current records
    ``run_id`` names the run that last wrote it.
    """
    account_id: str
    check_id: str
    scope: Tuple[str, ...] = ()
    record_type: RecordType
    run_id: str
    inspection_time: int
    service: Optional[str] = None
    findings: List[Finding] = Field(default_factory=list)
    resources_scanned: int = 0
    status: ItemStatus = ItemStatus.PASS
    summary: ResultSummary = Field(default_factory=ResultSummary)
    error: Optional[str] = None
    partial: bool = False
    reconstructed: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("scope", mode="before")
    @classmethod
    def _coerce_scope(cls, v):
        return normalize_scope(v)

    @property
    def item_key(self) -> str:
        if self.record_type == RecordType.CURRENT:
            return build_current_key(self.check_id, self.scope)
        return build_history_key(self.check_id, self.scope, self.inspection_time, self.run_id)

    def as_variant(self, record_type: RecordType, **updates) -> "ResultRecord":
        """Copy of this record as the other variant (findings copied by value)."""
        data = self.model_dump()
        data.update(updates)
        data["record_type"] = record_type
        return ResultRecord.model_validate(data)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe dict for storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ResultRecord":
        return cls.model_validate(payload)
