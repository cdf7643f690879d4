"""
Inspection run schemas: run status, progress, and API request/response models.
"""
import enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from cloudaudit.schemas.records import Finding, ResultRecord


class RunStatus(str, enum.Enum):
    """Lifecycle states of a run."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class ProgressInfo(BaseModel):
    """Progress snapshot of a run."""
    percentage: int = 0
    current_step: Optional[str] = None
    completed_steps: int = 0
    total_steps: int = 0
    elapsed_ms: int = 0
    estimated_time_remaining_ms: Optional[int] = None


class ItemResultSchema(BaseModel):
    check_id: str
    service: Optional[str] = None
    findings: List[Finding] = []
    resources_scanned: int = 0
    error: Optional[str] = None
    partial: bool = False


class StartInspectionRequest(BaseModel):
    """Request body for starting a batch of runs."""
    account_id: str = Field(..., min_length=1)
    role_arn: str = Field(..., min_length=1)
    selected_items: List[str] = Field(
        default_factory=list,
        description="Check ids to run, one run each. Empty means a single full sweep.",
    )
    scope: List[str] = Field(default_factory=list)

    @field_validator("selected_items")
    @classmethod
    def strip_items(cls, v):
        return [item.strip() for item in v if item and item.strip()]


class StartInspectionResponse(BaseModel):
    batch_id: str
    run_ids: List[str]
    account_id: str
    status: RunStatus
    subscription: Dict[str, Any]


class RunStatusResponse(BaseModel):
    run_id: str
    account_id: str
    batch_id: Optional[str] = None
    check_set: str
    status: RunStatus
    progress: ProgressInfo
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    partial: bool = False
    save_successful: Optional[bool] = None


class BatchStatusResponse(BaseModel):
    batch_id: str
    account_id: str
    total_items: int
    completed_items: int
    percentage: int
    is_complete: bool
    runs: List[RunStatusResponse]


class RunResultResponse(BaseModel):
    """A run's persisted outcome, aggregated from its Historical records."""
    account_id: str
    run_id: str
    inspection_time: Optional[int] = None
    total_findings: int = 0
    resources_scanned: int = 0
    partial: bool = False
    reconstructed: bool = False
    records: List[ResultRecord]


class RecordListResponse(BaseModel):
    account_id: str
    count: int
    records: List[ResultRecord]
