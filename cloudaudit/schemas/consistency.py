"""
Consistency validation and repair schemas.
"""
import enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class IssueKind(str, enum.Enum):
    """Divergence classes between Current and Historical records."""
    HISTORY_MISSING = "HISTORY_MISSING"
    ITEM_RESULTS_MISSING = "ITEM_RESULTS_MISSING"
    TIMESTAMP_DIVERGENCE = "TIMESTAMP_DIVERGENCE"


class ConsistencyIssue(BaseModel):
    kind: IssueKind
    check_id: str
    scope: Tuple[str, ...] = ()
    message: str
    current_run_id: Optional[str] = None
    current_time: Optional[int] = None
    history_time: Optional[int] = None
    recoverable: bool = True


class ConsistencyReport(BaseModel):
    account_id: str
    run_id: str
    is_consistent: bool
    run_known: bool = True
    recoverable: bool = True
    issues: List[ConsistencyIssue] = Field(default_factory=list)
    error: Optional[str] = None
    checked_at: int


class RepairAction(BaseModel):
    kind: IssueKind
    check_id: str
    scope: Tuple[str, ...] = ()
    action: str
    success: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RepairResult(BaseModel):
    account_id: str
    run_id: str
    recoverable: bool
    is_consistent: bool
    actions: List[RepairAction] = Field(default_factory=list)
    remaining_issues: List[ConsistencyIssue] = Field(default_factory=list)
    error: Optional[str] = None
