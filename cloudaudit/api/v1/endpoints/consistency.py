"""
Consistency endpoints: validate and repair the stored views of a run.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from cloudaudit.core.dependencies import get_consistency_service
from cloudaudit.schemas.consistency import ConsistencyReport, RepairResult
from cloudaudit.services.consistency_service import ConsistencyService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{account_id}/runs/{run_id}", response_model=ConsistencyReport)
async def validate_run(
    account_id: str,
    run_id: str,
    service: ConsistencyService = Depends(get_consistency_service),
):
    """
    Compare the Current and Historical records of a run.

    Returns:
        ConsistencyReport listing every divergence found
    """
    report = service.validate(account_id, run_id)
    if report.error is not None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": "Consistency check failed", "error": report.error},
        )
    if not report.run_known:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Run {run_id} not found")
    return report


@router.post("/{account_id}/runs/{run_id}/repair", response_model=RepairResult)
async def repair_run(
    account_id: str,
    run_id: str,
    service: ConsistencyService = Depends(get_consistency_service),
):
    """
    Repair the recoverable issues of a run and validate again.

    Unrecoverable issues are reported in the result and left untouched.
    """
    result = service.repair(account_id, run_id)
    if result.error is not None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": "Repair failed", "error": result.error},
        )
    logger.info(
        f"Repair requested for {account_id}/{run_id}: consistent={result.is_consistent}, "
        f"recoverable={result.recoverable}"
    )
    return result
