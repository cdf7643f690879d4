"""
Inspection endpoints: start batches, follow runs, read results.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from cloudaudit.core.dependencies import get_check_catalog, get_inspection_service, get_record_service
from cloudaudit.core.exceptions import ItemKeyError, ResultStoreError
from cloudaudit.schemas.inspection import (
    BatchStatusResponse,
    RecordListResponse,
    RunResultResponse,
    RunStatus,
    RunStatusResponse,
    StartInspectionRequest,
    StartInspectionResponse,
)
from cloudaudit.services.check_catalog import CheckCatalog
from cloudaudit.services.history_service import ResultRecordService
from cloudaudit.services.inspection_service import InspectionService

logger = logging.getLogger(__name__)

router = APIRouter()


# Static routes must be defined BEFORE the {account_id} routes


@router.post("", response_model=StartInspectionResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_inspection(
    request: StartInspectionRequest,
    service: InspectionService = Depends(get_inspection_service),
):
    """
    Start a batch of inspection runs.

    One run is created per selected check; an empty selection runs every
    check in a single run. Progress is published on the returned batch id.
    """
    try:
        handle = service.start_inspection(
            account_id=request.account_id,
            role_arn=request.role_arn,
            selected_items=request.selected_items,
            scope=request.scope,
        )
    except ItemKeyError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return StartInspectionResponse(
        batch_id=handle.batch_id,
        run_ids=handle.run_ids,
        account_id=handle.account_id,
        status=RunStatus.PENDING,
        subscription={
            "websocket": "/api/v1/ws/inspections",
            "message": {"type": "subscribe_inspection", "payload": {"inspection_id": handle.batch_id}},
        },
    )


@router.get("/checks")
async def list_checks(catalog: CheckCatalog = Depends(get_check_catalog)):
    """List the checks that can be selected."""
    return {"checks": catalog.list_checks()}


@router.get("/runs/{run_id}/status", response_model=RunStatusResponse)
async def get_run_status(run_id: str, service: InspectionService = Depends(get_inspection_service)):
    """Live status of a recent run."""
    run_status = service.get_run_status(run_id)
    if run_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Run {run_id} not found")
    return run_status


@router.get("/batches/{batch_id}", response_model=BatchStatusResponse)
async def get_batch_status(batch_id: str, service: InspectionService = Depends(get_inspection_service)):
    batch = service.get_batch_status(batch_id)
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Batch {batch_id} not found")
    return batch


@router.get("/{account_id}/runs/{run_id}", response_model=RunResultResponse)
async def get_run_result(
    account_id: str,
    run_id: str,
    records: ResultRecordService = Depends(get_record_service),
):
    """Persisted result of a run, aggregated from its history records."""
    try:
        result = records.get_run_result(account_id, run_id)
    except ResultStoreError as e:
        logger.error(f"Reading run {run_id} for {account_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Result store unavailable")
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No results for run {run_id}")
    return result


@router.get("/{account_id}/latest", response_model=RecordListResponse)
async def get_latest_results(
    account_id: str,
    check_id: Optional[str] = Query(None, description="Limit to one check"),
    records: ResultRecordService = Depends(get_record_service),
):
    """Current record of every check (or one check) for an account."""
    try:
        current = records.list_current(account_id, check_id)
    except ItemKeyError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ResultStoreError as e:
        logger.error(f"Reading latest results for {account_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Result store unavailable")
    return RecordListResponse(account_id=account_id, count=len(current), records=current)


@router.get("/{account_id}/history", response_model=RecordListResponse)
async def get_history(
    account_id: str,
    check_id: str = Query(..., description="Check to list history for"),
    scope: Optional[List[str]] = Query(None, description="Scope segments, in order"),
    limit: int = Query(50, ge=1, le=1000),
    records: ResultRecordService = Depends(get_record_service),
):
    """History of one check, newest first."""
    try:
        history = records.scan_history(account_id, check_id, scope, limit=limit)
    except ItemKeyError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ResultStoreError as e:
        logger.error(f"Reading history for {account_id}/{check_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Result store unavailable")
    return RecordListResponse(account_id=account_id, count=len(history), records=history)
