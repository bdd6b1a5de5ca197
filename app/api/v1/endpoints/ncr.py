"""
NCR API Endpoints.

Submission allocates one NCR number per request; edits and cancellation
propagate to the return records derived from the report.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_engine
from app.schemas.ncr import NCRStatus
from app.schemas.operations import (
    CountResponse,
    NCRSubmitRequest,
    NCRSubmitResponse,
    NCRUpdateRequest,
    NCRUpdateResponse,
)
from app.services.engine import ReturnsEngine

router = APIRouter()


@router.get(
    "",
    response_model=List[Dict[str, Any]],
    summary="List NCR Reports"
)
async def list_ncr_reports(
    status_filter: Optional[NCRStatus] = Query(None, alias="status"),
    engine: ReturnsEngine = Depends(get_engine),
):
    reports = engine.ncr.list_reports(status=status_filter.value if status_filter else None)
    return [r.to_document() for r in reports]


@router.post(
    "",
    response_model=NCRSubmitResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit NCR"
)
async def submit_ncr(data: NCRSubmitRequest, engine: ReturnsEngine = Depends(get_engine)):
    """Create one report and one return record per item under a new NCR number."""
    result = await engine.ncr.submit(data.header(), data.items)
    if result.sentinel:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=result.error
        )
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=result.error or "NCR could not be saved"
        )
    return NCRSubmitResponse(
        ncr_no=result.ncr_no,
        report_ids=result.report_ids,
        record_ids=result.record_ids,
    )


@router.patch(
    "/{report_id}",
    response_model=NCRUpdateResponse,
    summary="Update NCR Report"
)
async def update_ncr(
    report_id: str,
    data: NCRUpdateRequest,
    engine: ReturnsEngine = Depends(get_engine),
):
    result = await engine.ncr.update(report_id, data.changes())
    return NCRUpdateResponse(report=result.report.to_document(), synced_records=result.synced_records)


@router.post(
    "/{report_id}/cancel",
    response_model=CountResponse,
    summary="Cancel NCR Report"
)
async def cancel_ncr(report_id: str, engine: ReturnsEngine = Depends(get_engine)):
    """Soft-delete the report and cancel its linked return records."""
    canceled = await engine.ncr.cancel(report_id)
    return CountResponse(count=canceled, message=f"NCR {report_id} canceled, {canceled} return records canceled")
