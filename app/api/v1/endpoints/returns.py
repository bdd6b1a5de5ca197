"""
Return Records API Endpoints.

- Logistics intake and field edits (document lock rule enforced)
- Workflow transitions, undo, disposition, split
- Pickup scheduling
- Soft cancel and admin purge
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from app.api.deps import get_engine
from app.schemas.operations import (
    CancelRequest,
    DispositionRequest,
    IntakeItemResult,
    IntakeResponse,
    PickupRequest,
    PickupResponse,
    ReturnRecordUpdate,
    ReturnRequestCreate,
    SplitRequest,
    TransitionRequest,
    UndoRequest,
)
from app.schemas.return_record import ReturnStatus
from app.services.engine import ReturnsEngine

router = APIRouter()


def _value(enum_value) -> Optional[str]:
    return enum_value.value if enum_value is not None else None


@router.get(
    "",
    response_model=List[Dict[str, Any]],
    summary="List Return Records"
)
async def list_returns(
    status_filter: Optional[ReturnStatus] = Query(None, alias="status"),
    ncr_number: Optional[str] = Query(None, alias="ncrNumber"),
    engine: ReturnsEngine = Depends(get_engine),
):
    """Return records from the current snapshot, newest first."""
    records = engine.returns.list_records(status=_value(status_filter), ncr_number=ncr_number)
    return [r.to_document() for r in records]


@router.get(
    "/{record_id}",
    response_model=Dict[str, Any],
    summary="Get Return Record"
)
async def get_return(record_id: str, engine: ReturnsEngine = Depends(get_engine)):
    record = await engine.returns.get(record_id)
    return record.to_document()


@router.post(
    "",
    response_model=IntakeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Return Requests"
)
async def create_returns(data: ReturnRequestCreate, engine: ReturnsEngine = Depends(get_engine)):
    """
    Logistics intake: one record per item, each with a new RT number.

    Items refused by the document lock rule or left without a number are
    reported per item next to the ones created. The request fails only when
    nothing was created: 503 if numbering failed, 409 if every item was refused.
    """
    results = await engine.returns.create_requests([item.to_item() for item in data.items])

    items = []
    for i, r in enumerate(results):
        if r.sentinel:
            items.append(IntakeItemResult(
                index=i,
                success=False,
                reason="allocation-failed",
                message=f"Document number allocation failed ({r.sentinel}), please retry",
            ))
            continue
        items.append(IntakeItemResult(
            index=i,
            success=r.ok,
            id=r.record.id if r.record else None,
            reason=r.decision.reason.value if r.decision.reason else None,
            message=r.decision.message,
        ))

    created = sum(1 for r in results if r.ok)
    if created == 0:
        if any(r.sentinel for r in results):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Document number allocation failed, please retry"
            )
        first = results[0].decision
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": first.reason.value if first.reason else None, "message": first.message}
        )
    return IntakeResponse(created=created, results=items)


@router.patch(
    "/{record_id}",
    response_model=Dict[str, Any],
    summary="Update Return Record"
)
async def update_return(
    record_id: str,
    data: ReturnRecordUpdate,
    engine: ReturnsEngine = Depends(get_engine),
):
    """Edit record fields. Status changes must use /transition."""
    result = await engine.returns.update_record(record_id, data.changes())
    if not result.decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": result.decision.reason.value, "message": result.decision.message}
        )
    return result.record.to_document()


@router.post(
    "/pickup",
    response_model=PickupResponse,
    summary="Schedule Pickup"
)
async def schedule_pickup(data: PickupRequest, engine: ReturnsEngine = Depends(get_engine)):
    """Book Requested records under one collection order number."""
    result = await engine.returns.schedule_pickup(data.record_ids, data.transport)
    return PickupResponse(
        collection_order_id=result.collection_order_id,
        moved=result.moved,
        failed=result.failed,
    )


@router.post(
    "/{record_id}/transition",
    response_model=Dict[str, Any],
    summary="Apply Workflow Action"
)
async def transition_return(
    record_id: str,
    data: TransitionRequest,
    engine: ReturnsEngine = Depends(get_engine),
):
    record = await engine.returns.transition(
        record_id,
        data.action,
        _value(data.expected_status),
        disposition=_value(data.disposition),
        notes=data.notes,
    )
    return record.to_document()


@router.post(
    "/{record_id}/undo",
    response_model=Dict[str, Any],
    summary="Undo Last Step"
)
async def undo_return(record_id: str, data: UndoRequest, engine: ReturnsEngine = Depends(get_engine)):
    """Move the record one step back; requires the shared secret."""
    record = await engine.returns.undo(record_id, data.secret, _value(data.expected_status))
    return record.to_document()


@router.post(
    "/{record_id}/disposition",
    response_model=Dict[str, Any],
    summary="Set Disposition"
)
async def set_disposition(
    record_id: str,
    data: DispositionRequest,
    engine: ReturnsEngine = Depends(get_engine),
):
    record = await engine.returns.set_disposition(record_id, data.disposition.value, data.details)
    return record.to_document()


@router.post(
    "/{record_id}/split",
    response_model=List[Dict[str, Any]],
    summary="Split Return Record"
)
async def split_return(record_id: str, data: SplitRequest, engine: ReturnsEngine = Depends(get_engine)):
    parts = await engine.returns.split(record_id, data.quantities)
    return [p.to_document() for p in parts]


@router.post(
    "/{record_id}/cancel",
    response_model=Dict[str, Any],
    summary="Cancel Return Record"
)
async def cancel_return(
    record_id: str,
    data: Optional[CancelRequest] = None,
    engine: ReturnsEngine = Depends(get_engine),
):
    """Soft delete: the record stays with status Canceled."""
    expected = _value(data.expected_status) if data else None
    record = await engine.returns.cancel(record_id, expected)
    return record.to_document()


@router.delete(
    "/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Purge Return Record"
)
async def purge_return(
    record_id: str,
    x_admin_secret: Optional[str] = Header(None, alias="X-Admin-Secret"),
    engine: ReturnsEngine = Depends(get_engine),
):
    """Hard delete; requires the shared secret."""
    await engine.returns.purge(record_id, x_admin_secret)
