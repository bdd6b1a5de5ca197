"""
Admin API Endpoints - maintenance actions behind the shared secret.

- Orphan sweep / repair sweep
- Counter inspection and rollback
"""
from fastapi import APIRouter, Depends

from app.api.deps import get_engine, require_admin_secret
from app.schemas.operations import CounterResponse, CountResponse
from app.services.engine import ReturnsEngine
from app.services.sequence_allocator import CounterFamily

router = APIRouter(dependencies=[Depends(require_admin_secret)])


@router.post(
    "/orphan-sweep",
    response_model=CountResponse,
    summary="Remove Orphaned Return Records"
)
async def orphan_sweep(engine: ReturnsEngine = Depends(get_engine)):
    removed = await engine.run_orphan_sweep()
    return CountResponse(count=removed, message=f"Removed {removed} orphaned return records")


@router.post(
    "/repair-sweep",
    response_model=CountResponse,
    summary="Recreate Missing Return Records"
)
async def repair_sweep(engine: ReturnsEngine = Depends(get_engine)):
    created = await engine.run_repair_sweep()
    return CountResponse(count=created, message=f"Created {created} return records")


@router.get(
    "/counters/{family}",
    response_model=CounterResponse,
    summary="Inspect Counter"
)
async def get_counter(family: CounterFamily, engine: ReturnsEngine = Depends(get_engine)):
    return CounterResponse(
        family=family.value,
        counter=await engine.allocator.current(family),
        next_number=await engine.allocator.preview(family),
    )


@router.post(
    "/counters/{family}/rollback",
    response_model=CounterResponse,
    summary="Roll Back Counter"
)
async def rollback_counter(family: CounterFamily, engine: ReturnsEngine = Depends(get_engine)):
    """Give back the last allocated number (floor 0)."""
    await engine.allocator.rollback(family)
    return CounterResponse(
        family=family.value,
        counter=await engine.allocator.current(family),
        next_number=await engine.allocator.preview(family),
    )
