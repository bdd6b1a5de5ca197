from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Return records (intake, workflow, pickup)
    returns,
    # NCR reports
    ncr,
    # Maintenance (shared secret)
    admin,
)


api_router = APIRouter(prefix="/api/v1")


api_router.include_router(
    returns.router,
    prefix="/returns",
    tags=["Return Records"]
)

api_router.include_router(
    ncr.router,
    prefix="/ncr",
    tags=["NCR Reports"]
)

api_router.include_router(
    admin.router,
    prefix="/admin",
    tags=["Admin"]
)
