from typing import Optional
import logging

from fastapi import Depends, Header, HTTPException, Request, status

from app.core.security import check_shared_secret
from app.services.engine import ReturnsEngine


logger = logging.getLogger(__name__)


def get_engine(request: Request) -> ReturnsEngine:
    """Dependency returning the engine created at application startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine is not running"
        )
    return engine


async def require_admin_secret(
    engine: ReturnsEngine = Depends(get_engine),
    x_admin_secret: Optional[str] = Header(None, alias="X-Admin-Secret"),
) -> None:
    """
    Dependency guarding admin actions with the shared secret.

    Any caller holding the secret may invoke them (no role check).
    """
    if not check_shared_secret(x_admin_secret, engine.admin_secret):
        logger.warning("Admin action refused: invalid or missing X-Admin-Secret")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin secret"
        )
