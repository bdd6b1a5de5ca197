"""
Shared-secret confirmation for administrative and reversing actions.

Undo, purge, counter rollback and the reconciliation sweeps are gated by a
single shared secret (ADMIN_SECRET), not by user roles: any caller holding
the secret may invoke them. An empty ADMIN_SECRET disables these actions.
"""
import hmac
import logging
from typing import Optional

from app.config import settings

logger = logging.getLogger(__name__)


class InvalidSecretError(Exception):
    """Raised when the shared secret is missing or wrong."""
    pass


def check_shared_secret(provided: Optional[str], expected: Optional[str] = None) -> bool:
    """Constant-time comparison against the configured secret."""
    expected = settings.ADMIN_SECRET if expected is None else expected
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def verify_shared_secret(provided: Optional[str], expected: Optional[str] = None) -> None:
    """
    Raises:
        InvalidSecretError: If the secret does not match (or none is configured)
    """
    if not check_shared_secret(provided, expected):
        logger.warning("Shared secret confirmation failed")
        raise InvalidSecretError("Invalid confirmation secret")
