"""
Document Lock Guard

Enforces the document-number rule for return records:

1. One document number ("R number") may carry several distinct products.
2. Once any record under a document number has left Draft/Requested, the
   number is locked: no new or edited line items.
3. The same product may never appear twice under one document number.

The check runs against the latest snapshot immediately before a write. It is
advisory (not enforced by the store), so two writers passing the check in
the same instant can both succeed.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from app.config import settings
from app.schemas.return_record import ReturnRecord, ReturnStatus

logger = logging.getLogger(__name__)


# Statuses in which siblings may still be appended to
INITIAL_STATUSES = frozenset({ReturnStatus.DRAFT.value, ReturnStatus.REQUESTED.value})


class LockReason(str, Enum):
    PROCESSING_LOCKED = "processing-locked"
    EXACT_DUPLICATE = "exact-duplicate"


@dataclass(frozen=True)
class LockDecision:
    allowed: bool
    reason: Optional[LockReason] = None
    message: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = LockDecision(allowed=True)


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def can_write(
    candidate_doc_no: Optional[str],
    candidate_product_key: Optional[str],
    existing_records: Iterable[ReturnRecord],
    exclude_id: Optional[str] = None,
    placeholder: Optional[str] = None
) -> LockDecision:
    """
    Decide whether a record with this document number and product may be written.

    Args:
        candidate_doc_no: documentNo (or refNo) of the record being written
        candidate_product_key: productCode, or productName when there is no code
        existing_records: Current snapshot of return records
        exclude_id: Id of the record being updated, skipped as a sibling
        placeholder: Document number that never locks (default from settings)

    Returns:
        LockDecision with the denial reason, if any
    """
    doc_no = _normalize(candidate_doc_no)
    placeholder = _normalize(placeholder if placeholder is not None else settings.DOCUMENT_NO_PLACEHOLDER)
    if not doc_no or doc_no == placeholder:
        return ALLOW

    siblings = [
        r for r in existing_records
        if r.id != exclude_id and _normalize(r.effective_document_no) == doc_no
    ]
    if not siblings:
        return ALLOW

    if any(r.status not in INITIAL_STATUSES for r in siblings):
        message = f"Document '{candidate_doc_no.strip()}' is already in processing and cannot take new or edited items"
        logger.warning(message)
        return LockDecision(False, LockReason.PROCESSING_LOCKED, message)

    key = _normalize(candidate_product_key)
    if any(_normalize(r.product_key) == key for r in siblings):
        message = f"Document '{candidate_doc_no.strip()}' already carries product '{(candidate_product_key or '').strip()}'"
        logger.warning(message)
        return LockDecision(False, LockReason.EXACT_DUPLICATE, message)

    return ALLOW
