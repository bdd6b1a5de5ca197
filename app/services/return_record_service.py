"""
Return Record Service - workflow operations on return records.

Handles:
- Logistics intake (create_requests) with the document lock rule
- Field edits (update_record); status is only changed by transitions
- Status transitions, single-step undo, disposition and split
- Pickup scheduling with a collection order number
- Soft cancel and admin purge

Status changes run inside DocumentStore.run_atomic so a record that was
advanced by someone else since the caller read it is never overwritten.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from app.core.document_store import DocumentStore
from app.core.security import verify_shared_secret
from app.schemas.return_record import DocumentType, ReturnRecord, ReturnStatus
from app.services.document_lock_guard import ALLOW, LockDecision, can_write
from app.services.notification_service import (
    NotificationService,
    format_return_request_message,
    format_status_update_message,
)
from app.services.return_state_machine import (
    DispositionError,
    InvalidTransitionError,
    TransitionAction,
    apply_disposition,
    apply_transition,
    apply_undo,
    can_split,
)
from app.services.sequence_allocator import CounterFamily, SequenceAllocator, is_sentinel, local_now
from app.services.snapshot_cache import SnapshotCache

logger = logging.getLogger(__name__)


class RecordNotFoundError(Exception):
    """Raised when a record or report does not exist."""
    pass


class SplitError(ValueError):
    """Raised when a split request is invalid."""
    pass


class AllocationError(Exception):
    """Raised when a document number could not be allocated."""

    def __init__(self, sentinel: str):
        super().__init__(f"Document number allocation failed ({sentinel}), please retry")
        self.sentinel = sentinel


# Keys callers may not write through update_record / pickup transport data
PROTECTED_KEYS = frozenset({"id", "status"})

# Transitions that post a chat notification
NOTIFY_LABELS = {
    TransitionAction.SHIP_TO_HUB: "🚚 Shipped to hub",
    TransitionAction.DISPATCH: "🚚 Dispatched to hub",
    TransitionAction.RECEIVE_AT_HUB: "📥 Received at hub",
    TransitionAction.RETURN_TO_SUPPLIER: "↩️ Returned to supplier",
    TransitionAction.COMPLETE: "✅ Closed",
}


@dataclass
class WriteResult:
    """Outcome of a guarded write."""
    decision: LockDecision = ALLOW
    record: Optional[ReturnRecord] = None
    sentinel: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.decision.allowed and self.record is not None


@dataclass
class PickupResult:
    collection_order_id: str
    moved: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class ReturnRecordService:
    """Operations the workflow screens invoke on return records."""

    def __init__(
        self,
        store: DocumentStore,
        cache: SnapshotCache,
        allocator: SequenceAllocator,
        notifier: Optional[NotificationService] = None,
        admin_secret: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.cache = cache
        self.allocator = allocator
        self.notifier = notifier
        self.admin_secret = admin_secret
        self._clock = clock or local_now

    @staticmethod
    def _path(record_id: str) -> str:
        return f"return_records/{record_id}"

    def _stamp(self) -> str:
        return self._clock().isoformat()

    def _notify(self, message: str) -> None:
        if self.notifier is not None:
            self.notifier.send(message)

    async def get(self, record_id: str) -> ReturnRecord:
        doc = await self.store.get(self._path(record_id))
        if not isinstance(doc, dict):
            raise RecordNotFoundError(f"Return record {record_id} not found")
        return ReturnRecord.from_document(doc, key=record_id)

    def list_records(self, status: Optional[str] = None, ncr_number: Optional[str] = None) -> List[ReturnRecord]:
        """Records from the current snapshot, newest first."""
        records = self.cache.snapshot.records
        if status:
            records = [r for r in records if r.status == status]
        if ncr_number:
            records = [r for r in records if r.ncr_number == ncr_number]
        return list(records)

    # ------------------------------------------------------------------
    # Intake and edits
    # ------------------------------------------------------------------

    async def create_requests(self, items: List[Dict[str, Any]]) -> List[WriteResult]:
        """
        Create logistics return requests, one record per item.

        Per item: lock guard -> allocate RT number (the record id) -> write.
        A failed write rolls the return counter back and re-raises.

        Args:
            items: Record documents (camelCase keys) without id/status

        Returns:
            One WriteResult per item, in order
        """
        await self.cache.refresh()
        results = []

        for item in items:
            doc_no = item.get("documentNo") or item.get("refNo")
            product = item.get("productCode") or item.get("productName")
            decision = can_write(doc_no, product, self.cache.snapshot.records)
            if not decision.allowed:
                results.append(WriteResult(decision=decision))
                continue

            stamp = self._stamp()
            doc = {k: v for k, v in item.items() if k not in PROTECTED_KEYS}
            doc.update({
                "status": ReturnStatus.REQUESTED.value,
                "documentType": DocumentType.LOGISTICS.value,
            })
            doc.setdefault("date", stamp[:10])
            doc.setdefault("dateRequested", stamp)
            # Validate before a number is consumed
            ReturnRecord.from_document({**doc, "id": "pending"})

            number = await self.allocator.allocate(CounterFamily.RETURN)
            if is_sentinel(number):
                results.append(WriteResult(sentinel=number))
                continue
            record = ReturnRecord.from_document({**doc, "id": number})

            try:
                await self.store.set(self._path(number), record.to_document())
            except Exception as e:
                logger.error(f"Return record save failed ({number}): {e}")
                await self.allocator.rollback(CounterFamily.RETURN)
                raise

            logger.info(f"Created return request {number} (document {doc_no or '-'})")
            self._notify(format_return_request_message(record))
            results.append(WriteResult(record=record))

        return results

    async def update_record(self, record_id: str, changes: Dict[str, Any]) -> WriteResult:
        """
        Edit fields of a record after re-checking the lock rule.

        The guard uses the effective document number and product key: the
        changed values, falling back to the stored record.

        Raises:
            RecordNotFoundError: Unknown id
            InvalidTransitionError: If `changes` tries to change the status
        """
        if "status" in changes:
            raise InvalidTransitionError("Status can only be changed through a transition")
        changes = {k: v for k, v in changes.items() if k != "id"}

        await self.cache.refresh()
        current = await self.get(record_id)

        is_from_ncr = current.document_type == DocumentType.NCR.value or bool(current.ncr_number)
        if not is_from_ncr:
            doc_no = changes.get("documentNo") or changes.get("refNo") or current.effective_document_no
            product = changes.get("productCode") or changes.get("productName") or current.product_key
            decision = can_write(doc_no, product, self.cache.snapshot.records, exclude_id=record_id)
            if not decision.allowed:
                return WriteResult(decision=decision)

        # Validate the merged document before writing
        ReturnRecord.from_document({**current.to_document(), **changes})
        await self.store.update(self._path(record_id), changes)
        return WriteResult(record=await self.get(record_id))

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def _existing(self, record_id: str, doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not isinstance(doc, dict):
            raise RecordNotFoundError(f"Return record {record_id} not found")
        return doc

    async def _atomic(self, record_id: str, update_fn) -> ReturnRecord:
        result = await self.store.run_atomic(
            self._path(record_id), lambda doc: update_fn(self._existing(record_id, doc))
        )
        if not result.committed:
            raise InvalidTransitionError(f"Record {record_id} is being changed by someone else, try again")
        return ReturnRecord.from_document(result.value, key=record_id)

    async def transition(
        self,
        record_id: str,
        action: TransitionAction,
        expected_status: Optional[str],
        disposition: Optional[str] = None,
        notes: Optional[str] = None
    ) -> ReturnRecord:
        """
        Apply a workflow action atomically.

        Raises:
            RecordNotFoundError: Unknown id
            InvalidTransitionError: Stale expected_status or illegal action
            DispositionError: Disposition not allowed with this action
        """
        action = TransitionAction(action)
        stamp = self._stamp()
        record = await self._atomic(
            record_id,
            lambda doc: apply_transition(doc, action, expected_status, stamp, disposition, notes),
        )
        logger.info(f"Return record {record_id}: {action.value} -> {record.status}")

        label = NOTIFY_LABELS.get(action)
        if label:
            self._notify(format_status_update_message(label, record))
        return record

    async def undo(self, record_id: str, secret: Optional[str], expected_status: Optional[str] = None) -> ReturnRecord:
        """Move one step back; requires the shared secret."""
        verify_shared_secret(secret, self.admin_secret)
        record = await self._atomic(record_id, lambda doc: apply_undo(doc, expected_status))
        logger.info(f"Return record {record_id}: undo -> {record.status}")
        return record

    async def set_disposition(
        self,
        record_id: str,
        disposition: str,
        details: Optional[Dict[str, Any]] = None
    ) -> ReturnRecord:
        """Decide the disposition once. Raises DispositionError if not allowed."""
        record = await self._atomic(record_id, lambda doc: apply_disposition(doc, disposition, details))
        logger.info(f"Return record {record_id}: disposition {record.disposition}")
        return record

    async def cancel(self, record_id: str, expected_status: Optional[str] = None) -> ReturnRecord:
        """Soft delete: status flips to Canceled, the record stays."""
        return await self.transition(record_id, TransitionAction.CANCEL, expected_status)

    async def purge(self, record_id: str, secret: Optional[str]) -> None:
        """Hard delete; requires the shared secret."""
        verify_shared_secret(secret, self.admin_secret)
        await self.get(record_id)
        await self.store.remove(self._path(record_id))
        logger.warning(f"Return record {record_id} purged")

    # ------------------------------------------------------------------
    # Split and pickup
    # ------------------------------------------------------------------

    async def split(self, record_id: str, quantities: List[float]) -> List[ReturnRecord]:
        """
        Split one record into several with the given quantities.

        The original keeps the first quantity; the others become new records
        `<id>-S<n>` carrying the same identity fields and status.

        Raises:
            SplitError: Fewer than two parts, non-positive parts, a total that
                differs from the record quantity, or a terminal record
        """
        if len(quantities) < 2:
            raise SplitError("A split needs at least two quantities")
        if any(q <= 0 for q in quantities):
            raise SplitError("Split quantities must be positive")

        def shrink(doc: Dict[str, Any]) -> Dict[str, Any]:
            if not can_split(doc.get("status")):
                raise SplitError(f"Record in '{doc.get('status')}' status cannot be split")
            total = float(doc.get("quantity") or 0)
            if not math.isclose(sum(quantities), total, abs_tol=1e-9):
                raise SplitError(f"Split quantities sum to {sum(quantities):g}, record has {total:g}")
            return {**doc, "quantity": quantities[0]}

        original = await self._atomic(record_id, shrink)

        existing_ids = {r.id for r in self.cache.snapshot.records}
        base = original.to_document()
        parts = [original]
        suffix = 0
        for quantity in quantities[1:]:
            suffix += 1
            while f"{record_id}-S{suffix}" in existing_ids:
                suffix += 1
            new_id = f"{record_id}-S{suffix}"
            part = ReturnRecord.from_document({**base, "id": new_id, "quantity": quantity, "splitFrom": record_id})
            await self.store.set(self._path(new_id), part.to_document())
            parts.append(part)

        logger.info(f"Split {record_id} into {len(parts)} records: {[p.id for p in parts]}")
        return parts

    async def schedule_pickup(self, record_ids: List[str], transport: Optional[Dict[str, Any]] = None) -> PickupResult:
        """
        Book a collection for Requested records under one COL number.

        Rolls the collection counter back when no record moved.

        Raises:
            AllocationError: If the COL number could not be allocated
        """
        col_number = await self.allocator.allocate(CounterFamily.COLLECTION)
        if is_sentinel(col_number):
            raise AllocationError(col_number)

        extra = {k: v for k, v in (transport or {}).items() if k not in PROTECTED_KEYS and v is not None}
        stamp = self._stamp()
        result = PickupResult(collection_order_id=col_number)

        def schedule(doc: Dict[str, Any]) -> Dict[str, Any]:
            updated = apply_transition(doc, TransitionAction.SCHEDULE_PICKUP, ReturnStatus.REQUESTED.value, stamp)
            updated.update(extra)
            updated["collectionOrderId"] = col_number
            return updated

        last_record = None
        for record_id in record_ids:
            try:
                last_record = await self._atomic(record_id, schedule)
                result.moved.append(record_id)
            except (InvalidTransitionError, RecordNotFoundError) as e:
                logger.warning(f"Pickup {col_number}: skipped {record_id}: {e}")
                result.failed[record_id] = str(e)

        if not result.moved:
            await self.allocator.rollback(CounterFamily.COLLECTION)
            logger.warning(f"Pickup {col_number}: no record scheduled, number rolled back")
            return result

        logger.info(f"Pickup {col_number}: scheduled {len(result.moved)} records")
        self._notify(format_status_update_message("🚛 Pickup scheduled", last_record, count=len(result.moved)))
        return result


__all__ = [
    "AllocationError",
    "DispositionError",
    "InvalidTransitionError",
    "PickupResult",
    "RecordNotFoundError",
    "ReturnRecordService",
    "SplitError",
    "WriteResult",
]
