"""
NCR Service - submission, edit and cancellation of non-conformance reports.

One submission with N line items allocates one NCR number and produces N
reports (`<ncrNo>-<n>`) plus N return records with the same ids. Report
writes are retried; if none persists, the NCR number is rolled back.

Every edit and cancel runs the synchronizer so the derived return records
follow the report.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from app.config import settings
from app.core.document_store import DocumentStore, StorePermissionError
from app.schemas.ncr import NCRReport, NCRStatus
from app.schemas.return_record import (
    PROBLEM_FLAGS,
    Disposition,
    DocumentType,
    ReturnRecord,
    ReturnStatus,
)
from app.services.ncr_sync_service import NCRSyncService, merge_report
from app.services.notification_service import NotificationService, format_ncr_message
from app.services.return_record_service import RecordNotFoundError
from app.services.sequence_allocator import CounterFamily, SequenceAllocator, is_sentinel, local_now
from app.services.snapshot_cache import SnapshotCache

logger = logging.getLogger(__name__)

HUB_ROUTE = "hub"


@dataclass
class NCRSubmitResult:
    ncr_no: str
    report_ids: List[str] = field(default_factory=list)
    record_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and bool(self.report_ids)

    @property
    def sentinel(self) -> bool:
        return is_sentinel(self.ncr_no)


@dataclass
class NCRUpdateResult:
    report: NCRReport
    synced_records: int = 0


def initial_record_state(report: NCRReport) -> Dict[str, Any]:
    """
    Creation-time status and disposition of a record derived from a report.

    Field-settled -> Settled_OnField, record-only -> Completed (InternalUse),
    routed anywhere but the hub -> DirectReturn (RTV), otherwise Requested.
    """
    route = (report.preliminary_route or "").strip()
    if report.is_field_settled:
        return {"status": ReturnStatus.SETTLED_ON_FIELD.value, "disposition": Disposition.PENDING.value}
    if report.is_record_only:
        return {"status": ReturnStatus.COMPLETED.value, "disposition": Disposition.INTERNAL_USE.value}
    if route and route.lower() != HUB_ROUTE:
        return {"status": ReturnStatus.DIRECT_RETURN.value, "disposition": Disposition.RTV.value}
    return {"status": ReturnStatus.REQUESTED.value, "disposition": Disposition.PENDING.value}


def build_ncr_return_record(report: NCRReport, stamp: str) -> ReturnRecord:
    """Project a freshly submitted report onto its return record."""
    item = report.item
    header = report.to_document()
    state = initial_record_state(report)
    doc = {
        "id": report.id,
        "ncrNumber": report.ncr_no,
        "documentType": DocumentType.NCR.value,
        "refNo": item.ref_no or report.po_no or "-",
        "neoRefNo": item.neo_ref_no or "-",
        "date": report.date,
        "dateRequested": report.date,
        "productCode": item.product_code or "N/A",
        "productName": item.product_name,
        "quantity": item.quantity or 0,
        "unit": item.unit,
        "customerName": item.customer_name or "Unknown",
        "destinationCustomer": item.destination_customer,
        "branch": item.branch or "Head Office",
        "founder": report.founder,
        "amount": item.price_bill or 0,
        "priceBill": item.price_bill or 0,
        "pricePerUnit": item.price_per_unit or 0,
        "priceSell": item.price_sell or 0,
        "problemSource": item.problem_source or report.problem_source,
        "problemAnalysis": report.problem_analysis,
        "rootCause": item.problem_source or report.problem_source,
        "hasCost": item.has_cost if item.has_cost is not None else report.has_cost,
        "costAmount": item.cost_amount if item.cost_amount is not None else report.cost_amount,
        "costResponsible": item.cost_responsible or report.cost_responsible,
        "problemOtherText": report.problem_other_text,
        "problemDetail": report.problem_detail,
        "toDept": report.to_dept,
        "copyTo": report.copy_to,
        "poNo": report.po_no,
        "preliminaryDecision": report.preliminary_decision,
        "preliminaryRoute": report.preliminary_route,
        "isRecordOnly": bool(report.is_record_only),
        "isFieldSettled": bool(report.is_field_settled),
        "reason": f"NCR: {report.problem_detail or '-'}",
        **state,
    }
    for flag in PROBLEM_FLAGS:
        doc[flag] = header.get(flag)
    if state["status"] == ReturnStatus.COMPLETED.value:
        doc["dateCompleted"] = stamp
    return ReturnRecord.from_document({k: v for k, v in doc.items() if v is not None})


class NCRService:
    """Operations on NCR reports; every mutation keeps derived records in sync."""

    def __init__(
        self,
        store: DocumentStore,
        cache: SnapshotCache,
        allocator: SequenceAllocator,
        sync: NCRSyncService,
        notifier: Optional[NotificationService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_save_retries: Optional[int] = None,
        retry_delay: Optional[float] = None
    ):
        self.store = store
        self.cache = cache
        self.allocator = allocator
        self.sync = sync
        self.notifier = notifier
        self._clock = clock or local_now
        self.max_save_retries = max_save_retries or settings.NCR_SAVE_MAX_RETRIES
        self.retry_delay = settings.NCR_SAVE_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay

    @staticmethod
    def _path(report_id: str) -> str:
        return f"ncr_reports/{report_id}"

    def list_reports(self, status: Optional[str] = None) -> List[NCRReport]:
        reports = self.cache.snapshot.reports
        if status:
            reports = [r for r in reports if r.status == status]
        return list(reports)

    async def get(self, report_id: str) -> NCRReport:
        doc = await self.store.get(self._path(report_id))
        if not isinstance(doc, dict):
            raise RecordNotFoundError(f"NCR report {report_id} not found")
        return NCRReport.from_document(doc, key=report_id)

    async def _save_with_retry(self, report: NCRReport) -> bool:
        """Write one report, retrying transient failures. Permission errors propagate."""
        for attempt in range(1, self.max_save_retries + 1):
            try:
                await self.store.set(self._path(report.id), report.to_document())
                return True
            except StorePermissionError:
                raise
            except Exception as e:
                logger.warning(
                    f"NCR save failed ({report.id}), attempt {attempt}/{self.max_save_retries}: {e}"
                )
                if attempt < self.max_save_retries and self.retry_delay:
                    await asyncio.sleep(self.retry_delay * attempt)
        logger.error(f"NCR save gave up after {self.max_save_retries} attempts ({report.id})")
        return False

    async def submit(self, header: Dict[str, Any], items: List[Dict[str, Any]]) -> NCRSubmitResult:
        """
        Submit an NCR with one or more line items.

        Args:
            header: Report header fields (camelCase), shared by all items
            items: Line item fields (camelCase), one report per item

        Returns:
            NCRSubmitResult; `sentinel` is set when no number could be allocated
        """
        if not items:
            raise ValueError("An NCR needs at least one item")

        # Validate every report before a number is consumed
        stamp = self._clock().isoformat()
        base = {k: v for k, v in header.items() if k not in ("id", "ncrNo", "status", "item")}
        base.setdefault("date", stamp[:10])
        for item in items:
            NCRReport.from_document({**base, "id": "pending", "item": item})

        ncr_no = await self.allocator.allocate(CounterFamily.NCR)
        result = NCRSubmitResult(ncr_no=ncr_no)
        if is_sentinel(ncr_no):
            result.error = f"NCR number allocation failed ({ncr_no}), please retry"
            return result

        reports = []
        try:
            for n, item in enumerate(items, start=1):
                report = NCRReport.from_document({
                    **base,
                    "id": f"{ncr_no}-{n}",
                    "ncrNo": ncr_no,
                    "status": NCRStatus.OPEN.value,
                    "item": {**item, "id": item.get("id") or str(n)},
                })
                if await self._save_with_retry(report):
                    reports.append(report)
        finally:
            if not reports:
                await self.allocator.rollback(CounterFamily.NCR)
                logger.error(f"No report of {ncr_no} persisted, number rolled back")

        if not reports:
            result.error = "No NCR report could be saved"
            return result
        result.report_ids = [r.id for r in reports]

        # NCR-derived records are keyed by the NCR number, the lock rule does not apply
        for report in reports:
            record = build_ncr_return_record(report, stamp)
            try:
                await self.store.set(f"return_records/{record.id}", record.to_document())
                result.record_ids.append(record.id)
            except Exception as e:
                logger.error(f"Return record for {report.id} not created: {e}")

        logger.info(
            f"Submitted {ncr_no}: {len(result.report_ids)} reports, {len(result.record_ids)} return records"
        )
        if self.notifier is not None:
            self.notifier.send(format_ncr_message(reports[0], item_count=len(reports)))
        return result

    async def update(self, report_id: str, changes: Dict[str, Any]) -> NCRUpdateResult:
        """
        Edit a report and propagate the change to its return records.

        Raises:
            RecordNotFoundError: Unknown report
            ValueError: If the change would make the report invalid
        """
        changes = {k: v for k, v in changes.items() if k != "id"}
        snapshot = await self.cache.refresh()
        old_report = await self.get(report_id)

        new_report = merge_report(old_report, changes)
        await self.store.set(self._path(report_id), new_report.to_document())
        synced = await self.sync.on_ncr_updated(old_report, changes, snapshot.records)
        logger.info(f"Updated NCR report {report_id}, synced {synced} return records")
        return NCRUpdateResult(report=new_report, synced_records=synced)

    async def cancel(self, report_id: str) -> int:
        """
        Soft-delete a report and cancel its linked return records.

        Returns:
            Number of return records canceled
        """
        snapshot = await self.cache.refresh()
        report = await self.get(report_id)
        canceled = await self.sync.on_ncr_canceled(report, snapshot.records)
        logger.info(f"Canceled NCR report {report_id} ({canceled} return records)")
        return canceled
