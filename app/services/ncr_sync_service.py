"""
NCR -> Return Record Synchronizer

Return records created from an NCR report are a denormalized projection of
it, with no referential integrity in the store. Every report mutation path
(update, cancel) must call this service so the projection does not drift.

Linked records: `ncrNumber == report.ncrNo` and
`productCode == report.item.productCode` (the values BEFORE the edit).

Fan-out is best-effort: each target is written independently, failures are
logged and excluded from the returned count.
"""
import copy
import logging
from typing import Any, Dict, Iterable, List

from app.core.document_store import DocumentStore
from app.schemas.ncr import ITEM_KEYS, SHARED_KEYS, NCRReport, NCRStatus
from app.schemas.return_record import PROBLEM_FLAGS, ReturnRecord, ReturnStatus

logger = logging.getLogger(__name__)


def linked_records(report: NCRReport, records: Iterable[ReturnRecord]) -> List[ReturnRecord]:
    """Return records projected from `report`."""
    ncr_no = report.ncr_no
    product_code = report.item.product_code
    if not ncr_no or not product_code:
        return []
    return [r for r in records if r.ncr_number == ncr_no and r.product_code == product_code]


def merge_report(old_report: NCRReport, changes: Dict[str, Any]) -> NCRReport:
    """
    Apply a partial change set (flat or nested item keys) to a report.

    Shared cost keys given at the top level are copied onto the item too.
    """
    doc = old_report.to_document()
    item = dict(doc.get("item") or {})
    for key, value in copy.deepcopy(changes).items():
        if key == "item" and isinstance(value, dict):
            item.update(value)
        elif key in ITEM_KEYS and key not in SHARED_KEYS:
            item[key] = value
        else:
            doc[key] = value
            if key in SHARED_KEYS:
                item[key] = value
    doc["item"] = item
    return NCRReport.from_document(doc, key=old_report.id)


def build_sync_patch(report: NCRReport) -> Dict[str, Any]:
    """Project the report's header and item onto return record fields."""
    header = report.to_document()
    item = report.item

    patch: Dict[str, Any] = {
        "date": report.date,
        "dateRequested": report.date,
        "productName": item.product_name,
        "productCode": item.product_code,
        "quantity": item.quantity,
        "unit": item.unit,
        "customerName": item.customer_name,
        "destinationCustomer": item.destination_customer,
        "branch": item.branch,
        "founder": report.founder,
        "amount": item.price_bill or 0,
        "priceBill": item.price_bill or 0,
        "pricePerUnit": item.price_per_unit or 0,
        "neoRefNo": item.neo_ref_no or "-",
        "ncrNumber": report.ncr_no,
        "problemOtherText": report.problem_other_text,
        "problemDetail": report.problem_detail,
        # Root cause and cost come from the item
        "rootCause": item.problem_source,
        "problemSource": item.problem_source,
        "hasCost": item.has_cost,
        "costAmount": item.cost_amount,
        "costResponsible": item.cost_responsible,
        # Header
        "toDept": report.to_dept,
        "copyTo": report.copy_to,
        "poNo": report.po_no,
    }
    for flag in PROBLEM_FLAGS:
        patch[flag] = header.get(flag)

    # Unknown values are left untouched on the records
    return {k: v for k, v in patch.items() if v is not None}


class NCRSyncService:
    """Keeps return records consistent with the report they were created from."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def _fan_out(self, targets: List[ReturnRecord], patch: Dict[str, Any]) -> int:
        synced = 0
        for record in targets:
            try:
                await self.store.update(f"return_records/{record.id}", patch)
                synced += 1
            except Exception as e:
                logger.error(f"Failed to sync return record {record.id}: {e}")
        return synced

    async def on_ncr_updated(
        self,
        old_report: NCRReport,
        changes: Dict[str, Any],
        records: Iterable[ReturnRecord]
    ) -> int:
        """
        Propagate an NCR edit onto its linked return records.

        Args:
            old_report: Report as it was before the edit
            changes: Partial report fields that were written
            records: Current snapshot of return records

        Returns:
            Number of records updated
        """
        targets = linked_records(old_report, records)
        if not targets:
            return 0

        new_report = merge_report(old_report, changes)
        synced = await self._fan_out(targets, build_sync_patch(new_report))
        logger.info(f"Synced NCR {new_report.ncr_no} update to {synced}/{len(targets)} return records")
        return synced

    async def on_ncr_canceled(self, report: NCRReport, records: Iterable[ReturnRecord]) -> int:
        """
        Soft-delete a report and cancel every linked return record.

        The report write is the primary operation and its failure propagates.

        Returns:
            Number of return records canceled
        """
        await self.store.update(f"ncr_reports/{report.id}", {"status": NCRStatus.CANCELED.value})

        targets = linked_records(report, records)
        canceled = await self._fan_out(targets, {"status": ReturnStatus.CANCELED.value})
        if targets:
            logger.info(f"Canceled {canceled}/{len(targets)} return records linked to NCR {report.ncr_no}")
        return canceled
