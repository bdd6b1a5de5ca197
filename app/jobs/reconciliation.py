"""
Reconciliation Jobs

On-demand administrative sweeps that detect and repair divergence between
NCR reports and the return records projected from them:

- Orphan sweep: hard-deletes return records whose NCR is gone or canceled
- Repair sweep: creates the missing return record for active NCR reports

Both work over the cached snapshot, attempt every item independently, and
return a count instead of raising on partial failure. Both are idempotent:
a second run with no intervening writes finds nothing to do.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Collection, Dict, List, Optional

from app.core.document_store import DocumentStore
from app.schemas.ncr import NCRReport, NCRStatus
from app.schemas.return_record import (
    PROBLEM_FLAGS,
    Disposition,
    ReturnRecord,
    ReturnStatus,
)
from app.services.snapshot_cache import Snapshot

logger = logging.getLogger(__name__)

NCR_ID_PREFIX = "NCR"


def find_orphans(records: List[ReturnRecord], reports: List[NCRReport]) -> List[str]:
    """
    Ids of return records whose originating NCR is missing or canceled.

    A record is NCR-linked if it has an ncrNumber or its id starts with "NCR".
    The parent is any report whose ncrNo or id equals that key; when several
    match, reports for the same product decide.
    """
    orphan_ids = []
    for record in records:
        key = (record.ncr_number or "").strip()
        if not key and record.id.startswith(NCR_ID_PREFIX):
            key = record.id.strip()
        if not key:
            continue

        candidates = [rep for rep in reports if rep.ncr_no == key or rep.id == key]
        same_product = [
            rep for rep in candidates
            if rep.item.product_code and rep.item.product_code == record.product_code
        ]
        parents = same_product or candidates
        if all(rep.status == NCRStatus.CANCELED.value for rep in parents):
            orphan_ids.append(record.id)
    return orphan_ids


def find_missing(records: List[ReturnRecord], reports: List[NCRReport]) -> List[NCRReport]:
    """Active reports whose ncrNo appears on no return record."""
    existing = {r.ncr_number for r in records if r.ncr_number}
    return [
        rep for rep in reports
        if rep.status != NCRStatus.CANCELED.value and rep.ncr_no and rep.ncr_no not in existing
    ]


def generate_repair_id(now: Optional[datetime] = None, taken: Collection[str] = ()) -> str:
    """RT-<year>-<epoch ms>-<rand>; repair artifacts never consume a sequence number."""
    now = now or datetime.now(timezone.utc)
    prefix = f"RT-{now.year}-{int(now.timestamp() * 1000)}"
    while True:
        repair_id = f"{prefix}-{uuid.uuid4().hex[:8]}"
        if repair_id not in taken:
            return repair_id


def build_repair_record(
    report: NCRReport,
    now: Optional[datetime] = None,
    taken: Collection[str] = ()
) -> Dict[str, Any]:
    """Synthesize the return record document an NCR report should have produced."""
    now = now or datetime.now(timezone.utc)
    item = report.item
    header = report.to_document()
    is_settled = bool(report.is_field_settled)
    is_record_only = bool(report.is_record_only)
    report_date = report.date or now.date().isoformat()

    if is_settled:
        status = ReturnStatus.SETTLED_ON_FIELD
    elif is_record_only:
        status = ReturnStatus.COMPLETED
    else:
        status = ReturnStatus.REQUESTED

    record = {
        "id": generate_repair_id(now, taken),
        "refNo": item.ref_no or report.po_no or "-",
        "date": report_date,
        "dateRequested": report_date,
        "productName": item.product_name or "Unknown",
        "productCode": item.product_code or "N/A",
        "quantity": item.quantity or 1,
        "unit": item.unit or "Unit",
        "customerName": item.customer_name or "Unknown",
        "destinationCustomer": item.destination_customer or "",
        "branch": item.branch or "Head Office",
        "category": "General",
        "ncrNumber": report.ncr_no,
        "documentType": "NCR",
        "founder": report.founder or "",
        "status": status.value,
        "isRecordOnly": is_record_only,
        "disposition": (Disposition.INTERNAL_USE if is_record_only else Disposition.PENDING).value,
        "condition": "New" if is_record_only else "Unknown",
        "isFieldSettled": is_settled,
        "preliminaryRoute": report.preliminary_route or "Other",
        "reason": f"NCR: {report.problem_detail or '-'}",
        "amount": item.price_bill or 0,
        "priceBill": item.price_bill or 0,
        "pricePerUnit": item.price_per_unit or 0,
        "priceSell": item.price_sell or 0,
        "neoRefNo": item.neo_ref_no or "-",
        "problemSource": report.problem_source or "Customer",
        "problemAnalysis": report.problem_analysis or "Customer",
        "problemDetail": report.problem_detail or "",
        "hasCost": bool(report.has_cost),
        "costAmount": report.cost_amount or 0,
        "costResponsible": report.cost_responsible or "",
        "rootCause": report.problem_source or "NCR",
        "problemOtherText": report.problem_other_text,
    }
    if status == ReturnStatus.COMPLETED:
        record["dateCompleted"] = now.isoformat()
    for flag in PROBLEM_FLAGS:
        record[flag] = header.get(flag)

    return {k: v for k, v in record.items() if v is not None}


async def run_orphan_sweep(store: DocumentStore, snapshot: Snapshot) -> int:
    """
    Delete return records whose NCR report is missing or canceled.

    Returns:
        Number of records removed
    """
    logger.info("Starting orphan sweep...")
    orphan_ids = find_orphans(list(snapshot.records), list(snapshot.reports))
    if not orphan_ids:
        logger.info("Orphan sweep: no orphans found")
        return 0

    logger.warning(f"Orphan sweep: found {len(orphan_ids)} orphaned return records")
    deleted_count = 0
    async with store.batch():
        for record_id in orphan_ids:
            try:
                await store.remove(f"return_records/{record_id}")
                deleted_count += 1
            except Exception as e:
                logger.error(f"Failed to delete orphan {record_id}: {e}")

    logger.info(f"Orphan sweep complete: removed {deleted_count} records")
    return deleted_count


async def run_repair_sweep(store: DocumentStore, snapshot: Snapshot) -> int:
    """
    Create return records for active NCR reports that have none.

    Returns:
        Number of records created
    """
    logger.info("Starting NCR -> return record repair...")
    missing = find_missing(list(snapshot.records), list(snapshot.reports))
    if not missing:
        logger.info("Repair sweep: no missing return records")
        return 0

    ncr_numbers = {rep.ncr_no for rep in missing}
    logger.info(f"Repair sweep: {len(missing)} NCR items across {len(ncr_numbers)} NCR numbers need repair")

    taken = {r.id for r in snapshot.records}
    repaired_count = 0
    async with store.batch():
        for report in missing:
            try:
                record = build_repair_record(report, taken=taken)
                taken.add(record["id"])
                await store.set(f"return_records/{record['id']}", record)
                repaired_count += 1
                logger.info(f"Repaired {report.ncr_no} -> {record['id']}")
            except Exception as e:
                logger.error(f"Failed to repair {report.ncr_no}: {e}")

    logger.info(f"Repair sweep complete: {repaired_count} return records created")
    return repaired_count
