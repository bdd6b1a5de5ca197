"""
Snapshot Cache of return records and NCR reports.

Owns the in-process view of the two collections. Each store push replaces
the affected tuple wholesale and publishes a new immutable Snapshot; nothing
ever mutates a published snapshot. Engine functions take
`snapshot.records` / `snapshot.reports` as explicit arguments.

Usage:
    cache = SnapshotCache(store)
    await cache.start()
    decision = can_write(doc_no, product, cache.snapshot.records)
    cache.stop()
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import date
from types import MappingProxyType
from typing import Any, Callable, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from app.core.document_store import DocumentStore
from app.schemas.ncr import NCRReport
from app.schemas.return_record import ReturnRecord

logger = logging.getLogger(__name__)

RECORDS_PATH = "return_records"
REPORTS_PATH = "ncr_reports"
CONFIG_PATH = "system_config"

MISSING_PRODUCT_NAME = "Product name not found"

# Fields the workflow cannot do without
REQUIRED_STRING_FIELDS = ("id", "date", "status", "branch", "customerName", "productCode")


@dataclass(frozen=True)
class Snapshot:
    records: Tuple[ReturnRecord, ...] = ()
    reports: Tuple[NCRReport, ...] = ()
    system_config: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def get_record(self, record_id: str) -> Optional[ReturnRecord]:
        return next((r for r in self.records if r.id == record_id), None)

    def get_report(self, report_id: str) -> Optional[NCRReport]:
        return next((r for r in self.reports if r.id == report_id), None)


def _today() -> str:
    return date.today().isoformat()


def _sort_newest_first(items: List[Any]) -> Tuple[Any, ...]:
    return tuple(sorted(items, key=lambda item: item.date or "", reverse=True))


def parse_records(raw: Optional[Mapping[str, Any]]) -> Tuple[ReturnRecord, ...]:
    """
    Harden raw return_records payloads into ReturnRecord models.

    Missing date -> today, missing productName -> placeholder. Records with a
    bad required string or an unparseable quantity are dropped with a warning.
    """
    if not isinstance(raw, Mapping):
        return ()

    records = []
    for key, value in raw.items():
        if not isinstance(value, Mapping):
            logger.warning(f"Filtering out return record '{key}': not an object")
            continue

        data = dict(value)
        data["date"] = data.get("date") or _today()
        data["productName"] = data.get("productName") or MISSING_PRODUCT_NAME

        bad_field = next((f for f in REQUIRED_STRING_FIELDS if not isinstance(data.get(f), str)), None)
        if bad_field:
            logger.warning(f"Filtering out return record '{key}': missing/bad {bad_field}")
            continue

        quantity = data.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)):
            try:
                data["quantity"] = float(quantity)
            except (TypeError, ValueError):
                logger.warning(f"Filtering out return record '{key}': bad quantity {quantity!r}")
                continue

        try:
            records.append(ReturnRecord.from_document(data))
        except ValidationError as e:
            logger.warning(f"Filtering out return record '{key}': {e.error_count()} validation errors")

    return _sort_newest_first(records)


def parse_reports(raw: Optional[Mapping[str, Any]]) -> Tuple[NCRReport, ...]:
    """Normalize raw ncr_reports payloads (flat or nested) into NCRReport models."""
    if not isinstance(raw, Mapping):
        return ()

    reports = []
    for key, value in raw.items():
        if not isinstance(value, Mapping):
            logger.warning(f"Filtering out NCR report '{key}': not an object")
            continue
        data = dict(value)
        if not isinstance(data.get("date"), str) or not data.get("date"):
            data["date"] = _today()
        if not isinstance(data.get("id"), str) or not data.get("id"):
            data["id"] = key
        try:
            reports.append(NCRReport.from_document(data, key=key))
        except ValidationError as e:
            logger.warning(f"Filtering out NCR report '{key}': {e.error_count()} validation errors")

    logger.debug(f"NCR reports: raw={len(raw)}, valid={len(reports)}")
    return _sort_newest_first(reports)


class SnapshotCache:
    """Subscription-refreshed, read-only snapshot of records and reports."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self._snapshot = Snapshot()
        self._unsubscribers: List[Callable[[], None]] = []

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def started(self) -> bool:
        return bool(self._unsubscribers)

    def _on_records(self, raw: Optional[Mapping[str, Any]]) -> None:
        self._snapshot = replace(self._snapshot, records=parse_records(raw))

    def _on_reports(self, raw: Optional[Mapping[str, Any]]) -> None:
        self._snapshot = replace(self._snapshot, reports=parse_reports(raw))

    def _on_config(self, raw: Optional[Mapping[str, Any]]) -> None:
        config = dict(raw) if isinstance(raw, Mapping) else {}
        self._snapshot = replace(self._snapshot, system_config=MappingProxyType(config))

    async def start(self) -> None:
        if self.started:
            return
        self._unsubscribers = [
            await self.store.subscribe(RECORDS_PATH, self._on_records),
            await self.store.subscribe(REPORTS_PATH, self._on_reports),
            await self.store.subscribe(CONFIG_PATH, self._on_config),
        ]
        logger.info(
            f"Snapshot cache started: {len(self._snapshot.records)} records, "
            f"{len(self._snapshot.reports)} reports"
        )

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        logger.info("Snapshot cache stopped")

    async def refresh(self) -> Snapshot:
        """Re-read both collections, picking up writes from other processes."""
        self._on_records(await self.store.get(RECORDS_PATH))
        self._on_reports(await self.store.get(REPORTS_PATH))
        self._on_config(await self.store.get(CONFIG_PATH))
        return self._snapshot
