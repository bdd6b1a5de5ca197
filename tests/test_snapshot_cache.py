"""Tests for payload hardening and the subscription-refreshed snapshot."""
import asyncio
from datetime import date

from app.core.document_store import InMemoryDocumentStore
from app.services.snapshot_cache import (
    MISSING_PRODUCT_NAME,
    SnapshotCache,
    parse_records,
    parse_reports,
)


def test_parse_records_fills_defaults(make_record):
    raw = {"RT-1": make_record("RT-1", date=None, productName="")}
    (record,) = parse_records(raw)
    assert record.date == date.today().isoformat()
    assert record.product_name == MISSING_PRODUCT_NAME


def test_parse_records_filters_bad_entries(make_record):
    raw = {
        "RT-1": make_record("RT-1"),
        "RT-2": make_record("RT-2", branch=None),
        "RT-3": make_record("RT-3", quantity="lots"),
        "RT-4": make_record("RT-4", status="Teleported"),
        "RT-5": make_record("RT-5", quantity=-1),
        "RT-6": "not a record",
        "RT-7": make_record("RT-7", customerName=42),
    }
    assert [r.id for r in parse_records(raw)] == ["RT-1"]


def test_parse_records_coerces_numeric_strings(make_record):
    (record,) = parse_records({"RT-1": make_record("RT-1", quantity="3")})
    assert record.quantity == 3.0


def test_parse_records_sorts_newest_first(make_record):
    raw = {
        "RT-1": make_record("RT-1", date="2025-01-05"),
        "RT-2": make_record("RT-2", date="2025-03-01"),
        "RT-3": make_record("RT-3", date="2025-02-10"),
    }
    assert [r.id for r in parse_records(raw)] == ["RT-2", "RT-3", "RT-1"]


def test_parse_records_keeps_unknown_fields(make_record):
    (record,) = parse_records({"RT-1": make_record("RT-1", legacyFlag="x")})
    assert record.to_document()["legacyFlag"] == "x"


def test_parse_reports_normalizes_flat_shape():
    raw = {
        "NCR-2025-0001-1": {
            "ncrNo": "NCR-2025-0001",
            "status": "canceled",
            "productCode": "P1",
            "quantity": 4,
            "hasCost": True,
        }
    }
    (report,) = parse_reports(raw)
    assert report.id == "NCR-2025-0001-1"
    assert report.status == "Canceled"
    assert not report.is_active
    assert report.item.product_code == "P1"
    assert report.item.quantity == 4
    assert report.item.has_cost is True
    assert report.has_cost is True

    doc = report.to_document()
    assert "productCode" not in doc
    assert doc["item"]["productCode"] == "P1"


def test_parse_reports_defaults_status_to_open(make_report):
    raw = {"A": make_report("A", status=None), "B": make_report("B", status="Archived")}
    assert {r.status for r in parse_reports(raw)} == {"Open"}


def test_parse_reports_prefers_nested_item(make_report):
    raw = {"A": {**make_report("A"), "productCode": "FLAT"}}
    (report,) = parse_reports(raw)
    assert report.item.product_code == "P1"


def test_cache_follows_store_pushes(make_record):
    async def main():
        store = InMemoryDocumentStore({"return_records": {"RT-1": make_record("RT-1")}})
        cache = SnapshotCache(store)
        await cache.start()
        first = cache.snapshot
        assert [r.id for r in first.records] == ["RT-1"]

        await store.set("return_records/RT-2", make_record("RT-2", date="2025-03-10"))
        second = cache.snapshot
        assert [r.id for r in second.records] == ["RT-2", "RT-1"]
        # Published snapshots are never mutated
        assert [r.id for r in first.records] == ["RT-1"]
        assert second.get_record("RT-2").date == "2025-03-10"

        await store.set("system_config", {"telegram": {"enabled": True}})
        assert cache.snapshot.system_config["telegram"] == {"enabled": True}

        cache.stop()
        await store.remove("return_records/RT-1")
        assert len(cache.snapshot.records) == 2

        await cache.refresh()
        assert [r.id for r in cache.snapshot.records] == ["RT-2"]

    asyncio.run(main())


def test_cache_start_is_idempotent():
    async def main():
        store = InMemoryDocumentStore()
        cache = SnapshotCache(store)
        await cache.start()
        await cache.start()
        assert cache.started
        assert sum(len(listeners) for listeners in store._listeners.values()) == 3
        cache.stop()
        assert not cache.started
        assert store._listeners == {}

    asyncio.run(main())
