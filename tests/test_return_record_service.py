"""Tests for return record intake, edits, transitions, split and pickup."""
import asyncio

import pytest

from app.core.document_store import AtomicResult, InMemoryDocumentStore, StoreUnavailableError
from app.core.security import InvalidSecretError
from app.services.document_lock_guard import LockReason
from app.services.return_record_service import (
    AllocationError,
    RecordNotFoundError,
    SplitError,
)
from app.services.return_state_machine import InvalidTransitionError, TransitionAction

ADMIN_SECRET = "s3cret"


def intake_item(**overrides):
    item = {
        "documentNo": "R-100",
        "productCode": "P1",
        "productName": "Widget",
        "quantity": 4,
        "unit": "Box",
        "branch": "Bangkok",
        "customerName": "Acme Retail",
    }
    item.update(overrides)
    return item


class CounterlessStore(InMemoryDocumentStore):
    """Counters never commit; everything else works."""

    async def run_atomic(self, path, update_fn, max_retries=None):
        if path.startswith("counters/"):
            return AtomicResult(committed=False)
        return await super().run_atomic(path, update_fn, max_retries)


class ReadOnlyRecordsStore(InMemoryDocumentStore):
    async def set(self, path, value):
        if path.startswith("return_records/"):
            raise StoreUnavailableError("write refused")
        await super().set(path, value)


def run(engine, scenario):
    async def main():
        await engine.start()
        try:
            return await scenario(engine)
        finally:
            await engine.stop()
    return asyncio.run(main())


def test_intake_allocates_numbers_and_stamps_request(make_engine):
    async def scenario(engine):
        results = await engine.returns.create_requests([intake_item(), intake_item(productCode="P2")])
        return results, await engine.store.get("return_records")

    results, stored = run(make_engine(), scenario)
    assert [r.ok for r in results] == [True, True]
    assert sorted(stored) == ["RT-2025-0001", "RT-2025-0002"]
    first = stored["RT-2025-0001"]
    assert first["status"] == "Requested"
    assert first["documentType"] == "LOGISTICS"
    assert first["date"] == "2025-03-14"
    assert first["dateRequested"].startswith("2025-03-14T09:30")


def test_intake_refuses_duplicates_without_consuming_numbers(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item()])
        (denied,) = await engine.returns.create_requests([intake_item(documentNo=" r-100 ", productCode="p1")])
        return denied, await engine.allocator.current("return")

    denied, counter = run(make_engine(), scenario)
    assert not denied.ok
    assert denied.decision.reason == LockReason.EXACT_DUPLICATE
    assert counter["lastNumber"] == 1


def test_intake_refuses_items_for_processed_documents(make_engine):
    async def scenario(engine):
        (created,) = await engine.returns.create_requests([intake_item()])
        await engine.returns.transition(created.record.id, TransitionAction.SHIP_TO_HUB, "Requested")
        (denied,) = await engine.returns.create_requests([intake_item(productCode="P2")])
        return denied

    denied = run(make_engine(), scenario)
    assert denied.decision.reason == LockReason.PROCESSING_LOCKED


def test_intake_reports_allocation_sentinel(make_engine):
    async def scenario(engine):
        results = await engine.returns.create_requests([intake_item()])
        return results, await engine.store.get("return_records")

    (result,), stored = run(make_engine(CounterlessStore()), scenario)
    assert not result.ok
    assert result.sentinel.startswith("RT-2025-ERR")
    assert stored is None


def test_failed_record_write_rolls_the_counter_back(make_engine):
    async def scenario(engine):
        with pytest.raises(StoreUnavailableError):
            await engine.returns.create_requests([intake_item()])
        return await engine.allocator.current("return")

    assert run(make_engine(ReadOnlyRecordsStore()), scenario)["lastNumber"] == 0


def test_update_record_reapplies_the_lock_rule(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item(), intake_item(productCode="P2")])
        clash = await engine.returns.update_record("RT-2025-0002", {"productCode": "P1"})
        fine = await engine.returns.update_record("RT-2025-0002", {"quantity": 7, "notes": "recount"})
        return clash, fine

    clash, fine = run(make_engine(), scenario)
    assert clash.decision.reason == LockReason.EXACT_DUPLICATE
    assert fine.ok
    assert fine.record.quantity == 7
    assert fine.record.notes == "recount"


def test_update_record_refuses_status_changes(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item()])
        with pytest.raises(InvalidTransitionError):
            await engine.returns.update_record("RT-2025-0001", {"status": "Completed"})

    run(make_engine(), scenario)


def test_ncr_derived_records_skip_the_lock_rule(make_engine, make_record):
    store = InMemoryDocumentStore({"return_records": {
        "NCR-2025-0001-1": make_record(
            "NCR-2025-0001-1", ncrNumber="NCR-2025-0001", documentType="NCR", refNo="R-9", status="NCR_InTransit"
        ),
    }})

    async def scenario(engine):
        return await engine.returns.update_record("NCR-2025-0001-1", {"quantity": 1})

    assert run(make_engine(store), scenario).ok


def test_stale_transition_does_not_overwrite(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item()])
        await engine.returns.transition("RT-2025-0001", TransitionAction.SHIP_TO_HUB, "Requested")
        with pytest.raises(InvalidTransitionError):
            await engine.returns.transition("RT-2025-0001", TransitionAction.RETURN_TO_SUPPLIER, "Requested")
        return await engine.returns.get("RT-2025-0001")

    record = run(make_engine(), scenario)
    assert record.status == "NCR_InTransit"
    assert record.disposition is None


def test_transition_of_unknown_record(make_engine):
    async def scenario(engine):
        with pytest.raises(RecordNotFoundError):
            await engine.returns.transition("RT-404", TransitionAction.CANCEL, None)

    run(make_engine(), scenario)


def test_undo_requires_the_shared_secret(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item()])
        await engine.returns.transition("RT-2025-0001", TransitionAction.SCHEDULE_PICKUP, "Requested")
        with pytest.raises(InvalidSecretError):
            await engine.returns.undo("RT-2025-0001", "guess")
        return await engine.returns.undo("RT-2025-0001", ADMIN_SECRET, "PickupScheduled")

    assert run(make_engine(), scenario).status == "COL_JobAccepted"


def test_undo_is_disabled_without_a_configured_secret(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item()])
        await engine.returns.transition("RT-2025-0001", TransitionAction.SCHEDULE_PICKUP, "Requested")
        with pytest.raises(InvalidSecretError):
            await engine.returns.undo("RT-2025-0001", "")

    run(make_engine(admin_secret=""), scenario)


def test_cancel_is_a_soft_delete_and_purge_needs_the_secret(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item()])
        canceled = await engine.returns.cancel("RT-2025-0001", "Requested")
        with pytest.raises(InvalidSecretError):
            await engine.returns.purge("RT-2025-0001", None)
        still_there = await engine.store.get("return_records/RT-2025-0001")
        await engine.returns.purge("RT-2025-0001", ADMIN_SECRET)
        return canceled, still_there, await engine.store.get("return_records/RT-2025-0001")

    canceled, still_there, gone = run(make_engine(), scenario)
    assert canceled.status == "Canceled"
    assert still_there["status"] == "Canceled"
    assert gone is None


def test_set_disposition_after_qc(make_engine, make_record):
    store = InMemoryDocumentStore({"return_records": {"RT-1": make_record("RT-1", status="NCR_QCCompleted")}})

    async def scenario(engine):
        return await engine.returns.set_disposition("RT-1", "Claim", {"claimRef": "C-1"})

    record = run(make_engine(store), scenario)
    assert record.disposition == "Claim"
    assert record.to_document()["claimRef"] == "C-1"


def test_split_fans_out_quantities(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item(quantity=10)])
        parts = await engine.returns.split("RT-2025-0001", [6, 3, 1])
        return parts, await engine.store.get("return_records")

    parts, stored = run(make_engine(), scenario)
    assert [(p.id, p.quantity) for p in parts] == [
        ("RT-2025-0001", 6), ("RT-2025-0001-S1", 3), ("RT-2025-0001-S2", 1),
    ]
    assert stored["RT-2025-0001-S1"]["splitFrom"] == "RT-2025-0001"
    assert stored["RT-2025-0001-S1"]["documentNo"] == "R-100"
    assert stored["RT-2025-0001-S2"]["status"] == "Requested"


def test_split_rejects_bad_quantities(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item(quantity=10)])
        for quantities in ([10], [5, 4], [11, -1], [10, 0]):
            with pytest.raises(SplitError):
                await engine.returns.split("RT-2025-0001", quantities)
        return await engine.returns.get("RT-2025-0001")

    assert run(make_engine(), scenario).quantity == 10


def test_schedule_pickup_books_requested_records(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item(), intake_item(productCode="P2"), intake_item(documentNo="R-200")])
        await engine.returns.transition("RT-2025-0003", TransitionAction.SHIP_TO_HUB, "Requested")
        result = await engine.returns.schedule_pickup(
            ["RT-2025-0001", "RT-2025-0002", "RT-2025-0003", "RT-404"], {"driver": "Niran", "status": "x"}
        )
        return result, await engine.store.get("return_records")

    result, stored = run(make_engine(), scenario)
    assert result.collection_order_id == "COL-202503-0001"
    assert result.moved == ["RT-2025-0001", "RT-2025-0002"]
    assert set(result.failed) == {"RT-2025-0003", "RT-404"}
    assert stored["RT-2025-0001"]["status"] == "PickupScheduled"
    assert stored["RT-2025-0001"]["collectionOrderId"] == "COL-202503-0001"
    assert stored["RT-2025-0001"]["driver"] == "Niran"


def test_schedule_pickup_with_nothing_to_move_gives_the_number_back(make_engine):
    async def scenario(engine):
        result = await engine.returns.schedule_pickup(["RT-404"])
        return result, await engine.allocator.current("collection")

    result, counter = run(make_engine(), scenario)
    assert result.moved == []
    assert counter["lastNumber"] == 0


def test_schedule_pickup_raises_on_allocation_failure(make_engine):
    async def scenario(engine):
        with pytest.raises(AllocationError):
            await engine.returns.schedule_pickup(["RT-1"])

    run(make_engine(CounterlessStore()), scenario)


def test_list_records_filters(make_engine):
    async def scenario(engine):
        await engine.returns.create_requests([intake_item(), intake_item(productCode="P2")])
        await engine.returns.cancel("RT-2025-0002")
        return (
            engine.returns.list_records(status="Canceled"),
            engine.returns.list_records(status="Requested"),
            engine.returns.list_records(),
        )

    canceled, requested, everything = run(make_engine(), scenario)
    assert [r.id for r in canceled] == ["RT-2025-0002"]
    assert [r.id for r in requested] == ["RT-2025-0001"]
    assert len(everything) == 2
