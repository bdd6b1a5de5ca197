"""Document store contract, run against the in-memory and SQL backends."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.core.document_store import (
    AtomicResult,
    InMemoryDocumentStore,
    SqlDocumentStore,
    StoreUnavailableError,
    normalize_path,
)
from app.database import build_engine, build_session_factory, init_db
from app.services.sequence_allocator import SequenceAllocator, is_sentinel

NOW = datetime(2025, 3, 14, 9, 30, tzinfo=timezone(timedelta(hours=7)))


@pytest.fixture(params=["memory", "sql"])
def run_with_store(request, tmp_path):
    """Run `scenario(store)` on a fresh store of the parametrized backend."""
    def runner(scenario):
        async def main():
            if request.param == "memory":
                await scenario(InMemoryDocumentStore())
                return
            engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
            try:
                await init_db(engine)
                await scenario(SqlDocumentStore(build_session_factory(engine)))
            finally:
                await engine.dispose()
        asyncio.run(main())
    return runner


def test_set_and_get_leaf_and_collection(run_with_store):
    async def scenario(store):
        await store.set("return_records/RT-1", {"id": "RT-1", "quantity": 2})
        await store.set("return_records/RT-2", {"id": "RT-2", "quantity": 3})

        assert await store.get("return_records/RT-1") == {"id": "RT-1", "quantity": 2}
        assert await store.get("return_records") == {
            "RT-1": {"id": "RT-1", "quantity": 2},
            "RT-2": {"id": "RT-2", "quantity": 3},
        }
        assert await store.get("return_records/RT-9") is None
        assert await store.get("ncr_reports") is None

    run_with_store(scenario)


def test_get_descends_into_document(run_with_store):
    async def scenario(store):
        await store.set("system_config", {"telegram": {"chatId": "42", "enabled": True}})
        assert await store.get("system_config/telegram") == {"chatId": "42", "enabled": True}
        assert await store.get("system_config/telegram/chatId") == "42"
        assert await store.get("system_config/missing") is None

    run_with_store(scenario)


def test_set_replaces_and_strips_nulls(run_with_store):
    async def scenario(store):
        await store.set("return_records/RT-1", {"id": "RT-1", "notes": "a"})
        await store.set("return_records/RT-1", {"id": "RT-1", "notes": None, "unit": "Box"})
        assert await store.get("return_records/RT-1") == {"id": "RT-1", "unit": "Box"}

    run_with_store(scenario)


def test_update_merges_and_none_deletes(run_with_store):
    async def scenario(store):
        await store.set("return_records/RT-1", {"id": "RT-1", "status": "Requested", "notes": "x"})
        await store.update("return_records/RT-1", {"status": "Canceled", "notes": None})
        assert await store.get("return_records/RT-1") == {"id": "RT-1", "status": "Canceled"}

        # update creates a missing document
        await store.update("return_records/RT-2", {"id": "RT-2"})
        assert await store.get("return_records/RT-2") == {"id": "RT-2"}

    run_with_store(scenario)


def test_remove_deletes_subtree(run_with_store):
    async def scenario(store):
        await store.set("return_records/RT-1", {"id": "RT-1"})
        await store.set("return_records/RT-2", {"id": "RT-2"})
        await store.set("ncr_reports/NCR-1", {"id": "NCR-1"})

        await store.remove("return_records/RT-1")
        assert await store.get("return_records") == {"RT-2": {"id": "RT-2"}}

        await store.remove("return_records")
        assert await store.get("return_records") is None
        assert await store.get("ncr_reports/NCR-1") == {"id": "NCR-1"}

    run_with_store(scenario)


def test_run_atomic_creates_and_increments(run_with_store):
    def bump(current):
        current = current or {"lastNumber": 0}
        return {**current, "lastNumber": current["lastNumber"] + 1}

    async def scenario(store):
        first = await store.run_atomic("counters/ncr_counter", bump)
        second = await store.run_atomic("counters/ncr_counter", bump)
        assert first == AtomicResult(committed=True, value={"lastNumber": 1})
        assert second.committed and second.value == {"lastNumber": 2}
        assert await store.get("counters/ncr_counter") == {"lastNumber": 2}

    run_with_store(scenario)


def test_run_atomic_abort_writes_nothing(run_with_store):
    async def scenario(store):
        await store.set("counters/ncr_counter", {"lastNumber": 7})
        result = await store.run_atomic("counters/ncr_counter", lambda current: None)
        assert not result.committed
        assert result.value == {"lastNumber": 7}
        assert await store.get("counters/ncr_counter") == {"lastNumber": 7}

    run_with_store(scenario)


def test_run_atomic_propagates_update_fn_errors(run_with_store):
    def explode(current):
        raise RuntimeError("boom")

    async def scenario(store):
        await store.set("return_records/RT-1", {"id": "RT-1", "status": "Requested"})
        with pytest.raises(RuntimeError):
            await store.run_atomic("return_records/RT-1", explode)
        assert await store.get("return_records/RT-1") == {"id": "RT-1", "status": "Requested"}

    run_with_store(scenario)


def test_subscribe_pushes_current_and_changes(run_with_store):
    async def scenario(store):
        await store.set("return_records/RT-1", {"id": "RT-1"})
        received = []
        unsubscribe = await store.subscribe("return_records", received.append)
        assert received == [{"RT-1": {"id": "RT-1"}}]

        await store.set("return_records/RT-2", {"id": "RT-2"})
        assert received[-1] == {"RT-1": {"id": "RT-1"}, "RT-2": {"id": "RT-2"}}

        # Writes elsewhere do not notify
        await store.set("ncr_reports/NCR-1", {"id": "NCR-1"})
        assert len(received) == 2

        unsubscribe()
        await store.remove("return_records/RT-1")
        assert len(received) == 2

    run_with_store(scenario)


def test_batch_defers_notifications_to_one_call(run_with_store):
    async def scenario(store):
        received = []
        await store.subscribe("return_records", received.append)
        async with store.batch():
            for n in range(1, 4):
                await store.set(f"return_records/RT-{n}", {"id": f"RT-{n}"})
            async with store.batch():
                await store.remove("return_records/RT-3")
            await store.set("ncr_reports/NCR-1", {"id": "NCR-1"})
            assert received == [None]

        assert received == [None, {"RT-1": {"id": "RT-1"}, "RT-2": {"id": "RT-2"}}]
        await store.set("return_records/RT-4", {"id": "RT-4"})
        assert len(received) == 3

    run_with_store(scenario)


def test_failing_subscriber_does_not_break_writes(run_with_store):
    calls = []

    def bad_listener(value):
        calls.append(value)
        if value is not None:
            raise RuntimeError("listener failed")

    async def scenario(store):
        good = []
        await store.subscribe("return_records", bad_listener)
        await store.subscribe("return_records", good.append)

        await store.set("return_records/RT-1", {"id": "RT-1"})
        assert await store.get("return_records/RT-1") == {"id": "RT-1"}
        assert good[-1] == {"RT-1": {"id": "RT-1"}}
        assert len(calls) == 2

    run_with_store(scenario)


def test_values_are_copied(run_with_store):
    async def scenario(store):
        doc = {"id": "RT-1", "item": {"quantity": 1}}
        await store.set("return_records/RT-1", doc)
        doc["item"]["quantity"] = 99

        read = await store.get("return_records/RT-1")
        read["item"]["quantity"] = 50
        assert await store.get("return_records/RT-1") == {"id": "RT-1", "item": {"quantity": 1}}

    run_with_store(scenario)


def test_concurrent_run_atomic_loses_no_update(run_with_store):
    async def scenario(store):
        def bump(current):
            return {"lastNumber": (current or {}).get("lastNumber", 0) + 1}

        results = await asyncio.gather(*[
            store.run_atomic("counters/c", bump, max_retries=100) for _ in range(20)
        ])
        assert all(r.committed for r in results)
        assert sorted(r.value["lastNumber"] for r in results) == list(range(1, 21))
        assert await store.get("counters/c") == {"lastNumber": 20}

    run_with_store(scenario)


def test_concurrent_allocation_on_sql_store_hands_out_unique_numbers(tmp_path):
    async def main():
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
        try:
            await init_db(engine)
            store = SqlDocumentStore(build_session_factory(engine), max_retries=200)
            allocator = SequenceAllocator(store, clock=lambda: NOW)
            numbers = await asyncio.gather(*[allocator.allocate("ncr") for _ in range(30)])
            return numbers, await allocator.current("ncr")
        finally:
            await engine.dispose()

    numbers, counter = asyncio.run(main())
    assert not any(is_sentinel(n) for n in numbers)
    assert sorted(numbers) == [f"NCR-2025-{n:04d}" for n in range(1, 31)]
    assert counter == {"year": 2025, "lastNumber": 30}


def test_empty_path_is_rejected():
    with pytest.raises(ValueError):
        normalize_path(" / ")
    assert normalize_path("/return_records//RT-1/") == "return_records/RT-1"


def test_unreachable_database_maps_to_store_unavailable(tmp_path):
    async def main():
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'store.db'}")
        try:
            store = SqlDocumentStore(build_session_factory(engine))
            with pytest.raises(StoreUnavailableError):
                await store.get("return_records")
        finally:
            await engine.dispose()

    asyncio.run(main())
