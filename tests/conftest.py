"""
Shared fixtures for the engine test suite.

Tests are plain pytest functions; async scenarios run through asyncio.run
so each test gets its own event loop and its own in-memory store.
"""
from datetime import datetime, timedelta, timezone

import pytest

from app.core.document_store import InMemoryDocumentStore
from app.services.engine import ReturnsEngine

BANGKOK = timezone(timedelta(hours=7))
ADMIN_SECRET = "s3cret"


class FixedClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 14, 9, 30, tzinfo=BANGKOK))


@pytest.fixture
def make_record():
    """Factory for raw return record documents."""
    def factory(record_id: str, **overrides):
        doc = {
            "id": record_id,
            "date": "2025-03-01",
            "status": "Requested",
            "branch": "Bangkok",
            "customerName": "Acme Retail",
            "productCode": "P1",
            "productName": "Widget",
            "quantity": 5,
            "unit": "Box",
        }
        doc.update(overrides)
        return doc
    return factory


@pytest.fixture
def make_report():
    """Factory for raw NCR report documents (nested item shape)."""
    def factory(report_id: str = "NCR-2025-0001-1", ncr_no: str = "NCR-2025-0001", item=None, **overrides):
        doc = {
            "id": report_id,
            "ncrNo": ncr_no,
            "date": "2025-03-01",
            "status": "Open",
            "founder": "Somchai",
            "problemDamaged": True,
            "problemDetail": "Crushed carton",
            "item": {
                "productCode": "P1",
                "productName": "Widget",
                "quantity": 5,
                "unit": "Box",
                "branch": "Bangkok",
                "customerName": "Acme Retail",
            },
        }
        doc["item"].update(item or {})
        doc.update(overrides)
        return doc
    return factory


@pytest.fixture
def make_engine(clock):
    """Factory for engines over an in-memory store with a pinned clock."""
    def factory(store=None, **kwargs):
        kwargs.setdefault("admin_secret", ADMIN_SECRET)
        kwargs.setdefault("ncr_retry_delay", 0)
        return ReturnsEngine(store if store is not None else InMemoryDocumentStore(), clock=clock, **kwargs)
    return factory
