"""
Returns Engine - owns the store, snapshot cache and services for one process.

Usage:
    engine = build_returns_engine()
    await engine.start()
    ...
    await engine.stop()
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from app.config import settings
from app.core.document_store import DocumentStore, build_document_store
from app.jobs import reconciliation
from app.services.ncr_service import NCRService
from app.services.ncr_sync_service import NCRSyncService
from app.services.notification_service import NotificationService
from app.services.return_record_service import ReturnRecordService
from app.services.sequence_allocator import SequenceAllocator, local_now
from app.services.snapshot_cache import SnapshotCache

logger = logging.getLogger(__name__)


class ReturnsEngine:
    """Container wiring the engine components around one document store."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Callable[[], datetime]] = None,
        notifier: Optional[NotificationService] = None,
        admin_secret: Optional[str] = None,
        ncr_retry_delay: Optional[float] = None
    ):
        clock = clock or local_now
        self.store = store
        self.admin_secret = settings.ADMIN_SECRET if admin_secret is None else admin_secret
        self.cache = SnapshotCache(store)
        self.allocator = SequenceAllocator(store, clock=clock)
        self.notifier = notifier or NotificationService(lambda: self.cache.snapshot.system_config)
        self.sync = NCRSyncService(store)
        self.returns = ReturnRecordService(
            store, self.cache, self.allocator,
            notifier=self.notifier, admin_secret=self.admin_secret, clock=clock,
        )
        self.ncr = NCRService(
            store, self.cache, self.allocator, self.sync,
            notifier=self.notifier, clock=clock, retry_delay=ncr_retry_delay,
        )

    async def start(self) -> None:
        await self.cache.start()
        logger.info("Returns engine started")

    async def stop(self) -> None:
        self.cache.stop()
        await self.notifier.drain()
        logger.info("Returns engine stopped")

    async def run_orphan_sweep(self) -> int:
        snapshot = await self.cache.refresh()
        return await reconciliation.run_orphan_sweep(self.store, snapshot)

    async def run_repair_sweep(self) -> int:
        snapshot = await self.cache.refresh()
        return await reconciliation.run_repair_sweep(self.store, snapshot)


def build_returns_engine(backend: Optional[str] = None) -> ReturnsEngine:
    """Create an engine over the configured store backend."""
    return ReturnsEngine(build_document_store(backend))
