"""
Sequence Allocator for Gap-Aware Document Numbers

Numbers are allocated through the document store's atomic read-modify-write
on a single counter document per family, so concurrent writers never receive
the same number for the same period.

FORMATS:
    NCR-YYYY-NNNN      Non-conformance report   (yearly reset)
    RT-YYYY-NNNN       Return request           (yearly reset)
    COL-YYYYMM-NNNN    Collection order         (monthly reset)

USAGE:
    allocator = SequenceAllocator(store)

    ncr_no = await allocator.allocate(CounterFamily.NCR)
    if is_sentinel(ncr_no):
        # store aborted the allocation; retry the whole operation
        ...

    # the record the number was meant for failed to persist
    await allocator.rollback(CounterFamily.NCR)

FAILURE MODEL:
    allocate never raises for store failures. When the atomic update does
    not commit it returns `<PREFIX>-<year>-ERR<nn>`, detectable with
    is_sentinel(). rollback is best-effort and never raises.
"""

import logging
import random
import re
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union
from zoneinfo import ZoneInfo

from app.config import settings
from app.core.document_store import DocumentStore

logger = logging.getLogger(__name__)


class CounterFamily(str, Enum):
    NCR = "ncr"
    RETURN = "return"
    COLLECTION = "collection"


# Counter family metadata
COUNTER_METADATA = {
    CounterFamily.NCR: {"name": "Non-Conformance Report", "prefix": "NCR", "padding": 4, "monthly": False},
    CounterFamily.RETURN: {"name": "Return Request", "prefix": "RT", "padding": 4, "monthly": False},
    CounterFamily.COLLECTION: {"name": "Collection Order", "prefix": "COL", "padding": 4, "monthly": True},
}

SENTINEL_PATTERN = re.compile(r"-ERR\d+$")


def is_sentinel(number: Optional[str]) -> bool:
    """True if `number` is the failure marker returned by an aborted allocate."""
    return bool(number) and SENTINEL_PATTERN.search(number) is not None


def local_now() -> datetime:
    """Current time in the configured business timezone."""
    return datetime.now(ZoneInfo(settings.TIMEZONE))


def counter_path(family: Union[CounterFamily, str]) -> str:
    return f"counters/{CounterFamily(family).value}_counter"


class SequenceAllocator:
    """
    Allocates and rolls back document numbers per counter family.

    Counter document: {"year": 2025, "month": 3, "lastNumber": 12}
    (`month` only for the collection family).
    """

    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Callable[[], datetime]] = None,
        timezone_name: Optional[str] = None
    ):
        """
        Initialize the allocator.

        Args:
            store: Document store holding the counters
            clock: Optional callable returning "now"; used by tests to pin the period
            timezone_name: IANA timezone that decides the current period
        """
        self.store = store
        tz = ZoneInfo(timezone_name or settings.TIMEZONE)
        self._clock = clock or (lambda: datetime.now(tz))

    def _period(self, family: CounterFamily) -> Dict[str, int]:
        now = self._clock()
        period = {"year": now.year}
        if COUNTER_METADATA[family]["monthly"]:
            period["month"] = now.month
        return period

    def _next_counter(self, family: CounterFamily, current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Counter value after one allocation; resets when the period changed."""
        period = self._period(family)
        if isinstance(current, dict) and all(current.get(k) == v for k, v in period.items()):
            return {**current, "lastNumber": int(current.get("lastNumber") or 0) + 1}
        return {**period, "lastNumber": 1}

    @staticmethod
    def format_number(family: CounterFamily, counter: Dict[str, Any]) -> str:
        meta = COUNTER_METADATA[family]
        period = f"{counter['year']:04d}"
        if meta["monthly"]:
            period += f"{counter['month']:02d}"
        return f"{meta['prefix']}-{period}-{int(counter['lastNumber']):0{meta['padding']}d}"

    def _sentinel(self, family: CounterFamily) -> str:
        return f"{COUNTER_METADATA[family]['prefix']}-{self._clock().year}-ERR{random.randint(0, 99):02d}"

    async def allocate(self, family: Union[CounterFamily, str]) -> str:
        """
        Allocate the next number for a family.

        Args:
            family: Counter family (ncr, return, collection)

        Returns:
            Formatted number, e.g. NCR-2025-0001, or a sentinel on abort

        Raises:
            ValueError: If family is not a known counter family
        """
        family = CounterFamily(family)
        path = counter_path(family)

        try:
            result = await self.store.run_atomic(
                path, lambda current: self._next_counter(family, current)
            )
        except Exception as e:
            logger.error(f"Counter allocation for {family.value} failed: {e}")
            return self._sentinel(family)

        if not result.committed or not result.value:
            sentinel = self._sentinel(family)
            logger.error(f"Counter allocation for {family.value} did not commit, returning {sentinel}")
            return sentinel

        number = self.format_number(family, result.value)
        logger.info(f"Allocated {number}")
        return number

    async def rollback(self, family: Union[CounterFamily, str]) -> None:
        """Decrement lastNumber by one (floor 0). Failures are logged only."""
        family = CounterFamily(family)

        def decrement(current):
            if not isinstance(current, dict):
                return None
            return {**current, "lastNumber": max(0, int(current.get("lastNumber") or 0) - 1)}

        try:
            result = await self.store.run_atomic(counter_path(family), decrement)
            if result.committed:
                logger.info(f"Rolled back {family.value} counter to {result.value.get('lastNumber')}")
            else:
                logger.warning(f"Rollback of {family.value} counter did not commit")
        except Exception as e:
            logger.error(f"Rollback of {family.value} counter failed: {e}")

    async def current(self, family: Union[CounterFamily, str]) -> Optional[Dict[str, Any]]:
        """Return the stored counter document without incrementing."""
        return await self.store.get(counter_path(CounterFamily(family)))

    async def preview(self, family: Union[CounterFamily, str]) -> str:
        """Preview what the next allocate would return without incrementing."""
        family = CounterFamily(family)
        current = await self.current(family)
        return self.format_number(family, self._next_counter(family, current))
