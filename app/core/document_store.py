"""
Hierarchical Document Store

Key-value documents under slash separated paths, with change subscriptions
and a single-document atomic read-modify-write ("run_atomic").

Supports:
1. SQL backend over SQLAlchemy async (production)
2. In-memory backend (development/testing)

Usage:
    store = build_document_store()

    await store.set("return_records/RT-2025-0001", {...})
    records = await store.get("return_records")   # {id: doc}

    result = await store.run_atomic("counters/ncr_counter", bump)
    if result.committed:
        ...

run_atomic contract:
    update_fn receives a private copy of the current value (None when
    absent) and returns the new value, or None to abort. Conflicting writers
    are retried; when the retry budget is exhausted the result reports
    committed=False. Exceptions raised by update_fn propagate to the caller
    and nothing is written.
"""
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import get_db_session
from app.models.document import Document

logger = logging.getLogger(__name__)

UpdateFn = Callable[[Optional[Any]], Optional[Any]]
Listener = Callable[[Optional[Any]], None]


class StoreError(Exception):
    """Base error raised by document store backends."""
    pass


class StorePermissionError(StoreError):
    """The store refused the operation (access rules or credentials)."""
    pass


class StoreUnavailableError(StoreError):
    """The store could not be reached."""
    pass


@dataclass(frozen=True)
class AtomicResult:
    """Outcome of run_atomic: whether it committed and the final value."""
    committed: bool
    value: Optional[Any] = None


def normalize_path(path: str) -> str:
    parts = [p for p in path.strip().strip("/").split("/") if p]
    if not parts:
        raise ValueError("Document path must not be empty")
    return "/".join(parts)


def is_within(path: str, prefix: str) -> bool:
    """True if `path` is `prefix` itself or lies below it."""
    return path == prefix or path.startswith(prefix + "/")


def strip_none(value: Any) -> Any:
    """Drop None entries recursively; the store never persists nulls."""
    if isinstance(value, dict):
        return {k: strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [strip_none(v) for v in value if v is not None]
    return value


class DocumentStore(ABC):
    """Abstract document store interface."""

    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = max_retries or settings.STORE_MAX_RETRIES
        self._listeners: Dict[str, List[Listener]] = {}
        self._pending: Optional[Set[str]] = None

    @abstractmethod
    async def get(self, path: str) -> Optional[Any]:
        """Get the value at path; collection paths return {key: value}."""
        pass

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Replace the value at path."""
        pass

    @abstractmethod
    async def update(self, path: str, partial: Dict[str, Any]) -> None:
        """Shallow-merge keys into the document at path (None deletes a key)."""
        pass

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Delete the value at path and everything below it."""
        pass

    @abstractmethod
    async def run_atomic(
        self,
        path: str,
        update_fn: UpdateFn,
        max_retries: Optional[int] = None
    ) -> AtomicResult:
        """Atomic read-modify-write of the single document at path."""
        pass

    async def subscribe(self, path: str, callback: Listener) -> Callable[[], None]:
        """
        Call `callback` with the current value at path now and after every
        committed write at or below it. Returns an unsubscribe function.
        """
        path = normalize_path(path)
        self._listeners.setdefault(path, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(path, [])
            if callback in listeners:
                listeners.remove(callback)
            if not listeners:
                self._listeners.pop(path, None)

        callback(await self.get(path))
        return unsubscribe

    @asynccontextmanager
    async def batch(self):
        """
        Defer change notifications until the block exits.

        Each affected subscription is then read and called once, however
        many writes the block made. Nested batches join the outer one.
        Writes from other tasks during the block are deferred as well.
        """
        if self._pending is not None:
            yield
            return
        self._pending = set()
        try:
            yield
        finally:
            pending, self._pending = self._pending, None
            await self._notify_paths(pending)

    async def _notify(self, changed_path: str) -> None:
        if self._pending is not None:
            self._pending.add(changed_path)
            return
        await self._notify_paths({changed_path})

    async def _notify_paths(self, changed_paths: Set[str]) -> None:
        for path, listeners in list(self._listeners.items()):
            if not any(is_within(changed, path) or is_within(path, changed) for changed in changed_paths):
                continue
            value = await self.get(path)
            for listener in list(listeners):
                try:
                    listener(copy.deepcopy(value))
                except Exception:
                    logger.exception(f"Subscriber for '{path}' failed")


class InMemoryDocumentStore(DocumentStore):
    """
    In-memory store for development/testing.

    Values are deep-copied on the way in and out so callers never share
    state with the store.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None, max_retries: Optional[int] = None):
        super().__init__(max_retries)
        self._root: Dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._lock = asyncio.Lock()

    def _read(self, parts: List[str]) -> Optional[Any]:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _write(self, parts: List[str], value: Any) -> None:
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def _delete(self, parts: List[str]) -> None:
        trail = [self._root]
        for part in parts[:-1]:
            node = trail[-1].get(part)
            if not isinstance(node, dict):
                return
            trail.append(node)
        trail[-1].pop(parts[-1], None)
        # Prune parents left empty by the removal
        for depth in range(len(trail) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(parts[depth - 1], None)

    async def get(self, path: str) -> Optional[Any]:
        parts = normalize_path(path).split("/")
        async with self._lock:
            return copy.deepcopy(self._read(parts))

    async def set(self, path: str, value: Any) -> None:
        path = normalize_path(path)
        async with self._lock:
            if value is None:
                self._delete(path.split("/"))
            else:
                self._write(path.split("/"), strip_none(copy.deepcopy(value)))
        await self._notify(path)

    async def update(self, path: str, partial: Dict[str, Any]) -> None:
        path = normalize_path(path)
        async with self._lock:
            current = self._read(path.split("/"))
            merged = dict(current) if isinstance(current, dict) else {}
            for key, value in copy.deepcopy(partial).items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = strip_none(value)
            self._write(path.split("/"), merged)
        await self._notify(path)

    async def remove(self, path: str) -> None:
        path = normalize_path(path)
        async with self._lock:
            self._delete(path.split("/"))
        await self._notify(path)

    async def run_atomic(
        self,
        path: str,
        update_fn: UpdateFn,
        max_retries: Optional[int] = None
    ) -> AtomicResult:
        path = normalize_path(path)
        parts = path.split("/")
        # The lock serializes writers, so the first attempt never conflicts
        async with self._lock:
            current = copy.deepcopy(self._read(parts))
            new_value = update_fn(copy.deepcopy(current))
            if new_value is None:
                return AtomicResult(committed=False, value=current)
            new_value = strip_none(copy.deepcopy(new_value))
            self._write(parts, new_value)
        await self._notify(path)
        return AtomicResult(committed=True, value=copy.deepcopy(new_value))


def _like_prefix(path: str) -> str:
    escaped = path.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}/%"


class SqlDocumentStore(DocumentStore):
    """
    SQL backend: one `documents` row per leaf document.

    run_atomic uses optimistic compare-and-swap on the row version and
    retries on conflict. Subscriptions are delivered in-process after commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_retries: Optional[int] = None
    ):
        super().__init__(max_retries)
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with get_db_session(self._session_factory) as session:
                yield session
        except OperationalError as e:
            raise StoreUnavailableError(f"Document store unreachable: {e.orig or e}") from e
        except ProgrammingError as e:
            if "permission denied" in str(e).lower():
                raise StorePermissionError(f"Document store permission denied: {e.orig or e}") from e
            raise

    @staticmethod
    def _children_clause(path: str):
        return Document.path.like(_like_prefix(path), escape="\\")

    async def get(self, path: str) -> Optional[Any]:
        path = normalize_path(path)
        async with self._session() as session:
            row = await session.get(Document, path)
            if row is not None:
                return copy.deepcopy(row.value)

            result = await session.execute(
                sa.select(Document).where(self._children_clause(path))
            )
            rows = [r for r in result.scalars().all() if is_within(r.path, path)]
            if rows:
                assembled: Dict[str, Any] = {}
                for child in rows:
                    node = assembled
                    rel = child.path[len(path) + 1:].split("/")
                    for part in rel[:-1]:
                        node = node.setdefault(part, {})
                    node[rel[-1]] = copy.deepcopy(child.value)
                return assembled

            # The path may point inside a stored document
            parts = path.split("/")
            for depth in range(len(parts) - 1, 0, -1):
                ancestor = await session.get(Document, "/".join(parts[:depth]))
                if ancestor is None:
                    continue
                node = ancestor.value
                for part in parts[depth:]:
                    if not isinstance(node, dict) or part not in node:
                        return None
                    node = node[part]
                return copy.deepcopy(node)
        return None

    async def set(self, path: str, value: Any) -> None:
        path = normalize_path(path)
        async with self._session() as session:
            await session.execute(
                sa.delete(Document).where(self._children_clause(path))
            )
            row = await session.get(Document, path)
            if value is None:
                if row is not None:
                    await session.delete(row)
            elif row is None:
                session.add(Document(path=path, value=strip_none(copy.deepcopy(value)), version=1))
            else:
                row.value = strip_none(copy.deepcopy(value))
                row.version += 1
        await self._notify(path)

    async def update(self, path: str, partial: Dict[str, Any]) -> None:
        path = normalize_path(path)
        async with self._session() as session:
            row = await session.get(Document, path, with_for_update=True)
            merged = dict(row.value) if row is not None and isinstance(row.value, dict) else {}
            for key, value in copy.deepcopy(partial).items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = strip_none(value)
            if row is None:
                session.add(Document(path=path, value=merged, version=1))
            else:
                row.value = merged
                row.version += 1
        await self._notify(path)

    async def remove(self, path: str) -> None:
        path = normalize_path(path)
        async with self._session() as session:
            await session.execute(
                sa.delete(Document).where(
                    sa.or_(Document.path == path, self._children_clause(path))
                )
            )
        await self._notify(path)

    async def run_atomic(
        self,
        path: str,
        update_fn: UpdateFn,
        max_retries: Optional[int] = None
    ) -> AtomicResult:
        path = normalize_path(path)
        attempts = max_retries or self.max_retries

        for attempt in range(1, attempts + 1):
            async with self._session() as session:
                row = await session.get(Document, path)
                current = copy.deepcopy(row.value) if row is not None else None
                version = row.version if row is not None else 0

                new_value = update_fn(copy.deepcopy(current))
                if new_value is None:
                    return AtomicResult(committed=False, value=current)
                new_value = strip_none(copy.deepcopy(new_value))

                if row is None:
                    session.add(Document(path=path, value=new_value, version=1))
                    try:
                        await session.flush()
                    except IntegrityError:
                        await session.rollback()
                        logger.debug(f"run_atomic insert conflict on '{path}' (attempt {attempt})")
                        continue
                else:
                    result = await session.execute(
                        sa.update(Document)
                        .where(Document.path == path, Document.version == version)
                        .values(
                            value=new_value,
                            version=version + 1,
                            updated_at=datetime.now(timezone.utc),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        await session.rollback()
                        logger.debug(f"run_atomic version conflict on '{path}' (attempt {attempt})")
                        continue

            await self._notify(path)
            return AtomicResult(committed=True, value=copy.deepcopy(new_value))

        logger.warning(f"run_atomic on '{path}' aborted after {attempts} attempts")
        return AtomicResult(committed=False, value=None)


def build_document_store(backend: Optional[str] = None) -> DocumentStore:
    """Create the configured store backend."""
    backend = (backend or settings.STORE_BACKEND).lower()
    if backend == "memory":
        logger.info("Using in-memory document store")
        return InMemoryDocumentStore()

    from app.database import async_session_factory
    logger.info("Using SQL document store")
    return SqlDocumentStore(async_session_factory)
