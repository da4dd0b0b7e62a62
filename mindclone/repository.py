"""
Reactive repository over the memory store.

All reads and writes of the local database go through ``MemoryRepository``.
It keeps a snapshot of the whole collection (newest first) that is refreshed
after every mutation and pushed to subscribers, so consumers never re-query.

Store calls are blocking SQLite work; they run in a worker thread under a
single asyncio lock, which serializes mutations in the order they were
issued.
"""

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Union

from .memory_store import SCHEMA_VERSION, MemoryStore, StoreError
from .types import (
    Memory,
    MemoryType,
    ProcessingKind,
    new_memory_id,
    normalize_tags,
    now_ms,
)

logger = logging.getLogger(__name__)

Snapshot = list[Memory]
Subscriber = Callable[[Snapshot], None]


class AlreadyProcessingError(RuntimeError):
    """An operation of the same kind is already outstanding for the memory."""


class MemoryRepository:
    """
    Process-wide access point for memories.

    Usage:
        async with MemoryRepository(path) as repo:
            memory = await repo.add_memory(MemoryType.TEXT, "Buy milk")
            repo.subscribe(lambda snapshot: print(len(snapshot)))
    """

    def __init__(self, store: Union[MemoryStore, Path]):
        """
        Args:
            store: An open MemoryStore, or the path of its database file
        """
        self._store_arg = store
        self._store: Optional[MemoryStore] = store if isinstance(store, MemoryStore) else None
        self._lock = asyncio.Lock()
        self._records: list[Memory] = []
        self._pending: dict[str, set[ProcessingKind]] = {}
        self._subscribers: list[Subscriber] = []
        self._opened = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> "MemoryRepository":
        """Open the store (running migrations) and load the first snapshot."""
        if self._opened:
            return self
        if self._store is None:
            self._store = await asyncio.to_thread(MemoryStore, Path(self._store_arg))
        self._opened = True
        await self.refresh()
        return self

    async def close(self) -> None:
        """Close the store. Subscribers are dropped."""
        async with self._lock:
            if self._store is not None:
                self._store.close()
                self._store = None
        self._subscribers.clear()
        self._opened = False

    async def __aenter__(self) -> "MemoryRepository":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    @property
    def store(self) -> MemoryStore:
        if self._store is None:
            raise StoreError("Repository is not open")
        return self._store

    # -------------------------------------------------------------------------
    # Snapshot and subscriptions
    # -------------------------------------------------------------------------

    @property
    def memories(self) -> Snapshot:
        """Current collection, newest first, with pending state overlaid."""
        return [self._overlay(m) for m in self._records]

    def _overlay(self, memory: Memory) -> Memory:
        pending = self._pending.get(memory.id)
        return memory.with_pending(pending) if pending else memory

    def get(self, id: str) -> Optional[Memory]:
        """Memory from the current snapshot, or None."""
        for memory in self._records:
            if memory.id == id:
                return self._overlay(memory)
        return None

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for snapshot changes.

        The callback is called with the new snapshot after every mutation
        and pending-state change.

        Returns:
            A function that removes the subscription
        """
        if callback not in self._subscribers:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.memories
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber failed")

    async def refresh(self) -> Snapshot:
        """Re-read the collection from the store and notify subscribers."""
        async with self._lock:
            await self._reload()
        self._notify()
        return self.memories

    async def _reload(self) -> None:
        self._records = await asyncio.to_thread(self.store.query_all)
        live = {m.id for m in self._records}
        for id in list(self._pending):
            if id not in live:
                del self._pending[id]

    async def _mutate(self, description: str, fn: Callable[[], Any]) -> tuple[bool, Any]:
        """
        Run a store write, then reload and notify.

        Store failures are logged and leave the snapshot untouched.

        Returns:
            (succeeded, result of fn)
        """
        async with self._lock:
            try:
                result = await asyncio.to_thread(fn)
            except (StoreError, sqlite3.Error) as e:
                logger.error("Failed to %s: %s", description, e)
                return False, None
            await self._reload()
        self._notify()
        return True, result

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def add_memory(
        self,
        type: MemoryType,
        content: str,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Optional[Memory]:
        """
        Create and persist a new memory.

        Returns:
            The stored memory, or None if the store rejected it
        """
        created_at = now_ms()
        memory = Memory(
            id=new_memory_id(created_at),
            type=MemoryType(type),
            content=content,
            created_at=created_at,
            description=description,
            tags=normalize_tags(tags),
        )
        ok, stored = await self._mutate("add memory", lambda: self.store.add(memory))
        if ok:
            logger.info("Added %s memory %s", memory.type.value, memory.id)
        return stored if ok else None

    async def insert(self, memory: Memory) -> bool:
        """Persist a memory built elsewhere (keeps its id); duplicates are rejected."""
        ok, _ = await self._mutate(f"insert memory {memory.id}", lambda: self.store.add(memory))
        return ok

    async def update_memory(self, id: str, **fields: Any) -> bool:
        """
        Merge fields into an existing memory.

        Only the given fields change. Unknown ids are a logged no-op.

        Returns:
            True if the memory was updated
        """
        if not fields:
            return False
        try:
            ok, found = await self._mutate(
                f"update memory {id}", lambda: self.store.update(id, fields),
            )
        except ValueError as e:
            logger.error("Rejected update of memory %s: %s", id, e)
            return False
        return bool(ok and found)

    async def delete_memory(self, id: str) -> bool:
        """Delete a memory. Unknown ids are ignored."""
        ok, deleted = await self._mutate(
            f"delete memory {id}", lambda: self.store.delete(id),
        )
        return bool(ok and deleted)

    async def delete_multiple_memories(self, ids: Iterable[str]) -> int:
        """Delete several memories. Unknown ids are ignored."""
        ids = list(ids)
        ok, count = await self._mutate(
            f"delete {len(ids)} memories", lambda: self.store.bulk_delete(ids),
        )
        return count if ok else 0

    async def add_tags_to_multiple_memories(
        self,
        ids: Iterable[str],
        tags: Iterable[str],
    ) -> int:
        """
        Add tags to several memories atomically.

        Each memory ends up with the union of its tags and ``tags``. Either
        every targeted memory is updated or none is.

        Returns:
            Number of memories updated
        """
        ids = list(ids)
        tags = normalize_tags(tags)
        if not ids or not tags:
            return 0
        ok, count = await self._mutate(
            f"add tags to {len(ids)} memories",
            lambda: self.store.merge_tags(ids, tags),
        )
        return count if ok else 0

    # -------------------------------------------------------------------------
    # Pending AI operations
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def processing(self, id: str, kind: ProcessingKind) -> AsyncIterator[None]:
        """
        Mark an AI operation as outstanding on a memory for the duration.

        The pending state is cleared when the block exits, whatever the
        outcome.

        Raises:
            AlreadyProcessingError: If the same kind is already pending for id
        """
        kinds = self._pending.setdefault(id, set())
        if kind in kinds:
            raise AlreadyProcessingError(f"{kind.value} already running for {id}")
        kinds.add(kind)
        self._notify()
        try:
            yield
        finally:
            kinds = self._pending.get(id)
            if kinds is not None:
                kinds.discard(kind)
                if not kinds:
                    del self._pending[id]
            self._notify()

    def is_processing(self, id: str, kind: ProcessingKind) -> bool:
        return kind in self._pending.get(id, ())

    # -------------------------------------------------------------------------
    # Export / import
    # -------------------------------------------------------------------------

    def export_data(self) -> dict[str, Any]:
        """JSON-compatible dump of the collection."""
        return {
            "format": "mindclone-export",
            "schema_version": SCHEMA_VERSION,
            "memories": [m.to_dict() for m in self._records],
        }

    async def import_data(self, data: dict[str, Any], *, mode: str = "merge") -> int:
        """
        Load memories from an export.

        Args:
            data: Output of ``export_data``
            mode: "merge" upserts by id; "replace" first deletes everything

        Returns:
            Number of memories written
        """
        if mode not in ("merge", "replace"):
            raise ValueError(f"Unknown import mode: {mode}")
        records = [Memory.from_dict(d) for d in data.get("memories", [])]

        def load() -> int:
            with self.store.transaction():
                if mode == "replace":
                    self.store.bulk_delete([m.id for m in self.store.query_all()])
                return self.store.bulk_put(records)

        ok, count = await self._mutate(f"import {len(records)} memories", load)
        return count if ok else 0
