"""
State management with atomic transactions for orchestrator persistence.

This module provides the StateManager class which persists every engine
record (workflows, runs, approvals, exceptions, ...) as JSON collections on
disk. Integrity comes from:

- Atomic file writes using temporary files and rename operations
- Per-collection locking to prevent concurrent modification
- Monotonic record ids allocated inside the collection's lock

Collection File Structure:
    Each collection is stored as ``{collection}.json``::

        {
            "collection": "runs",
            "next_id": 43,
            "updated_at": "2024-01-15T11:45:00+00:00",
            "records": {
                "41": {"id": 41, "status": "completed", ...},
                "42": {"id": 42, "status": "running", ...}
            }
        }

Transaction Support:
    The ``transaction()`` context manager provides atomic read-modify-write
    on the raw collection; ``insert`` and ``update`` build on it for
    Pydantic records::

        run = await state.update("runs", 42, Run, lambda r: setattr(r, "status", RunStatus.COMPLETED))

Error Handling:
    Any OS, JSON or validation error while reading or writing is raised as
    ``PersistenceError`` so the orchestrator can treat it as a bookkeeping
    failure.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import aiofiles
import structlog
from pydantic import BaseModel, ValidationError

from opsflow.exceptions import PersistenceError, RecordNotFoundError

log = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

CollectionState = dict[str, Any]


class StateManager:
    """Manage engine records with atomic file operations.

    Attributes:
        state_dir: Directory where collection files are stored.

    Thread Safety:
        Designed for single-threaded asyncio usage. Each collection has its
        own lock; lock creation is guarded by a meta-lock.

    Example:
        >>> manager = StateManager(".opsflow/state")
        >>> wf = await manager.insert("workflows", lambda i: WorkflowDefinition(id=i, ...))
        >>> await manager.get("workflows", wf.id, WorkflowDefinition)
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the state manager with a storage directory.

        Args:
            state_dir: Directory for collection files. Created, including
                parents, if it does not exist.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, collection: str) -> asyncio.Lock:
        async with self._locks_lock:
            if collection not in self._locks:
                self._locks[collection] = asyncio.Lock()
            return self._locks[collection]

    def _get_collection_path(self, collection: str) -> Path:
        return self.state_dir / f"{collection}.json"

    async def _read_collection(self, collection: str) -> CollectionState:
        """Read a collection without acquiring its lock.

        Warning:
            Caller MUST hold the collection lock.
        """
        path = self._get_collection_path(collection)
        if not path.exists():
            return {"collection": collection, "next_id": 1, "records": {}}

        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
            state = json.loads(content)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read collection '{collection}': {e}") from e

        if not isinstance(state, dict) or "records" not in state:
            raise PersistenceError(f"Collection '{collection}' is malformed")
        return state

    async def _write_collection(self, collection: str, state: CollectionState) -> None:
        """Write a collection atomically using a temporary file.

        The temporary file lives next to the target so the rename stays on
        one filesystem.
        """
        path = self._get_collection_path(collection)
        tmp_path = path.with_suffix(".tmp")
        state["updated_at"] = datetime.now(UTC).isoformat()

        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot write collection '{collection}': {e}") from e

    @asynccontextmanager
    async def transaction(self, collection: str) -> AsyncIterator[CollectionState]:
        """Context manager for atomic collection updates.

        The collection is loaded on entry and saved on successful exit. If
        the body raises, nothing is written and the exception propagates.

        Args:
            collection: Collection name, e.g. ``"runs"``.

        Yields:
            The raw collection dictionary.

        Note:
            The lock is held for the whole block. Keep transactions short.
        """
        lock = await self._get_lock(collection)
        async with lock:
            state = await self._read_collection(collection)
            try:
                yield state
                await self._write_collection(collection, state)
            except Exception:
                log.error("state_transaction_failed", collection=collection)
                raise

    async def insert(self, collection: str, factory: Callable[[int], ModelT]) -> ModelT:
        """Allocate the next id and store the record built by ``factory``.

        Args:
            collection: Collection name.
            factory: Called with the allocated id, returns the new record.

        Returns:
            The stored record.
        """
        async with self.transaction(collection) as state:
            record_id = int(state.get("next_id", 1))
            record = factory(record_id)
            state["records"][str(record_id)] = record.model_dump(mode="json")
            state["next_id"] = record_id + 1
        return record

    async def save(self, collection: str, key: int | str, record: BaseModel) -> None:
        """Create or overwrite the record stored under ``key``."""
        async with self.transaction(collection) as state:
            state["records"][str(key)] = record.model_dump(mode="json")

    async def update(
        self,
        collection: str,
        key: int | str,
        model_cls: type[ModelT],
        mutate: Callable[[ModelT], None],
    ) -> ModelT:
        """Atomically load, mutate and store one record.

        Args:
            collection: Collection name.
            key: Record key.
            model_cls: Model used to parse the stored record.
            mutate: Called with the parsed record; may raise to abort.

        Returns:
            The updated record.

        Raises:
            RecordNotFoundError: If no record is stored under ``key``.
        """
        async with self.transaction(collection) as state:
            raw = state["records"].get(str(key))
            if raw is None:
                raise RecordNotFoundError(collection, key)
            record = self._parse(collection, model_cls, raw)
            mutate(record)
            state["records"][str(key)] = record.model_dump(mode="json")
        return record

    async def get(self, collection: str, key: int | str, model_cls: type[ModelT]) -> ModelT | None:
        lock = await self._get_lock(collection)
        async with lock:
            state = await self._read_collection(collection)
        raw = state["records"].get(str(key))
        return None if raw is None else self._parse(collection, model_cls, raw)

    async def list_records(self, collection: str, model_cls: type[ModelT]) -> list[ModelT]:
        """Return every record of a collection in insertion order."""
        lock = await self._get_lock(collection)
        async with lock:
            state = await self._read_collection(collection)
        return [self._parse(collection, model_cls, raw) for raw in state["records"].values()]

    async def count(self, collection: str) -> int:
        lock = await self._get_lock(collection)
        async with lock:
            state = await self._read_collection(collection)
        return len(state["records"])

    @staticmethod
    def _parse(collection: str, model_cls: type[ModelT], raw: dict[str, Any]) -> ModelT:
        try:
            return model_cls.model_validate(raw)
        except ValidationError as e:
            raise PersistenceError(f"Corrupt record in '{collection}': {e}") from e
