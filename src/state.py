"""
State Store - persisted snapshot of last-applied resources.

Every write is a compare-and-swap on a store-wide serial: callers pass the
serial they last observed and get the new one back, or a ConflictError if
somebody else wrote in between. A run-level lock guarantees at most one
writer per apply run.

Backends in this module:
- MemoryStateStore: in-process, used by tests and dry runs
- LocalStateStore: JSON file next to the document (the default)

The PostgreSQL backend lives in ``db.py``.
"""

import asyncio
import copy
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from document import ResourceId
from errors import ConflictError, StateLockedError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StateRecord:
    """Last-applied snapshot of a single resource."""

    resource_id: ResourceId
    provider: str
    object_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[ResourceId] = field(default_factory=list)
    updated_at: Optional[str] = None

    @property
    def address(self) -> str:
        return self.resource_id.address

    def values(self) -> Dict[str, Any]:
        """
        Values visible to references: attributes overlaid with outputs.

        ``id`` always resolves to the provider-assigned object id.
        """
        merged = dict(self.attributes)
        merged.update(self.outputs)
        merged["id"] = self.object_id
        return merged

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "type": self.resource_id.resource_type,
            "name": self.resource_id.name,
            "provider": self.provider,
            "object_id": self.object_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": [d.address for d in self.dependencies],
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateRecord":
        return cls(
            resource_id=ResourceId(data["type"], data["name"]),
            provider=data["provider"],
            object_id=str(data["object_id"]),
            attributes=data.get("attributes") or {},
            outputs=data.get("outputs") or {},
            dependencies=[
                ResourceId.parse(a) for a in data.get("dependencies") or []
            ],
            updated_at=data.get("updated_at"),
        )


@dataclass
class StateSnapshot:
    """Consistent view of the whole store at one serial."""

    serial: int = 0
    records: Dict[ResourceId, StateRecord] = field(default_factory=dict)

    def get(self, resource_id: ResourceId) -> Optional[StateRecord]:
        return self.records.get(resource_id)

    def __contains__(self, resource_id: ResourceId) -> bool:
        return resource_id in self.records

    def __len__(self) -> int:
        return len(self.records)


class StateStore(ABC):
    """Abstract state store with compare-and-swap writes and a run lock."""

    @abstractmethod
    async def get(self, resource_id: ResourceId) -> Optional[StateRecord]:
        """Return the record for a resource, or None if not found."""
        pass

    @abstractmethod
    async def put(
        self,
        resource_id: ResourceId,
        record: StateRecord,
        expected_serial: int,
        lock_id: Optional[str] = None,
    ) -> int:
        """
        Store a record if the store is still at ``expected_serial``.

        Args:
            resource_id: Resource identity
            record: The record to store
            expected_serial: Serial the caller last observed
            lock_id: Run id holding the lock, if any

        Returns:
            The new serial

        Raises:
            ConflictError: If the serial does not match
            StateLockedError: If another run holds the lock
        """
        pass

    @abstractmethod
    async def delete(
        self,
        resource_id: ResourceId,
        expected_serial: int,
        lock_id: Optional[str] = None,
    ) -> int:
        """Remove a record with the same compare-and-swap rules as put()."""
        pass

    @abstractmethod
    async def snapshot(self) -> StateSnapshot:
        """Return the last committed state."""
        pass

    @abstractmethod
    async def lock(self, run_id: str) -> None:
        """
        Acquire the store-wide write lock.

        Raises:
            StateLockedError: If another run holds the lock
        """
        pass

    @abstractmethod
    async def unlock(self, run_id: str) -> None:
        """Release the lock if held by ``run_id``."""
        pass

    @abstractmethod
    async def record_history(self, entries: List[Dict[str, Any]]) -> None:
        """
        Append per-entry outcomes of a run to the apply history.

        Each entry carries run_id, address, action, status, attempts,
        error_message and duration_seconds.
        """
        pass

    @abstractmethod
    async def get_history(
        self, address: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Return the most recent history entries, newest first."""
        pass

    async def close(self) -> None:
        """Release any backend resources."""
        return None

    async def serial(self) -> int:
        return (await self.snapshot()).serial

    @asynccontextmanager
    async def locked(self, run_id: Optional[str] = None) -> AsyncIterator[str]:
        """Hold the write lock for the duration of the block."""
        run_id = run_id or str(uuid.uuid4())
        await self.lock(run_id)
        try:
            yield run_id
        finally:
            await self.unlock(run_id)


def _check_serial(expected: int, actual: int) -> None:
    if expected != actual:
        raise ConflictError(
            f"State serial mismatch: expected {expected}, found {actual}",
            expected_serial=expected,
            actual_serial=actual,
        )


def _check_lock(holder: Optional[str], lock_id: Optional[str]) -> None:
    if holder is not None and holder != lock_id:
        raise StateLockedError(holder)


def _select_history(
    entries: List[Dict[str, Any]], address: Optional[str], limit: int
) -> List[Dict[str, Any]]:
    selected = [e for e in entries if address is None or e["address"] == address]
    return list(reversed(selected))[:limit]


class MemoryStateStore(StateStore):
    """In-process state store."""

    def __init__(self):
        self._records: Dict[ResourceId, StateRecord] = {}
        self._history: List[Dict[str, Any]] = []
        self._serial = 0
        self._lock_holder: Optional[str] = None
        self._mutex = asyncio.Lock()

    async def record_history(self, entries: List[Dict[str, Any]]) -> None:
        recorded_at = utcnow()
        for entry in entries:
            self._history.append({**entry, "recorded_at": recorded_at})

    async def get_history(
        self, address: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        return _select_history(self._history, address, limit)

    async def get(self, resource_id: ResourceId) -> Optional[StateRecord]:
        record = self._records.get(resource_id)
        return copy.deepcopy(record) if record else None

    async def put(
        self,
        resource_id: ResourceId,
        record: StateRecord,
        expected_serial: int,
        lock_id: Optional[str] = None,
    ) -> int:
        async with self._mutex:
            _check_lock(self._lock_holder, lock_id)
            _check_serial(expected_serial, self._serial)
            stored = copy.deepcopy(record)
            stored.updated_at = utcnow()
            self._records[resource_id] = stored
            self._serial += 1
            return self._serial

    async def delete(
        self,
        resource_id: ResourceId,
        expected_serial: int,
        lock_id: Optional[str] = None,
    ) -> int:
        async with self._mutex:
            _check_lock(self._lock_holder, lock_id)
            _check_serial(expected_serial, self._serial)
            self._records.pop(resource_id, None)
            self._serial += 1
            return self._serial

    async def snapshot(self) -> StateSnapshot:
        async with self._mutex:
            return StateSnapshot(
                serial=self._serial, records=copy.deepcopy(self._records)
            )

    async def lock(self, run_id: str) -> None:
        async with self._mutex:
            if self._lock_holder is not None and self._lock_holder != run_id:
                raise StateLockedError(self._lock_holder)
            self._lock_holder = run_id
            logger.debug(f"State locked by run {run_id}")

    async def unlock(self, run_id: str) -> None:
        async with self._mutex:
            if self._lock_holder == run_id:
                self._lock_holder = None
                logger.debug(f"State unlocked by run {run_id}")


class LocalStateStore(StateStore):
    """
    JSON file state store.

    The file is rewritten atomically (temporary file + rename) on every
    write. The run lock is a sibling ``.lock`` file created exclusively, so
    separate processes applying against the same file exclude each other.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.history_path = self.path.with_name(self.path.name + ".history")
        self._mutex = asyncio.Lock()

    def _append_history(self, entries: List[Dict[str, Any]]) -> None:
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        recorded_at = utcnow()
        with open(self.history_path, "a", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps({**entry, "recorded_at": recorded_at}) + "\n")

    def _read_history(self) -> List[Dict[str, Any]]:
        if not self.history_path.exists():
            return []
        with open(self.history_path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    async def record_history(self, entries: List[Dict[str, Any]]) -> None:
        async with self._mutex:
            await asyncio.to_thread(self._append_history, entries)

    async def get_history(
        self, address: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        entries = await asyncio.to_thread(self._read_history)
        return _select_history(entries, address, limit)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {
                "version": STATE_FORMAT_VERSION,
                "serial": 0,
                "lineage": str(uuid.uuid4()),
                "resources": [],
            }
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if data.get("version") != STATE_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported state format version {data.get('version')} "
                f"in {self.path}"
            )
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def _read_lock_holder(self) -> Optional[str]:
        if not self.lock_path.exists():
            return None
        try:
            with open(self.lock_path, "r", encoding="utf-8") as f:
                return json.load(f).get("id")
        except (OSError, json.JSONDecodeError):
            return "unknown"

    @staticmethod
    def _records(data: Dict[str, Any]) -> Dict[ResourceId, StateRecord]:
        records = {}
        for item in data.get("resources", []):
            record = StateRecord.from_dict(item)
            records[record.resource_id] = record
        return records

    def _store(
        self, data: Dict[str, Any], records: Dict[ResourceId, StateRecord]
    ) -> int:
        data["serial"] = data["serial"] + 1
        data["resources"] = [records[rid].to_dict() for rid in sorted(records)]
        self._write(data)
        return data["serial"]

    def _put(
        self,
        resource_id: ResourceId,
        record: StateRecord,
        expected_serial: int,
        lock_id: Optional[str],
    ) -> int:
        _check_lock(self._read_lock_holder(), lock_id)
        data = self._read()
        _check_serial(expected_serial, data["serial"])
        records = self._records(data)
        stored = copy.deepcopy(record)
        stored.updated_at = utcnow()
        records[resource_id] = stored
        return self._store(data, records)

    def _delete(
        self, resource_id: ResourceId, expected_serial: int, lock_id: Optional[str]
    ) -> int:
        _check_lock(self._read_lock_holder(), lock_id)
        data = self._read()
        _check_serial(expected_serial, data["serial"])
        records = self._records(data)
        records.pop(resource_id, None)
        return self._store(data, records)

    async def get(self, resource_id: ResourceId) -> Optional[StateRecord]:
        return (await self.snapshot()).get(resource_id)

    async def put(
        self,
        resource_id: ResourceId,
        record: StateRecord,
        expected_serial: int,
        lock_id: Optional[str] = None,
    ) -> int:
        async with self._mutex:
            return await asyncio.to_thread(
                self._put, resource_id, record, expected_serial, lock_id
            )

    async def delete(
        self,
        resource_id: ResourceId,
        expected_serial: int,
        lock_id: Optional[str] = None,
    ) -> int:
        async with self._mutex:
            return await asyncio.to_thread(
                self._delete, resource_id, expected_serial, lock_id
            )

    async def snapshot(self) -> StateSnapshot:
        async with self._mutex:
            data = await asyncio.to_thread(self._read)
        return StateSnapshot(serial=data["serial"], records=self._records(data))

    async def lock(self, run_id: str) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            holder = self._read_lock_holder()
            if holder == run_id:
                return
            raise StateLockedError(holder)

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"id": run_id, "created": utcnow(), "pid": os.getpid()}, f)
        logger.debug(f"Acquired state lock {self.lock_path} for run {run_id}")

    async def unlock(self, run_id: str) -> None:
        if self._read_lock_holder() != run_id:
            return
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        logger.debug(f"Released state lock {self.lock_path}")
