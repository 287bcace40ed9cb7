"""
PostgreSQL state backend.

Records live in ``state_records``; the store-wide serial and the run lock
live in the single-row ``state_meta`` table. Every write locks that row
(``SELECT ... FOR UPDATE``), checks the serial and bumps it in the same
transaction, which makes put/delete a compare-and-swap across processes.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from document import ResourceId
from errors import ConflictError, StateLockedError
from migrate import run_migrations
from state import StateRecord, StateSnapshot, StateStore

logger = logging.getLogger(__name__)


class PostgresStateStore(StateStore):
    """State store backed by PostgreSQL via an asyncpg pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL state backend {self.host}:{self.port}/"
            f"{self.database} (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "State backend not connected. Call connect() before use."
            )

    async def initialize_schema(self) -> None:
        """Apply migrations to bring the schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)

    # ==================== Reads ====================

    async def get(self, resource_id: ResourceId) -> Optional[StateRecord]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM state_records WHERE address = $1",
                resource_id.address,
            )
            if not row:
                return None
            return self._parse_record_row(row)

    async def snapshot(self) -> StateSnapshot:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                serial = await conn.fetchval(
                    "SELECT serial FROM state_meta WHERE id = 1"
                )
                rows = await conn.fetch(
                    "SELECT * FROM state_records ORDER BY resource_type, name"
                )

        records = {}
        for row in rows:
            record = self._parse_record_row(row)
            records[record.resource_id] = record
        return StateSnapshot(serial=serial or 0, records=records)

    # ==================== Compare-and-swap writes ====================

    async def _lock_meta(
        self,
        conn: asyncpg.Connection,
        expected_serial: int,
        lock_id: Optional[str],
    ) -> None:
        meta = await conn.fetchrow(
            "SELECT serial, lock_id FROM state_meta WHERE id = 1 FOR UPDATE"
        )
        if meta is None:
            raise RuntimeError("state_meta row missing; run initialize_schema()")
        if meta["lock_id"] is not None and meta["lock_id"] != lock_id:
            raise StateLockedError(meta["lock_id"])
        if meta["serial"] != expected_serial:
            raise ConflictError(
                f"State serial mismatch: expected {expected_serial}, "
                f"found {meta['serial']}",
                expected_serial=expected_serial,
                actual_serial=meta["serial"],
            )

    async def put(
        self,
        resource_id: ResourceId,
        record: StateRecord,
        expected_serial: int,
        lock_id: Optional[str] = None,
    ) -> int:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_meta(conn, expected_serial, lock_id)
                await conn.execute(
                    """
                    INSERT INTO state_records (
                        address, resource_type, name, provider, object_id,
                        attributes, outputs, dependencies, updated_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NOW())
                    ON CONFLICT (address) DO UPDATE
                    SET provider = EXCLUDED.provider,
                        object_id = EXCLUDED.object_id,
                        attributes = EXCLUDED.attributes,
                        outputs = EXCLUDED.outputs,
                        dependencies = EXCLUDED.dependencies,
                        updated_at = NOW()
                    """,
                    resource_id.address,
                    resource_id.resource_type,
                    resource_id.name,
                    record.provider,
                    record.object_id,
                    json.dumps(record.attributes),
                    json.dumps(record.outputs),
                    json.dumps([d.address for d in record.dependencies]),
                )
                new_serial = await conn.fetchval(
                    "UPDATE state_meta SET serial = serial + 1 "
                    "WHERE id = 1 RETURNING serial"
                )

        logger.debug(f"Stored state for {resource_id} at serial {new_serial}")
        return new_serial

    async def delete(
        self,
        resource_id: ResourceId,
        expected_serial: int,
        lock_id: Optional[str] = None,
    ) -> int:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_meta(conn, expected_serial, lock_id)
                await conn.execute(
                    "DELETE FROM state_records WHERE address = $1",
                    resource_id.address,
                )
                new_serial = await conn.fetchval(
                    "UPDATE state_meta SET serial = serial + 1 "
                    "WHERE id = 1 RETURNING serial"
                )

        logger.debug(f"Removed state for {resource_id} at serial {new_serial}")
        return new_serial

    # ==================== Run lock ====================

    async def lock(self, run_id: str) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            acquired = await conn.fetchval(
                """
                UPDATE state_meta
                SET lock_id = $1, locked_at = NOW()
                WHERE id = 1 AND (lock_id IS NULL OR lock_id = $1)
                RETURNING lock_id
                """,
                run_id,
            )
            if acquired is None:
                holder = await conn.fetchval(
                    "SELECT lock_id FROM state_meta WHERE id = 1"
                )
                raise StateLockedError(holder)

        logger.debug(f"State locked by run {run_id}")

    async def unlock(self, run_id: str) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE state_meta
                SET lock_id = NULL, locked_at = NULL
                WHERE id = 1 AND lock_id = $1
                """,
                run_id,
            )

        logger.debug(f"State unlocked by run {run_id}")

    # ==================== History ====================

    async def record_history(self, entries: List[Dict[str, Any]]) -> None:
        if not entries:
            return
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO apply_history (
                    run_id, address, action, status, attempts,
                    error_message, duration_seconds
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                [
                    (
                        e["run_id"],
                        e["address"],
                        e["action"],
                        e["status"],
                        e.get("attempts", 0),
                        e.get("error_message"),
                        e.get("duration_seconds"),
                    )
                    for e in entries
                ],
            )

    async def get_history(
        self, address: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            if address:
                rows = await conn.fetch(
                    """
                    SELECT * FROM apply_history
                    WHERE address = $1
                    ORDER BY recorded_at DESC, id DESC
                    LIMIT $2
                    """,
                    address,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM apply_history
                    ORDER BY recorded_at DESC, id DESC
                    LIMIT $1
                    """,
                    limit,
                )

        history = []
        for row in rows:
            entry = dict(row)
            if entry.get("recorded_at") is not None:
                entry["recorded_at"] = entry["recorded_at"].isoformat()
            history.append(entry)
        return history

    def _parse_record_row(self, row: asyncpg.Record) -> StateRecord:
        """Convert a state_records row into a StateRecord."""
        data = dict(row)
        for key, default in (
            ("attributes", {}),
            ("outputs", {}),
            ("dependencies", []),
        ):
            value = data.get(key)
            if isinstance(value, str):
                data[key] = json.loads(value)
            elif value is None:
                data[key] = default

        updated_at = data.get("updated_at")
        return StateRecord(
            resource_id=ResourceId(data["resource_type"], data["name"]),
            provider=data["provider"],
            object_id=data["object_id"],
            attributes=data["attributes"],
            outputs=data["outputs"],
            dependencies=[ResourceId.parse(a) for a in data["dependencies"]],
            updated_at=updated_at.isoformat() if updated_at else None,
        )
