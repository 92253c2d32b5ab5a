"""PostgreSQL implementation of the instance store."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from ..errors import InstanceNotFound, InvalidState, PersistenceError
from ..models import InstanceStatus, InstanceSummary
from .models import SagaEvent
from .repository import InstanceStore, check_append, check_publishable

# A dropped connection surfaces as InterfaceError or OSError, and a connect
# timeout as asyncio.TimeoutError; none of them subclass PostgresError.
_STORE_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


class PostgresInstanceStore(InstanceStore):
    """Persist event logs using PostgreSQL.

    Every driver or network failure is reported as :class:`PersistenceError`
    so the engine's persistence retry applies to it.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except _STORE_ERRORS as exc:
            raise PersistenceError(f"Cannot reach instance store: {exc}") from exc
        if not self._initialized:
            try:
                await self._ensure_schema(conn)
            except _STORE_ERRORS as exc:
                conn.terminate()
                raise PersistenceError(f"Cannot prepare instance store: {exc}") from exc
            self._initialized = True
        return conn

    @staticmethod
    async def _release(conn: asyncpg.Connection) -> None:
        try:
            await conn.close()
        except _STORE_ERRORS:
            conn.terminate()

    @asynccontextmanager
    async def _session(self, action: str) -> AsyncIterator[asyncpg.Connection]:
        conn = await self._connect()
        try:
            yield conn
        except _STORE_ERRORS as exc:
            raise PersistenceError(f"Failed to {action}: {exc}") from exc
        finally:
            await self._release(conn)

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS saga_instances (
                instance_id TEXT PRIMARY KEY,
                definition_name TEXT NOT NULL,
                definition_version INTEGER NOT NULL,
                status TEXT NOT NULL,
                last_sequence INTEGER NOT NULL,
                updated_at TIMESTAMPTZ,
                outcome_published BOOLEAN NOT NULL DEFAULT FALSE
            )
            """
        )
        await conn.execute(
            "ALTER TABLE saga_instances "
            "ADD COLUMN IF NOT EXISTS outcome_published BOOLEAN NOT NULL DEFAULT FALSE"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS saga_events (
                instance_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                step_name TEXT,
                attempt INTEGER,
                outcome TEXT,
                data JSONB NOT NULL,
                recorded_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (instance_id, sequence)
            )
            """
        )

    @staticmethod
    def _json(value: Any) -> Any:
        return json.loads(value) if isinstance(value, str) else value

    @staticmethod
    def _summary(row: asyncpg.Record) -> InstanceSummary:
        return InstanceSummary(
            instance_id=row["instance_id"],
            definition_name=row["definition_name"],
            definition_version=row["definition_version"],
            status=InstanceStatus(row["status"]),
            last_sequence=row["last_sequence"],
            updated_at=row["updated_at"],
            outcome_published=row["outcome_published"],
        )

    # ------------------------------------------------------------------
    async def append(self, instance_id: str, event: SagaEvent) -> None:
        action = f"append event {event.sequence} for {instance_id}"
        async with self._session(action) as conn:
            async with conn.transaction():
                head = await conn.fetchrow(
                    "SELECT status, last_sequence FROM saga_instances WHERE instance_id = $1 FOR UPDATE",
                    instance_id,
                )
                status = check_append(
                    instance_id,
                    event,
                    InstanceStatus(head["status"]) if head else None,
                    head["last_sequence"] if head else 0,
                )
                await conn.execute(
                    """
                    INSERT INTO saga_events
                        (instance_id, sequence, event_type, step_name, attempt, outcome, data, recorded_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    instance_id,
                    event.sequence,
                    event.event_type.value,
                    event.step_name,
                    event.attempt,
                    event.outcome,
                    json.dumps(event.model_dump(mode="json")["data"]),
                    event.recorded_at,
                )
                if head is None:
                    await conn.execute(
                        """
                        INSERT INTO saga_instances
                            (instance_id, definition_name, definition_version, status, last_sequence, updated_at)
                        VALUES ($1, $2, $3, $4, $5, $6)
                        """,
                        instance_id,
                        event.data["definition_name"],
                        event.data["definition_version"],
                        status.value,
                        event.sequence,
                        event.recorded_at,
                    )
                else:
                    await conn.execute(
                        """
                        UPDATE saga_instances
                        SET status = $1, last_sequence = $2, updated_at = $3
                        WHERE instance_id = $4
                        """,
                        status.value,
                        event.sequence,
                        event.recorded_at,
                        instance_id,
                    )

    async def load_events(self, instance_id: str) -> list[SagaEvent]:
        async with self._session(f"load events of {instance_id}") as conn:
            rows = await conn.fetch(
                "SELECT instance_id, sequence, event_type, step_name, attempt, outcome, data, recorded_at "
                "FROM saga_events WHERE instance_id = $1 ORDER BY sequence",
                instance_id,
            )
        return [
            SagaEvent(
                instance_id=r["instance_id"],
                sequence=r["sequence"],
                event_type=r["event_type"],
                step_name=r["step_name"],
                attempt=r["attempt"],
                outcome=r["outcome"],
                data=self._json(r["data"]),
                recorded_at=r["recorded_at"],
            )
            for r in rows
        ]

    async def list_by_status(self, status: InstanceStatus) -> list[InstanceSummary]:
        async with self._session(f"list {status.value} instances") as conn:
            rows = await conn.fetch(
                "SELECT * FROM saga_instances WHERE status = $1 ORDER BY updated_at",
                status.value,
            )
        return [self._summary(r) for r in rows]

    async def list_instances(self) -> list[InstanceSummary]:
        async with self._session("list instances") as conn:
            rows = await conn.fetch("SELECT * FROM saga_instances ORDER BY updated_at")
        return [self._summary(r) for r in rows]

    async def purge(self, instance_id: str) -> None:
        async with self._session(f"purge {instance_id}") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT status FROM saga_instances WHERE instance_id = $1 FOR UPDATE",
                    instance_id,
                )
                if row is None:
                    raise InstanceNotFound(instance_id)
                if not InstanceStatus(row["status"]).is_terminal:
                    raise InvalidState(
                        f"Instance {instance_id} is {row['status']}; only terminal "
                        "instances can be purged"
                    )
                await conn.execute(
                    "DELETE FROM saga_events WHERE instance_id = $1", instance_id
                )
                await conn.execute(
                    "DELETE FROM saga_instances WHERE instance_id = $1", instance_id
                )

    async def mark_outcome_published(self, instance_id: str) -> None:
        async with self._session(f"mark outcome of {instance_id}") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT status FROM saga_instances WHERE instance_id = $1 FOR UPDATE",
                    instance_id,
                )
                check_publishable(
                    instance_id, InstanceStatus(row["status"]) if row else None
                )
                await conn.execute(
                    "UPDATE saga_instances SET outcome_published = TRUE WHERE instance_id = $1",
                    instance_id,
                )

    async def list_unpublished(self) -> list[InstanceSummary]:
        terminal = [status.value for status in InstanceStatus if status.is_terminal]
        async with self._session("list unpublished outcomes") as conn:
            rows = await conn.fetch(
                "SELECT * FROM saga_instances WHERE NOT outcome_published "
                "AND status = ANY($1::text[]) ORDER BY updated_at",
                terminal,
            )
        return [self._summary(r) for r in rows]
