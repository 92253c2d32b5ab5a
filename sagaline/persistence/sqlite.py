"""SQLite implementation of the instance store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import InstanceNotFound, InvalidState, PersistenceError
from ..models import InstanceStatus, InstanceSummary
from .models import SagaEvent
from .repository import InstanceStore, check_append, check_publishable


class SQLiteInstanceStore(InstanceStore):
    """Persist event logs using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS saga_instances (
                instance_id TEXT PRIMARY KEY,
                definition_name TEXT NOT NULL,
                definition_version INTEGER NOT NULL,
                status TEXT NOT NULL,
                last_sequence INTEGER NOT NULL,
                updated_at TEXT,
                outcome_published INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS saga_events (
                instance_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                step_name TEXT,
                attempt INTEGER,
                outcome TEXT,
                data TEXT NOT NULL,
                recorded_at TEXT NOT NULL,
                PRIMARY KEY (instance_id, sequence)
            )
            """
        )
        columns = {row["name"] for row in cur.execute("PRAGMA table_info(saga_instances)")}
        if "outcome_published" not in columns:
            cur.execute(
                "ALTER TABLE saga_instances "
                "ADD COLUMN outcome_published INTEGER NOT NULL DEFAULT 0"
            )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_saga_instances_status ON saga_instances (status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _append_sync(self, instance_id: str, event: SagaEvent) -> None:
        payload = event.model_dump(mode="json")
        recorded_at = event.recorded_at.isoformat()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT status, last_sequence FROM saga_instances WHERE instance_id = ?",
                (instance_id,),
            )
            head = cur.fetchone()
            status = check_append(
                instance_id,
                event,
                InstanceStatus(head["status"]) if head else None,
                head["last_sequence"] if head else 0,
            )
            try:
                cur.execute(
                    """
                    INSERT INTO saga_events
                        (instance_id, sequence, event_type, step_name, attempt, outcome, data, recorded_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        instance_id,
                        event.sequence,
                        event.event_type.value,
                        event.step_name,
                        event.attempt,
                        event.outcome,
                        json.dumps(payload["data"]),
                        recorded_at,
                    ),
                )
                if head is None:
                    cur.execute(
                        """
                        INSERT INTO saga_instances
                            (instance_id, definition_name, definition_version, status, last_sequence, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            instance_id,
                            event.data["definition_name"],
                            event.data["definition_version"],
                            status.value,
                            event.sequence,
                            recorded_at,
                        ),
                    )
                else:
                    cur.execute(
                        """
                        UPDATE saga_instances
                        SET status = ?, last_sequence = ?, updated_at = ?
                        WHERE instance_id = ?
                        """,
                        (status.value, event.sequence, recorded_at, instance_id),
                    )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(
                    f"Failed to append event {event.sequence} for {instance_id}: {exc}"
                ) from exc

    def _purge_sync(self, instance_id: str) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT status FROM saga_instances WHERE instance_id = ?", (instance_id,)
            )
            row = cur.fetchone()
            if row is None:
                raise InstanceNotFound(instance_id)
            if not InstanceStatus(row["status"]).is_terminal:
                raise InvalidState(
                    f"Instance {instance_id} is {row['status']}; only terminal "
                    "instances can be purged"
                )
            cur.execute("DELETE FROM saga_events WHERE instance_id = ?", (instance_id,))
            cur.execute("DELETE FROM saga_instances WHERE instance_id = ?", (instance_id,))
            self._conn.commit()

    def _mark_published_sync(self, instance_id: str) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT status FROM saga_instances WHERE instance_id = ?", (instance_id,)
            )
            row = cur.fetchone()
            check_publishable(instance_id, InstanceStatus(row["status"]) if row else None)
            cur.execute(
                "UPDATE saga_instances SET outcome_published = 1 WHERE instance_id = ?",
                (instance_id,),
            )
            self._conn.commit()

    @staticmethod
    def _summary(row: sqlite3.Row) -> InstanceSummary:
        return InstanceSummary(
            instance_id=row["instance_id"],
            definition_name=row["definition_name"],
            definition_version=row["definition_version"],
            status=InstanceStatus(row["status"]),
            last_sequence=row["last_sequence"],
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
            outcome_published=bool(row["outcome_published"]),
        )

    # ------------------------------------------------------------------
    # Store API
    async def append(self, instance_id: str, event: SagaEvent) -> None:
        await asyncio.to_thread(self._append_sync, instance_id, event)

    async def load_events(self, instance_id: str) -> list[SagaEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT instance_id, sequence, event_type, step_name, attempt, outcome, data, recorded_at "
            "FROM saga_events WHERE instance_id = ? ORDER BY sequence",
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
                data=json.loads(r["data"]),
                recorded_at=datetime.fromisoformat(r["recorded_at"]),
            )
            for r in rows
        ]

    async def list_by_status(self, status: InstanceStatus) -> list[InstanceSummary]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM saga_instances WHERE status = ? ORDER BY updated_at",
            status.value,
        )
        return [self._summary(r) for r in rows]

    async def list_instances(self) -> list[InstanceSummary]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM saga_instances ORDER BY updated_at"
        )
        return [self._summary(r) for r in rows]

    async def purge(self, instance_id: str) -> None:
        await asyncio.to_thread(self._purge_sync, instance_id)

    async def mark_outcome_published(self, instance_id: str) -> None:
        await asyncio.to_thread(self._mark_published_sync, instance_id)

    async def list_unpublished(self) -> list[InstanceSummary]:
        terminal = [status.value for status in InstanceStatus if status.is_terminal]
        placeholders = ", ".join("?" for _ in terminal)
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM saga_instances WHERE outcome_published = 0 "
            f"AND status IN ({placeholders}) ORDER BY updated_at",
            *terminal,
        )
        return [self._summary(r) for r in rows]

    def close(self) -> None:
        self._conn.close()
