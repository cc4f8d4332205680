"""SQLite implementation of the execution store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Type, TypeVar

from pydantic import BaseModel

from .models import (
    Approval,
    ApprovalState,
    ComplianceAnchor,
    ComplianceEvent,
    CredentialMetadata,
    IdempotencyRecord,
    Run,
    RunStatus,
    Step,
    Workflow,
    format_ts,
    utcnow,
)
from .repository import EventBuilder, ExecutionStore

ModelT = TypeVar("ModelT", bound=BaseModel)

_JSON_COLUMNS = {
    "trigger_config",
    "trigger_payload",
    "context",
    "completed_steps",
    "required_approvers",
    "payload",
    "response",
}

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        version INTEGER NOT NULL,
        trigger_type TEXT NOT NULL,
        trigger_config TEXT,
        enabled INTEGER NOT NULL,
        simulation_mode INTEGER NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS steps (
        workflow_id TEXT NOT NULL,
        workflow_version INTEGER NOT NULL,
        step_order INTEGER NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (workflow_id, workflow_version, step_order)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        workflow_version INTEGER NOT NULL,
        idempotency_key TEXT NOT NULL,
        correlation_id TEXT NOT NULL,
        parent_run_id TEXT,
        root_run_id TEXT,
        retry_count INTEGER NOT NULL,
        trigger_type TEXT NOT NULL,
        trigger_payload TEXT,
        status TEXT NOT NULL,
        current_step_order INTEGER NOT NULL,
        context TEXT,
        completed_steps TEXT,
        actions_count INTEGER NOT NULL,
        is_simulation INTEGER NOT NULL,
        locked_by TEXT,
        locked_until TEXT,
        error_message TEXT,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        duration_ms INTEGER,
        updated_at TEXT NOT NULL,
        UNIQUE (tenant_id, workflow_id, idempotency_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approvals (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        step_order INTEGER NOT NULL,
        state TEXT NOT NULL,
        required_approvers TEXT,
        requested_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        responded_at TEXT,
        responded_by TEXT,
        comment TEXT,
        context TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
        tenant_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        key TEXT NOT NULL,
        state TEXT NOT NULL,
        response TEXT,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        PRIMARY KEY (tenant_id, scope, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS compliance_events (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        category TEXT NOT NULL,
        event_type TEXT NOT NULL,
        ref_type TEXT,
        ref_id TEXT,
        actor TEXT NOT NULL,
        actor_type TEXT NOT NULL,
        payload TEXT,
        pii_redacted INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        prev_digest TEXT NOT NULL,
        digest TEXT NOT NULL,
        UNIQUE (tenant_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS compliance_anchors (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        period TEXT NOT NULL,
        from_ts TEXT NOT NULL,
        to_ts TEXT NOT NULL,
        event_count INTEGER NOT NULL,
        first_sequence INTEGER NOT NULL,
        last_sequence INTEGER NOT NULL,
        merkle_root TEXT NOT NULL,
        hmac TEXT NOT NULL,
        computed_at TEXT NOT NULL,
        UNIQUE (tenant_id, period)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credentials (
        id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        name TEXT,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        rotated_at TEXT,
        deleted_at TEXT,
        last_health_check TEXT,
        last_health_ok INTEGER,
        PRIMARY KEY (tenant_id, id)
    )
    """,
]


def _encode(value: Any, column: str) -> Any:
    if column in _JSON_COLUMNS:
        return None if value is None else json.dumps(value, default=str)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_ts(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _decode(model: Type[ModelT], row: sqlite3.Row) -> ModelT:
    data = dict(row)
    for column in _JSON_COLUMNS.intersection(data):
        if data[column] is not None:
            data[column] = json.loads(data[column])
    return model.model_validate(data)


def _row_values(model: BaseModel) -> dict[str, Any]:
    return {k: _encode(getattr(model, k), k) for k in type(model).model_fields}


class SQLiteExecutionStore(ExecutionStore):
    """Persist execution state using SQLite.

    Multi-statement operations run inside ``BEGIN IMMEDIATE`` so that
    separate worker processes sharing the file are serialized by SQLite's
    write lock.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30
        )
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        self._ensure_schema()

    async def close(self) -> None:
        with self._mutex:
            self._conn.close()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._mutex:
            for ddl in _SCHEMA:
                self._conn.execute(ddl)

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._mutex:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._mutex:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            return self._conn.execute(query, params).fetchall()

    def _transaction(self, fn, *args: Any) -> Any:
        with self._mutex:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn(self._conn, *args)
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
            return result

    @staticmethod
    def _insert_sql(table: str, values: dict[str, Any]) -> tuple[str, tuple[Any, ...]]:
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        return f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(values.values())

    def _insert(self, table: str, model: BaseModel) -> None:
        query, params = self._insert_sql(table, _row_values(model))
        self._execute(query, *params)

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow, steps: list[Step]) -> None:
        def _create(conn: sqlite3.Connection) -> None:
            query, params = self._insert_sql("workflows", _row_values(workflow))
            conn.execute(query, params)
            self._write_steps(conn, workflow.id, workflow.version, steps)

        await asyncio.to_thread(self._transaction, _create)

    @staticmethod
    def _write_steps(
        conn: sqlite3.Connection, workflow_id: str, version: int, steps: list[Step]
    ) -> None:
        conn.execute(
            "DELETE FROM steps WHERE workflow_id = ? AND workflow_version = ?",
            (workflow_id, version),
        )
        for step in steps:
            conn.execute(
                "INSERT INTO steps (workflow_id, workflow_version, step_order, data) VALUES (?, ?, ?, ?)",
                (workflow_id, version, step.step_order, step.model_dump_json()),
            )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflows WHERE id = ?", workflow_id
        )
        return _decode(Workflow, row) if row else None

    async def update_workflow(self, workflow_id: str, **fields: Any) -> Workflow | None:
        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params = [_encode(v, k) for k, v in fields.items()]
        await asyncio.to_thread(
            self._execute,
            f"UPDATE workflows SET {assignments} WHERE id = ?",
            *params,
            workflow_id,
        )
        return await self.get_workflow(workflow_id)

    async def save_steps(self, workflow_id: str, version: int, steps: list[Step]) -> None:
        await asyncio.to_thread(self._transaction, self._write_steps, workflow_id, version, steps)

    async def list_steps(self, workflow_id: str, version: int) -> list[Step]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM steps WHERE workflow_id = ? AND workflow_version = ? ORDER BY step_order",
            workflow_id,
            version,
        )
        return [Step.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: Run) -> tuple[Run, bool]:
        def _create(conn: sqlite3.Connection) -> tuple[Run, bool]:
            row = conn.execute(
                "SELECT * FROM runs WHERE tenant_id = ? AND workflow_id = ? AND idempotency_key = ?",
                (run.tenant_id, run.workflow_id, run.idempotency_key),
            ).fetchone()
            if row:
                return _decode(Run, row), False
            query, params = self._insert_sql("runs", _row_values(run))
            conn.execute(query, params)
            return run, True

        return await asyncio.to_thread(self._transaction, _create)

    async def get_run(self, run_id: str) -> Run | None:
        row = await asyncio.to_thread(self._fetchone, "SELECT * FROM runs WHERE id = ?", run_id)
        return _decode(Run, row) if row else None

    async def update_run(
        self,
        run_id: str,
        expected_status: Optional[Iterable[RunStatus]] = None,
        **fields: Any,
    ) -> Run | None:
        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params: list[Any] = [_encode(v, k) for k, v in fields.items()]
        query = f"UPDATE runs SET {assignments} WHERE id = ?"
        params.append(run_id)
        if expected_status is not None:
            statuses = [RunStatus(s).value for s in expected_status]
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)

        def _update(conn: sqlite3.Connection) -> Run | None:
            if conn.execute(query, params).rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
            return _decode(Run, row)

        return await asyncio.to_thread(self._transaction, _update)

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[Run]:
        clauses, params = [], []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(RunStatus(status).value)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT * FROM runs{where} ORDER BY started_at", *params
        )
        return [_decode(Run, r) for r in rows]

    async def list_runnable(self, now: datetime, limit: int) -> list[Run]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM runs
            WHERE status = ? AND (locked_until IS NULL OR locked_until < ?)
            ORDER BY started_at LIMIT ?
            """,
            RunStatus.PENDING.value,
            format_ts(now),
            limit,
        )
        return [_decode(Run, r) for r in rows]

    async def count_lineage(self, root_run_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT COUNT(*) AS n FROM runs WHERE root_run_id = ?", root_run_id
        )
        return int(row["n"]) if row else 0

    async def acquire_lock(
        self, run_id: str, worker_id: str, until: datetime, now: datetime
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs SET locked_by = ?, locked_until = ?
            WHERE id = ? AND (locked_until IS NULL OR locked_until < ?)
            """,
            worker_id,
            format_ts(until),
            run_id,
            format_ts(now),
        )
        return updated > 0

    async def release_lock(self, run_id: str, worker_id: str) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET locked_by = NULL, locked_until = NULL WHERE id = ? AND locked_by = ?",
            run_id,
            worker_id,
        )
        return updated > 0

    async def extend_lock(self, run_id: str, worker_id: str, until: datetime) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET locked_until = ? WHERE id = ? AND locked_by = ?",
            format_ts(until),
            run_id,
            worker_id,
        )
        return updated > 0

    async def clear_expired_locks(self, now: datetime) -> int:
        ts = format_ts(now)
        return await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs SET locked_by = NULL, locked_until = NULL,
                status = CASE WHEN status = ? THEN ? ELSE status END,
                updated_at = CASE WHEN status = ? THEN ? ELSE updated_at END
            WHERE locked_until < ?
            """,
            RunStatus.RUNNING.value,
            RunStatus.PENDING.value,
            RunStatus.RUNNING.value,
            ts,
            ts,
        )

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval(self, approval: Approval) -> None:
        await asyncio.to_thread(self._insert, "approvals", approval)

    async def get_approval(self, approval_id: str) -> Approval | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM approvals WHERE id = ?", approval_id
        )
        return _decode(Approval, row) if row else None

    async def find_approval(self, run_id: str, step_order: int) -> Approval | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT * FROM approvals WHERE run_id = ? AND step_order = ?
            ORDER BY requested_at DESC LIMIT 1
            """,
            run_id,
            step_order,
        )
        return _decode(Approval, row) if row else None

    async def transition_approval(
        self,
        approval_id: str,
        from_state: ApprovalState,
        to_state: ApprovalState,
        **fields: Any,
    ) -> Approval | None:
        fields["state"] = to_state
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params = [_encode(v, k) for k, v in fields.items()]

        def _transition(conn: sqlite3.Connection) -> Approval | None:
            cur = conn.execute(
                f"UPDATE approvals SET {assignments} WHERE id = ? AND state = ?",
                (*params, approval_id, ApprovalState(from_state).value),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM approvals WHERE id = ?", (approval_id,)).fetchone()
            return _decode(Approval, row)

        return await asyncio.to_thread(self._transaction, _transition)

    async def list_approvals(
        self,
        tenant_id: Optional[str] = None,
        state: Optional[ApprovalState] = None,
        expires_before: Optional[datetime] = None,
    ) -> list[Approval]:
        clauses, params = [], []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if state is not None:
            clauses.append("state = ?")
            params.append(ApprovalState(state).value)
        if expires_before is not None:
            clauses.append("expires_at < ?")
            params.append(format_ts(expires_before))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT * FROM approvals{where} ORDER BY requested_at", *params
        )
        return [_decode(Approval, r) for r in rows]

    # ------------------------------------------------------------------
    # Idempotency
    async def reserve_idempotency(self, record: IdempotencyRecord) -> IdempotencyRecord | None:
        def _reserve(conn: sqlite3.Connection) -> IdempotencyRecord | None:
            row = conn.execute(
                "SELECT * FROM idempotency_keys WHERE tenant_id = ? AND scope = ? AND key = ?",
                (record.tenant_id, record.scope, record.key),
            ).fetchone()
            if row:
                existing = _decode(IdempotencyRecord, row)
                if not existing.is_expired(record.created_at):
                    return existing
                conn.execute(
                    "DELETE FROM idempotency_keys WHERE tenant_id = ? AND scope = ? AND key = ?",
                    (record.tenant_id, record.scope, record.key),
                )
            query, params = self._insert_sql("idempotency_keys", _row_values(record))
            conn.execute(query, params)
            return None

        return await asyncio.to_thread(self._transaction, _reserve)

    async def complete_idempotency(
        self, tenant_id: str, scope: str, key: str, response: Any
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE idempotency_keys SET state = ?, response = ? WHERE tenant_id = ? AND scope = ? AND key = ?",
            "completed",
            _encode(response, "response"),
            tenant_id,
            scope,
            key,
        )

    async def delete_idempotency(self, tenant_id: str, scope: str, key: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM idempotency_keys WHERE tenant_id = ? AND scope = ? AND key = ?",
            tenant_id,
            scope,
            key,
        )

    async def purge_idempotency(self, now: datetime) -> int:
        return await asyncio.to_thread(
            self._execute, "DELETE FROM idempotency_keys WHERE expires_at <= ?", format_ts(now)
        )

    # ------------------------------------------------------------------
    # Compliance
    async def append_event(self, tenant_id: str, build: EventBuilder) -> ComplianceEvent:
        def _append(conn: sqlite3.Connection) -> ComplianceEvent:
            row = conn.execute(
                "SELECT digest, sequence FROM compliance_events WHERE tenant_id = ? ORDER BY sequence DESC LIMIT 1",
                (tenant_id,),
            ).fetchone()
            prev_digest = row["digest"] if row else ""
            sequence = row["sequence"] + 1 if row else 1
            event = build(prev_digest, sequence)
            query, params = self._insert_sql("compliance_events", _row_values(event))
            conn.execute(query, params)
            return event

        return await asyncio.to_thread(self._transaction, _append)

    async def list_events(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ComplianceEvent]:
        clauses, params = ["tenant_id = ?"], [tenant_id]
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(format_ts(start))
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(format_ts(end))
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM compliance_events WHERE {' AND '.join(clauses)} ORDER BY sequence",
            *params,
        )
        return [_decode(ComplianceEvent, r) for r in rows]

    async def save_anchor(self, anchor: ComplianceAnchor) -> ComplianceAnchor:
        def _save(conn: sqlite3.Connection) -> ComplianceAnchor:
            row = conn.execute(
                "SELECT * FROM compliance_anchors WHERE tenant_id = ? AND period = ?",
                (anchor.tenant_id, anchor.period),
            ).fetchone()
            if row:
                return _decode(ComplianceAnchor, row)
            query, params = self._insert_sql("compliance_anchors", _row_values(anchor))
            conn.execute(query, params)
            return anchor

        return await asyncio.to_thread(self._transaction, _save)

    async def get_anchor(self, tenant_id: str, period: str) -> ComplianceAnchor | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM compliance_anchors WHERE tenant_id = ? AND period = ?",
            tenant_id,
            period,
        )
        return _decode(ComplianceAnchor, row) if row else None

    async def list_anchors(self, tenant_id: str) -> list[ComplianceAnchor]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM compliance_anchors WHERE tenant_id = ? ORDER BY period",
            tenant_id,
        )
        return [_decode(ComplianceAnchor, r) for r in rows]

    # ------------------------------------------------------------------
    # Credential metadata
    async def save_credential(self, metadata: CredentialMetadata) -> None:
        values = _row_values(metadata)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        await asyncio.to_thread(
            self._execute,
            f"INSERT OR REPLACE INTO credentials ({columns}) VALUES ({placeholders})",
            *values.values(),
        )

    async def get_credential(self, tenant_id: str, connection_id: str) -> CredentialMetadata | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM credentials WHERE tenant_id = ? AND id = ?",
            tenant_id,
            connection_id,
        )
        return _decode(CredentialMetadata, row) if row else None

    async def update_credential(
        self, tenant_id: str, connection_id: str, **fields: Any
    ) -> CredentialMetadata | None:
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params = [_encode(v, k) for k, v in fields.items()]
        await asyncio.to_thread(
            self._execute,
            f"UPDATE credentials SET {assignments} WHERE tenant_id = ? AND id = ?",
            *params,
            tenant_id,
            connection_id,
        )
        return await self.get_credential(tenant_id, connection_id)
