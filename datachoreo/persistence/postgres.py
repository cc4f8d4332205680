"""PostgreSQL implementation of the execution store."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional, Type, TypeVar

import asyncpg
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
    utcnow,
)
from .repository import EventBuilder, ExecutionStore

ModelT = TypeVar("ModelT", bound=BaseModel)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        version INTEGER NOT NULL,
        trigger_type TEXT NOT NULL,
        trigger_config JSONB,
        enabled BOOLEAN NOT NULL,
        simulation_mode BOOLEAN NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS steps (
        workflow_id TEXT NOT NULL,
        workflow_version INTEGER NOT NULL,
        step_order INTEGER NOT NULL,
        data JSONB NOT NULL,
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
        trigger_payload JSONB,
        status TEXT NOT NULL,
        current_step_order INTEGER NOT NULL,
        context JSONB,
        completed_steps JSONB,
        actions_count INTEGER NOT NULL,
        is_simulation BOOLEAN NOT NULL,
        locked_by TEXT,
        locked_until TIMESTAMPTZ,
        error_message TEXT,
        started_at TIMESTAMPTZ NOT NULL,
        finished_at TIMESTAMPTZ,
        duration_ms BIGINT,
        updated_at TIMESTAMPTZ NOT NULL,
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
        required_approvers JSONB,
        requested_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        responded_at TIMESTAMPTZ,
        responded_by TEXT,
        comment TEXT,
        context JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
        tenant_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        key TEXT NOT NULL,
        state TEXT NOT NULL,
        response JSONB,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (tenant_id, scope, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS compliance_events (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        sequence BIGINT NOT NULL,
        category TEXT NOT NULL,
        event_type TEXT NOT NULL,
        ref_type TEXT,
        ref_id TEXT,
        actor TEXT NOT NULL,
        actor_type TEXT NOT NULL,
        payload JSONB,
        pii_redacted BOOLEAN NOT NULL,
        timestamp TIMESTAMPTZ NOT NULL,
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
        from_ts TIMESTAMPTZ NOT NULL,
        to_ts TIMESTAMPTZ NOT NULL,
        event_count INTEGER NOT NULL,
        first_sequence BIGINT NOT NULL,
        last_sequence BIGINT NOT NULL,
        merkle_root TEXT NOT NULL,
        hmac TEXT NOT NULL,
        computed_at TIMESTAMPTZ NOT NULL,
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
        created_at TIMESTAMPTZ NOT NULL,
        rotated_at TIMESTAMPTZ,
        deleted_at TIMESTAMPTZ,
        last_health_check TIMESTAMPTZ,
        last_health_ok BOOLEAN,
        PRIMARY KEY (tenant_id, id)
    )
    """,
]


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _decode(model: Type[ModelT], row: asyncpg.Record) -> ModelT:
    return model.model_validate(dict(row))


def _row_values(model: BaseModel) -> dict[str, Any]:
    return {k: _encode(getattr(model, k)) for k in type(model).model_fields}


def _insert_sql(table: str, values: dict[str, Any], suffix: str = "") -> tuple[str, list[Any]]:
    columns = ", ".join(values)
    placeholders = ", ".join(f"${i}" for i in range(1, len(values) + 1))
    return (
        f"INSERT INTO {table} ({columns}) VALUES ({placeholders}){suffix}",
        list(values.values()),
    )


def _set_clause(fields: dict[str, Any], start: int = 1) -> tuple[str, list[Any]]:
    assignments = ", ".join(f"{k} = ${i}" for i, k in enumerate(fields, start))
    return assignments, [_encode(v) for v in fields.values()]


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=lambda v: json.dumps(v, default=str),
        decoder=json.loads,
        schema="pg_catalog",
    )


class PostgresExecutionStore(ExecutionStore):
    """Persist execution state using PostgreSQL.

    Chain appends serialize per tenant with ``pg_advisory_xact_lock`` so
    concurrent workers never fork a tenant's chain.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                init=_init_connection,
            )
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for ddl in _SCHEMA:
            await conn.execute(ddl)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _execute(self, query: str, *params: Any) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(query, *params)
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return int(status.split()[-1]) if status.split()[-1].isdigit() else 0

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchrow(query, *params)

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetch(query, *params)

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow, steps: list[Step]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                query, params = _insert_sql("workflows", _row_values(workflow))
                await conn.execute(query, *params)
                await self._write_steps(conn, workflow.id, workflow.version, steps)

    @staticmethod
    async def _write_steps(
        conn: asyncpg.Connection, workflow_id: str, version: int, steps: list[Step]
    ) -> None:
        await conn.execute(
            "DELETE FROM steps WHERE workflow_id = $1 AND workflow_version = $2",
            workflow_id,
            version,
        )
        for step in steps:
            await conn.execute(
                "INSERT INTO steps (workflow_id, workflow_version, step_order, data) VALUES ($1, $2, $3, $4)",
                workflow_id,
                version,
                step.step_order,
                step.model_dump(mode="json"),
            )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await self._fetchrow("SELECT * FROM workflows WHERE id = $1", workflow_id)
        return _decode(Workflow, row) if row else None

    async def update_workflow(self, workflow_id: str, **fields: Any) -> Workflow | None:
        fields["updated_at"] = utcnow()
        assignments, params = _set_clause(fields)
        row = await self._fetchrow(
            f"UPDATE workflows SET {assignments} WHERE id = ${len(params) + 1} RETURNING *",
            *params,
            workflow_id,
        )
        return _decode(Workflow, row) if row else None

    async def save_steps(self, workflow_id: str, version: int, steps: list[Step]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._write_steps(conn, workflow_id, version, steps)

    async def list_steps(self, workflow_id: str, version: int) -> list[Step]:
        rows = await self._fetch(
            "SELECT data FROM steps WHERE workflow_id = $1 AND workflow_version = $2 ORDER BY step_order",
            workflow_id,
            version,
        )
        return [Step.model_validate(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> tuple[Run, bool]:
        query, params = _insert_sql(
            "runs",
            _row_values(run),
            " ON CONFLICT (tenant_id, workflow_id, idempotency_key) DO NOTHING RETURNING *",
        )
        row = await self._fetchrow(query, *params)
        if row:
            return _decode(Run, row), True
        existing = await self._fetchrow(
            "SELECT * FROM runs WHERE tenant_id = $1 AND workflow_id = $2 AND idempotency_key = $3",
            run.tenant_id,
            run.workflow_id,
            run.idempotency_key,
        )
        return _decode(Run, existing), False

    async def get_run(self, run_id: str) -> Run | None:
        row = await self._fetchrow("SELECT * FROM runs WHERE id = $1", run_id)
        return _decode(Run, row) if row else None

    async def update_run(
        self,
        run_id: str,
        expected_status: Optional[Iterable[RunStatus]] = None,
        **fields: Any,
    ) -> Run | None:
        fields["updated_at"] = utcnow()
        assignments, params = _set_clause(fields)
        params.append(run_id)
        query = f"UPDATE runs SET {assignments} WHERE id = ${len(params)}"
        if expected_status is not None:
            params.append([RunStatus(s).value for s in expected_status])
            query += f" AND status = ANY(${len(params)}::text[])"
        row = await self._fetchrow(query + " RETURNING *", *params)
        return _decode(Run, row) if row else None

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[Run]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("tenant_id", tenant_id),
            ("status", RunStatus(status).value if status is not None else None),
            ("workflow_id", workflow_id),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetch(f"SELECT * FROM runs{where} ORDER BY started_at", *params)
        return [_decode(Run, r) for r in rows]

    async def list_runnable(self, now: datetime, limit: int) -> list[Run]:
        rows = await self._fetch(
            """
            SELECT * FROM runs
            WHERE status = $1 AND (locked_until IS NULL OR locked_until < $2)
            ORDER BY started_at LIMIT $3
            """,
            RunStatus.PENDING.value,
            now,
            limit,
        )
        return [_decode(Run, r) for r in rows]

    async def count_lineage(self, root_run_id: str) -> int:
        row = await self._fetchrow(
            "SELECT COUNT(*) AS n FROM runs WHERE root_run_id = $1", root_run_id
        )
        return int(row["n"]) if row else 0

    async def acquire_lock(
        self, run_id: str, worker_id: str, until: datetime, now: datetime
    ) -> bool:
        updated = await self._execute(
            """
            UPDATE runs SET locked_by = $1, locked_until = $2
            WHERE id = $3 AND (locked_until IS NULL OR locked_until < $4)
            """,
            worker_id,
            until,
            run_id,
            now,
        )
        return updated > 0

    async def release_lock(self, run_id: str, worker_id: str) -> bool:
        updated = await self._execute(
            "UPDATE runs SET locked_by = NULL, locked_until = NULL WHERE id = $1 AND locked_by = $2",
            run_id,
            worker_id,
        )
        return updated > 0

    async def extend_lock(self, run_id: str, worker_id: str, until: datetime) -> bool:
        updated = await self._execute(
            "UPDATE runs SET locked_until = $1 WHERE id = $2 AND locked_by = $3",
            until,
            run_id,
            worker_id,
        )
        return updated > 0

    async def clear_expired_locks(self, now: datetime) -> int:
        return await self._execute(
            """
            UPDATE runs SET locked_by = NULL, locked_until = NULL,
                status = CASE WHEN status = $2 THEN $3 ELSE status END,
                updated_at = CASE WHEN status = $2 THEN $1 ELSE updated_at END
            WHERE locked_until < $1
            """,
            now,
            RunStatus.RUNNING.value,
            RunStatus.PENDING.value,
        )

    # ------------------------------------------------------------------
    async def create_approval(self, approval: Approval) -> None:
        query, params = _insert_sql("approvals", _row_values(approval))
        await self._execute(query, *params)

    async def get_approval(self, approval_id: str) -> Approval | None:
        row = await self._fetchrow("SELECT * FROM approvals WHERE id = $1", approval_id)
        return _decode(Approval, row) if row else None

    async def find_approval(self, run_id: str, step_order: int) -> Approval | None:
        row = await self._fetchrow(
            """
            SELECT * FROM approvals WHERE run_id = $1 AND step_order = $2
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
        assignments, params = _set_clause(fields)
        params.extend([approval_id, ApprovalState(from_state).value])
        row = await self._fetchrow(
            f"UPDATE approvals SET {assignments} WHERE id = ${len(params) - 1} "
            f"AND state = ${len(params)} RETURNING *",
            *params,
        )
        return _decode(Approval, row) if row else None

    async def list_approvals(
        self,
        tenant_id: Optional[str] = None,
        state: Optional[ApprovalState] = None,
        expires_before: Optional[datetime] = None,
    ) -> list[Approval]:
        clauses: list[str] = []
        params: list[Any] = []
        if tenant_id is not None:
            params.append(tenant_id)
            clauses.append(f"tenant_id = ${len(params)}")
        if state is not None:
            params.append(ApprovalState(state).value)
            clauses.append(f"state = ${len(params)}")
        if expires_before is not None:
            params.append(expires_before)
            clauses.append(f"expires_at < ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetch(f"SELECT * FROM approvals{where} ORDER BY requested_at", *params)
        return [_decode(Approval, r) for r in rows]

    # ------------------------------------------------------------------
    async def reserve_idempotency(self, record: IdempotencyRecord) -> IdempotencyRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM idempotency_keys WHERE tenant_id = $1 AND scope = $2 AND key = $3 AND expires_at <= $4",
                    record.tenant_id,
                    record.scope,
                    record.key,
                    record.created_at,
                )
                query, params = _insert_sql(
                    "idempotency_keys",
                    _row_values(record),
                    " ON CONFLICT (tenant_id, scope, key) DO NOTHING RETURNING key",
                )
                inserted = await conn.fetchrow(query, *params)
                if inserted:
                    return None
                row = await conn.fetchrow(
                    "SELECT * FROM idempotency_keys WHERE tenant_id = $1 AND scope = $2 AND key = $3",
                    record.tenant_id,
                    record.scope,
                    record.key,
                )
        return _decode(IdempotencyRecord, row)

    async def complete_idempotency(
        self, tenant_id: str, scope: str, key: str, response: Any
    ) -> None:
        await self._execute(
            "UPDATE idempotency_keys SET state = $1, response = $2 WHERE tenant_id = $3 AND scope = $4 AND key = $5",
            "completed",
            response,
            tenant_id,
            scope,
            key,
        )

    async def delete_idempotency(self, tenant_id: str, scope: str, key: str) -> None:
        await self._execute(
            "DELETE FROM idempotency_keys WHERE tenant_id = $1 AND scope = $2 AND key = $3",
            tenant_id,
            scope,
            key,
        )

    async def purge_idempotency(self, now: datetime) -> int:
        return await self._execute("DELETE FROM idempotency_keys WHERE expires_at <= $1", now)

    # ------------------------------------------------------------------
    async def append_event(self, tenant_id: str, build: EventBuilder) -> ComplianceEvent:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", tenant_id)
                head = await conn.fetchrow(
                    "SELECT digest, sequence FROM compliance_events WHERE tenant_id = $1 ORDER BY sequence DESC LIMIT 1",
                    tenant_id,
                )
                prev_digest = head["digest"] if head else ""
                sequence = head["sequence"] + 1 if head else 1
                event = build(prev_digest, sequence)
                query, params = _insert_sql("compliance_events", _row_values(event))
                await conn.execute(query, *params)
        return event

    async def list_events(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ComplianceEvent]:
        clauses, params = ["tenant_id = $1"], [tenant_id]
        if start is not None:
            params.append(start)
            clauses.append(f"timestamp >= ${len(params)}")
        if end is not None:
            params.append(end)
            clauses.append(f"timestamp <= ${len(params)}")
        rows = await self._fetch(
            f"SELECT * FROM compliance_events WHERE {' AND '.join(clauses)} ORDER BY sequence",
            *params,
        )
        return [_decode(ComplianceEvent, r) for r in rows]

    async def save_anchor(self, anchor: ComplianceAnchor) -> ComplianceAnchor:
        query, params = _insert_sql(
            "compliance_anchors",
            _row_values(anchor),
            " ON CONFLICT (tenant_id, period) DO NOTHING RETURNING *",
        )
        row = await self._fetchrow(query, *params)
        if row:
            return _decode(ComplianceAnchor, row)
        existing = await self.get_anchor(anchor.tenant_id, anchor.period)
        return existing or anchor

    async def get_anchor(self, tenant_id: str, period: str) -> ComplianceAnchor | None:
        row = await self._fetchrow(
            "SELECT * FROM compliance_anchors WHERE tenant_id = $1 AND period = $2",
            tenant_id,
            period,
        )
        return _decode(ComplianceAnchor, row) if row else None

    async def list_anchors(self, tenant_id: str) -> list[ComplianceAnchor]:
        rows = await self._fetch(
            "SELECT * FROM compliance_anchors WHERE tenant_id = $1 ORDER BY period",
            tenant_id,
        )
        return [_decode(ComplianceAnchor, r) for r in rows]

    # ------------------------------------------------------------------
    async def save_credential(self, metadata: CredentialMetadata) -> None:
        values = _row_values(metadata)
        updates = ", ".join(f"{k} = EXCLUDED.{k}" for k in values if k not in ("id", "tenant_id"))
        query, params = _insert_sql(
            "credentials", values, f" ON CONFLICT (tenant_id, id) DO UPDATE SET {updates}"
        )
        await self._execute(query, *params)

    async def get_credential(self, tenant_id: str, connection_id: str) -> CredentialMetadata | None:
        row = await self._fetchrow(
            "SELECT * FROM credentials WHERE tenant_id = $1 AND id = $2",
            tenant_id,
            connection_id,
        )
        return _decode(CredentialMetadata, row) if row else None

    async def update_credential(
        self, tenant_id: str, connection_id: str, **fields: Any
    ) -> CredentialMetadata | None:
        assignments, params = _set_clause(fields)
        n = len(params)
        row = await self._fetchrow(
            f"UPDATE credentials SET {assignments} WHERE tenant_id = ${n + 1} AND id = ${n + 2} RETURNING *",
            *params,
            tenant_id,
            connection_id,
        )
        return _decode(CredentialMetadata, row) if row else None
