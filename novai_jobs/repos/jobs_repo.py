from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from novai_jobs.domain.errors import InfrastructureError
from novai_jobs.domain.models import Job
from novai_jobs.repos.base import JSON_COLUMNS, check_patch, coerce_json

_SELECT = """
SELECT
  id::text AS id,
  type,
  reference_id,
  status,
  progress,
  external_request_id,
  external_status,
  input_payload,
  output_payload,
  cost_cents,
  error_message,
  created_at,
  started_at,
  completed_at,
  updated_at,
  attempt_count,
  max_attempts,
  next_run_at
FROM jobs
"""


def _row_to_job(row: asyncpg.Record) -> Job:
    d = dict(row)
    d["input_payload"] = coerce_json(d.get("input_payload"), {})
    d["output_payload"] = coerce_json(d.get("output_payload"), None)
    return Job(**d)


def _db_value(column: str, value: Any) -> Any:
    if hasattr(value, "value") and column in ("status", "type"):
        value = value.value
    if column in JSON_COLUMNS and value is not None:
        return json.dumps(value, default=str)
    return value


class JobsRepo:
    """asyncpg-backed job store over the `jobs` and `job_costs` tables."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create(self, row: Dict[str, Any]) -> Job:
        sql = """
        INSERT INTO jobs (
          id, type, reference_id, status, progress, input_payload, output_payload,
          max_attempts, created_at, updated_at, next_run_at
        )
        VALUES ($1::uuid, $2, $3, $4, 0, $5::jsonb, $6::jsonb, $7, now(), now(), now())
        RETURNING id::text
        """
        job_id = str(row.get("id") or uuid.uuid4())
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval(
                    sql,
                    job_id,
                    _db_value("type", row["type"]),
                    row.get("reference_id"),
                    _db_value("status", row.get("status") or "pending"),
                    _db_value("input_payload", row.get("input_payload") or {}),
                    _db_value("output_payload", row.get("output_payload")),
                    int(row.get("max_attempts") or 1),
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise InfrastructureError(f"job insert failed: {e}") from e
        job = await self.get(job_id)
        if job is None:
            raise InfrastructureError(f"job {job_id} vanished after insert")
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        try:
            uuid.UUID(str(job_id))
        except ValueError:
            return None
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(_SELECT + " WHERE id = $1::uuid", job_id)
        return _row_to_job(row) if row else None

    async def update(
        self,
        job_id: str,
        patch: Dict[str, Any],
        only_if_status: Optional[Sequence[str]] = None,
    ) -> Optional[Job]:
        check_patch(patch)
        args: List[Any] = [job_id]
        sets: List[str] = []
        for col, val in patch.items():
            args.append(_db_value(col, val))
            cast = "::jsonb" if col in JSON_COLUMNS else ""
            sets.append(f"{col} = ${len(args)}{cast}")
        sets.append("updated_at = now()")

        where = "id = $1::uuid"
        if only_if_status:
            args.append([str(getattr(s, "value", s)) for s in only_if_status])
            where += f" AND status = ANY(${len(args)}::text[])"

        sql = f"UPDATE jobs SET {', '.join(sets)} WHERE {where} RETURNING id::text"
        try:
            async with self.pool.acquire() as conn:
                updated = await conn.fetchval(sql, *args)
        except (asyncpg.PostgresError, OSError) as e:
            raise InfrastructureError(f"job update failed: {e}") from e
        if not updated:
            return None
        return await self.get(job_id)

    async def list(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[Job]:
        clauses: List[str] = []
        args: List[Any] = []
        if job_type:
            args.append(str(getattr(job_type, "value", job_type)))
            clauses.append(f"type = ${len(args)}")
        if status:
            args.append(str(getattr(status, "value", status)))
            clauses.append(f"status = ${len(args)}")
        if batch_id:
            args.append(batch_id)
            clauses.append(f"input_payload->>'batch_id' = ${len(args)}")

        sql = _SELECT
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        if limit:
            args.append(int(limit))
            sql += f" LIMIT ${len(args)}"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_row_to_job(r) for r in rows]

    async def claim_next(self, job_type: str, limit: int = 1, lease_seconds: int = 300) -> List[str]:
        """
        Claim jobs ready to run:
        - status queued
        - next_run_at <= now()
        Increment attempt_count and push next_run_at out by the lease so a
        second worker cannot pick the same row before mark_processing.
        """
        sql = """
        WITH claimed_jobs AS (
            SELECT id
            FROM jobs
            WHERE type = $1
              AND status = 'queued'
              AND next_run_at <= now()
            ORDER BY created_at
            FOR UPDATE SKIP LOCKED
            LIMIT $2
        )
        UPDATE jobs j
        SET
          attempt_count = attempt_count + 1,
          next_run_at = now() + ($3 || ' seconds')::interval,
          updated_at = now()
        FROM claimed_jobs cj
        WHERE j.id = cj.id
        RETURNING j.id::text AS id
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, str(getattr(job_type, "value", job_type)), int(limit), str(int(lease_seconds)))
        return [str(r["id"]) for r in rows]

    async def record_cost(self, job_id: str, job_type: str, amount_cents: int) -> None:
        sql = """
        INSERT INTO job_costs (job_id, job_type, amount_cents, created_at)
        VALUES ($1::uuid, $2, $3, now())
        ON CONFLICT (job_id) DO NOTHING
        """
        async with self.pool.acquire() as conn:
            await conn.execute(sql, job_id, str(getattr(job_type, "value", job_type)), int(amount_cents))
