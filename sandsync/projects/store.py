from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from sandsync.db.sql import sql_ident, sql_str, tuples_to_dicts

if TYPE_CHECKING:  # pragma: no cover
    from sandsync.db.hasura_client import HasuraClient

_log = logging.getLogger(__name__)

PROJECT_STATUSES = ("idle", "provisioning", "restoring", "ready", "error", "paused")

# Columns declared NULL in the projects table.
_NULLABLE_COLUMNS = frozenset({"sandbox_id"})


@dataclass(frozen=True)
class ProjectRecord:
    project_id: str
    sandbox_id: str | None = None
    status: str = "idle"
    updated_at: str | None = None


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _check_status(status: str) -> str:
    if status not in PROJECT_STATUSES:
        raise ValueError(f"unknown project status: {status!r}")
    return status


class ProjectStore(Protocol):
    async def get(self, project_id: str) -> ProjectRecord | None: ...

    async def set_sandbox_id(self, project_id: str, sandbox_id: str | None) -> None: ...

    async def set_status(self, project_id: str, status: str) -> None: ...

    async def delete(self, project_id: str) -> None: ...


class MemoryProjectStore:
    def __init__(self) -> None:
        self._rows: dict[str, ProjectRecord] = {}

    async def get(self, project_id: str) -> ProjectRecord | None:
        return self._rows.get(project_id)

    async def set_sandbox_id(self, project_id: str, sandbox_id: str | None) -> None:
        cur = self._rows.get(project_id) or ProjectRecord(project_id=project_id)
        self._rows[project_id] = replace(
            cur, sandbox_id=sandbox_id, updated_at=_now_iso()
        )

    async def set_status(self, project_id: str, status: str) -> None:
        cur = self._rows.get(project_id) or ProjectRecord(project_id=project_id)
        self._rows[project_id] = replace(
            cur, status=_check_status(status), updated_at=_now_iso()
        )

    async def delete(self, project_id: str) -> None:
        self._rows.pop(project_id, None)


class HasuraProjectStore:
    """Project rows (sandbox binding and status) in ``<schema>.projects``."""

    def __init__(self, client: HasuraClient, *, schema: str = "sandsync_meta") -> None:
        self._client = client
        self._schema = sql_ident(schema)
        self._table = f"{self._schema}.projects"
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            _log.info("Running projects schema migration (%s)", self._table)
            self._client.run_sql(
                f"""
                CREATE SCHEMA IF NOT EXISTS {self._schema};
                CREATE TABLE IF NOT EXISTS {self._table} (
                  project_id text PRIMARY KEY,
                  sandbox_id text NULL,
                  status text NOT NULL DEFAULT 'idle',
                  updated_at timestamptz NOT NULL DEFAULT now()
                );
                ALTER TABLE {self._table}
                  ADD COLUMN IF NOT EXISTS sandbox_id text NULL;
                ALTER TABLE {self._table}
                  ADD COLUMN IF NOT EXISTS status text NOT NULL DEFAULT 'idle';
                """.strip()
            )
            self._schema_ready = True

    def _run_sync(self, sql: str, read_only: bool) -> dict[str, Any]:
        self.ensure_schema()
        return self._client.run_sql(sql, read_only=read_only)

    async def _run(self, sql: str, *, read_only: bool = False) -> dict[str, Any]:
        return await asyncio.to_thread(self._run_sync, sql, read_only)

    async def get(self, project_id: str) -> ProjectRecord | None:
        res = await self._run(
            f"""
            SELECT project_id, sandbox_id, status, updated_at
            FROM {self._table}
            WHERE project_id = {sql_str(project_id)}
            LIMIT 1;
            """.strip(),
            read_only=True,
        )
        rows = tuples_to_dicts(res, nullable=_NULLABLE_COLUMNS)
        if not rows:
            return None
        r = rows[0]
        return ProjectRecord(
            project_id=str(r["project_id"]),
            sandbox_id=r.get("sandbox_id"),
            status=str(r.get("status") or "idle"),
            updated_at=r.get("updated_at"),
        )

    async def set_sandbox_id(self, project_id: str, sandbox_id: str | None) -> None:
        value = sql_str(sandbox_id) if sandbox_id else "NULL"
        await self._run(
            f"""
            INSERT INTO {self._table} (project_id, sandbox_id, updated_at)
            VALUES ({sql_str(project_id)}, {value}, now())
            ON CONFLICT (project_id) DO UPDATE
              SET sandbox_id = EXCLUDED.sandbox_id, updated_at = now();
            """.strip()
        )

    async def set_status(self, project_id: str, status: str) -> None:
        value = sql_str(_check_status(status))
        await self._run(
            f"""
            INSERT INTO {self._table} (project_id, status, updated_at)
            VALUES ({sql_str(project_id)}, {value}, now())
            ON CONFLICT (project_id) DO UPDATE
              SET status = EXCLUDED.status, updated_at = now();
            """.strip()
        )

    async def delete(self, project_id: str) -> None:
        await self._run(
            f"DELETE FROM {self._table} WHERE project_id = {sql_str(project_id)};"
        )
