"""Persistent file records keyed by ``(project_id, path)``.

Two implementations share the :class:`FileStore` protocol:

- :class:`HasuraFileStore` keeps rows in Postgres through Hasura ``run_sql``.
- :class:`MemoryFileStore` keeps rows in a dict (local development and tests).

Upserts are last-writer-wins on ``updated_at``: a write carrying an older
timestamp than the stored row leaves the row untouched.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Protocol

from sandsync.db.sql import parse_bool, sql_bool, sql_ident, sql_str, tuples_to_dicts

if TYPE_CHECKING:  # pragma: no cover
    from sandsync.db.hasura_client import HasuraClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEntry:
    """A file or folder as seen in a sandbox (or handed in by a caller)."""

    path: str
    content: str = ""
    is_folder: bool = False


@dataclass(frozen=True)
class FileRecord:
    project_id: str
    path: str
    content: str = ""
    is_folder: bool = False
    updated_at: str | None = None


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


class FileStore(Protocol):
    async def upsert_many(
        self, project_id: str, entries: Sequence[FileEntry], *, updated_at: str
    ) -> None: ...

    async def get(self, project_id: str, path: str) -> FileRecord | None: ...

    async def list_files(self, project_id: str) -> list[FileRecord]: ...

    async def delete(self, project_id: str, path: str) -> int: ...

    async def delete_prefix(self, project_id: str, prefix: str) -> int: ...

    async def delete_all(self, project_id: str) -> int: ...

    async def rename(
        self, project_id: str, old_path: str, new_path: str, *, recursive: bool
    ) -> int: ...


class MemoryFileStore:
    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], FileRecord] = {}
        self.upsert_calls = 0

    async def upsert_many(
        self, project_id: str, entries: Sequence[FileEntry], *, updated_at: str
    ) -> None:
        self.upsert_calls += 1
        for e in entries:
            key = (project_id, e.path)
            cur = self._rows.get(key)
            if cur is not None and (cur.updated_at or "") > updated_at:
                continue
            self._rows[key] = FileRecord(
                project_id=project_id,
                path=e.path,
                content="" if e.is_folder else (e.content or ""),
                is_folder=e.is_folder,
                updated_at=updated_at,
            )

    async def get(self, project_id: str, path: str) -> FileRecord | None:
        return self._rows.get((project_id, path))

    async def list_files(self, project_id: str) -> list[FileRecord]:
        rows = [r for (pid, _), r in self._rows.items() if pid == project_id]
        return sorted(rows, key=lambda r: r.path)

    async def delete(self, project_id: str, path: str) -> int:
        return 1 if self._rows.pop((project_id, path), None) is not None else 0

    async def delete_prefix(self, project_id: str, prefix: str) -> int:
        keys = [k for k in self._rows if k[0] == project_id and _under(k[1], prefix)]
        for k in keys:
            del self._rows[k]
        return len(keys)

    async def delete_all(self, project_id: str) -> int:
        keys = [k for k in self._rows if k[0] == project_id]
        for k in keys:
            del self._rows[k]
        return len(keys)

    async def rename(
        self, project_id: str, old_path: str, new_path: str, *, recursive: bool
    ) -> int:
        if recursive:
            keys = [
                k for k in self._rows if k[0] == project_id and _under(k[1], old_path)
            ]
        else:
            keys = [(project_id, old_path)] if (project_id, old_path) in self._rows else []
        moved = [self._rows.pop(k) for k in keys]
        for r in moved:
            target = new_path + r.path[len(old_path) :]
            self._rows[(project_id, target)] = replace(r, path=target)
        return len(moved)


class HasuraFileStore:
    """File records in ``<schema>.builder_sandbox_files``."""

    def __init__(self, client: HasuraClient, *, schema: str = "sandsync_meta") -> None:
        self._client = client
        self._schema = sql_ident(schema)
        self._table = f"{self._schema}.builder_sandbox_files"
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            logger.info("Running file store schema migration (%s)", self._table)
            self._client.run_sql(
                f"""
                CREATE SCHEMA IF NOT EXISTS {self._schema};
                CREATE TABLE IF NOT EXISTS {self._table} (
                  id bigserial PRIMARY KEY,
                  project_id text NOT NULL,
                  path text NOT NULL,
                  content text NOT NULL DEFAULT '',
                  is_folder boolean NOT NULL DEFAULT false,
                  updated_at timestamptz NOT NULL DEFAULT now(),
                  UNIQUE (project_id, path)
                );
                CREATE INDEX IF NOT EXISTS idx_builder_sandbox_files_project
                  ON {self._table}(project_id);
                """.strip()
            )
            self._schema_ready = True

    def _run_sync(self, sql: str, read_only: bool) -> dict[str, Any]:
        self.ensure_schema()
        return self._client.run_sql(sql, read_only=read_only)

    async def _run(self, sql: str, *, read_only: bool = False) -> dict[str, Any]:
        return await asyncio.to_thread(self._run_sync, sql, read_only)

    def _record(self, row: dict[str, Any]) -> FileRecord:
        return FileRecord(
            project_id=str(row["project_id"]),
            path=str(row["path"]),
            content=str(row.get("content") or ""),
            is_folder=parse_bool(row.get("is_folder")),
            updated_at=row.get("updated_at"),
        )

    async def upsert_many(
        self, project_id: str, entries: Sequence[FileEntry], *, updated_at: str
    ) -> None:
        if not entries:
            return
        values = ",\n".join(
            "({}, {}, {}, {}, {}::timestamptz)".format(
                sql_str(project_id),
                sql_str(e.path),
                sql_str("" if e.is_folder else e.content),
                sql_bool(e.is_folder),
                sql_str(updated_at),
            )
            for e in entries
        )
        await self._run(
            f"""
            INSERT INTO {self._table} (project_id, path, content, is_folder, updated_at)
            VALUES
            {values}
            ON CONFLICT (project_id, path) DO UPDATE
              SET content = EXCLUDED.content,
                  is_folder = EXCLUDED.is_folder,
                  updated_at = EXCLUDED.updated_at
              WHERE {self._table}.updated_at <= EXCLUDED.updated_at;
            """.strip()
        )

    async def get(self, project_id: str, path: str) -> FileRecord | None:
        res = await self._run(
            f"""
            SELECT project_id, path, content, is_folder, updated_at
            FROM {self._table}
            WHERE project_id = {sql_str(project_id)} AND path = {sql_str(path)}
            LIMIT 1;
            """.strip(),
            read_only=True,
        )
        rows = tuples_to_dicts(res)
        return self._record(rows[0]) if rows else None

    async def list_files(self, project_id: str) -> list[FileRecord]:
        res = await self._run(
            f"""
            SELECT project_id, path, content, is_folder, updated_at
            FROM {self._table}
            WHERE project_id = {sql_str(project_id)}
            ORDER BY path ASC;
            """.strip(),
            read_only=True,
        )
        return [self._record(r) for r in tuples_to_dicts(res)]

    async def delete(self, project_id: str, path: str) -> int:
        res = await self._run(
            f"""
            DELETE FROM {self._table}
            WHERE project_id = {sql_str(project_id)} AND path = {sql_str(path)}
            RETURNING path;
            """.strip()
        )
        return len(tuples_to_dicts(res))

    async def delete_prefix(self, project_id: str, prefix: str) -> int:
        res = await self._run(
            f"""
            DELETE FROM {self._table}
            WHERE project_id = {sql_str(project_id)}
              AND (path = {sql_str(prefix)}
                   OR left(path, {len(prefix) + 1}) = {sql_str(prefix + "/")})
            RETURNING path;
            """.strip()
        )
        return len(tuples_to_dicts(res))

    async def delete_all(self, project_id: str) -> int:
        res = await self._run(
            f"""
            DELETE FROM {self._table}
            WHERE project_id = {sql_str(project_id)}
            RETURNING path;
            """.strip()
        )
        return len(tuples_to_dicts(res))

    async def rename(
        self, project_id: str, old_path: str, new_path: str, *, recursive: bool
    ) -> int:
        pid = sql_str(project_id)
        if recursive:
            match = (
                f"(path = {sql_str(old_path)} "
                f"OR left(path, {len(old_path) + 1}) = {sql_str(old_path + '/')})"
            )
            new_expr = f"{sql_str(new_path)} || substr(path, {len(old_path) + 1})"
        else:
            match = f"path = {sql_str(old_path)}"
            new_expr = sql_str(new_path)
        res = await self._run(
            f"""
            UPDATE {self._table}
            SET path = {new_expr}, updated_at = now()
            WHERE project_id = {pid} AND {match}
            RETURNING path;
            """.strip()
        )
        return len(tuples_to_dicts(res))
