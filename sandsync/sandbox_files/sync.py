"""Batched file transfer between the persistent store and a sandbox.

Batches run strictly one after another. When a batch fails, the batches
before it stay committed and SyncError reports how far the transfer got;
re-running the same call is safe because both directions are idempotent.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Protocol, TypeVar

from sandsync.config import persist_batch_size, restore_batch_size, sandbox_workdir
from sandsync.db.file_store import FileEntry, FileRecord, FileStore
from sandsync.errors import SyncError
from sandsync.sandbox_backends.base import FileWrite, SandboxHandle
from sandsync.sandbox_files.policy import has_skipped_segment, sandbox_path

logger = logging.getLogger(__name__)

T = TypeVar("T")

BatchCallback = Callable[[int, int], None]


class _FileLike(Protocol):
    path: str
    content: str
    is_folder: bool


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


async def restore_files(
    handle: SandboxHandle,
    records: Iterable[_FileLike],
    *,
    workdir: str | None = None,
    batch_size: int | None = None,
    skip: Iterable[str] | None = None,
    on_batch: BatchCallback | None = None,
) -> int:
    """Write stored file records into the sandbox working directory.

    Folder records are skipped (directories come into existence with their
    files), as is anything under a skip-set directory. Returns the number of
    files written.
    """
    root = workdir or sandbox_workdir()
    size = batch_size or restore_batch_size()
    files = [
        FileWrite(path=sandbox_path(root, r.path), data=r.content or "")
        for r in records
        if not r.is_folder and not has_skipped_segment(r.path, skip=skip)
    ]
    batches = chunked(files, size)
    written = 0
    for idx, batch in enumerate(batches):
        try:
            await handle.write_files(batch)
        except Exception as exc:
            raise SyncError(
                f"restore batch {idx + 1}/{len(batches)} failed for sandbox "
                f"{handle.sandbox_id}: {exc}",
                direction="restore",
                batches_completed=idx,
                items_completed=written,
            ) from exc
        written += len(batch)
        logger.debug(
            "Restored batch %d/%d (%d files) into %s",
            idx + 1,
            len(batches),
            len(batch),
            handle.sandbox_id,
        )
        if on_batch is not None:
            on_batch(idx, len(batch))
    logger.info("Restored %d files into sandbox %s", written, handle.sandbox_id)
    return written


async def persist_files(
    store: FileStore,
    project_id: str,
    entries: Iterable[_FileLike],
    *,
    batch_size: int | None = None,
    skip: Iterable[str] | None = None,
    on_batch: BatchCallback | None = None,
    updated_at: str | None = None,
) -> int:
    """Upsert entries into the store, keyed by (project_id, path)."""
    size = batch_size or persist_batch_size()
    stamp = updated_at or _now_iso()
    rows = [
        FileEntry(
            path=e.path,
            content="" if e.is_folder else (e.content or ""),
            is_folder=e.is_folder,
        )
        for e in entries
        if not has_skipped_segment(e.path, skip=skip)
    ]
    batches = chunked(rows, size)
    written = 0
    for idx, batch in enumerate(batches):
        try:
            await store.upsert_many(project_id, batch, updated_at=stamp)
        except Exception as exc:
            raise SyncError(
                f"persist batch {idx + 1}/{len(batches)} failed for project "
                f"{project_id}: {exc}",
                direction="persist",
                batches_completed=idx,
                items_completed=written,
            ) from exc
        written += len(batch)
        logger.debug(
            "Persisted batch %d/%d (%d records) for project %s",
            idx + 1,
            len(batches),
            len(batch),
            project_id,
        )
        if on_batch is not None:
            on_batch(idx, len(batch))
    logger.info("Persisted %d records for project %s", written, project_id)
    return written


async def delete_file(store: FileStore, project_id: str, path: str) -> int:
    return await store.delete(project_id, path)


async def delete_folder(store: FileStore, project_id: str, path: str) -> int:
    return await store.delete_prefix(project_id, path)


async def delete_all_project_files(store: FileStore, project_id: str) -> int:
    deleted = await store.delete_all(project_id)
    logger.info("Deleted %d file records for project %s", deleted, project_id)
    return deleted


async def get_project_files(store: FileStore, project_id: str) -> list[FileRecord]:
    return await store.list_files(project_id)


async def get_file_content(store: FileStore, project_id: str, path: str) -> str | None:
    rec = await store.get(project_id, path)
    if rec is None or rec.is_folder:
        return None
    return rec.content


async def rename_path(
    store: FileStore, project_id: str, old_path: str, new_path: str, *, is_folder: bool
) -> int:
    return await store.rename(project_id, old_path, new_path, recursive=is_folder)
