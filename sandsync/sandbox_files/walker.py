from __future__ import annotations

import logging
import posixpath
from collections.abc import Iterable
from dataclasses import dataclass

from sandsync.config import skip_dirs
from sandsync.db.file_store import FileEntry
from sandsync.sandbox_backends.base import SandboxHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NonFatal:
    """A per-entry failure the walk degraded around."""

    op: str  # "list" | "read"
    path: str
    error: str


async def walk(
    handle: SandboxHandle,
    dir_path: str,
    rel_base: str,
    results: list[FileEntry],
    issues: list[NonFatal] | None = None,
    *,
    skip: Iterable[str] | None = None,
) -> None:
    """Recursively collect files and folders under ``dir_path``.

    Paths in ``results`` are relative (``rel_base`` prefixed). Skip-set
    directories are pruned entirely. A directory that cannot be listed yields
    nothing; a file that cannot be read yields empty content.
    """
    names = frozenset(skip if skip is not None else skip_dirs())
    try:
        entries = await handle.list_dir(dir_path)
    except Exception as exc:
        logger.warning("walk: cannot list %s: %s", dir_path, exc)
        if issues is not None:
            issues.append(NonFatal(op="list", path=dir_path, error=str(exc)))
        return

    for entry in entries:
        if entry.name in names:
            continue
        rel = f"{rel_base}/{entry.name}" if rel_base else entry.name
        full = posixpath.join(dir_path, entry.name)
        if entry.is_dir:
            results.append(FileEntry(path=rel, content="", is_folder=True))
            await walk(handle, full, rel, results, issues, skip=names)
            continue
        try:
            content = await handle.read_file(full)
        except Exception as exc:
            logger.warning("walk: cannot read %s: %s", full, exc)
            if issues is not None:
                issues.append(NonFatal(op="read", path=full, error=str(exc)))
            content = ""
        results.append(FileEntry(path=rel, content=content, is_folder=False))
