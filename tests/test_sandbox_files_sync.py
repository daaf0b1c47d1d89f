from __future__ import annotations

import asyncio

import pytest

from sandsync.db.file_store import FileEntry, MemoryFileStore
from sandsync.errors import SyncError
from sandsync.sandbox_files import sync


class RecordingHandle:
    sandbox_id = "sbx-test"

    def __init__(self, *, fail_on_batch: int | None = None) -> None:
        self.batches: list[list] = []
        self.files: dict[str, str] = {}
        self._fail_on_batch = fail_on_batch

    async def write_files(self, files) -> None:
        if self._fail_on_batch is not None and len(self.batches) == self._fail_on_batch:
            raise RuntimeError("write failed")
        self.batches.append(list(files))
        for f in files:
            self.files[f.path] = f.data


class FlakyStore(MemoryFileStore):
    def __init__(self, fail_on_call: int) -> None:
        super().__init__()
        self._fail_on_call = fail_on_call

    async def upsert_many(self, project_id, entries, *, updated_at):
        if self.upsert_calls == self._fail_on_call:
            self.upsert_calls += 1
            raise RuntimeError("db down")
        await super().upsert_many(project_id, entries, updated_at=updated_at)


def _files(n: int) -> list[FileEntry]:
    return [FileEntry(path=f"src/f{i:03d}.ts", content=f"export const v = {i};") for i in range(n)]


def test_chunked() -> None:
    assert sync.chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert sync.chunked([], 3) == []
    with pytest.raises(ValueError):
        sync.chunked([1], 0)


def test_restore_writes_files_under_workdir_and_skips_folders() -> None:
    handle = RecordingHandle()
    records = [
        FileEntry(path="README.md", content="# hi"),
        FileEntry(path="src/index.ts", content="console.log(1)"),
        FileEntry(path="src", is_folder=True),
    ]

    written = asyncio.run(
        sync.restore_files(handle, records, workdir="/home/user/project", batch_size=50)
    )
    assert written == 2
    assert len(handle.batches) == 1
    assert handle.files == {
        "/home/user/project/README.md": "# hi",
        "/home/user/project/src/index.ts": "console.log(1)",
    }


def test_restore_batches_sequentially() -> None:
    handle = RecordingHandle()
    seen: list[tuple[int, int]] = []

    written = asyncio.run(
        sync.restore_files(
            handle,
            _files(120),
            workdir="/w",
            batch_size=50,
            on_batch=lambda i, n: seen.append((i, n)),
        )
    )
    assert written == 120
    assert [len(b) for b in handle.batches] == [50, 50, 20]
    assert seen == [(0, 50), (1, 50), (2, 20)]


def test_restore_drops_skip_set_paths() -> None:
    handle = RecordingHandle()
    records = [
        FileEntry(path="package.json", content="{}"),
        FileEntry(path="node_modules/react/index.js", content="x"),
        FileEntry(path="apps/web/.next/cache.json", content="x"),
    ]
    written = asyncio.run(sync.restore_files(handle, records, workdir="/w", batch_size=50))
    assert written == 1
    assert list(handle.files) == ["/w/package.json"]


def test_restore_failure_reports_progress() -> None:
    handle = RecordingHandle(fail_on_batch=1)

    with pytest.raises(SyncError) as ei:
        asyncio.run(sync.restore_files(handle, _files(120), workdir="/w", batch_size=50))
    err = ei.value
    assert err.direction == "restore"
    assert err.batches_completed == 1
    assert err.items_completed == 50
    # The first batch stays written.
    assert len(handle.files) == 50


def test_persist_150_records_in_two_batches_and_lists_sorted() -> None:
    store = MemoryFileStore()
    entries = list(reversed(_files(150)))

    async def _run():
        n = await sync.persist_files(store, "p1", entries, batch_size=100)
        rows = await sync.get_project_files(store, "p1")
        return n, rows

    n, rows = asyncio.run(_run())
    assert n == 150
    assert store.upsert_calls >= 2
    assert len(rows) == 150
    assert [r.path for r in rows] == sorted(r.path for r in rows)


def test_persist_drops_skip_set_paths_and_folder_content() -> None:
    store = MemoryFileStore()
    entries = [
        FileEntry(path="src", content="ignored", is_folder=True),
        FileEntry(path=".git/HEAD", content="ref"),
        FileEntry(path="src/a.ts", content="a"),
    ]

    async def _run():
        await sync.persist_files(store, "p1", entries, batch_size=100)
        return await sync.get_project_files(store, "p1")

    rows = asyncio.run(_run())
    assert [(r.path, r.content, r.is_folder) for r in rows] == [
        ("src", "", True),
        ("src/a.ts", "a", False),
    ]


def test_persist_failure_keeps_earlier_batches() -> None:
    store = FlakyStore(fail_on_call=1)

    async def _run():
        with pytest.raises(SyncError) as ei:
            await sync.persist_files(store, "p1", _files(250), batch_size=100)
        rows = await sync.get_project_files(store, "p1")
        return ei.value, rows

    err, rows = asyncio.run(_run())
    assert err.direction == "persist"
    assert err.batches_completed == 1
    assert err.items_completed == 100
    assert len(rows) == 100


def test_persist_is_last_writer_wins() -> None:
    store = MemoryFileStore()

    async def _run():
        await sync.persist_files(
            store, "p1", [FileEntry("a.ts", "new")], updated_at="2026-01-02T00:00:00+00:00"
        )
        await sync.persist_files(
            store, "p1", [FileEntry("a.ts", "old")], updated_at="2026-01-01T00:00:00+00:00"
        )
        return await sync.get_file_content(store, "p1", "a.ts")

    assert asyncio.run(_run()) == "new"


def test_delete_rename_and_delete_all() -> None:
    store = MemoryFileStore()
    entries = [
        FileEntry("src", is_folder=True),
        FileEntry("src/a.ts", "a"),
        FileEntry("src/lib/b.ts", "b"),
        FileEntry("srcx/c.ts", "c"),
        FileEntry("README.md", "r"),
    ]

    async def _run():
        await sync.persist_files(store, "p1", entries, batch_size=100)
        await sync.persist_files(store, "p2", [FileEntry("keep.ts", "k")], batch_size=100)
        moved = await sync.rename_path(store, "p1", "src", "app", is_folder=True)
        after_rename = [r.path for r in await sync.get_project_files(store, "p1")]
        removed = await sync.delete_folder(store, "p1", "app/lib")
        single = await sync.delete_file(store, "p1", "README.md")
        after_delete = [r.path for r in await sync.get_project_files(store, "p1")]
        total = await sync.delete_all_project_files(store, "p1")
        left_p1 = await sync.get_project_files(store, "p1")
        left_p2 = await sync.get_project_files(store, "p2")
        return moved, after_rename, removed, single, after_delete, total, left_p1, left_p2

    moved, after_rename, removed, single, after_delete, total, left_p1, left_p2 = asyncio.run(
        _run()
    )
    assert moved == 3
    assert after_rename == ["README.md", "app", "app/a.ts", "app/lib/b.ts", "srcx/c.ts"]
    assert removed == 1
    assert single == 1
    assert after_delete == ["app", "app/a.ts", "srcx/c.ts"]
    assert total == 3
    assert left_p1 == []
    assert [r.path for r in left_p2] == ["keep.ts"]
