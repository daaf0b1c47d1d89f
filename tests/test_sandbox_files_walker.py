from __future__ import annotations

import asyncio

from sandsync.db.file_store import FileEntry
from sandsync.sandbox_backends.base import DirEntry, FileWrite
from sandsync.sandbox_backends.local_backend import LocalProvider
from sandsync.sandbox_files.sync import restore_files
from sandsync.sandbox_files.walker import NonFatal, walk


class FakeTreeHandle:
    """In-memory tree: dirs map to child names, files map to content."""

    sandbox_id = "sbx-tree"

    def __init__(self, dirs: dict[str, list[str]], files: dict[str, str]) -> None:
        self.dirs = dirs
        self.files = files
        self.listed: list[str] = []
        self.broken_dirs: set[str] = set()
        self.broken_files: set[str] = set()

    async def list_dir(self, path: str) -> list[DirEntry]:
        self.listed.append(path)
        if path in self.broken_dirs:
            raise PermissionError("denied")
        return [
            DirEntry(name=n, path=f"{path}/{n}", is_dir=f"{path}/{n}" in self.dirs)
            for n in self.dirs[path]
        ]

    async def read_file(self, path: str) -> str:
        if path in self.broken_files:
            raise OSError("unreadable")
        return self.files[path]


def test_walk_prunes_skip_dirs_at_any_depth() -> None:
    handle = FakeTreeHandle(
        dirs={
            "/w": ["node_modules", "packages", "index.ts"],
            "/w/node_modules": ["react"],
            "/w/node_modules/react": [],
            "/w/packages": ["ui"],
            "/w/packages/ui": [".turbo", "dist", "button.tsx"],
            "/w/packages/ui/.turbo": [],
            "/w/packages/ui/dist": [],
        },
        files={"/w/index.ts": "i", "/w/packages/ui/button.tsx": "b"},
    )
    results: list[FileEntry] = []

    asyncio.run(walk(handle, "/w", "", results))
    assert [(r.path, r.is_folder) for r in results] == [
        ("packages", True),
        ("packages/ui", True),
        ("packages/ui/button.tsx", False),
        ("index.ts", False),
    ]
    # Skipped directories are never even listed.
    assert "/w/node_modules" not in handle.listed
    assert "/w/packages/ui/dist" not in handle.listed


def test_walk_skip_match_is_case_sensitive() -> None:
    handle = FakeTreeHandle(
        dirs={"/w": ["Dist"], "/w/Dist": ["a.js"]},
        files={"/w/Dist/a.js": "a"},
    )
    results: list[FileEntry] = []
    asyncio.run(walk(handle, "/w", "", results))
    assert [r.path for r in results] == ["Dist", "Dist/a.js"]


def test_walk_degrades_on_unreadable_entries() -> None:
    handle = FakeTreeHandle(
        dirs={"/w": ["locked", "ok.ts", "bad.ts"], "/w/locked": []},
        files={"/w/ok.ts": "ok", "/w/bad.ts": "?"},
    )
    handle.broken_dirs.add("/w/locked")
    handle.broken_files.add("/w/bad.ts")
    results: list[FileEntry] = []
    issues: list[NonFatal] = []

    asyncio.run(walk(handle, "/w", "", results, issues))
    assert [(r.path, r.content) for r in results] == [
        ("locked", ""),
        ("ok.ts", "ok"),
        ("bad.ts", ""),
    ]
    assert [(i.op, i.path) for i in issues] == [("list", "/w/locked"), ("read", "/w/bad.ts")]


def test_walk_missing_root_yields_nothing() -> None:
    handle = FakeTreeHandle(dirs={}, files={})
    results: list[FileEntry] = []
    asyncio.run(walk(handle, "/nope", "", results))
    assert results == []


def test_restore_then_walk_round_trip_on_local_sandbox(tmp_path) -> None:
    provider = LocalProvider(str(tmp_path))
    records = [
        FileEntry(path="README.md", content="# Demo\n"),
        FileEntry(path="src/index.ts", content="export {};\n"),
        FileEntry(path="src", is_folder=True),
    ]

    async def _run():
        handle = await provider.create(timeout_s=60)
        written = await restore_files(handle, records, workdir="/home/user/project")
        # Build output written by a dev server must not come back.
        await handle.write_files([FileWrite("/home/user/project/.next/trace", "x")])
        results: list[FileEntry] = []
        await walk(handle, "/home/user/project", "", results)
        return written, results

    written, results = asyncio.run(_run())
    assert written == 2
    assert {(r.path, r.content, r.is_folder) for r in results} == {
        ("README.md", "# Demo\n", False),
        ("src", "", True),
        ("src/index.ts", "export {};\n", False),
    }
