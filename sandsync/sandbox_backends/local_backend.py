"""Directory-backed sandboxes for local development and tests.

Each sandbox is a directory ``<root>/<sandbox_id>/``; absolute sandbox paths
are mapped under ``<root>/<sandbox_id>/fs/``. Commands run on the host through
the shell with the mapped working directory as cwd, so absolute paths inside a
command refer to the host, not the sandbox.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
import uuid
from collections.abc import Sequence
from pathlib import Path

from sandsync.config import local_sandbox_root
from sandsync.errors import ProvisioningError
from sandsync.sandbox_backends.base import CommandResult, DirEntry, FileWrite

logger = logging.getLogger(__name__)

_DEADLINE_FILE = ".deadline"


class LocalSandboxHandle:
    def __init__(self, root: Path, sandbox_id: str, *, preview_host: str) -> None:
        self._dir = root / sandbox_id
        self._fs = self._dir / "fs"
        self._id = sandbox_id
        self._preview_host = preview_host

    @property
    def sandbox_id(self) -> str:
        return self._id

    def _resolve(self, path: str) -> Path:
        rel = (path or "/").lstrip("/")
        target = (self._fs / rel).resolve()
        fs_root = self._fs.resolve()
        if target != fs_root and fs_root not in target.parents:
            raise ValueError(f"path escapes sandbox root: {path}")
        return target

    def _deadline(self) -> float:
        try:
            return float((self._dir / _DEADLINE_FILE).read_text().strip())
        except (OSError, ValueError):
            return 0.0

    async def is_running(self) -> bool:
        return self._fs.is_dir() and self._deadline() > time.time()

    async def set_timeout(self, timeout_s: int) -> None:
        if not self._dir.is_dir():
            raise FileNotFoundError(f"sandbox {self._id} does not exist")
        (self._dir / _DEADLINE_FILE).write_text(str(time.time() + timeout_s))

    async def kill(self) -> None:
        await asyncio.to_thread(shutil.rmtree, self._dir, True)

    def _write_files_sync(self, files: Sequence[FileWrite]) -> None:
        for f in files:
            target = self._resolve(f.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(f.data, encoding="utf-8")

    async def write_files(self, files: Sequence[FileWrite]) -> None:
        await asyncio.to_thread(self._write_files_sync, files)

    async def list_dir(self, path: str) -> list[DirEntry]:
        target = self._resolve(path)
        rel = target.relative_to(self._fs.resolve()).as_posix()
        base = "" if rel == "." else "/" + rel
        return [
            DirEntry(name=p.name, path=f"{base}/{p.name}", is_dir=p.is_dir())
            for p in sorted(target.iterdir())
        ]

    async def read_file(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    async def make_dir(self, path: str) -> None:
        self._resolve(path).mkdir(parents=True, exist_ok=True)

    async def remove(self, path: str) -> None:
        target = self._resolve(path)
        if target.is_dir():
            await asyncio.to_thread(shutil.rmtree, target)
        else:
            target.unlink()

    async def rename(self, old_path: str, new_path: str) -> None:
        dst = self._resolve(new_path)
        dst.parent.mkdir(parents=True, exist_ok=True)
        self._resolve(old_path).rename(dst)

    async def run_command(
        self, command: str, *, cwd: str | None = None, timeout_s: int | None = None
    ) -> CommandResult:
        workdir = self._resolve(cwd) if cwd else self._fs
        workdir.mkdir(parents=True, exist_ok=True)
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workdir),
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout_s
            )
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return CommandResult(stdout="", stderr="Timed out", exit_code=124)
        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode or 0,
        )

    def get_host(self, port: int) -> str:
        return f"http://{self._preview_host}:{port}"


class LocalProvider:
    name = "local"

    def __init__(self, root: str | None = None, *, preview_host: str = "127.0.0.1") -> None:
        self._root = Path(root or local_sandbox_root())
        self._preview_host = preview_host
        self.created: list[str] = []

    async def create(self, *, timeout_s: int) -> LocalSandboxHandle:
        sandbox_id = f"local-{uuid.uuid4().hex[:12]}"
        try:
            (self._root / sandbox_id / "fs").mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise ProvisioningError(f"local sandbox create failed: {exc}") from exc
        handle = LocalSandboxHandle(
            self._root, sandbox_id, preview_host=self._preview_host
        )
        await handle.set_timeout(timeout_s)
        self.created.append(sandbox_id)
        logger.info("Created local sandbox %s under %s", sandbox_id, self._root)
        return handle

    async def connect(self, sandbox_id: str) -> LocalSandboxHandle:
        if not sandbox_id or "/" in sandbox_id or sandbox_id in (".", ".."):
            raise ValueError(f"invalid sandbox id: {sandbox_id!r}")
        handle = LocalSandboxHandle(
            self._root, sandbox_id, preview_host=self._preview_host
        )
        if not await handle.is_running():
            raise FileNotFoundError(f"sandbox {sandbox_id} not found or expired")
        return handle
