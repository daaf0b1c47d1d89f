"""SandboxEngine: project-level operations over sandboxes and stored files.

The engine composes the registry (which sandbox belongs to which project),
the file store (durable copy of every project file), the project store
(last known sandbox id and status), the command runner and the preview proxy.

The persistent store is written first and the sandbox second; no transaction
spans both. A sandbox that is freshly created for a project is restored from
the store before anyone else can see it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from sandsync.config import (
    db_schema,
    ensure_sandbox_configured,
    install_command,
    install_timeout_s,
    load_env,
    preview_port,
    preview_startup_wait_s,
    sandbox_workdir,
    skip_dirs,
)
from sandsync.db.file_store import (
    FileEntry,
    FileRecord,
    FileStore,
    HasuraFileStore,
    MemoryFileStore,
)
from sandsync.db.hasura_client import db_enabled_from_env, hasura_client_from_env
from sandsync.errors import NoProjectFiles, NotProvisioned
from sandsync.preview.proxy import PreviewProxy, PreviewResponse, preview_origin
from sandsync.projects.store import HasuraProjectStore, MemoryProjectStore, ProjectStore
from sandsync.runner import DEV_LOG_PATH, CommandRunner, background_command, dev_command
from sandsync.sandbox_backends.base import (
    CommandResult,
    FileWrite,
    SandboxHandle,
    SandboxProvider,
)
from sandsync.sandbox_backends.factory import get_provider
from sandsync.sandbox_backends.registry import KillOutcome, SandboxRegistry
from sandsync.sandbox_files import sync
from sandsync.sandbox_files.policy import (
    normalize_project_path,
    require_project_path,
    sandbox_path,
)
from sandsync.sandbox_files.walker import NonFatal, walk

logger = logging.getLogger(__name__)

FILE_ACTIONS = ("create", "update", "delete", "rename")

_ERROR_MARKERS = ("error", "module not found", "can't resolve", "enoent", "failed")
_DEV_LOG_TAIL = 12000


def _normalized_entries(files: Iterable[FileEntry]) -> list[FileEntry]:
    # Last entry wins when two caller paths normalize to the same record.
    by_path: dict[str, FileEntry] = {}
    for f in files:
        rel = normalize_project_path(f.path)
        by_path[rel] = FileEntry(path=rel, content=f.content, is_folder=f.is_folder)
    return list(by_path.values())


@dataclass(frozen=True)
class ProvisionResult:
    handle: SandboxHandle
    sandbox_id: str
    is_new: bool
    restored: int = 0


@dataclass(frozen=True)
class PreviewInfo:
    url: str
    port: int


@dataclass(frozen=True)
class PreviewErrors:
    output: str
    has_errors: bool


@dataclass(frozen=True)
class FileActionResult:
    action: str
    path: str
    mirrored: bool
    mirror_error: str | None = None


class SandboxEngine:
    def __init__(
        self,
        *,
        registry: SandboxRegistry,
        file_store: FileStore,
        project_store: ProjectStore,
        proxy: PreviewProxy | None = None,
        runner: CommandRunner | None = None,
        workdir: str | None = None,
        restore_batch_size: int | None = None,
        persist_batch_size: int | None = None,
        install: str | None = None,
        skip: Iterable[str] | None = None,
    ) -> None:
        self.registry = registry
        self.files = file_store
        self.projects = project_store
        self._workdir = workdir or sandbox_workdir()
        self.runner = runner or CommandRunner(registry, workdir=self._workdir)
        self.proxy = proxy or PreviewProxy(registry)
        self._restore_batch = restore_batch_size
        self._persist_batch = persist_batch_size
        self._install = install_command() if install is None else install.strip()
        self._skip = frozenset(skip if skip is not None else skip_dirs())

    @classmethod
    def from_env(cls, *, provider: SandboxProvider | None = None) -> SandboxEngine:
        """Build an engine from environment configuration.

        Without Hasura settings the engine falls back to in-memory stores,
        which do not survive a restart.
        """
        load_env()
        if provider is None:
            ensure_sandbox_configured()
            provider = get_provider()
        file_store: FileStore
        project_store: ProjectStore
        if db_enabled_from_env():
            client = hasura_client_from_env()
            file_store = HasuraFileStore(client, schema=db_schema())
            project_store = HasuraProjectStore(client, schema=db_schema())
        else:
            logger.warning("Hasura not configured; using in-memory file and project stores")
            file_store = MemoryFileStore()
            project_store = MemoryProjectStore()
        return cls(
            registry=SandboxRegistry(provider),
            file_store=file_store,
            project_store=project_store,
        )

    @property
    def workdir(self) -> str:
        return self._workdir

    async def _stored_sandbox_id(self, project_id: str) -> str | None:
        rec = await self.projects.get(project_id)
        return rec.sandbox_id if rec is not None else None

    # -- provisioning ---------------------------------------------------

    async def provision(
        self,
        project_id: str,
        stored_id: str | None = None,
        *,
        require_files: bool = False,
    ) -> ProvisionResult:
        """Get the project's sandbox, creating and restoring one if needed."""
        stored = stored_id if stored_id is not None else await self._stored_sandbox_id(project_id)
        restored = 0

        async def prepare(handle: SandboxHandle) -> None:
            nonlocal restored
            await self.projects.set_status(project_id, "restoring")
            records = await sync.get_project_files(self.files, project_id)
            if require_files and not any(not r.is_folder for r in records):
                raise NoProjectFiles(f"Project '{project_id}' has no files; scaffold it first")
            restored = await sync.restore_files(
                handle,
                records,
                workdir=self._workdir,
                batch_size=self._restore_batch,
                skip=self._skip,
            )
            if self._install and any(r.path == "package.json" for r in records):
                await self._run_install(handle)

        try:
            acquired = await self.registry.get_or_create(project_id, stored, prepare=prepare)
        except Exception:
            await self.projects.set_status(project_id, "error")
            raise

        if acquired.sandbox_id != stored:
            await self.projects.set_sandbox_id(project_id, acquired.sandbox_id)
        if acquired.is_new or acquired.sandbox_id != stored:
            await self.projects.set_status(project_id, "ready")
        return ProvisionResult(
            handle=acquired.handle,
            sandbox_id=acquired.sandbox_id,
            is_new=acquired.is_new,
            restored=restored,
        )

    async def _run_install(self, handle: SandboxHandle) -> None:
        logger.info("Installing dependencies in sandbox %s", handle.sandbox_id)
        res = await handle.run_command(
            self._install, cwd=self._workdir, timeout_s=install_timeout_s()
        )
        if res.exit_code != 0:
            logger.warning(
                "Install exited %d in sandbox %s: %s",
                res.exit_code,
                handle.sandbox_id,
                (res.stderr or res.stdout)[-2000:],
            )

    async def _require_running(self, project_id: str) -> SandboxHandle:
        handle = await self.registry.get_running(project_id)
        if handle is None:
            raise NotProvisioned(project_id)
        return handle

    # -- file sync ------------------------------------------------------

    async def sync_to_sandbox(self, project_id: str, files: Iterable[FileEntry]) -> int:
        """Persist ``files`` and write them into the project's sandbox.

        Paths are normalized first, so "/src/a.ts" and "src/a.ts" name the same
        record; a traversing path raises ``InvalidPath`` before anything is
        written. Returns the number of files written to the sandbox. A freshly
        created sandbox already received them through the restore step.
        """
        entries = _normalized_entries(files)
        await sync.persist_files(
            self.files,
            project_id,
            entries,
            batch_size=self._persist_batch,
            skip=self._skip,
        )
        result = await self.provision(project_id)
        if result.is_new:
            return result.restored
        return await sync.restore_files(
            result.handle,
            entries,
            workdir=self._workdir,
            batch_size=self._restore_batch,
            skip=self._skip,
        )

    async def list_sandbox_files(
        self, project_id: str, issues: list[NonFatal] | None = None
    ) -> list[FileEntry]:
        handle = await self._require_running(project_id)
        results: list[FileEntry] = []
        await walk(handle, self._workdir, "", results, issues, skip=self._skip)
        return results

    async def sync_from_sandbox(self, project_id: str) -> int:
        """Walk the running sandbox and upsert everything into the store."""
        issues: list[NonFatal] = []
        entries = await self.list_sandbox_files(project_id, issues)
        if issues:
            logger.warning(
                "Sync from sandbox for project %s skipped %d unreadable entries",
                project_id,
                len(issues),
            )
        return await sync.persist_files(
            self.files,
            project_id,
            entries,
            batch_size=self._persist_batch,
            skip=self._skip,
        )

    async def list_files(self, project_id: str) -> list[FileRecord]:
        return await sync.get_project_files(self.files, project_id)

    async def read_file(self, project_id: str, path: str) -> str | None:
        return await sync.get_file_content(self.files, project_id, require_project_path(path))

    # -- file actions ---------------------------------------------------

    async def _mirror(
        self, project_id: str, op: Callable[[SandboxHandle], Awaitable[None]]
    ) -> tuple[bool, str | None]:
        handle = await self.registry.get_running(project_id)
        if handle is None:
            return False, None
        try:
            await op(handle)
        except Exception as exc:
            logger.warning(
                "Store updated but sandbox %s mirror failed: %s", handle.sandbox_id, exc
            )
            return False, str(exc) or type(exc).__name__
        return True, None

    async def apply_file_action(
        self,
        project_id: str,
        action: str,
        path: str,
        content: str | None = None,
        *,
        is_folder: bool = False,
        new_path: str | None = None,
    ) -> FileActionResult:
        """Apply a create/update/delete/rename to the store, then the live sandbox."""
        act = (action or "").strip().lower()
        if act not in FILE_ACTIONS:
            raise ValueError(f"unknown file action: {action!r}")
        rel = require_project_path(path)
        abs_path = sandbox_path(self._workdir, rel)

        if act == "delete":
            if is_folder:
                await sync.delete_folder(self.files, project_id, rel)
            else:
                await sync.delete_file(self.files, project_id, rel)

            async def op(h: SandboxHandle) -> None:
                await h.remove(abs_path)

        elif act == "rename":
            target = require_project_path(new_path or "")
            await sync.rename_path(self.files, project_id, rel, target, is_folder=is_folder)
            target_abs = sandbox_path(self._workdir, target)

            async def op(h: SandboxHandle) -> None:
                await h.rename(abs_path, target_abs)

        else:
            if act == "update" and not is_folder and not content:
                raise ValueError("update requires non-empty content")
            entry = FileEntry(
                path=rel, content="" if is_folder else (content or ""), is_folder=is_folder
            )
            await sync.persist_files(self.files, project_id, [entry], skip=self._skip)

            async def op(h: SandboxHandle) -> None:
                if is_folder:
                    await h.make_dir(abs_path)
                else:
                    await h.write_files([FileWrite(path=abs_path, data=entry.content)])

        mirrored, err = await self._mirror(project_id, op)
        return FileActionResult(action=act, path=rel, mirrored=mirrored, mirror_error=err)

    # -- commands & preview --------------------------------------------

    async def run_command(self, project_id: str, command: str) -> CommandResult:
        return await self.runner.run(project_id, command)

    async def start_preview(self, project_id: str, framework: str | None = "nextjs") -> PreviewInfo:
        result = await self.provision(project_id, require_files=True)
        port = preview_port()
        cmd = background_command(dev_command(framework, port=port))
        logger.info("Starting dev server in sandbox %s: %s", result.sandbox_id, cmd)
        await result.handle.run_command(cmd, cwd=self._workdir, timeout_s=15)
        wait_s = preview_startup_wait_s()
        if wait_s > 0:
            await asyncio.sleep(wait_s)
        url = preview_origin(result.handle.get_host(port))
        return PreviewInfo(url=url, port=port)

    async def preview_errors(self, project_id: str) -> PreviewErrors | None:
        handle = await self.registry.get_running(project_id)
        if handle is None:
            return None
        try:
            content = await handle.read_file(DEV_LOG_PATH)
        except Exception as exc:
            logger.debug("Cannot read dev log in sandbox %s: %s", handle.sandbox_id, exc)
            return None
        if not content:
            return None
        tail = content[-_DEV_LOG_TAIL:]
        lowered = tail.lower()
        return PreviewErrors(
            output=tail, has_errors=any(m in lowered for m in _ERROR_MARKERS)
        )

    async def forward_preview(self, project_id: str, path: str = "/") -> PreviewResponse:
        return await self.proxy.forward(project_id, path)

    # -- lifecycle ------------------------------------------------------

    async def pause(self, project_id: str) -> KillOutcome:
        """Save the sandbox's files to the store, then release the sandbox."""
        if await self.registry.get_running(project_id) is not None:
            await self.sync_from_sandbox(project_id)
        stored = await self._stored_sandbox_id(project_id)
        outcome = await self.registry.pause(project_id, stored)
        await self.projects.set_sandbox_id(project_id, None)
        await self.projects.set_status(project_id, "paused")
        return outcome

    async def kill(self, project_id: str) -> KillOutcome:
        stored = await self._stored_sandbox_id(project_id)
        outcome = await self.registry.kill(project_id, stored)
        if stored or outcome.contacted_provider:
            await self.projects.set_sandbox_id(project_id, None)
            await self.projects.set_status(project_id, "idle")
        return outcome

    async def delete_project(self, project_id: str) -> KillOutcome:
        outcome = await self.kill(project_id)
        await sync.delete_all_project_files(self.files, project_id)
        await self.projects.delete(project_id)
        self.registry.forget(project_id)
        return outcome

    async def close(self) -> None:
        await self.registry.close()
        await self.proxy.aclose()
