from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx
from e2b import AsyncSandbox, CommandExitException, FileType
from e2b.exceptions import SandboxException
from e2b.sandbox.filesystem.filesystem import WriteEntry

from sandsync.config import e2b_api_key, e2b_template
from sandsync.errors import ConfigurationError, ProvisioningError
from sandsync.sandbox_backends.base import CommandResult, DirEntry, FileWrite

logger = logging.getLogger(__name__)


class E2BSandboxHandle:
    def __init__(self, sandbox: AsyncSandbox) -> None:
        self._sbx = sandbox

    @property
    def sandbox_id(self) -> str:
        return str(self._sbx.sandbox_id)

    async def is_running(self) -> bool:
        return bool(await self._sbx.is_running())

    async def set_timeout(self, timeout_s: int) -> None:
        await self._sbx.set_timeout(timeout_s)

    async def kill(self) -> None:
        await self._sbx.kill()

    async def write_files(self, files: Sequence[FileWrite]) -> None:
        if not files:
            return
        await self._sbx.files.write_files(
            [WriteEntry(path=f.path, data=f.data) for f in files]
        )

    async def list_dir(self, path: str) -> list[DirEntry]:
        entries = await self._sbx.files.list(path)
        return [
            DirEntry(name=e.name, path=e.path, is_dir=e.type == FileType.DIR)
            for e in entries
        ]

    async def read_file(self, path: str) -> str:
        return await self._sbx.files.read(path)

    async def make_dir(self, path: str) -> None:
        await self._sbx.files.make_dir(path)

    async def remove(self, path: str) -> None:
        await self._sbx.files.remove(path)

    async def rename(self, old_path: str, new_path: str) -> None:
        await self._sbx.files.rename(old_path, new_path)

    async def run_command(
        self, command: str, *, cwd: str | None = None, timeout_s: int | None = None
    ) -> CommandResult:
        try:
            res = await self._sbx.commands.run(command, cwd=cwd, timeout=timeout_s or 60)
        except CommandExitException as e:
            # Non-zero exit is a regular result for callers.
            return CommandResult(
                stdout=e.stdout or "", stderr=e.stderr or "", exit_code=e.exit_code
            )
        return CommandResult(
            stdout=res.stdout or "", stderr=res.stderr or "", exit_code=res.exit_code
        )

    def get_host(self, port: int) -> str:
        return self._sbx.get_host(port)


class E2BProvider:
    """Sandboxes hosted by E2B (``e2b.AsyncSandbox``)."""

    name = "e2b"

    def __init__(self, *, api_key: str | None = None, template: str | None = None) -> None:
        self._api_key = (api_key or e2b_api_key()).strip()
        if not self._api_key:
            raise ConfigurationError("E2B_API_KEY is not set")
        self._template = template or e2b_template()

    async def create(self, *, timeout_s: int) -> E2BSandboxHandle:
        try:
            sbx = await AsyncSandbox.create(
                template=self._template, timeout=timeout_s, api_key=self._api_key
            )
        except (SandboxException, httpx.HTTPError) as exc:
            raise ProvisioningError(f"E2B sandbox create failed: {exc}") from exc
        logger.info("Created E2B sandbox %s", sbx.sandbox_id)
        return E2BSandboxHandle(sbx)

    async def connect(self, sandbox_id: str) -> E2BSandboxHandle:
        sbx = await AsyncSandbox.connect(sandbox_id, api_key=self._api_key)
        return E2BSandboxHandle(sbx)
