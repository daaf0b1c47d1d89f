from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class DirEntry:
    name: str
    path: str
    is_dir: bool


@dataclass(frozen=True)
class FileWrite:
    path: str
    data: str


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SandboxHandle(Protocol):
    """A live (or once-live) sandbox.

    Paths are absolute inside the sandbox. ``get_host`` returns the public
    host for an exposed port, either a bare ``host[:port]`` (served over https)
    or a full ``http(s)://`` origin.
    """

    @property
    def sandbox_id(self) -> str: ...

    async def is_running(self) -> bool: ...

    async def set_timeout(self, timeout_s: int) -> None: ...

    async def kill(self) -> None: ...

    async def write_files(self, files: Sequence[FileWrite]) -> None: ...

    async def list_dir(self, path: str) -> list[DirEntry]: ...

    async def read_file(self, path: str) -> str: ...

    async def make_dir(self, path: str) -> None: ...

    async def remove(self, path: str) -> None: ...

    async def rename(self, old_path: str, new_path: str) -> None: ...

    async def run_command(
        self, command: str, *, cwd: str | None = None, timeout_s: int | None = None
    ) -> CommandResult: ...

    def get_host(self, port: int) -> str: ...


class SandboxProvider(Protocol):
    """Creates and reconnects sandboxes.

    ``create`` failures (provider unreachable, quota) raise ProvisioningError.
    ``connect`` may raise anything; callers treat reconnect failures as
    non-fatal.
    """

    name: str

    async def create(self, *, timeout_s: int) -> SandboxHandle: ...

    async def connect(self, sandbox_id: str) -> SandboxHandle: ...
