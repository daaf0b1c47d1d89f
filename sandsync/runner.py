from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sandsync.config import (
    command_timeout_s,
    preview_port,
    restrict_commands,
    sandbox_workdir,
)
from sandsync.errors import NotProvisioned
from sandsync.sandbox_backends.base import CommandResult
from sandsync.sandbox_backends.registry import SandboxRegistry
from sandsync.sandbox_files.policy import require_command_allowed

logger = logging.getLogger(__name__)

DEV_LOG_PATH = "/tmp/dev.log"


@dataclass(frozen=True)
class CommandSuggestion:
    install: str | None
    run: str | None
    language: str


def dev_command(framework: str | None, *, port: int | None = None) -> str:
    p = port or preview_port()
    fw = (framework or "nextjs").strip().lower()
    if fw == "react":
        return f"PORT={p} npm start"
    if fw in ("vue", "svelte"):
        return f"npm run dev -- --port {p} --host 0.0.0.0"
    if fw == "angular":
        return f"npx ng serve --port {p} --host 0.0.0.0"
    return f"npm run dev -- -p {p}"


def background_command(command: str, *, log_path: str = DEV_LOG_PATH) -> str:
    return f"nohup {command} > {log_path} 2>&1 &"


def _has(paths: set[str], name: str) -> bool:
    return name in paths or any(p.endswith("/" + name) for p in paths)


def suggest_commands(paths: Iterable[str]) -> CommandSuggestion:
    """Guess install/run commands from a project's file list."""
    files = set(paths)
    if _has(files, "package.json"):
        if _has(files, "pnpm-lock.yaml"):
            install = "pnpm install"
        elif _has(files, "yarn.lock"):
            install = "yarn install"
        elif _has(files, "bun.lockb"):
            install = "bun install"
        else:
            install = "pnpm install"
        return CommandSuggestion(install=install, run="pnpm run dev", language="node")
    if _has(files, "requirements.txt"):
        return CommandSuggestion(
            install="pip install -r requirements.txt",
            run="python main.py",
            language="python",
        )
    if _has(files, "Cargo.toml"):
        return CommandSuggestion(install=None, run="cargo run", language="rust")
    if _has(files, "go.mod"):
        return CommandSuggestion(install=None, run="go run .", language="go")
    return CommandSuggestion(install=None, run=None, language="unknown")


class CommandRunner:
    """Runs shell commands in a project's already-running sandbox."""

    def __init__(
        self,
        registry: SandboxRegistry,
        *,
        workdir: str | None = None,
        timeout_s: int | None = None,
        restrict: bool | None = None,
    ) -> None:
        self._registry = registry
        self._workdir = workdir or sandbox_workdir()
        self._timeout_s = timeout_s or command_timeout_s()
        self._restrict = restrict_commands() if restrict is None else restrict

    async def run(
        self, project_id: str, command: str, *, timeout_s: int | None = None
    ) -> CommandResult:
        if self._restrict:
            require_command_allowed(command)
        handle = await self._registry.get_running(project_id)
        if handle is None:
            raise NotProvisioned(project_id)
        logger.info("Running command in sandbox %s: %s", handle.sandbox_id, command)
        result = await handle.run_command(
            command, cwd=self._workdir, timeout_s=timeout_s or self._timeout_s
        )
        if result.exit_code != 0:
            logger.debug(
                "Command exited %d in sandbox %s", result.exit_code, handle.sandbox_id
            )
        return result
