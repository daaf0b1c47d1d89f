"""Per-project sandbox registry.

SandboxRegistry maps project ids to live sandbox handles and is the single
authority for "is there a usable sandbox for this project right now".

Usage:
    registry = SandboxRegistry(get_provider())

    acquired = await registry.get_or_create("p1", stored_sandbox_id="sbx-123")
    if acquired.is_new:
        ...  # restore files before use (or pass prepare=...)

    handle = await registry.get_running("p1")  # never provisions
    await registry.kill("p1")
    await registry.close()

Concurrency:
    Provisioning is serialized per project with an asyncio.Lock, so concurrent
    callers for the same project share one create instead of racing.
    Different projects never wait on each other. The registry is process-local;
    there is no coordination across server instances.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sandsync.config import sandbox_timeout_s
from sandsync.errors import ProvisioningError
from sandsync.sandbox_backends.base import SandboxHandle, SandboxProvider

logger = logging.getLogger(__name__)

PrepareHook = Callable[[SandboxHandle], Awaitable[None]]


class BindingState(str, enum.Enum):
    UNPROVISIONED = "unprovisioned"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class AcquiredSandbox:
    handle: SandboxHandle
    sandbox_id: str
    is_new: bool


@dataclass(frozen=True)
class KillOutcome:
    """Result of a kill; ``error`` holds a swallowed provider failure."""

    sandbox_id: str | None
    killed: bool
    error: str | None = None

    @property
    def contacted_provider(self) -> bool:
        return self.sandbox_id is not None


async def _is_alive(handle: SandboxHandle) -> bool:
    try:
        return bool(await handle.is_running())
    except Exception:
        logger.debug("is_running check failed for %s", handle.sandbox_id, exc_info=True)
        return False


class SandboxRegistry:
    def __init__(
        self, provider: SandboxProvider, *, timeout_s: int | None = None
    ) -> None:
        self._provider = provider
        self._timeout_s = timeout_s or sandbox_timeout_s()
        self._entries: dict[str, SandboxHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._states: dict[str, BindingState] = {}

    @property
    def provider(self) -> SandboxProvider:
        return self._provider

    @property
    def timeout_s(self) -> int:
        return self._timeout_s

    def _lock(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def state(self, project_id: str) -> BindingState:
        return self._states.get(project_id, BindingState.UNPROVISIONED)

    def cached_sandbox_id(self, project_id: str) -> str | None:
        handle = self._entries.get(project_id)
        return handle.sandbox_id if handle is not None else None

    async def _refresh(self, handle: SandboxHandle) -> None:
        try:
            await handle.set_timeout(self._timeout_s)
        except Exception:
            logger.warning(
                "Failed to refresh timeout for sandbox %s", handle.sandbox_id, exc_info=True
            )

    async def _reconnect(self, project_id: str, sandbox_id: str) -> SandboxHandle | None:
        self._states[project_id] = BindingState.RECONNECTING
        try:
            handle = await self._provider.connect(sandbox_id)
            if await handle.is_running():
                return handle
            logger.info("Stored sandbox %s for project %s is not running", sandbox_id, project_id)
        except Exception as exc:
            logger.warning(
                "Reconnect to sandbox %s for project %s failed: %s", sandbox_id, project_id, exc
            )
        return None

    async def get_or_create(
        self,
        project_id: str,
        stored_sandbox_id: str | None = None,
        *,
        prepare: PrepareHook | None = None,
    ) -> AcquiredSandbox:
        """Return a running sandbox for the project, creating one if needed.

        ``prepare`` is awaited for freshly created sandboxes while the project
        lock is held and before the handle becomes visible to other callers.
        If it raises, the new sandbox is destroyed and the error propagates.
        """
        async with self._lock(project_id):
            cached = self._entries.get(project_id)
            if cached is not None:
                if await _is_alive(cached):
                    logger.debug("Reusing sandbox %s for project %s", cached.sandbox_id, project_id)
                    await self._refresh(cached)
                    self._states[project_id] = BindingState.RUNNING
                    return AcquiredSandbox(cached, cached.sandbox_id, is_new=False)
                logger.info(
                    "Cached sandbox %s for project %s stopped; evicting",
                    cached.sandbox_id,
                    project_id,
                )
                self._entries.pop(project_id, None)
                self._states[project_id] = BindingState.STOPPED

            if stored_sandbox_id:
                handle = await self._reconnect(project_id, stored_sandbox_id)
                if handle is not None:
                    await self._refresh(handle)
                    self._entries[project_id] = handle
                    self._states[project_id] = BindingState.RUNNING
                    logger.info("Reconnected sandbox %s for project %s", handle.sandbox_id, project_id)
                    return AcquiredSandbox(handle, handle.sandbox_id, is_new=False)

            self._states[project_id] = BindingState.PROVISIONING
            try:
                handle = await self._provider.create(timeout_s=self._timeout_s)
            except ProvisioningError:
                self._states[project_id] = BindingState.UNPROVISIONED
                raise
            except Exception as exc:
                self._states[project_id] = BindingState.UNPROVISIONED
                raise ProvisioningError(f"sandbox create failed: {exc}") from exc

            if prepare is not None:
                try:
                    await prepare(handle)
                except BaseException:
                    self._states[project_id] = BindingState.UNPROVISIONED
                    await self._destroy(handle)
                    raise

            self._entries[project_id] = handle
            self._states[project_id] = BindingState.RUNNING
            logger.info("Created sandbox %s for project %s", handle.sandbox_id, project_id)
            return AcquiredSandbox(handle, handle.sandbox_id, is_new=True)

    async def get_running(self, project_id: str) -> SandboxHandle | None:
        """Return the cached handle if the provider confirms it runs; never provisions."""
        handle = self._entries.get(project_id)
        if handle is None:
            return None
        if await _is_alive(handle):
            return handle
        if self._entries.get(project_id) is handle:
            self._entries.pop(project_id, None)
            self._states[project_id] = BindingState.STOPPED
        return None

    async def _destroy(self, handle: SandboxHandle) -> str | None:
        try:
            await handle.kill()
        except Exception as exc:
            logger.warning("Failed to kill sandbox %s: %s", handle.sandbox_id, exc)
            return str(exc) or type(exc).__name__
        return None

    async def kill(self, project_id: str, stored_sandbox_id: str | None = None) -> KillOutcome:
        """Destroy the project's sandbox. Never raises."""
        async with self._lock(project_id):
            handle = self._entries.pop(project_id, None)
            if handle is None and not stored_sandbox_id:
                return KillOutcome(sandbox_id=None, killed=False)

            self._states[project_id] = BindingState.STOPPED
            if handle is None:
                try:
                    handle = await self._provider.connect(stored_sandbox_id or "")
                except Exception as exc:
                    logger.warning(
                        "Kill: reconnect to sandbox %s failed: %s", stored_sandbox_id, exc
                    )
                    return KillOutcome(
                        sandbox_id=stored_sandbox_id,
                        killed=False,
                        error=str(exc) or type(exc).__name__,
                    )

            error = await self._destroy(handle)
            logger.info("Killed sandbox %s for project %s", handle.sandbox_id, project_id)
            return KillOutcome(sandbox_id=handle.sandbox_id, killed=error is None, error=error)

    async def pause(
        self, project_id: str, stored_sandbox_id: str | None = None
    ) -> KillOutcome:
        """Release the project's sandbox; the binding returns to STOPPED."""
        return await self.kill(project_id, stored_sandbox_id)

    def forget(self, project_id: str) -> None:
        self._entries.pop(project_id, None)
        self._locks.pop(project_id, None)
        self._states.pop(project_id, None)

    async def close(self) -> None:
        """Kill every cached sandbox and clear the registry."""
        for project_id in list(self._entries):
            await self.kill(project_id)
        self._entries.clear()
        self._locks.clear()
        self._states.clear()
