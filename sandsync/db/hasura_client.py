"""Hasura ``run_sql`` transport used by the file and project stores.

Every store query is plain SQL posted to ``/v2/query``. Hasura answers 409
while a concurrent schema or metadata change is in flight; those requests
are retried with a linear backoff, everything else fails fast.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any

import requests

from sandsync.errors import ConfigurationError

logger = logging.getLogger(__name__)

_RUN_SQL_PATH = "/v2/query"


@dataclass(frozen=True)
class HasuraConfig:
    base_url: str
    admin_secret: str
    source_name: str = "default"
    timeout_s: float = 30.0
    conflict_retries: int = 3
    backoff_s: float = 0.2


class HasuraError(RuntimeError):
    pass


def run_sql_payload(sql: str, *, source: str, read_only: bool) -> dict[str, Any]:
    return {
        "type": "run_sql",
        "args": {"source": source, "sql": sql, "read_only": bool(read_only)},
    }


class HasuraClient:
    """Synchronous ``requests`` client; async callers use :meth:`arun_sql`."""

    def __init__(
        self, cfg: HasuraConfig, *, session: requests.Session | None = None
    ) -> None:
        self._cfg = cfg
        self._http = session or requests.Session()
        self._endpoint = cfg.base_url.rstrip("/") + _RUN_SQL_PATH

    @property
    def cfg(self) -> HasuraConfig:
        return self._cfg

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        try:
            return self._http.post(
                self._endpoint,
                headers={
                    "x-hasura-admin-secret": self._cfg.admin_secret,
                    "content-type": "application/json",
                },
                json=payload,
                timeout=self._cfg.timeout_s,
            )
        except requests.RequestException as exc:
            raise HasuraError(f"run_sql request failed: {exc}") from exc

    def run_sql(self, sql: str, *, read_only: bool = False) -> dict[str, Any]:
        payload = run_sql_payload(sql, source=self._cfg.source_name, read_only=read_only)
        attempts = max(1, self._cfg.conflict_retries)
        for attempt in range(1, attempts + 1):
            resp = self._post(payload)
            if resp.status_code == 409 and attempt < attempts:
                logger.debug("run_sql conflict on attempt %d/%d; retrying", attempt, attempts)
                time.sleep(self._cfg.backoff_s * attempt)
                continue
            if resp.status_code >= 400:
                raise HasuraError(f"run_sql failed ({resp.status_code}): {resp.text}")
            return resp.json()
        raise HasuraError("run_sql: retries exhausted")

    async def arun_sql(self, sql: str, *, read_only: bool = False) -> dict[str, Any]:
        return await asyncio.to_thread(self.run_sql, sql, read_only=read_only)

    def close(self) -> None:
        self._http.close()


def _env(name: str) -> str | None:
    v = (os.environ.get(name) or "").strip()
    return v or None


def db_enabled_from_env() -> bool:
    return bool(_env("HASURA_BASE_URL") and _env("HASURA_GRAPHQL_ADMIN_SECRET"))


def hasura_client_from_env() -> HasuraClient:
    if not db_enabled_from_env():
        raise ConfigurationError(
            "Hasura not configured (missing HASURA_BASE_URL or HASURA_GRAPHQL_ADMIN_SECRET)"
        )
    cfg = HasuraConfig(
        base_url=_env("HASURA_BASE_URL") or "",
        admin_secret=_env("HASURA_GRAPHQL_ADMIN_SECRET") or "",
        source_name=_env("HASURA_SOURCE_NAME") or "default",
    )
    return HasuraClient(cfg)
