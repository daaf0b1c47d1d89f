import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `sandsync/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


_CONFIG_VARS = (
    "SANDBOX_BACKEND",
    "SANDBOX_LOCAL_ROOT",
    "SANDBOX_WORKDIR",
    "SANDBOX_TIMEOUT_S",
    "SANDBOX_RESTORE_BATCH_SIZE",
    "SANDBOX_PERSIST_BATCH_SIZE",
    "SANDBOX_SKIP_DIRS",
    "SANDBOX_INSTALL_COMMAND",
    "SANDBOX_INSTALL_TIMEOUT_S",
    "SANDBOX_COMMAND_TIMEOUT_S",
    "SANDBOX_RESTRICT_COMMANDS",
    "PREVIEW_PORT",
    "PREVIEW_PROXY_MOUNT",
    "PREVIEW_PROXY_TIMEOUT_S",
    "E2B_API_KEY",
    "E2B_TEMPLATE",
    "HASURA_BASE_URL",
    "HASURA_GRAPHQL_ADMIN_SECRET",
    "HASURA_SOURCE_NAME",
    "SANDSYNC_DB_SCHEMA",
)


@pytest.fixture(autouse=True)
def _isolate_sandbox_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Developer shells often export sandbox settings; tests start from defaults.
    for name in _CONFIG_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PREVIEW_STARTUP_WAIT_S", "0")
