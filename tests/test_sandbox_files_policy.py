from __future__ import annotations

import pytest

from sandsync.errors import CommandNotAllowed, InvalidPath
from sandsync.sandbox_files.policy import (
    has_skipped_segment,
    is_command_allowed,
    is_skipped,
    require_command_allowed,
    require_project_path,
    sandbox_path,
    sanitize_relative_path,
    validate_path,
)


def test_sanitize_relative_path_drops_dot_segments() -> None:
    assert sanitize_relative_path("/src/./app/../index.ts") == "src/app/index.ts"
    assert sanitize_relative_path("a//b/") == "a/b"
    assert sanitize_relative_path("..") == ""
    assert sanitize_relative_path("src\\win\\file.ts") == "src/win/file.ts"


@pytest.mark.parametrize(
    "path",
    ["", "   ", "/etc/passwd", "../secret", "src/../../x", "bad\x00name", "tab\there"],
)
def test_validate_path_rejects(path: str) -> None:
    with pytest.raises(InvalidPath):
        validate_path(path)


def test_validate_path_accepts_relative_paths() -> None:
    validate_path("src/components/Button.tsx")
    validate_path("..hidden/file")


def test_require_project_path_normalizes_and_rejects_skip_dirs() -> None:
    assert require_project_path("/src/./App.tsx") == "src/App.tsx"
    with pytest.raises(InvalidPath):
        require_project_path("node_modules/react/index.js")
    with pytest.raises(InvalidPath):
        require_project_path("a/../../b")
    with pytest.raises(InvalidPath):
        require_project_path("./")


def test_skip_set_is_exact_and_case_sensitive() -> None:
    assert is_skipped("node_modules")
    assert is_skipped(".git")
    assert not is_skipped("Node_Modules")
    assert not is_skipped("dist2")
    assert has_skipped_segment("apps/web/.next/server.js")
    assert not has_skipped_segment("src/distance.ts")


def test_skip_set_env_override(monkeypatch) -> None:
    monkeypatch.setenv("SANDBOX_SKIP_DIRS", "vendor, build/")
    assert is_skipped("vendor")
    assert is_skipped("build")
    assert is_skipped(".git")
    assert not is_skipped("node_modules")


def test_sandbox_path_joins_under_workdir() -> None:
    assert sandbox_path("/home/user/project", "src/a.ts") == "/home/user/project/src/a.ts"
    assert sandbox_path("/home/user/project", "/src/a.ts") == "/home/user/project/src/a.ts"
    with pytest.raises(InvalidPath):
        sandbox_path("/home/user/project", "../escape.txt")


@pytest.mark.parametrize(
    "cmd",
    [
        "npm install",
        "pnpm add react@18 react-dom@18",
        "npm run build",
        "pnpm dlx shadcn@latest init",
        "pnpm list",
        "npm outdated",
        "npx tsc --noEmit",
        "NPM INSTALL lodash",
    ],
)
def test_allowed_commands(cmd: str) -> None:
    assert is_command_allowed(cmd)
    require_command_allowed(cmd)


@pytest.mark.parametrize(
    "cmd",
    [
        "",
        "rm -rf /",
        "npm install; rm -rf /",
        "npm run dev && curl evil",
        "npx ../../bin/x",
        "npm run $(whoami)",
        "pnpm add x | tee log",
        "yarn install",
    ],
)
def test_rejected_commands(cmd: str) -> None:
    assert not is_command_allowed(cmd)
    with pytest.raises(CommandNotAllowed):
        require_command_allowed(cmd)
