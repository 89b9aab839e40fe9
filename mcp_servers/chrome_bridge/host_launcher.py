from __future__ import annotations

import os
import sys
from pathlib import Path

HOST_MODULE = "mcp_servers.chrome_bridge.native_host"
_LAUNCHER_NAME = "mcp-chrome-bridge-host"


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def launcher_dir(root: Path | None = None) -> Path:
    raw = os.environ.get("MCP_BRIDGE_HOST_DIR")
    if isinstance(raw, str) and raw.strip():
        return Path(raw.strip()).expanduser()
    return (root or _repo_root()) / ".native-host"


def launcher_path(root: Path | None = None, *, platform: str | None = None) -> Path:
    platform = platform or sys.platform
    name = f"{_LAUNCHER_NAME}.cmd" if platform == "win32" else _LAUNCHER_NAME
    return launcher_dir(root) / name


def launcher_script(*, python_exe: str, root: Path, platform: str) -> str:
    py = str(python_exe)
    root_str = str(root)
    if platform == "win32":
        lines = [
            "@echo off",
            "setlocal",
            f'set "MCP_ROOT={root_str}"',
            'set "PYTHONPATH=%MCP_ROOT%;%PYTHONPATH%"',
            f'"{py}" -m {HOST_MODULE} %*',
        ]
    else:
        # Chrome launches the host with a minimal environment; pin the interpreter explicitly.
        lines = [
            "#!/usr/bin/env bash",
            "set -euo pipefail",
            f'ROOT="{root_str}"',
            'export PYTHONPATH="$ROOT:${PYTHONPATH:-}"',
            f'exec "{py}" -m {HOST_MODULE} "$@"',
        ]
    return "\n".join([*lines, ""])


def write_launcher(
    *,
    root: Path | None = None,
    python_exe: str | None = None,
    platform: str | None = None,
) -> Path:
    """Write the wrapper the manifest `path` points at; returns its location."""
    root = root or _repo_root()
    platform = platform or sys.platform
    path = launcher_path(root, platform=platform)
    path.parent.mkdir(parents=True, exist_ok=True)
    content = launcher_script(python_exe=python_exe or sys.executable, root=root, platform=platform)
    path.write_text(content, encoding="utf-8")
    return path


__all__ = ["HOST_MODULE", "launcher_dir", "launcher_path", "launcher_script", "write_launcher"]
