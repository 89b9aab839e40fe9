from __future__ import annotations

import logging
import os
import stat
import sys
from collections.abc import Iterable
from pathlib import Path

from .host_launcher import launcher_path

_LOGGER = logging.getLogger("mcp.chrome_bridge.exec_permissions")


def _wanted_mode(mode: int) -> int:
    wanted = mode | stat.S_IXUSR
    # Only widen execute to classes that can already read the file.
    if mode & stat.S_IRGRP:
        wanted |= stat.S_IXGRP
    if mode & stat.S_IROTH:
        wanted |= stat.S_IXOTH
    return wanted


def ensure_executable(paths: Iterable[str | Path]) -> list[Path]:
    """Add missing execute bits; returns the paths that were changed. Idempotent."""
    changed: list[Path] = []
    if os.name == "nt":
        return changed
    for raw in paths:
        path = Path(raw)
        try:
            mode = stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            _LOGGER.debug("exec_permissions_skip missing=%s", path)
            continue
        if not path.is_file():
            continue
        wanted = _wanted_mode(mode)
        if wanted == mode:
            continue
        path.chmod(wanted)
        _LOGGER.info("exec_permissions_fixed path=%s mode=%o", path, wanted)
        changed.append(path)
    return changed


def host_executable_paths(root: Path | None = None, *, platform: str | None = None) -> list[Path]:
    platform = platform or sys.platform
    host_module = Path(__file__).resolve().parent / "native_host.py"
    return [launcher_path(root, platform=platform), host_module]


__all__ = ["ensure_executable", "host_executable_paths"]
