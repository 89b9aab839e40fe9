"""Privilege detection and the elevated-write collaborator.

The registrar decides *what* must be written with elevated rights; the writer
classes here only carry the bytes across the privilege boundary.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Sequence
from pathlib import Path, PurePath
from typing import Protocol

from .browsers import platform_key
from .errors import ElevationError

_LOGGER = logging.getLogger("mcp.chrome_bridge.elevation")

SYSTEM_REMEDIATION = "Re-run as user-level (`mcp-chrome-bridge register`) or with elevated privileges (`sudo mcp-chrome-bridge register --system`)"
WINDOWS_REMEDIATION = (
    "Open an Administrator terminal and run `mcp-chrome-bridge register --system`, "
    "or register per-user with `mcp-chrome-bridge register`"
)


def is_elevated(platform: str | None = None) -> bool:
    if platform_key(platform) == "win32":
        try:
            import ctypes

            return ctypes.windll.shell32.IsUserAnAdmin() != 0  # type: ignore[attr-defined]
        except Exception:  # noqa: BLE001
            _LOGGER.warning("elevation_check_failed platform=win32 assuming=user")
            return False
    try:
        return os.geteuid() == 0
    except AttributeError:
        return False


class ElevatedWriter(Protocol):
    def write_files(self, files: Sequence[tuple[PurePath, bytes]]) -> None: ...

    def set_registry_values(self, values: Sequence[tuple[str, str]]) -> None: ...


class SudoElevatedWriter:
    """Copy staged bytes into root-owned locations via `sudo`."""

    def __init__(self, *, sudo: str | None = None) -> None:
        self._sudo = sudo or shutil.which("sudo")

    def _run(self, args: list[str]) -> None:
        if not self._sudo:
            raise ElevationError("sudo is not available", remediation=SYSTEM_REMEDIATION)
        try:
            proc = subprocess.run([self._sudo, *args], capture_output=True, text=True)
        except OSError as exc:
            raise ElevationError(f"failed to run sudo: {exc}", remediation=SYSTEM_REMEDIATION) from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise ElevationError(
                f"sudo {args[0]} failed (exit {proc.returncode}): {stderr or 'declined'}",
                remediation=SYSTEM_REMEDIATION,
            )

    def write_files(self, files: Sequence[tuple[PurePath, bytes]]) -> None:
        with tempfile.TemporaryDirectory(prefix="mcp-bridge-elevate-") as tmp:
            for idx, (dest, content) in enumerate(files):
                staged = Path(tmp) / f"{idx}.json"
                staged.write_bytes(content)
                # Copy beside the target, then rename over it so readers never see a partial manifest.
                partial = dest.parent / f".{dest.name}.tmp"
                self._run(["mkdir", "-p", str(dest.parent)])
                self._run(["cp", str(staged), str(partial)])
                self._run(["chmod", "644", str(partial)])
                self._run(["mv", "-f", str(partial), str(dest)])
                _LOGGER.info("elevated_write path=%s", dest)

    def set_registry_values(self, values: Sequence[tuple[str, str]]) -> None:
        if values:
            raise ElevationError("registry writes are Windows-only")


class WindowsElevatedWriter:
    """Windows cannot raise privileges in-process; without admin rights this fails with guidance."""

    def write_files(self, files: Sequence[tuple[PurePath, bytes]]) -> None:
        raise ElevationError("administrator privileges are required", remediation=WINDOWS_REMEDIATION)

    def set_registry_values(self, values: Sequence[tuple[str, str]]) -> None:
        raise ElevationError("administrator privileges are required", remediation=WINDOWS_REMEDIATION)


def default_elevated_writer(platform: str | None = None) -> ElevatedWriter:
    if platform_key(platform or sys.platform) == "win32":
        return WindowsElevatedWriter()
    return SudoElevatedWriter()


__all__ = [
    "ElevatedWriter",
    "SudoElevatedWriter",
    "WindowsElevatedWriter",
    "default_elevated_writer",
    "is_elevated",
]
