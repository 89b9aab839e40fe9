from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

HOST_NAME = "com.chromemcp.nativehost"
HOST_DESCRIPTION = "Chrome MCP bridge native host (extension file and tool bridge)."
DEFAULT_EXTENSION_ID = "hbdgbgagpkpjffpklnamcljpakneikee"
STAGING_DIR_NAME = "chrome-mcp-uploads"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def extension_ids_from_env() -> list[str]:
    raw = os.environ.get("MCP_EXTENSION_IDS") or os.environ.get("MCP_EXTENSION_ID") or ""
    return [s.strip() for s in raw.split(",") if s.strip()]


def default_staging_dir() -> Path:
    return Path(tempfile.gettempdir()) / STAGING_DIR_NAME


@dataclass
class BridgeConfig:
    staging_dir: str
    staging_max_age: float = 3600.0
    sweep_interval: float = 600.0
    http_timeout: float = 30.0
    download_max_bytes: int = 100_000_000
    allow_hosts: list[str] = field(default_factory=list)
    extension_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> BridgeConfig:
        staging_raw = os.environ.get("MCP_BRIDGE_STAGING_DIR", "")
        staging = expand_path(staging_raw) if staging_raw.strip() else str(default_staging_dir())
        allow_raw = os.environ.get("MCP_ALLOW_HOSTS", "")
        allow_hosts = [host.strip().lower() for host in allow_raw.split(",") if host.strip() and host.strip() != "*"]
        return cls(
            staging_dir=staging,
            staging_max_age=_float_env("MCP_BRIDGE_STAGING_MAX_AGE", default=3600.0, lo=0.0, hi=7 * 86400.0),
            sweep_interval=_float_env("MCP_BRIDGE_STAGING_SWEEP_INTERVAL", default=600.0, lo=5.0, hi=86400.0),
            http_timeout=_float_env("MCP_HTTP_TIMEOUT", default=30.0, lo=1.0, hi=600.0),
            download_max_bytes=_int_env("MCP_DOWNLOAD_MAX_BYTES", default=100_000_000, lo=1, hi=2_000_000_000),
            allow_hosts=allow_hosts,
            extension_ids=extension_ids_from_env(),
        )

    def is_host_allowed(self, host: str) -> bool:
        host = (host or "").strip().lower().rstrip(".")
        if not self.allow_hosts:
            return True
        for raw_allowed in self.allow_hosts:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed:
                return True
            if host.endswith("." + allowed):
                return True
        return False
