from __future__ import annotations

import json
import logging
import urllib.parse
from pathlib import Path

_LOGGER = logging.getLogger("mcp.chrome_bridge.stdio_config")


def default_config_path() -> Path:
    return Path(__file__).resolve().parent / "mcp" / "stdio-config.json"


def parse_port(raw: str | int) -> int:
    try:
        port = int(str(raw).strip(), 10)
    except ValueError:
        port = -1
    if not 1 <= port <= 65535:
        raise ValueError("Port must be a valid number between 1 and 65535")
    return port


def _with_port(url: str, port: int) -> str:
    parts = urllib.parse.urlsplit(url)
    host = parts.hostname or "127.0.0.1"
    if ":" in host:
        host = f"[{host}]"
    userinfo = ""
    if parts.username:
        userinfo = parts.username + (f":{parts.password}" if parts.password else "") + "@"
    return urllib.parse.urlunsplit(parts._replace(netloc=f"{userinfo}{host}:{port}"))


def update_port(port: str | int, config_path: Path | None = None) -> str:
    """Rewrite the port of `url` in stdio-config.json; returns the new URL."""
    port_number = parse_port(port)
    path = config_path or default_config_path()
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found at {path}")
    config = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(config, dict) or not isinstance(config.get("url"), str):
        raise ValueError(f"Configuration file has no url: {path}")
    config["url"] = _with_port(config["url"], port_number)
    path.write_text(json.dumps(config, indent=4), encoding="utf-8")
    _LOGGER.info("stdio_config_port_updated port=%d url=%s", port_number, config["url"])
    return str(config["url"])


__all__ = ["default_config_path", "parse_port", "update_port"]
