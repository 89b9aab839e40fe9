"""Chrome Native Messaging host entry for the bridge.

Launched by Chrome (through the launcher wrapper) when the extension calls
`connectNative()`. Only the file-staging actions are served here; everything
else is answered with a structured error.
"""

from __future__ import annotations

import json
import logging
import os
import struct
import sys
from typing import Any, BinaryIO

from .config import BridgeConfig
from .errors import BridgeError
from .file_staging import FileStager, StageResult
from .staging_reaper import StagingReaper

_LOGGER = logging.getLogger("mcp.chrome_bridge.native_host")
_MAX_FRAME_BYTES = 8_000_000
_DRAIN_CHUNK = 64 * 1024


class FrameTooLarge(BridgeError):
    def __init__(self, length: int) -> None:
        super().__init__(f"Message of {length} bytes exceeds the {_MAX_FRAME_BYTES} byte limit")
        self.length = length


def _read_exact(stream: BinaryIO, n: int) -> bytes | None:
    buf = bytearray()
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            return None
        buf.extend(chunk)
    return bytes(buf)


def _drain(stream: BinaryIO, n: int) -> bool:
    remaining = n
    while remaining > 0:
        chunk = stream.read(min(remaining, _DRAIN_CHUNK))
        if not chunk:
            return False
        remaining -= len(chunk)
    return True


def read_native_message(stream: BinaryIO) -> dict[str, Any] | None:
    """Read one length-prefixed JSON frame; None on EOF or a malformed frame.

    An oversized frame is consumed and reported as FrameTooLarge so the stream stays in sync.
    """
    header = _read_exact(stream, 4)
    if header is None:
        return None
    (length,) = struct.unpack("<I", header)
    if length <= 0:
        _LOGGER.warning("native_frame_invalid length=%d", length)
        return None
    if length > _MAX_FRAME_BYTES:
        _LOGGER.warning("native_frame_too_large length=%d", length)
        if not _drain(stream, int(length)):
            return None
        raise FrameTooLarge(int(length))
    raw = _read_exact(stream, int(length))
    if raw is None:
        return None
    try:
        obj = json.loads(raw.decode("utf-8"))
    except ValueError:
        _LOGGER.warning("native_frame_bad_json")
        return None
    return obj if isinstance(obj, dict) else None


def write_native_message(stream: BinaryIO, msg: dict[str, Any]) -> None:
    raw = json.dumps(msg, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    stream.write(struct.pack("<I", len(raw)))
    stream.write(raw)
    stream.flush()


def handle_message(stager: FileStager, msg: dict[str, Any]) -> dict[str, Any]:
    payload = msg.get("payload") if isinstance(msg.get("payload"), dict) else msg
    out: dict[str, Any] = {"type": "fileResult", "response": stager.handle_request(payload)}
    if "id" in msg:
        out["id"] = msg["id"]
    return out


def serve(stdin: BinaryIO, stdout: BinaryIO, *, stager: FileStager, reaper: StagingReaper | None = None) -> int:
    if reaper is not None:
        reaper.start()
    try:
        while True:
            try:
                msg = read_native_message(stdin)
            except FrameTooLarge as exc:
                write_native_message(stdout, {"type": "fileResult", "response": StageResult.failed(exc).to_dict()})
                continue
            if msg is None:
                return 0
            write_native_message(stdout, handle_message(stager, msg))
    finally:
        if reaper is not None:
            reaper.stop(timeout=1.0)


def main() -> int:
    # Native messaging owns stdout; logs must go to stderr only.
    debug = os.environ.get("MCP_NATIVE_HOST_DEBUG", "").strip().lower() in {"1", "true", "yes", "on"}
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format="%(asctime)s %(levelname)s %(message)s", stream=sys.stderr)
    config = BridgeConfig.from_env()
    stager = FileStager(config=config)
    reaper = StagingReaper(stager.scratch_root, max_age_s=config.staging_max_age, interval_s=config.sweep_interval)
    try:
        return serve(sys.stdin.buffer, sys.stdout.buffer, stager=stager, reaper=reaper)
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
