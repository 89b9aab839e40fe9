from __future__ import annotations

import base64
import io
import json
import struct
from pathlib import Path

import pytest

from mcp_servers.chrome_bridge import native_host
from mcp_servers.chrome_bridge.config import BridgeConfig
from mcp_servers.chrome_bridge.file_staging import FileStager
from mcp_servers.chrome_bridge.native_host import read_native_message, serve, write_native_message


def _frame(msg: dict) -> bytes:
    raw = json.dumps(msg).encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def _read_frames(data: bytes) -> list[dict]:
    stream = io.BytesIO(data)
    out = []
    while True:
        msg = read_native_message(stream)
        if msg is None:
            return out
        out.append(msg)


def test_frame_round_trip() -> None:
    buf = io.BytesIO()
    write_native_message(buf, {"type": "ping", "text": "héllo"})
    assert _read_frames(buf.getvalue()) == [{"type": "ping", "text": "héllo"}]


def test_truncated_or_bad_frames_end_the_stream() -> None:
    assert read_native_message(io.BytesIO(b"")) is None
    assert read_native_message(io.BytesIO(struct.pack("<I", 10) + b"{}")) is None
    assert read_native_message(io.BytesIO(struct.pack("<I", 3) + b"nop")) is None
    assert read_native_message(io.BytesIO(struct.pack("<I", 0))) is None


def test_serve_answers_file_requests_in_order(tmp_path: Path) -> None:
    root = tmp_path / "uploads"
    stager = FileStager(root, config=BridgeConfig(staging_dir=str(root)))
    stdin = io.BytesIO(
        _frame(
            {
                "id": "req-1",
                "payload": {
                    "action": "prepareFile",
                    "encodedPayload": base64.b64encode(b"abc").decode("ascii"),
                    "fileName": "a.txt",
                },
            }
        )
        + _frame({"id": "req-2", "action": "bogus"})
    )
    stdout = io.BytesIO()

    assert serve(stdin, stdout, stager=stager) == 0

    replies = _read_frames(stdout.getvalue())
    assert [r["id"] for r in replies] == ["req-1", "req-2"]
    assert all(r["type"] == "fileResult" for r in replies)
    first = replies[0]["response"]
    assert first["success"] is True
    assert Path(first["filePath"]).read_bytes() == b"abc"
    assert replies[1]["response"] == {"success": False, "error": "Unknown file action: bogus"}


def test_oversized_frame_gets_an_error_reply_and_the_stream_continues(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(native_host, "_MAX_FRAME_BYTES", 64)
    root = tmp_path / "uploads"
    stager = FileStager(root, config=BridgeConfig(staging_dir=str(root)))
    big = {"action": "prepareFile", "encodedPayload": base64.b64encode(b"x" * 200).decode("ascii")}
    stdin = io.BytesIO(_frame(big) + _frame({"id": 7, "action": "noop"}))
    stdout = io.BytesIO()

    assert serve(stdin, stdout, stager=stager) == 0
    monkeypatch.undo()

    replies = _read_frames(stdout.getvalue())
    assert len(replies) == 2
    rejected = replies[0]["response"]
    assert rejected["success"] is False
    assert rejected["errorType"] == "FrameTooLarge"
    assert "exceeds the 64 byte limit" in rejected["error"]
    assert replies[1]["id"] == 7
    assert replies[1]["response"] == {"success": False, "error": "Unknown file action: noop"}
    assert not root.exists()


def test_truncated_oversized_frame_ends_the_stream(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(native_host, "_MAX_FRAME_BYTES", 4)
    assert read_native_message(io.BytesIO(struct.pack("<I", 100) + b"short")) is None
