"""Staging area for files exchanged with the extension over native messaging.

Files are materialized under one scratch root. The containment check in
`FileStager.cleanup()` is what keeps a crafted request from deleting anything
outside that root.
"""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import os
import re
import secrets
import shutil
import stat
import time
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from PIL import Image, UnidentifiedImageError

from . import http_client
from .config import BridgeConfig, default_staging_dir
from .errors import BridgeError, ContainmentViolation, DecodeError, DownloadError, VerificationError

_LOGGER = logging.getLogger("mcp.chrome_bridge.file_staging")
_DATA_URL_PREFIX_RE = re.compile(r"^data:[^,]*?;base64,", re.IGNORECASE)
_UNSAFE_NAME_RE = re.compile(r"[\\/:*?\"<>|\x00-\x1f]+")
_MAX_NAME_LEN = 200


@dataclass(frozen=True, slots=True)
class UrlSource:
    url: str
    file_name: str | None = None


@dataclass(frozen=True, slots=True)
class PayloadSource:
    data: str
    file_name: str | None = None


@dataclass(frozen=True, slots=True)
class LocalPathSource:
    path: str


StageSource = UrlSource | PayloadSource | LocalPathSource


@dataclass(frozen=True, slots=True)
class PrepareFile:
    source: StageSource


@dataclass(frozen=True, slots=True)
class CleanupFile:
    path: str


@dataclass(frozen=True, slots=True)
class StagedFile:
    file_path: str
    file_name: str
    size_bytes: int
    created_at: float
    mime_type: str | None = None
    image: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class StageResult:
    success: bool
    file: StagedFile | None = None
    error: str | None = None
    error_type: str | None = None

    @classmethod
    def failed(cls, exc: BaseException) -> StageResult:
        return cls(success=False, error=str(exc), error_type=type(exc).__name__)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.file is not None:
            out.update(
                {
                    "filePath": self.file.file_path,
                    "fileName": self.file.file_name,
                    "sizeBytes": self.file.size_bytes,
                }
            )
            if self.file.mime_type:
                out["mimeType"] = self.file.mime_type
            if self.file.image:
                out["image"] = self.file.image
        if self.error is not None:
            out["error"] = self.error
        if self.error_type is not None:
            out["errorType"] = self.error_type
        return out


def safe_file_name(name: str) -> str:
    base = str(name or "").replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_NAME_RE.sub("_", base).strip().strip(".")
    return cleaned[:_MAX_NAME_LEN]


def file_name_from_url(url: str) -> str:
    """`<stem>-<random><ext>` from the URL's last path segment, else a fully random name."""
    try:
        parsed = urllib.parse.urlparse(url)
        base = safe_file_name(urllib.parse.unquote(parsed.path or "").rstrip("/"))
    except ValueError:
        base = ""
    if base:
        suffix = Path(base).suffix
        stem = base[: -len(suffix)] if suffix else base
        return f"{stem}-{secrets.token_hex(4)}{suffix}"
    return f"upload-{secrets.token_hex(8)}.bin"


def synthesized_file_name() -> str:
    return f"upload-{int(time.time() * 1000)}-{secrets.token_hex(4)}.bin"


def strip_data_url(payload: str) -> str:
    return _DATA_URL_PREFIX_RE.sub("", payload.strip(), count=1)


def decode_payload(payload: str) -> bytes:
    if not isinstance(payload, str):
        raise DecodeError("encoded payload must be a string")
    content = re.sub(r"\s+", "", strip_data_url(payload))
    content += "=" * (-len(content) % 4)
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Failed to decode base64 payload: {exc}") from exc


def describe_image(path: Path) -> dict[str, Any] | None:
    try:
        with Image.open(path) as img:
            return {"format": img.format, "width": int(img.width), "height": int(img.height)}
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        return None


def _guess_mime(name: str) -> str | None:
    mime, _enc = mimetypes.guess_type(name)
    return mime


class FileStager:
    def __init__(self, scratch_root: Path | str | None = None, *, config: BridgeConfig | None = None) -> None:
        self.config = config or BridgeConfig.from_env()
        if scratch_root is None:
            scratch_root = self.config.staging_dir or default_staging_dir()
        self.scratch_root = Path(scratch_root).expanduser()

    def _ensure_root(self) -> Path:
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        return self.scratch_root

    def _describe(self, path: Path, *, name: str | None = None) -> StagedFile:
        st = path.stat()
        file_name = name or path.name
        return StagedFile(
            file_path=str(path),
            file_name=file_name,
            size_bytes=int(st.st_size),
            created_at=float(st.st_mtime),
            mime_type=_guess_mime(file_name),
            image=describe_image(path),
        )

    def _write_new(self, name: str, data: bytes) -> Path:
        root = self._ensure_root()
        candidate = root / name
        for _ in range(8):
            try:
                # Exclusive create: concurrent stages never clobber each other.
                with open(candidate, "xb") as fp:
                    fp.write(data)
                return candidate
            except FileExistsError:
                p = Path(name)
                candidate = root / f"{p.stem}-{secrets.token_hex(4)}{p.suffix}"
        raise FileExistsError(f"could not allocate a unique file name for {name}")

    def _stage_url(self, source: UrlSource) -> StagedFile:
        if not isinstance(source.url, str) or not source.url.strip():
            raise DownloadError("fileUrl must be a non-empty string")
        url = source.url.strip()
        fetched = http_client.fetch_bytes(url, self.config)
        name = safe_file_name(source.file_name or "") or file_name_from_url(url)
        path = self._write_new(name, fetched.body)
        _LOGGER.info("file_staged source=url path=%s bytes=%d", path, len(fetched.body))
        return self._describe(path)

    def _stage_payload(self, source: PayloadSource) -> StagedFile:
        data = decode_payload(source.data)
        name = safe_file_name(source.file_name or "") or synthesized_file_name()
        path = self._write_new(name, data)
        _LOGGER.info("file_staged source=payload path=%s bytes=%d", path, len(data))
        return self._describe(path)

    def _verify_local(self, source: LocalPathSource) -> StagedFile:
        raw = str(source.path or "").strip()
        if not raw:
            raise VerificationError("filePath must be a non-empty string")
        path = Path(raw).expanduser()
        try:
            st = path.stat()
        except FileNotFoundError as exc:
            raise VerificationError(f"File does not exist: {raw}") from exc
        except OSError as exc:
            raise VerificationError(f"Cannot access file: {raw}: {exc}") from exc
        if not stat.S_ISREG(st.st_mode):
            raise VerificationError(f"Path is not a file: {raw}")
        if not os.access(path, os.R_OK):
            raise VerificationError(f"File is not readable: {raw}")
        return self._describe(path, name=path.name)

    def stage(self, source: StageSource) -> StageResult:
        try:
            if isinstance(source, UrlSource):
                staged = self._stage_url(source)
            elif isinstance(source, PayloadSource):
                staged = self._stage_payload(source)
            elif isinstance(source, LocalPathSource):
                staged = self._verify_local(source)
            else:
                raise VerificationError(f"unsupported source: {type(source).__name__}")
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("file_stage_failed source=%s error=%s", type(source).__name__, exc)
            return StageResult.failed(exc)
        return StageResult(success=True, file=staged)

    def contained_path(self, file_path: str) -> Path:
        """Normalize `file_path` and prove it lives strictly below the scratch root."""
        raw = str(file_path or "").strip()
        if not raw:
            raise ContainmentViolation("filePath must be a non-empty string")
        root = self.scratch_root.resolve()
        candidate = Path(os.path.normpath(os.path.abspath(os.path.expanduser(raw))))
        # Resolve the parent only, so a symlink entry is removed rather than its target.
        try:
            parent = candidate.parent.resolve()
        except OSError as exc:
            raise ContainmentViolation(f"Cannot resolve path: {raw}") from exc
        if parent != root and root not in parent.parents:
            raise ContainmentViolation("Can only cleanup files in temp directory")
        resolved = parent / candidate.name
        if resolved == root or not candidate.name:
            raise ContainmentViolation("Refusing to remove the staging root")
        return resolved

    def cleanup(self, file_path: str) -> StageResult:
        try:
            path = self.contained_path(file_path)
            if path.is_symlink() or path.is_file():
                path.unlink(missing_ok=True)
            elif path.is_dir():
                shutil.rmtree(path)
            _LOGGER.info("file_cleanup path=%s", path)
        except ContainmentViolation as exc:
            _LOGGER.warning("file_cleanup_refused path=%s reason=%s", file_path, exc)
            return StageResult.failed(exc)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("file_cleanup_failed path=%s error=%s", file_path, exc)
            return StageResult(success=False, error=f"Failed to cleanup file: {exc}", error_type=type(exc).__name__)
        return StageResult(success=True)

    def handle_request(self, request: Any) -> dict[str, Any]:
        """Entry point for `{action: prepareFile|cleanupFile, ...}` messages; never raises."""
        try:
            parsed = parse_file_request(request)
        except BridgeError as exc:
            return {"success": False, "error": str(exc)}
        try:
            if isinstance(parsed, PrepareFile):
                return self.stage(parsed.source).to_dict()
            return self.cleanup(parsed.path).to_dict()
        except Exception as exc:  # noqa: BLE001
            return {"success": False, "error": str(exc)}


def parse_file_request(request: Any) -> PrepareFile | CleanupFile:
    if not isinstance(request, dict):
        raise VerificationError("file request must be an object")
    action = request.get("action")
    file_name = request.get("fileName") if isinstance(request.get("fileName"), str) else None
    if action == "prepareFile":
        if request.get("fileUrl"):
            return PrepareFile(UrlSource(url=str(request["fileUrl"]), file_name=file_name))
        payload = request.get("encodedPayload") or request.get("base64Data")
        if payload:
            return PrepareFile(PayloadSource(data=str(payload), file_name=file_name))
        if request.get("filePath"):
            return PrepareFile(LocalPathSource(path=str(request["filePath"])))
        raise VerificationError("prepareFile requires one of fileUrl, encodedPayload or filePath")
    if action == "cleanupFile":
        return CleanupFile(path=str(request.get("filePath") or ""))
    raise BridgeError(f"Unknown file action: {action}")


__all__ = [
    "CleanupFile",
    "FileStager",
    "LocalPathSource",
    "PayloadSource",
    "PrepareFile",
    "StageResult",
    "StageSource",
    "StagedFile",
    "UrlSource",
    "decode_payload",
    "file_name_from_url",
    "parse_file_request",
    "safe_file_name",
]
