from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import sys
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePath

from .browsers import BrowserType, InstallTier, get_browser_config, platform_key, resolve_target_browsers
from .config import DEFAULT_EXTENSION_ID, HOST_DESCRIPTION, HOST_NAME, extension_ids_from_env
from .elevation import ElevatedWriter, default_elevated_writer, is_elevated
from .errors import ElevationError, ResolutionError, WriteError
from .exec_permissions import ensure_executable
from .host_launcher import write_launcher

_LOGGER = logging.getLogger("mcp.chrome_bridge.native_host_installer")
_EXT_ID_RE = re.compile(r"^[a-p]{32}$")
_EXT_ORIGIN_RE = re.compile(r"^chrome-extension://[a-p]{32}/$")
# Chrome: lowercase alphanumerics, "_" and "."; no leading/trailing or doubled dots.
_HOST_NAME_RE = re.compile(r"^[a-z0-9_]+(\.[a-z0-9_]+)*$")


@dataclass(frozen=True, slots=True)
class ManifestDescriptor:
    name: str
    description: str
    path: str
    type: str = "stdio"
    allowed_origins: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "path": self.path,
            "type": self.type,
            "allowed_origins": list(self.allowed_origins),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ManifestDescriptor:
        origins = data.get("allowed_origins")
        return cls(
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            path=str(data.get("path") or ""),
            type=str(data.get("type") or ""),
            allowed_origins=tuple(str(o) for o in origins) if isinstance(origins, list) else (),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2) + "\n"

    def validate(self, host_name: str = HOST_NAME) -> list[str]:
        problems: list[str] = []
        if not self.name:
            problems.append("manifest.name missing")
        elif self.name != host_name:
            problems.append("manifest.name mismatch")
        elif not _HOST_NAME_RE.match(self.name):
            problems.append("manifest.name is not a valid native host name")
        if self.type != "stdio":
            problems.append("manifest.type must be stdio")
        if not self.path:
            problems.append("manifest.path missing")
        else:
            host_path = Path(self.path)
            if not host_path.is_absolute():
                problems.append("manifest.path must be absolute")
            elif not host_path.is_file():
                problems.append("native host launcher not found")
            elif not os.access(host_path, os.X_OK):
                problems.append("native host launcher is not executable")
        if not self.allowed_origins:
            problems.append("allowed_origins is empty")
        for origin in self.allowed_origins:
            if not _EXT_ORIGIN_RE.match(origin):
                problems.append(f"allowed_origins entry is malformed: {origin}")
        return problems


@dataclass(slots=True)
class BrowserOutcome:
    browser: BrowserType
    ok: bool = False
    manifest_path: str | None = None
    registry_key: str | None = None
    skipped: bool = False
    error: str | None = None


@dataclass(slots=True)
class RegistrationReport:
    ok: bool = False
    tier: InstallTier = InstallTier.USER
    stage: str = "start"
    launcher_path: str | None = None
    outcomes: list[BrowserOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    remediation: str | None = None

    @property
    def wrote(self) -> list[str]:
        return [f"{o.browser.value}:{o.manifest_path}" for o in self.outcomes if o.ok and not o.skipped]

    def fail(self, stage: str, message: str) -> RegistrationReport:
        self.ok = False
        self.stage = f"failed:{stage}"
        self.errors.append(message)
        return self


def _normalize_ext_id(raw: str) -> str | None:
    candidate = str(raw or "").strip().lower()
    if _EXT_ID_RE.match(candidate):
        return candidate
    return None


def allowed_origins_for(extension_ids: Iterable[str]) -> tuple[str, ...]:
    ids: list[str] = []
    for raw in extension_ids:
        norm = _normalize_ext_id(raw)
        if norm and norm not in ids:
            ids.append(norm)
    return tuple(f"chrome-extension://{ext_id}/" for ext_id in ids)


def build_manifest(
    launcher: str | Path,
    *,
    extension_ids: Iterable[str] | None = None,
    host_name: str = HOST_NAME,
) -> ManifestDescriptor:
    ids = [DEFAULT_EXTENSION_ID, *(extension_ids if extension_ids is not None else extension_ids_from_env())]
    return ManifestDescriptor(
        name=host_name,
        description=HOST_DESCRIPTION,
        path=str(launcher),
        type="stdio",
        allowed_origins=allowed_origins_for(ids),
    )


def read_manifest(path: str | Path) -> ManifestDescriptor | None:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return ManifestDescriptor.from_dict(data) if isinstance(data, dict) else None


def _group_writable(path: Path) -> bool:
    if os.name == "nt":
        return False
    try:
        return (path.stat().st_mode & 0o020) != 0
    except OSError:
        return False


def write_manifest_atomic(path: str | Path, descriptor: ManifestDescriptor) -> Path:
    """Write via temp file + rename so readers never see a half-written manifest."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    except OSError as exc:
        raise WriteError(f"cannot write {path}: {exc}") from exc
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            fp.write(descriptor.to_json())
        if os.name != "nt":
            # Chrome refuses manifests that are group/world writable.
            tmp.chmod(0o644)
        os.replace(tmp, path)
    except OSError as exc:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise WriteError(f"cannot write {path}: {exc}") from exc
    return path


def _write_registry_value(key: str, value: str) -> None:
    import winreg  # type: ignore[import-not-found]

    hive_name, _, sub_key = key.partition("\\")
    hives = {"HKCU": winreg.HKEY_CURRENT_USER, "HKLM": winreg.HKEY_LOCAL_MACHINE}
    if hive_name not in hives:
        raise WriteError(f"unsupported registry hive: {hive_name}")
    with winreg.CreateKey(hives[hive_name], sub_key) as handle:
        winreg.SetValueEx(handle, "", 0, winreg.REG_SZ, value)


def resolve_install_tier(system: bool, *, elevated: bool | None = None, platform: str | None = None) -> InstallTier:
    if system:
        return InstallTier.SYSTEM
    if elevated is None:
        elevated = is_elevated(platform)
    return InstallTier.SYSTEM if elevated else InstallTier.USER


def _verify(outcome: BrowserOutcome, descriptor: ManifestDescriptor, host_name: str) -> None:
    if not outcome.ok or not outcome.manifest_path:
        return
    written = read_manifest(outcome.manifest_path)
    if written is None:
        outcome.ok = False
        outcome.error = "verification failed: manifest unreadable after write"
    elif written != descriptor:
        outcome.ok = False
        outcome.error = "verification failed: manifest content differs from what was written"
    else:
        problems = written.validate(host_name)
        if problems:
            outcome.ok = False
            outcome.error = "verification failed: " + "; ".join(problems)


def _write_direct(
    outcome: BrowserOutcome,
    path: Path,
    descriptor: ManifestDescriptor,
    *,
    force: bool,
    registry_key: str | None,
    registry_writer: Callable[[str, str], None],
) -> None:
    try:
        if not force and read_manifest(path) == descriptor and not _group_writable(path):
            outcome.skipped = True
        else:
            write_manifest_atomic(path, descriptor)
        if registry_key:
            registry_writer(registry_key, str(path))
        outcome.ok = True
    except Exception as exc:  # noqa: BLE001
        outcome.error = str(exc)
        _LOGGER.warning("native_host_write_failed browser=%s error=%s", outcome.browser.value, exc)


def _write_elevated(
    outcomes: list[BrowserOutcome],
    descriptor: ManifestDescriptor,
    elevator: ElevatedWriter,
) -> ElevationError | None:
    # Elevation covers every target at once; there is no per-browser prompt.
    payload = descriptor.to_json().encode("utf-8")
    files: list[tuple[PurePath, bytes]] = [(PurePath(o.manifest_path or ""), payload) for o in outcomes]
    reg_values = [(o.registry_key, o.manifest_path or "") for o in outcomes if o.registry_key]
    try:
        elevator.write_files(files)
        if reg_values:
            elevator.set_registry_values(reg_values)  # type: ignore[arg-type]
    except ElevationError as exc:
        for outcome in outcomes:
            outcome.error = str(exc)
        return exc
    except Exception as exc:  # noqa: BLE001
        err = ElevationError(f"elevated write failed: {exc}")
        for outcome in outcomes:
            outcome.error = str(err)
        return err
    for outcome in outcomes:
        outcome.ok = True
    return None


def register_native_host(
    *,
    browsers: str | Iterable[str] | None = None,
    detect: bool = False,
    system: bool = False,
    force: bool = False,
    root: Path | None = None,
    python_exe: str | None = None,
    platform: str | None = None,
    home: Path | None = None,
    env: Mapping[str, str] | None = None,
    elevated: bool | None = None,
    elevator: ElevatedWriter | None = None,
    registry_writer: Callable[[str, str], None] | None = None,
    detector: Callable[[], set[BrowserType]] | None = None,
    extension_ids: Iterable[str] | None = None,
    host_name: str = HOST_NAME,
) -> RegistrationReport:
    """Register the native messaging host for every target browser.

    Each browser is written independently: a failure for one leaves the others in
    place and is reported on its own `BrowserOutcome`.
    """
    platform = platform or sys.platform
    home = home or Path.home()
    env = env if env is not None else os.environ
    registry_writer = registry_writer or _write_registry_value
    report = RegistrationReport()

    report.stage = "resolve_tier"
    if elevated is None:
        elevated = is_elevated(platform)
    report.tier = resolve_install_tier(system, elevated=elevated)

    report.stage = "resolve_targets"
    try:
        targets = resolve_target_browsers(browsers, detect=detect, detector=detector)
    except ResolutionError as exc:
        return report.fail("resolve_targets", str(exc))

    report.stage = "write_launcher"
    try:
        launcher = write_launcher(root=root, python_exe=python_exe, platform=platform)
        ensure_executable([launcher])
    except OSError as exc:
        return report.fail("write_launcher", f"failed to create native host launcher: {exc}")
    report.launcher_path = str(launcher)

    descriptor = build_manifest(launcher, extension_ids=extension_ids, host_name=host_name)
    problems = descriptor.validate(host_name)
    if problems:
        return report.fail("build_manifest", "invalid host manifest: " + "; ".join(problems))

    on_windows = platform_key(platform) == "win32"
    for browser in targets:
        cfg = get_browser_config(browser, platform=platform, home=home, env=env, host_name=host_name)
        report.outcomes.append(
            BrowserOutcome(
                browser=browser,
                manifest_path=str(cfg.manifest_path(report.tier)),
                registry_key=cfg.registry_key_for(report.tier) if on_windows else None,
            )
        )

    report.stage = "write_manifests"
    if report.tier == InstallTier.SYSTEM and not elevated:
        report.stage = "elevate"
        elevator = elevator or default_elevated_writer(platform)
        err = _write_elevated(report.outcomes, descriptor, elevator)
        if err is not None:
            report.remediation = err.remediation or None
            report.errors.append(str(err))
    else:
        for outcome in report.outcomes:
            _write_direct(
                outcome,
                Path(outcome.manifest_path or ""),
                descriptor,
                force=force,
                registry_key=outcome.registry_key,
                registry_writer=registry_writer,
            )

    report.stage = "verify"
    for outcome in report.outcomes:
        _verify(outcome, descriptor, host_name)
        if outcome.error:
            message = f"{outcome.browser.value}: {outcome.error}"
            if message not in report.errors:
                report.errors.append(message)

    report.ok = any(o.ok for o in report.outcomes)
    report.stage = "done" if report.ok else "failed:write_manifests"
    if report.ok:
        _LOGGER.info("native_host_register_ok tier=%s targets=%s", report.tier.value, report.wrote)
    else:
        _LOGGER.warning("native_host_register_failed tier=%s errors=%s", report.tier.value, report.errors)
    return report


__all__ = [
    "BrowserOutcome",
    "HOST_NAME",
    "ManifestDescriptor",
    "RegistrationReport",
    "allowed_origins_for",
    "build_manifest",
    "read_manifest",
    "register_native_host",
    "resolve_install_tier",
    "write_manifest_atomic",
]
