from __future__ import annotations

import json
import os
import stat
from pathlib import Path, PurePath, PurePosixPath

import pytest

from mcp_servers.chrome_bridge import browsers
from mcp_servers.chrome_bridge.browsers import BrowserType, InstallTier
from mcp_servers.chrome_bridge.config import DEFAULT_EXTENSION_ID, HOST_NAME
from mcp_servers.chrome_bridge.errors import ElevationError
from mcp_servers.chrome_bridge.native_host_installer import (
    ManifestDescriptor,
    allowed_origins_for,
    build_manifest,
    read_manifest,
    register_native_host,
    resolve_install_tier,
    write_manifest_atomic,
)

EXTRA_ID = "abcdefghijklmnopabcdefghijklmnop"


def _register(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, **kwargs):  # noqa: ANN003
    monkeypatch.setenv("MCP_BRIDGE_HOST_DIR", str(tmp_path / "host"))
    params = {
        "platform": "linux",
        "home": tmp_path / "home",
        "root": tmp_path / "repo",
        "python_exe": "/usr/bin/python3",
        "env": {},
        "elevated": False,
        "extension_ids": [],
    }
    params.update(kwargs)
    return register_native_host(**params)


def _user_manifest(tmp_path: Path, browser: BrowserType) -> Path:
    folder = "google-chrome" if browser is BrowserType.CHROME else "chromium"
    return tmp_path / "home" / ".config" / folder / "NativeMessagingHosts" / f"{HOST_NAME}.json"


def test_allowed_origins_normalizes_and_dedupes() -> None:
    origins = allowed_origins_for([EXTRA_ID.upper(), "not-an-id", EXTRA_ID, " " + DEFAULT_EXTENSION_ID])
    assert origins == (f"chrome-extension://{EXTRA_ID}/", f"chrome-extension://{DEFAULT_EXTENSION_ID}/")


def test_build_manifest_shape(tmp_path: Path) -> None:
    descriptor = build_manifest(tmp_path / "launcher", extension_ids=[EXTRA_ID])
    data = descriptor.to_dict()
    assert set(data) == {"name", "description", "path", "type", "allowed_origins"}
    assert data["name"] == HOST_NAME
    assert data["type"] == "stdio"
    assert data["path"] == str(tmp_path / "launcher")
    assert data["allowed_origins"] == [
        f"chrome-extension://{DEFAULT_EXTENSION_ID}/",
        f"chrome-extension://{EXTRA_ID}/",
    ]


def test_build_manifest_reads_extension_ids_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MCP_EXTENSION_IDS", f"{EXTRA_ID}, bogus")
    descriptor = build_manifest(tmp_path / "launcher")
    assert f"chrome-extension://{EXTRA_ID}/" in descriptor.allowed_origins


def test_validate_reports_problems(tmp_path: Path) -> None:
    bad = ManifestDescriptor(
        name="Other.Host",
        description="",
        path="relative/launcher",
        type="pipe",
        allowed_origins=("chrome-extension://short/",),
    )
    problems = bad.validate()
    assert "manifest.name mismatch" in problems
    assert "manifest.type must be stdio" in problems
    assert "manifest.path must be absolute" in problems
    assert any("malformed" in p for p in problems)

    missing = ManifestDescriptor(name=HOST_NAME, description="x", path=str(tmp_path / "nope"))
    problems = missing.validate()
    assert "native host launcher not found" in problems
    assert "allowed_origins is empty" in problems


def test_validate_flags_non_executable_launcher(tmp_path: Path) -> None:
    launcher = tmp_path / "launcher"
    launcher.write_text("#!/bin/sh\n", encoding="utf-8")
    launcher.chmod(0o644)
    descriptor = build_manifest(launcher, extension_ids=[])
    assert "native host launcher is not executable" in descriptor.validate()

    launcher.chmod(0o755)
    assert descriptor.validate() == []


def test_write_manifest_atomic_round_trip(tmp_path: Path) -> None:
    descriptor = build_manifest("/opt/bridge/host", extension_ids=[EXTRA_ID])
    path = write_manifest_atomic(tmp_path / "nested" / "dir" / f"{HOST_NAME}.json", descriptor)

    assert read_manifest(path) == descriptor
    assert json.loads(path.read_text(encoding="utf-8")) == descriptor.to_dict()
    assert stat.S_IMODE(path.stat().st_mode) == 0o644
    assert [p.name for p in path.parent.iterdir()] == [path.name]


def test_read_manifest_tolerates_garbage(tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert read_manifest(bad) is None
    assert read_manifest(tmp_path / "missing.json") is None


def test_resolve_install_tier() -> None:
    assert resolve_install_tier(True, elevated=False) is InstallTier.SYSTEM
    assert resolve_install_tier(False, elevated=True) is InstallTier.SYSTEM
    assert resolve_install_tier(False, elevated=False) is InstallTier.USER


def test_register_user_tier_writes_every_browser(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    report = _register(tmp_path, monkeypatch, browsers="all")

    assert report.ok, report.errors
    assert report.tier is InstallTier.USER
    assert report.stage == "done"
    launcher = Path(report.launcher_path or "")
    assert launcher == tmp_path / "host" / "mcp-chrome-bridge-host"
    assert launcher.stat().st_mode & stat.S_IXUSR
    assert "mcp_servers.chrome_bridge.native_host" in launcher.read_text(encoding="utf-8")

    for browser in BrowserType:
        path = _user_manifest(tmp_path, browser)
        manifest = read_manifest(path)
        assert manifest is not None
        assert manifest.path == str(launcher)
        assert manifest.validate() == []
    assert len(report.wrote) == 2


def test_register_skips_identical_manifest_unless_forced(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    first = _register(tmp_path, monkeypatch, browsers="chrome")
    assert first.ok and not first.outcomes[0].skipped

    second = _register(tmp_path, monkeypatch, browsers="chrome")
    assert second.ok
    assert second.outcomes[0].skipped
    assert second.wrote == []

    forced = _register(tmp_path, monkeypatch, browsers="chrome", force=True)
    assert forced.ok
    assert not forced.outcomes[0].skipped


def test_register_rewrites_group_writable_manifest(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _register(tmp_path, monkeypatch, browsers="chrome")
    path = _user_manifest(tmp_path, BrowserType.CHROME)
    path.chmod(0o664)

    report = _register(tmp_path, monkeypatch, browsers="chrome")
    assert report.ok
    assert not report.outcomes[0].skipped
    assert stat.S_IMODE(path.stat().st_mode) == 0o644


def test_register_failure_for_one_browser_keeps_the_other(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    blocker = tmp_path / "home" / ".config" / "chromium"
    blocker.parent.mkdir(parents=True)
    blocker.write_text("not a directory", encoding="utf-8")

    report = _register(tmp_path, monkeypatch, browsers="all")

    assert report.ok
    outcomes = {o.browser: o for o in report.outcomes}
    assert outcomes[BrowserType.CHROME].ok
    assert not outcomes[BrowserType.CHROMIUM].ok
    assert outcomes[BrowserType.CHROMIUM].error
    assert any(err.startswith("chromium:") for err in report.errors)
    assert read_manifest(_user_manifest(tmp_path, BrowserType.CHROME)) is not None


def test_register_invalid_browser_writes_nothing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    report = _register(tmp_path, monkeypatch, browsers="opera")

    assert not report.ok
    assert report.stage == "failed:resolve_targets"
    assert "Invalid browser: opera" in report.errors[0]
    assert report.launcher_path is None
    assert not (tmp_path / "host").exists()


def test_register_detect_with_no_browsers_falls_back_to_all(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    report = _register(tmp_path, monkeypatch, detect=True, detector=lambda: set())
    assert report.ok
    assert [o.browser for o in report.outcomes] == list(BrowserType)


class _RecordingElevator:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[list[tuple[PurePath, bytes]]] = []
        self.registry: list[tuple[str, str]] = []

    def write_files(self, files) -> None:  # noqa: ANN001
        self.calls.append(list(files))
        if self.fail:
            raise ElevationError("sudo declined", remediation="run it as root")
        for dest, content in files:
            Path(dest).parent.mkdir(parents=True, exist_ok=True)
            Path(dest).write_bytes(content)

    def set_registry_values(self, values) -> None:  # noqa: ANN001
        self.registry.extend(values)


def _redirect_system_root(monkeypatch: pytest.MonkeyPatch, sysroot: Path) -> None:
    original = browsers._root_for

    def fake_root_for(token, *, platform, home, env):  # noqa: ANN001
        if token == "root":
            return PurePosixPath(str(sysroot))
        return original(token, platform=platform, home=home, env=env)

    monkeypatch.setattr(browsers, "_root_for", fake_root_for)


def test_register_system_tier_elevates_all_targets_at_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    sysroot = tmp_path / "sysroot"
    _redirect_system_root(monkeypatch, sysroot)
    elevator = _RecordingElevator()

    report = _register(tmp_path, monkeypatch, browsers="all", system=True, elevator=elevator)

    assert report.ok, report.errors
    assert report.tier is InstallTier.SYSTEM
    assert len(elevator.calls) == 1
    assert len(elevator.calls[0]) == 2
    assert read_manifest(sysroot / "etc" / "opt" / "chrome" / "native-messaging-hosts" / f"{HOST_NAME}.json")
    assert read_manifest(sysroot / "etc" / "chromium" / "native-messaging-hosts" / f"{HOST_NAME}.json")


def test_register_system_tier_elevation_refused(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _redirect_system_root(monkeypatch, tmp_path / "sysroot")
    elevator = _RecordingElevator(fail=True)

    report = _register(tmp_path, monkeypatch, browsers="chrome", system=True, elevator=elevator)

    assert not report.ok
    assert report.tier is InstallTier.SYSTEM
    assert report.remediation == "run it as root"
    assert all(o.error for o in report.outcomes)
    assert not (tmp_path / "sysroot").exists()


def test_register_system_tier_when_already_elevated_writes_directly(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    sysroot = tmp_path / "sysroot"
    _redirect_system_root(monkeypatch, sysroot)
    elevator = _RecordingElevator(fail=True)

    report = _register(tmp_path, monkeypatch, browsers="chromium", elevated=True, elevator=elevator)

    assert report.ok, report.errors
    assert report.tier is InstallTier.SYSTEM
    assert elevator.calls == []
    assert read_manifest(sysroot / "etc" / "chromium" / "native-messaging-hosts" / f"{HOST_NAME}.json")


def _windows_layout_under(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, str]:
    # Keep the Windows directory table but build real paths under tmp_path.
    monkeypatch.setattr(browsers, "_path_type", lambda _platform: PurePosixPath)
    return {"APPDATA": str(tmp_path / "appdata"), "ProgramFiles": str(tmp_path / "pf")}


@pytest.mark.skipif(os.name == "nt", reason="Windows layout is simulated under a POSIX tmp dir")
def test_register_windows_user_tier_sets_hkcu_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env = _windows_layout_under(monkeypatch, tmp_path)
    recorded: list[tuple[str, str]] = []

    report = _register(
        tmp_path,
        monkeypatch,
        platform="win32",
        env=env,
        browsers="all",
        registry_writer=lambda key, value: recorded.append((key, value)),
    )

    assert report.ok, report.errors
    chrome_manifest = tmp_path / "appdata" / "Google" / "Chrome" / "NativeMessagingHosts" / f"{HOST_NAME}.json"
    chromium_manifest = tmp_path / "appdata" / "Chromium" / "NativeMessagingHosts" / f"{HOST_NAME}.json"
    assert recorded == [
        (rf"HKCU\Software\Google\Chrome\NativeMessagingHosts\{HOST_NAME}", str(chrome_manifest)),
        (rf"HKCU\Software\Chromium\NativeMessagingHosts\{HOST_NAME}", str(chromium_manifest)),
    ]
    assert read_manifest(chrome_manifest) is not None
    assert Path(report.launcher_path or "").name == "mcp-chrome-bridge-host.cmd"


@pytest.mark.skipif(os.name == "nt", reason="Windows layout is simulated under a POSIX tmp dir")
def test_register_windows_system_tier_hands_hklm_values_to_elevator(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env = _windows_layout_under(monkeypatch, tmp_path)
    elevator = _RecordingElevator()

    def no_direct_registry(key: str, value: str) -> None:
        raise AssertionError("system tier must go through the elevator")

    report = _register(
        tmp_path,
        monkeypatch,
        platform="win32",
        env=env,
        browsers="all",
        system=True,
        elevator=elevator,
        registry_writer=no_direct_registry,
    )

    assert report.ok, report.errors
    chrome_manifest = tmp_path / "pf" / "Google" / "Chrome" / "NativeMessagingHosts" / f"{HOST_NAME}.json"
    chromium_manifest = tmp_path / "pf" / "Chromium" / "NativeMessagingHosts" / f"{HOST_NAME}.json"
    assert elevator.registry == [
        (rf"HKLM\Software\Google\Chrome\NativeMessagingHosts\{HOST_NAME}", str(chrome_manifest)),
        (rf"HKLM\Software\Chromium\NativeMessagingHosts\{HOST_NAME}", str(chromium_manifest)),
    ]
    assert read_manifest(chromium_manifest) is not None
