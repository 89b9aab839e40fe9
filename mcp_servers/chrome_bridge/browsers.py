"""Supported browsers, install detection and native-messaging manifest locations.

All path knowledge lives in `_MANIFEST_DIRS`: one row per (platform, browser, tier).
`resolve_manifest_path()` is the only function that reads it.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath

from .config import HOST_NAME
from .errors import DetectionError, ResolutionError

_LOGGER = logging.getLogger("mcp.chrome_bridge.browsers")


class BrowserType(str, Enum):
    CHROME = "chrome"
    CHROMIUM = "chromium"


class InstallTier(str, Enum):
    USER = "user"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class RegistryKeys:
    user: str
    system: str


@dataclass(frozen=True, slots=True)
class BrowserConfig:
    type: BrowserType
    display_name: str
    user_manifest_path: PurePath
    system_manifest_path: PurePath
    registry_key: str | None = None
    system_registry_key: str | None = None

    def manifest_path(self, tier: InstallTier) -> PurePath:
        return self.system_manifest_path if tier == InstallTier.SYSTEM else self.user_manifest_path

    def registry_key_for(self, tier: InstallTier) -> str | None:
        return self.system_registry_key if tier == InstallTier.SYSTEM else self.registry_key


@dataclass(frozen=True, slots=True)
class ProbeResult:
    browser: BrowserType
    found: bool
    error: str | None = None


# Root tokens: "appdata" / "programfiles" (Windows env), "home", "root" (filesystem root).
_MANIFEST_DIRS: dict[tuple[str, BrowserType, InstallTier], tuple[str, tuple[str, ...]]] = {
    ("win32", BrowserType.CHROME, InstallTier.USER): ("appdata", ("Google", "Chrome", "NativeMessagingHosts")),
    ("win32", BrowserType.CHROMIUM, InstallTier.USER): ("appdata", ("Chromium", "NativeMessagingHosts")),
    ("win32", BrowserType.CHROME, InstallTier.SYSTEM): ("programfiles", ("Google", "Chrome", "NativeMessagingHosts")),
    ("win32", BrowserType.CHROMIUM, InstallTier.SYSTEM): ("programfiles", ("Chromium", "NativeMessagingHosts")),
    ("darwin", BrowserType.CHROME, InstallTier.USER): (
        "home",
        ("Library", "Application Support", "Google", "Chrome", "NativeMessagingHosts"),
    ),
    ("darwin", BrowserType.CHROMIUM, InstallTier.USER): (
        "home",
        ("Library", "Application Support", "Chromium", "NativeMessagingHosts"),
    ),
    # Chrome's machine-wide directory has no "Application Support" segment; Chromium's does.
    ("darwin", BrowserType.CHROME, InstallTier.SYSTEM): ("root", ("Library", "Google", "Chrome", "NativeMessagingHosts")),
    ("darwin", BrowserType.CHROMIUM, InstallTier.SYSTEM): (
        "root",
        ("Library", "Application Support", "Chromium", "NativeMessagingHosts"),
    ),
    ("linux", BrowserType.CHROME, InstallTier.USER): ("home", (".config", "google-chrome", "NativeMessagingHosts")),
    ("linux", BrowserType.CHROMIUM, InstallTier.USER): ("home", (".config", "chromium", "NativeMessagingHosts")),
    ("linux", BrowserType.CHROME, InstallTier.SYSTEM): ("root", ("etc", "opt", "chrome", "native-messaging-hosts")),
    ("linux", BrowserType.CHROMIUM, InstallTier.SYSTEM): ("root", ("etc", "chromium", "native-messaging-hosts")),
}

_REGISTRY_VENDOR_PATHS: dict[BrowserType, str] = {
    BrowserType.CHROME: r"Software\Google\Chrome\NativeMessagingHosts",
    BrowserType.CHROMIUM: r"Software\Chromium\NativeMessagingHosts",
}

_WINDOWS_INSTALL_KEYS: dict[BrowserType, str] = {
    BrowserType.CHROME: r"HKLM\SOFTWARE\Google\Chrome",
    BrowserType.CHROMIUM: r"HKLM\SOFTWARE\Chromium",
}

_MAC_APP_BUNDLES: dict[BrowserType, str] = {
    BrowserType.CHROME: "/Applications/Google Chrome.app",
    BrowserType.CHROMIUM: "/Applications/Chromium.app",
}

_LINUX_COMMANDS: dict[BrowserType, tuple[str, ...]] = {
    BrowserType.CHROME: ("google-chrome", "google-chrome-stable"),
    BrowserType.CHROMIUM: ("chromium", "chromium-browser"),
}


def platform_key(platform: str | None = None) -> str:
    platform = platform or sys.platform
    if platform in {"win32", "cygwin"}:
        return "win32"
    if platform == "darwin":
        return "darwin"
    # Every other POSIX flavour uses the Linux (XDG) layout.
    return "linux"


def _path_type(platform: str) -> type[PurePath]:
    return PureWindowsPath if platform == "win32" else PurePosixPath


def parse_browser_type(raw: str | None) -> BrowserType | None:
    normalized = str(raw or "").strip().lower()
    for browser in BrowserType:
        if browser.value == normalized:
            return browser
    return None


def _coerce_browser(browser: BrowserType | str) -> BrowserType:
    if isinstance(browser, BrowserType):
        return browser
    parsed = parse_browser_type(str(browser))
    if parsed is None:
        # Compatibility default: unknown browsers get Chrome's layout.
        _LOGGER.debug("browser_fallback requested=%s using=%s", browser, BrowserType.CHROME.value)
        return BrowserType.CHROME
    return parsed


def _root_for(token: str, *, platform: str, home: PurePath, env: Mapping[str, str]) -> PurePath:
    path_type = _path_type(platform)
    if token == "appdata":
        raw = env.get("APPDATA")
        return path_type(raw) if raw else path_type(str(home), "AppData", "Roaming")
    if token == "programfiles":
        return path_type(env.get("ProgramFiles") or "C:\\Program Files")
    if token == "home":
        return path_type(str(home))
    return path_type("/")


def resolve_manifest_path(
    browser: BrowserType | str,
    tier: InstallTier,
    *,
    platform: str | None = None,
    home: PurePath | None = None,
    env: Mapping[str, str] | None = None,
    host_name: str = HOST_NAME,
) -> PurePath:
    key = platform_key(platform)
    home = home if home is not None else Path.home()
    env = env if env is not None else os.environ
    browser = _coerce_browser(browser)
    root_token, segments = _MANIFEST_DIRS[(key, browser, InstallTier(tier))]
    root = _root_for(root_token, platform=key, home=home, env=env)
    return root.joinpath(*segments, f"{host_name}.json")


def registry_keys(
    browser: BrowserType | str,
    *,
    platform: str | None = None,
    host_name: str = HOST_NAME,
) -> RegistryKeys | None:
    if platform_key(platform) != "win32":
        return None
    vendor_path = _REGISTRY_VENDOR_PATHS[_coerce_browser(browser)]
    return RegistryKeys(
        user=f"HKCU\\{vendor_path}\\{host_name}",
        system=f"HKLM\\{vendor_path}\\{host_name}",
    )


def get_browser_config(
    browser: BrowserType | str,
    *,
    platform: str | None = None,
    home: PurePath | None = None,
    env: Mapping[str, str] | None = None,
    host_name: str = HOST_NAME,
) -> BrowserConfig:
    browser = _coerce_browser(browser)
    keys = registry_keys(browser, platform=platform, host_name=host_name)
    kwargs = {"platform": platform, "home": home, "env": env, "host_name": host_name}
    return BrowserConfig(
        type=browser,
        display_name=browser.value.capitalize(),
        user_manifest_path=resolve_manifest_path(browser, InstallTier.USER, **kwargs),
        system_manifest_path=resolve_manifest_path(browser, InstallTier.SYSTEM, **kwargs),
        registry_key=keys.user if keys else None,
        system_registry_key=keys.system if keys else None,
    )


def all_browser_configs(
    *,
    platform: str | None = None,
    home: PurePath | None = None,
    env: Mapping[str, str] | None = None,
) -> list[BrowserConfig]:
    return [get_browser_config(b, platform=platform, home=home, env=env) for b in BrowserType]


def _reg_query(key: str) -> bool:
    proc = subprocess.run(["reg", "query", key], capture_output=True, timeout=10)
    return proc.returncode == 0


def _probe_windows(browser: BrowserType) -> bool:
    return _reg_query(_WINDOWS_INSTALL_KEYS[browser])


def _probe_macos(browser: BrowserType) -> bool:
    return Path(_MAC_APP_BUNDLES[browser]).exists()


def _probe_linux(browser: BrowserType) -> bool:
    return any(shutil.which(cmd) for cmd in _LINUX_COMMANDS[browser])


_PROBES: dict[str, Callable[[BrowserType], bool]] = {
    "win32": _probe_windows,
    "darwin": _probe_macos,
    "linux": _probe_linux,
}


def _run_probe(probe: Callable[[BrowserType], bool], browser: BrowserType) -> ProbeResult:
    try:
        return ProbeResult(browser=browser, found=bool(probe(browser)))
    except Exception as exc:  # noqa: BLE001
        err = DetectionError(f"{browser.value}: {exc}")
        _LOGGER.debug("browser_probe_failed %s", err)
        return ProbeResult(browser=browser, found=False, error=str(err))


def probe_browsers(platform: str | None = None) -> list[ProbeResult]:
    probe = _PROBES[platform_key(platform)]
    return [_run_probe(probe, browser) for browser in BrowserType]


def detect_installed_browsers(platform: str | None = None) -> set[BrowserType]:
    return {res.browser for res in probe_browsers(platform) if res.found}


def resolve_target_browsers(
    requested: str | Iterable[str] | None = None,
    *,
    detect: bool = False,
    default: Iterable[BrowserType] | None = None,
    detector: Callable[[], set[BrowserType]] | None = None,
) -> list[BrowserType]:
    """Decide which browsers to register for.

    Precedence: explicit request ("all" expands) > auto-detect (empty falls back to
    every browser) > caller default (None means every browser).
    """
    every = list(BrowserType)
    if requested:
        names = [requested] if isinstance(requested, str) else list(requested)
        out: list[BrowserType] = []
        for name in names:
            if str(name).strip().lower() == "all":
                return every
            browser = parse_browser_type(name)
            if browser is None:
                valid = ", ".join(f"'{b.value}'" for b in every)
                raise ResolutionError(f"Invalid browser: {name}. Use {valid}, or 'all'")
            if browser not in out:
                out.append(browser)
        return out
    if detect:
        found = (detector or detect_installed_browsers)()
        if not found:
            _LOGGER.info("browser_detect_empty fallback=all")
            return every
        return [b for b in every if b in found]
    if default is not None:
        return list(default)
    return every


__all__ = [
    "BrowserConfig",
    "BrowserType",
    "InstallTier",
    "ProbeResult",
    "RegistryKeys",
    "all_browser_configs",
    "detect_installed_browsers",
    "get_browser_config",
    "parse_browser_type",
    "platform_key",
    "probe_browsers",
    "registry_keys",
    "resolve_manifest_path",
    "resolve_target_browsers",
]
