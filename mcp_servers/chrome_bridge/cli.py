"""Command line entry point: `mcp-chrome-bridge register | fix-permissions | update-port`."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from .browsers import InstallTier
from .exec_permissions import ensure_executable, host_executable_paths
from .native_host_installer import RegistrationReport, register_native_host
from .stdio_config import update_port

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("mcp.chrome_bridge")

PROG = "mcp-chrome-bridge"
__version__ = "1.0.0"


def _out(message: str) -> None:
    print(message, file=sys.stdout)


def _err(message: str) -> None:
    print(message, file=sys.stderr)


def _print_report(report: RegistrationReport) -> None:
    for outcome in report.outcomes:
        label = outcome.browser.value.capitalize()
        if outcome.ok and outcome.skipped:
            _out(f"  = {label}: up to date ({outcome.manifest_path})")
        elif outcome.ok:
            _out(f"  + {label}: {outcome.manifest_path}")
            if outcome.registry_key:
                _out(f"    registry: {outcome.registry_key}")
        else:
            _err(f"  x {label}: {outcome.error or 'failed'}")


def cmd_register(args: argparse.Namespace) -> int:
    tier_hint = "system-level" if args.system else "user-level"
    _out(f"Registering {tier_hint} Native Messaging host...")
    report = register_native_host(browsers=args.browser, detect=args.detect, system=args.system, force=args.force)
    if report.launcher_path:
        _out(f"Host launcher: {report.launcher_path}")
    _print_report(report)

    if report.ok:
        scope = "System-level" if report.tier == InstallTier.SYSTEM else "User-level"
        _out(f"{scope} Native Messaging host registered successfully!")
        _out("You can now use connectNative in the Chrome extension to connect to this service.")
        return 0

    if not report.outcomes:
        for error in report.errors:
            _err(f"Registration failed: {error}")
    if report.stage == "failed:resolve_targets":
        return 1
    if report.tier == InstallTier.SYSTEM:
        _err("System-level registration failed.")
        if report.remediation:
            _err(report.remediation)
        _err(f"  Alternatively register for the current user only: {PROG} register")
    else:
        _err("User-level registration failed, please try the following methods:")
        _err(f"  1. sudo {PROG} register")
        _err(f"  2. {PROG} register --system")
    return 1


def cmd_fix_permissions(args: argparse.Namespace) -> int:
    _out("Fixing execution permissions...")
    try:
        changed = ensure_executable(host_executable_paths())
    except OSError as exc:
        _err(f"Failed to fix permissions: {exc}")
        return 1
    for path in changed:
        _out(f"  + {path}")
    _out("Execution permissions fixed successfully!")
    return 0


def cmd_update_port(args: argparse.Namespace) -> int:
    try:
        url = update_port(args.port)
    except ValueError as exc:
        _err(f"Error: {exc}")
        return 1
    except OSError as exc:
        _err(f"Error: {exc}")
        return 1
    _out(f"Port updated successfully to {int(args.port)}")
    _out(f"Updated URL: {url}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Mcp Chrome Bridge - local service for communicating with the Chrome extension",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    register = sub.add_parser("register", help="Register Native Messaging host")
    register.add_argument("-f", "--force", action="store_true", help="Force re-registration")
    register.add_argument(
        "-s",
        "--system",
        action="store_true",
        help="Use system-level installation (requires administrator/sudo privileges)",
    )
    register.add_argument("-b", "--browser", help="Register for specific browser (chrome, chromium, or all)")
    register.add_argument("-d", "--detect", action="store_true", help="Auto-detect installed browsers")
    register.set_defaults(func=cmd_register)

    fix = sub.add_parser("fix-permissions", help="Fix execution permissions for native host files")
    fix.set_defaults(func=cmd_fix_permissions)

    port = sub.add_parser("update-port", help="Update the port number in stdio-config.json")
    port.add_argument("port")
    port.set_defaults(func=cmd_update_port)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger("mcp").setLevel(logging.DEBUG)
    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 0
    try:
        return int(func(args))
    except Exception as exc:  # noqa: BLE001
        logger.debug("command_failed command=%s", args.command, exc_info=True)
        _err(f"{args.command} failed: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
