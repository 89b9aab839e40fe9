from __future__ import annotations

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

_LOGGER = logging.getLogger("mcp.chrome_bridge.staging_reaper")

DEFAULT_MAX_AGE_S = 3600.0


@dataclass(slots=True)
class SweepReport:
    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def sweep_staging_dir(root: Path | str, max_age_s: float = DEFAULT_MAX_AGE_S, *, now: float | None = None) -> SweepReport:
    """Delete entries whose mtime is older than `max_age_s`. Never raises."""
    report = SweepReport()
    root = Path(root)
    now = time.time() if now is None else now
    try:
        entries = list(root.iterdir())
    except FileNotFoundError:
        return report
    except OSError as exc:
        _LOGGER.warning("staging_sweep_list_failed root=%s error=%s", root, exc)
        report.errors.append(f"{root}: {exc}")
        return report

    for entry in entries:
        try:
            age = now - entry.lstat().st_mtime
            # max_age_s <= 0 clears everything, even entries stamped slightly in the future.
            if max_age_s > 0 and age <= max_age_s:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink(missing_ok=True)
            report.removed.append(entry.name)
            _LOGGER.info("staging_sweep_removed name=%s age_s=%.0f", entry.name, age)
        except FileNotFoundError:
            continue
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("staging_sweep_failed name=%s error=%s", entry.name, exc)
            report.errors.append(f"{entry.name}: {exc}")
    return report


class StagingReaper:
    """Background sweeper for the staging directory (daemon thread)."""

    def __init__(self, root: Path | str, *, max_age_s: float = DEFAULT_MAX_AGE_S, interval_s: float = 600.0) -> None:
        self.root = Path(root)
        self.max_age_s = float(max_age_s)
        self.interval_s = max(0.05, float(interval_s))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep_once(self) -> SweepReport:
        return sweep_staging_dir(self.root, self.max_age_s)

    def start(self) -> bool:
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stop.clear()
        t = threading.Thread(target=self._run, name="mcp-staging-reaper", daemon=True)
        self._thread = t
        t.start()
        return True

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            self.sweep_once()
            self._stop.wait(self.interval_s)


__all__ = ["DEFAULT_MAX_AGE_S", "StagingReaper", "SweepReport", "sweep_staging_dir"]
