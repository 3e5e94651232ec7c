"""
Background garbage collector for the temp, cache and upload roots.

Jobs clean up their own workspaces; the sweeper exists for everything they
could not: crashed requests, killed workers, artifacts whose useful life has
ended. It looks only at the top-level entries of each root and never touches
a workspace that is registered as active.
"""

import logging
import os
import threading
import time
from typing import Callable, Iterable, List, Optional

from .schemas import SweepReport, SweepTarget
from .stats import directory_size, format_bytes
from .workspace import WorkspaceRegistry, active_workspaces, name_timestamp, remove_tree

log = logging.getLogger(__name__)

Hook = Callable[[List[SweepReport]], None]


def entry_created_at(path: str, name: str) -> float:
    """Creation time from the entry name, else its lstat mtime. Raises FileNotFoundError if gone."""
    ts = name_timestamp(name)
    if ts is not None:
        return ts
    return os.lstat(path).st_mtime


def select_targets(targets: Iterable[SweepTarget], kind: str) -> List[str]:
    """Target names for a manual purge: ``temp``, ``cache`` or ``all``."""
    if kind == "all":
        return [t.name for t in targets]
    if kind in ("temp", "cache"):
        return [t.name for t in targets if t.kind == kind]
    raise ValueError(f"Unknown purge kind {kind!r}")


class Sweeper:
    IDLE = "idle"
    SCANNING = "scanning"

    def __init__(
        self,
        targets: Iterable[SweepTarget],
        interval: float = 3600,
        registry: Optional[WorkspaceRegistry] = active_workspaces,
        hooks: Optional[Iterable[Hook]] = None,
    ):
        self.targets: List[SweepTarget] = list(targets)
        self.interval = float(interval)
        self.registry = registry
        self.hooks: List[Hook] = list(hooks or [])
        self.state = self.IDLE
        self.last_reports: List[SweepReport] = []
        self.last_sweep_at: Optional[float] = None
        self.thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._sweep_lock = threading.Lock()

    # lifecycle ---------------------------------------------------------------

    def start(self) -> None:
        if self.thread and self.thread.is_alive():
            return
        self._stop.clear()
        self.thread = threading.Thread(target=self._run, name="sweeper", daemon=True)
        self.thread.start()
        log.info(
            "Sweeper started: %d target(s), every %ss", len(self.targets), int(self.interval)
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self.thread is not None:
            self.thread.join(timeout)
            self.thread = None

    @property
    def running(self) -> bool:
        return bool(self.thread and self.thread.is_alive())

    def _run(self) -> None:
        while True:
            try:
                self.sweep_once()
            except Exception:
                log.exception("Sweep failed")
            if self._stop.wait(self.interval):
                return

    # sweeping ----------------------------------------------------------------

    def sweep_once(self, now: Optional[float] = None) -> List[SweepReport]:
        """One pass over every target. A failing target never stops the others."""
        with self._sweep_lock:
            self.state = self.SCANNING
            try:
                reports = [self._guarded(self.sweep_target, t, now) for t in self.targets]
                self._finish(reports)
            finally:
                self.state = self.IDLE
        return reports

    def purge(self, names: Optional[Iterable[str]] = None) -> List[SweepReport]:
        """Delete every non-active entry of the named targets (all when ``names`` is None)."""
        wanted = set(names) if names is not None else None
        selected = [t for t in self.targets if wanted is None or t.name in wanted]
        with self._sweep_lock:
            self.state = self.SCANNING
            try:
                reports = [self._guarded(self.purge_target, t) for t in selected]
                self._finish(reports)
            finally:
                self.state = self.IDLE
        return reports

    def _guarded(self, fn, target: SweepTarget, *args) -> SweepReport:
        try:
            return fn(target, *args)
        except Exception as e:
            log.exception("Sweep of %s (%s) failed", target.name, target.root)
            report = SweepReport(target=target.name, root=str(target.root))
            report.errors.append(f"{type(e).__name__}: {e}")
            report.finished_at = time.time()
            return report

    def _finish(self, reports: List[SweepReport]) -> None:
        self.last_reports = reports
        self.last_sweep_at = time.time()
        for r in reports:
            log.info(
                "Swept %s: scanned=%d deleted=%d active=%d vanished=%d errors=%d remaining=%s",
                r.target, r.scanned, r.deleted, r.skipped_active, r.vanished, len(r.errors),
                format_bytes(r.size_bytes),
            )
        for hook in self.hooks:
            try:
                hook(reports)
            except Exception:
                log.exception("Sweep hook %r failed", hook)

    def sweep_target(self, target: SweepTarget, now: Optional[float] = None) -> SweepReport:
        """Delete top-level entries of ``target.root`` older than ``target.max_age_sec``."""
        now = time.time() if now is None else now
        return self._scan(target, lambda path, name: now - entry_created_at(path, name) > target.max_age_sec)

    def purge_target(self, target: SweepTarget) -> SweepReport:
        return self._scan(target, lambda path, name: True)

    def _scan(self, target: SweepTarget, expired: Callable[[str, str], bool]) -> SweepReport:
        report = SweepReport(target=target.name, root=str(target.root))
        root = str(target.root)
        if not os.path.isdir(root):
            log.debug("Sweep root %s does not exist yet", root)
            report.finished_at = time.time()
            return report

        with os.scandir(root) as it:
            entries = [(e.path, e.name) for e in it]

        for path, name in entries:
            report.scanned += 1
            if self.registry is not None and path in self.registry:
                report.skipped_active += 1
                continue
            try:
                if not expired(path, name):
                    continue
            except FileNotFoundError:
                report.vanished += 1
                continue
            except OSError as e:
                log.warning("Cannot stat %s, skipping: %s", path, e)
                report.errors.append(f"{name}: {e}")
                continue

            if not os.path.lexists(path):
                report.vanished += 1
            elif remove_tree(path):
                report.deleted += 1
                log.debug("Swept %s", path)
            else:
                report.errors.append(f"{name}: delete failed")

        report.size_bytes = directory_size(root)
        report.finished_at = time.time()
        return report
