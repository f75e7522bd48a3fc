"""
Temp-file cleanup.

Two triggers per request:
  failure  →  purge_now(paths), synchronous, errors ignored
  success  →  CleanupScheduler.schedule(artifact_id, paths), purged after
              the delay unless cancelled or rescheduled first
"""
import logging
import threading
import time
from pathlib import Path

logger = logging.getLogger("videogen.cleanup")


def purge_now(paths: list[Path]) -> None:
    for p in paths:
        try:
            Path(p).unlink()
        except OSError:
            pass


def purge_logged(paths: list[Path]) -> int:
    """Delete every path, logging failures; return the number removed."""
    removed = 0
    for p in paths:
        try:
            Path(p).unlink()
            removed += 1
        except OSError as exc:
            logger.error("Error cleaning %s: %s", p, exc)
    return removed


def sweep_stale(storage_dir: Path, max_age_hours: float) -> int:
    """Remove files in storage_dir older than max_age_hours."""
    if not storage_dir.is_dir():
        return 0
    cutoff = time.time() - max_age_hours * 3600
    stale = [
        p for p in storage_dir.iterdir()
        if p.is_file() and p.stat().st_mtime < cutoff
    ]
    removed = purge_logged(stale)
    if removed:
        logger.info("Cleaned %d stale file(s) from %s", removed, storage_dir)
    return removed


class CleanupScheduler:
    """
    Delayed, cancellable purges keyed by artifact id.

    Each entry owns a daemon threading.Timer; the table is guarded by a
    lock because request threads and timer threads both touch it.
    """

    def __init__(self, delay: float = 300.0):
        self.delay = delay
        self._lock = threading.Lock()
        self._tasks: dict[str, tuple[threading.Timer, list[Path]]] = {}

    def schedule(self, artifact_id: str, paths: list[Path], delay: float | None = None) -> None:
        with self._lock:
            delay, count = self._install(artifact_id, list(paths), delay)
        logger.debug("Purge of %s scheduled in %ss (%d file(s))", artifact_id, delay, count)

    def reschedule(self, artifact_id: str, delay: float | None = None) -> bool:
        """Restart the countdown for artifact_id; False if nothing is pending."""
        with self._lock:
            entry = self._tasks.get(artifact_id)
            if entry is None:
                return False
            self._install(artifact_id, entry[1], delay)
        return True

    def _install(self, artifact_id: str, paths: list[Path], delay: float | None) -> tuple[float, int]:
        # caller holds self._lock
        delay = self.delay if delay is None else delay
        previous = self._tasks.pop(artifact_id, None)
        if previous is not None:
            previous[0].cancel()
            paths = previous[1] + [p for p in paths if p not in previous[1]]
        timer = threading.Timer(delay, self._fire, args=(artifact_id,))
        timer.daemon = True
        self._tasks[artifact_id] = (timer, paths)
        timer.start()
        return delay, len(paths)

    def cancel(self, artifact_id: str) -> list[Path] | None:
        """Drop the pending purge; returns the paths it would have removed."""
        with self._lock:
            entry = self._tasks.pop(artifact_id, None)
        if entry is None:
            return None
        entry[0].cancel()
        return entry[1]

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._tasks)

    def run_now(self, artifact_id: str) -> int:
        """Purge artifact_id immediately instead of waiting for its timer."""
        paths = self.cancel(artifact_id)
        if paths is None:
            return 0
        return purge_logged(paths)

    def shutdown(self) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for timer, _ in tasks:
            timer.cancel()

    def _fire(self, artifact_id: str) -> None:
        with self._lock:
            entry = self._tasks.get(artifact_id)
            # a reschedule replaced this timer; the new one owns the purge
            if entry is None or entry[0] is not threading.current_thread():
                return
            del self._tasks[artifact_id]
        removed = purge_logged(entry[1])
        logger.info("Purged %s: %d/%d file(s) removed", artifact_id, removed, len(entry[1]))
