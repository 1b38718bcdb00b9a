"""
Periodic backstop cleanup of orphaned artifacts.

Normally every artifact is deleted by its job. Files left behind by a killed
process, or written by a worker thread after its job timed out, are removed
here once they are older than the retention window. The window is validated
at startup to exceed the longest possible job (queue wait plus execution), so
the sweep never touches files a live job still needs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Iterator, Optional, Sequence

from .resources import ResourceTracker, remove_path

logger = logging.getLogger(__name__)

# Scratch entries live in a shared temp directory, so only our own names are swept there.
SCRATCH_PATTERNS = ("pdfpress-lo-profile-*", "pdfpress-lo-output-*")


class BackgroundReaper:
    def __init__(
        self,
        roots: Sequence[Path],
        scratch_root: Path,
        retention: float,
        interval: float,
        tracker: Optional[ResourceTracker] = None,
        scratch_patterns: Sequence[str] = SCRATCH_PATTERNS,
    ) -> None:
        self.roots = list(roots)
        self.scratch_root = scratch_root
        self.retention = retention
        self.interval = interval
        self.tracker = tracker
        self.scratch_patterns = tuple(scratch_patterns)
        self._task: Optional[asyncio.Task] = None

    def _candidates(self) -> Iterator[Path]:
        for root in self.roots:
            try:
                yield from list(root.iterdir())
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning(f"Reaper cannot list {root}: {exc}")
        for pattern in self.scratch_patterns:
            try:
                yield from list(self.scratch_root.glob(pattern))
            except OSError as exc:
                logger.warning(f"Reaper cannot scan {self.scratch_root}: {exc}")

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Delete every candidate whose mtime is older than the retention window.

        Returns:
            Number of entries removed
        """
        cutoff = (time.time() if now is None else now) - self.retention
        live = self.tracker.live_paths() if self.tracker else set()
        removed = 0
        for path in self._candidates():
            if path in live:
                continue
            try:
                mtime = path.lstat().st_mtime
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning(f"Reaper cannot stat {path}: {exc}")
                continue
            if mtime < cutoff and remove_path(path):
                removed += 1
                logger.info(f"Reaped stale artifact {path.name}")
        if removed:
            logger.info(f"Reaper removed {removed} stale artifacts")
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Reaper sweep failed; will retry next interval")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.info(f"Reaper started (every {self.interval:g}s, retention {self.retention:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
