"""
Process memory sampling.

The admission limit is what bounds memory pressure; this watch only logs RSS
and nudges the garbage collector when the process nears its memory ceiling.
"""

from __future__ import annotations

import asyncio
import gc
import logging
from typing import Dict, Optional

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024


def memory_usage_mb() -> Dict[str, int]:
    info = psutil.Process().memory_info()
    return {"rss_mb": round(info.rss / MB), "vms_mb": round(info.vms / MB)}


class MemoryWatch:
    def __init__(self, warning_mb: int, interval: float) -> None:
        self.warning_mb = warning_mb
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def check(self) -> int:
        rss_mb = memory_usage_mb()["rss_mb"]
        if rss_mb > self.warning_mb:
            logger.warning(f"High memory usage: RSS {rss_mb}MB (warning at {self.warning_mb}MB)")
            gc.collect()
        else:
            logger.debug(f"Memory: RSS {rss_mb}MB")
        return rss_mb

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.check()

    def start(self) -> None:
        if self.interval <= 0:
            return
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
