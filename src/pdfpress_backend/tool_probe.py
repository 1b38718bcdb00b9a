"""
Availability checks for optional external converters.

A tool counts as available when ``<binary> --version`` exits cleanly within
the probe timeout. Anything else (missing binary, permission error, crash,
hang) means unavailable. Probing never raises.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional, Tuple

from .configuration import Settings
from .converters import kill_process_group

logger = logging.getLogger(__name__)

GHOSTSCRIPT = "ghostscript"
LIBREOFFICE = "libreoffice"


class ExternalToolProbe:
    def __init__(self, settings: Settings) -> None:
        self.binaries: Dict[str, str] = {
            GHOSTSCRIPT: settings.tools.ghostscript,
            LIBREOFFICE: settings.tools.libreoffice,
        }
        self.timeout = settings.execution.probe_timeout
        self.cache_ttl = settings.tools.probe_cache_ttl
        self._cache: Dict[str, Tuple[float, bool]] = {}

    def binary(self, tool: str) -> str:
        return self.binaries[tool]

    async def is_available(self, tool: str) -> bool:
        cached = self._cached(tool)
        if cached is not None:
            return cached
        available = await self._probe(self.binaries.get(tool, tool))
        if self.cache_ttl > 0:
            self._cache[tool] = (time.monotonic(), available)
        return available

    async def availability(self) -> Dict[str, bool]:
        return {tool: await self.is_available(tool) for tool in self.binaries}

    def _cached(self, tool: str) -> Optional[bool]:
        if self.cache_ttl <= 0 or tool not in self._cache:
            return None
        probed_at, available = self._cache[tool]
        if time.monotonic() - probed_at > self.cache_ttl:
            return None
        return available

    async def _probe(self, binary: str) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                "--version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            logger.debug(f"Probe for {binary} failed to start: {exc}")
            return False

        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Probe for {binary} timed out after {self.timeout}s")
            kill_process_group(process)
            return False
        return returncode == 0
