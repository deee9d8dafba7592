"""
dgtledger.services.timeout_sweeper — Gateway confirmation timeout
==================================================================

Transactions parked in ``awaiting_external`` whose confirmation never
arrives are failed with ``gateway_timeout`` after
``confirmation_timeout_seconds`` and their reservations released.  A
background task runs :meth:`EconomyEngine.expire_stale` every
``sweep_interval_seconds``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dgtledger.services.action_engine import EconomyEngine

logger = logging.getLogger(__name__)


class TimeoutSweeper:
    def __init__(self, economy: EconomyEngine, interval: float = 60) -> None:
        self.economy = economy
        self.interval = interval
        self._task: asyncio.Task | None = None

    async def sweep_once(self) -> list[int]:
        return await self.economy.expire_stale()

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            return
        loop = loop or asyncio.get_running_loop()

        async def _sweep_loop() -> None:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.sweep_once()
                except Exception:
                    logger.exception("Timeout sweep error")

        self._task = loop.create_task(_sweep_loop(), name="gateway-timeout-sweep")

    def stop(self) -> None:
        """Cancel the sweep task."""
        if self._task:
            self._task.cancel()
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None
