"""Interval poller that drives the sync engine.

Runs one pass shortly after startup and then one per interval. A failed
pass is logged and the loop re-arms; the next tick retries from the
unchanged watermark.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

logger = logging.getLogger("boardmetrics.poller")


class SyncPoller:
    """Background task that calls `run_pass` on a fixed interval."""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.passes_attempted = 0
        self.passes_failed = 0

    async def start(
        self,
        sync_engine,
        interval_seconds: float,
        startup_delay: float = 0.0,
    ) -> None:
        """Start polling in a background task."""
        if self._running:
            logger.warning("Sync poller already running")
            return

        self._running = True
        self._task = asyncio.create_task(
            self._poll_loop(sync_engine, max(0.0, float(interval_seconds)), max(0.0, float(startup_delay)))
        )
        logger.info(f"Sync poller started (interval={interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the poller, cancelling any in-flight pass."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync poller stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _poll_loop(self, sync_engine, interval_seconds: float, startup_delay: float) -> None:
        try:
            await asyncio.sleep(startup_delay)
            while self._running:
                self.passes_attempted += 1
                try:
                    await sync_engine.run_pass(trigger="interval")
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.passes_failed += 1
                    logger.error(f"Sync pass failed: {e}")
                await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("Sync poller task cancelled")
            raise
        finally:
            self._running = False


# Global singleton
sync_poller = SyncPoller()
