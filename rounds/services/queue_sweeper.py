"""
Queue Sweeper - Background matchmaking housekeeping

Periodically expires searching entries past the maximum queue time and
unwinds pairings that were not accepted in time.
"""

import asyncio
from datetime import datetime
from typing import Optional

from rounds.config import Config
from rounds.operations.matchmaking_operations import MatchmakingOperations, SweepResult
from rounds.utils.logger import setup_logger

logger = setup_logger(__name__)


class QueueSweeper:
    """Runs MatchmakingOperations.expire_stale_entries on a fixed interval"""

    def __init__(self, matchmaking_ops: MatchmakingOperations, interval: Optional[float] = None):
        self.matchmaking_ops = matchmaking_ops
        self.interval = interval or Config.SWEEP_INTERVAL_SECONDS
        self.logger = logger
        self._task: Optional[asyncio.Task] = None
        self.running = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: Optional[datetime] = None) -> SweepResult:
        """Single sweep; errors propagate to the caller"""
        return await self.matchmaking_ops.expire_stale_entries(now)

    async def _run(self):
        self.logger.info(f"Queue sweeper started - sweeping every {self.interval} seconds")
        while self.running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error in queue sweep: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def start(self):
        """Start the background loop on the running event loop"""
        if self.is_running:
            return
        self.running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        """Stop the loop and wait for it to finish"""
        self.running = False
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self.logger.info("Queue sweeper stopped")
