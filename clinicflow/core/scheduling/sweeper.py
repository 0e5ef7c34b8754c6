"""
Payment expiry sweeper.

Lazy expiry only runs when a slot is touched; the sweeper releases
overdue unpaid bookings nobody is looking at, so their seats reach the
waitlist before the slot starts.
"""

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timezone
from typing import Optional

from clinicflow.config import get_settings
from clinicflow.core.scheduling.engine import SchedulingEngine, get_scheduling_engine

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Background task calling SchedulingEngine.expire_overdue on an interval."""

    def __init__(self, interval_seconds: int, engine: Optional[SchedulingEngine] = None):
        """Initialize sweeper.

        Args:
            interval_seconds: Seconds between sweeps (0 disables the task)
            engine: Scheduling engine (defaults to the app singleton)
        """
        self.interval_seconds = interval_seconds
        self._engine = engine
        self._task: Optional[asyncio.Task] = None
        self.last_run: Optional[datetime] = None
        self.last_expired = 0
        self.last_error: Optional[str] = None

    @property
    def engine(self) -> SchedulingEngine:
        if self._engine is None:
            self._engine = get_scheduling_engine()
        return self._engine

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    @property
    def status(self) -> str:
        """disabled, stopped, failing or running."""
        if not self.enabled:
            return "disabled"
        if self._task is None or self._task.done():
            return "stopped"
        if self.last_error:
            return "failing"
        return "running"

    async def run_once(self) -> int:
        """Sweep now.

        Returns:
            Number of appointments expired
        """
        try:
            expired = await self.engine.expire_overdue()
        except Exception as e:
            # Next tick retries; lazy expiry still covers accessed slots
            self.last_error = str(e)
            logger.exception(f"Expiry sweep failed: {e}")
            raise
        finally:
            self.last_run = datetime.now(timezone.utc)

        self.last_error = None
        self.last_expired = expired
        return expired

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            with suppress(Exception):
                await self.run_once()

    def start(self) -> None:
        """Start the background task (no-op when disabled or running)."""
        if not self.enabled or (self._task is not None and not self._task.done()):
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Payment expiry sweep every {self.interval_seconds}s")

    async def stop(self) -> None:
        """Cancel the background task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Payment expiry sweep stopped")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "status": self.status,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_expired": self.last_expired,
            "last_error": self.last_error,
        }


# Singleton instance
_sweeper: Optional[ExpirySweeper] = None


def get_expiry_sweeper() -> ExpirySweeper:
    """Get singleton expiry sweeper."""
    global _sweeper
    if _sweeper is None:
        _sweeper = ExpirySweeper(get_settings().expiry_sweep_interval_seconds)
    return _sweeper
