"""Async scheduler driving the bot's periodic ticks.

Runs three concurrent loops on one asyncio event loop:
- Decision tick (entries + exits), every ``decision_interval`` seconds
- Reconciliation tick, every ``reconcile_interval`` seconds
- Balance snapshot tick, every ``snapshot_interval`` seconds

Each tick runs in a worker thread with a timeout. The interval is measured
from the end of one tick to the start of the next, and a tick that is still
running when its next turn comes is skipped rather than overlapped.
"""
import asyncio
from typing import Callable, Dict, Optional, Set

from .config import SchedulerConfig
from .logging_setup import logger


class BotScheduler:
    """Orchestrate the bot's decision, reconciliation and snapshot ticks."""

    def __init__(self, bot, config: Optional[SchedulerConfig] = None):
        self.bot = bot
        self.config = config or SchedulerConfig()
        self._stop_event: Optional[asyncio.Event] = None
        self._busy: Set[str] = set()
        self.completed: Dict[str, int] = {"decision": 0, "reconcile": 0, "snapshot": 0}

    def _ticks(self) -> Dict[str, tuple]:
        cfg = self.config
        return {
            "decision": (self.bot.run_decision_tick, cfg.decision_interval),
            "reconcile": (self.bot.run_reconcile_tick, cfg.reconcile_interval),
            "snapshot": (self.bot.run_snapshot_tick, cfg.snapshot_interval),
        }

    async def start(self):
        """Initialize the bot, then run every tick loop until ``stop`` is called."""
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        await asyncio.to_thread(self.bot.initialize)
        logger.info("Scheduler started")

        await asyncio.gather(
            *(self._loop(name, fn, interval) for name, (fn, interval) in self._ticks().items()),
            return_exceptions=False,
        )
        logger.info("Scheduler stopped")

    async def stop(self):
        """Signal every loop to stop after its current tick."""
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        self._stop_event.set()

    async def run_once(self) -> Dict[str, bool]:
        """Run each tick a single time, in order. Returns which ticks completed."""
        return {name: await self.run_tick(name, fn) for name, (fn, _) in self._ticks().items()}

    async def run_tick(self, name: str, fn: Callable) -> bool:
        if name in self._busy:
            logger.warning(f"{name} tick skipped: previous run still in progress")
            return False

        self._busy.add(name)
        task = asyncio.ensure_future(asyncio.to_thread(fn))
        task.add_done_callback(lambda _: self._busy.discard(name))
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.config.tick_timeout)
        except asyncio.TimeoutError:
            logger.error(f"{name} tick exceeded {self.config.tick_timeout}s; next run waits for it to finish")
            return False
        except Exception as e:
            logger.exception(f"{name} tick failed: {e}")
            return False
        self.completed[name] += 1
        return True

    async def _loop(self, name: str, fn: Callable, interval: float):
        try:
            while not self._stop_event.is_set():
                await self.run_tick(name, fn)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.debug(f"{name} loop cancelled")
