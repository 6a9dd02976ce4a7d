# ticketshop/model/scheduler.py
"""
Deferred work that runs outside any buyer request:

- one grace-window timer per shoppable, armed by the first reservation and
  firing the lottery when the window closes;
- a periodic sweep that expires lapsed holds and retries overdue lotteries.

Failures are logged here and never reach buyers. Timers are rebuilt from the
ledger's grace markers on startup, so a restart loses no lottery.
"""
from __future__ import annotations
import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import SchedulerError
from ..helpers import now_ts
from ..infra.sql import Gated, GatedAsyncSession, transaction
from ..infra.timings import timeit
from ..notify import Notification, Notifier, dispatch_notifications
from . import ledger
from .lottery import SweepResult, resolve_grace_window, sweep

log = logging.getLogger(__name__)


class GraceScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gated: Gated,
        registry,
        notifier: Optional[Notifier] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_factory = session_factory
        self.gated = gated
        self.registry = registry
        self.notifier = notifier
        self.rng = rng
        self._timers: Dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.session_factory() as session:
            yield GatedAsyncSession(session=session, gated=self.gated)

    @property
    def armed(self) -> Set[str]:
        return set(self._timers)

    # ------------------------------------------------------------------
    # grace window timers
    # ------------------------------------------------------------------
    async def arm(self, shoppable_id: str, delay: float) -> bool:
        """
        Arm the lottery timer for `shoppable_id` unless one is already armed.
        True if this call armed it.
        """
        if shoppable_id in self._timers:
            return False
        if not await self.registry.claim(shoppable_id, delay):
            return False
        if shoppable_id in self._timers:
            return False
        self._timers[shoppable_id] = asyncio.create_task(
            self._after_grace_period(shoppable_id, delay)
        )
        return True

    async def _after_grace_period(self, shoppable_id: str,
                                  delay: float) -> None:
        try:
            await asyncio.sleep(max(0.0, delay))
            await self.resolve(shoppable_id)
        except SchedulerError:
            log.exception("problem performing reservation lottery for %s",
                          shoppable_id)
        finally:
            self._timers.pop(shoppable_id, None)
            await self.registry.release(shoppable_id)

    async def resolve(
        self, shoppable_id: str, now: Optional[float] = None
    ) -> List[Notification]:
        """
        Run the lottery for one shoppable now. A no-op when nothing is pooled.

        Raises:
            SchedulerError: the resolution failed and was rolled back.
        """
        now = now_ts() if now is None else now
        try:
            async with timeit("lottery.resolve"):
                async with self._db() as db:
                    notifications = await resolve_grace_window(
                        db, shoppable_id, now, self.rng
                    )
        except Exception as e:
            raise SchedulerError(
                f"lottery for {shoppable_id} failed: {e}"
            ) from e
        await dispatch_notifications(self.notifier, notifications)
        return notifications

    async def recover(self, now: Optional[float] = None) -> int:
        """
        Re-arm every lottery that is due but not yet resolved.
        """
        now = now_ts() if now is None else now
        async with self._db() as db:
            async with transaction(db) as s:
                pending = await ledger.unresolved_grace(s)
        armed = 0
        for shoppable_id, due_at in pending:
            if await self.arm(shoppable_id, due_at - now):
                armed += 1
        if armed:
            log.info("re-armed %d grace timer(s)", armed)
        return armed

    async def resolve_overdue(self, now: Optional[float] = None) -> int:
        """
        Resolve every lottery past its due time that no local timer is
        waiting on, e.g. after a failed resolution. Failures are logged and
        left for the next sweep.
        """
        now = now_ts() if now is None else now
        async with self._db() as db:
            async with transaction(db) as s:
                pending = await ledger.unresolved_grace(s)
        resolved = 0
        for shoppable_id, due_at in pending:
            if due_at > now or shoppable_id in self._timers:
                continue
            try:
                await self.resolve(shoppable_id, now=now)
            except SchedulerError:
                log.exception("problem performing reservation lottery for %s",
                              shoppable_id)
                continue
            resolved += 1
        return resolved

    # ------------------------------------------------------------------
    # expiry sweep
    # ------------------------------------------------------------------
    async def sweep(self, now: Optional[float] = None) -> SweepResult:
        """
        Expire lapsed holds (advancing queues), then retry overdue
        lotteries.
        """
        now = now_ts() if now is None else now
        async with timeit("sweep"):
            async with self._db() as db:
                result = await sweep(db, now)
        await dispatch_notifications(self.notifier,
                                     result.queued_notifications)
        await self.resolve_overdue(now)
        return result

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = await self.sweep()
            except Exception:
                log.exception("expiry sweep failed")
                continue
            if result.removed:
                log.info("expired %d hold(s), promoted %d from queues",
                         result.removed, len(result.queued_notifications))

    def start_periodic_sweep(self, interval: float) -> None:
        if interval <= 0 or self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(interval))

    async def close(self) -> None:
        timers = dict(self._timers)
        self._timers.clear()
        tasks = list(timers.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # a task cancelled before its first step never runs its finally
        for shoppable_id in timers:
            await self.registry.release(shoppable_id)
