# ticketshop/model/lottery.py
"""
Lottery and expiry.

- the grace-window lottery: once a ticket's grace window has elapsed, every
  pooled reservation is drawn in random order and as many as stock allows
  become holds; all pooled reservations are removed either way.
- the expiry sweep: unpaid holds past expires_at are deleted, and the queue
  of each affected ticket advances into the freed capacity.

Functions taking an AsyncSession are UN-GATED and run inside the caller's
transaction; they return the notifications to emit after commit.
`sweep()` and `resolve_grace_window()` own their transaction.
"""
from __future__ import annotations
import random
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..infra.sql import GatedAsyncSession, transaction
from ..notify import Notification, NotificationKind
from . import ledger
from .db import ConsumableReservation, Shoppable
from .identification import ShopIdentification
from .window import grace_period_ends_at

_rng = random.Random()


@dataclass
class SweepResult:
    removed: int = 0
    queued_notifications: List[Notification] = field(default_factory=list)


def _identification(r: ConsumableReservation) -> ShopIdentification:
    return ShopIdentification(
        member_id=r.member_id, external_code=r.external_code
    )


def _sale_closed(shoppable: Shoppable, now: float) -> bool:
    if shoppable.removed_at is not None and shoppable.removed_at <= now:
        return True
    return (shoppable.available_to is not None
            and now > shoppable.available_to)


async def _grant(
    db: AsyncSession, ident: ShopIdentification, shoppable: Shoppable,
    now: float,
) -> None:
    # free tickets skip the cart, like a direct admission does
    if shoppable.price == 0:
        await ledger.add_consumable(db, ident, shoppable.id, now,
                                    purchased_at=now)
    else:
        await ledger.add_consumable(db, ident, shoppable.id, now,
                                    expires_at=now + config.TIME_TO_BUY)


# ------------------------------------------------------------------------------
# Grace window lottery
# ------------------------------------------------------------------------------

async def perform_lottery_if_necessary(
    db: AsyncSession,
    now: float,
    shoppable_id: str,
    rng: Optional[random.Random] = None,
) -> List[Notification]:
    """
    No-op while the grace window is still running or when nothing is pooled,
    so calling it again after a resolution changes nothing.
    """
    shoppable = await ledger.lock_shoppable(db, shoppable_id, now,
                                            include_removed=True)
    if shoppable is None:
        return []
    if now < grace_period_ends_at(shoppable):
        return []

    await ledger.mark_grace_resolved(db, shoppable_id, now)
    pooled = await ledger.pooled_reservations(db, shoppable_id)
    if not pooled:
        return []

    if _sale_closed(shoppable, now):
        available = 0
    else:
        taken = await ledger.count_outstanding(db, shoppable_id, now)
        available = max(0, shoppable.stock - taken)

    (rng or _rng).shuffle(pooled)
    winners, losers = pooled[:available], pooled[available:]

    out: List[Notification] = []
    for r in winners:
        ident = _identification(r)
        await _grant(db, ident, shoppable, now)
        out.append(Notification(ident, shoppable_id,
                                NotificationKind.LOTTERY_WON))
    for r in losers:
        out.append(Notification(_identification(r), shoppable_id,
                                NotificationKind.LOTTERY_LOST))

    await ledger.delete_reservations(db, [r.id for r in pooled])
    return out


async def resolve_grace_window(
    db: GatedAsyncSession,
    shoppable_id: str,
    now: float,
    rng: Optional[random.Random] = None,
) -> List[Notification]:
    async with transaction(db) as s:
        return await perform_lottery_if_necessary(s, now, shoppable_id, rng)


# ------------------------------------------------------------------------------
# Queue + expiry
# ------------------------------------------------------------------------------

async def advance_queue(
    db: AsyncSession, now: float, shoppable_id: str
) -> List[Notification]:
    """
    Move queue heads into holds while capacity remains.
    """
    shoppable = await ledger.lock_shoppable(db, shoppable_id, now,
                                            include_removed=True)
    if shoppable is None or _sale_closed(shoppable, now):
        return []
    taken = await ledger.count_outstanding(db, shoppable_id, now)
    free = shoppable.stock - taken
    if free <= 0:
        return []

    heads = await ledger.queued_reservations(db, shoppable_id, limit=free)
    out: List[Notification] = []
    for r in heads:
        ident = _identification(r)
        await _grant(db, ident, shoppable, now)
        out.append(Notification(ident, shoppable_id,
                                NotificationKind.QUEUE_PROMOTED))
    await ledger.delete_reservations(db, [r.id for r in heads])
    return out


async def remove_expired_consumables(
    db: AsyncSession, now: float
) -> SweepResult:
    freed = await ledger.delete_expired_consumables(db, now)
    result = SweepResult(removed=len(freed))
    # sorted: concurrent sweeps lock shoppables in the same order
    for shoppable_id in sorted(set(freed)):
        result.queued_notifications.extend(
            await advance_queue(db, now, shoppable_id)
        )
    return result


async def ensure_state(
    db: AsyncSession,
    now: float,
    shoppable_id: str,
    rng: Optional[random.Random] = None,
) -> List[Notification]:
    """
    Bring one ticket up to date before acting on it: expire holds, run an
    overdue lottery, advance the queue.
    """
    swept = await remove_expired_consumables(db, now)
    out = list(swept.queued_notifications)
    out.extend(await perform_lottery_if_necessary(db, now, shoppable_id, rng))
    out.extend(await advance_queue(db, now, shoppable_id))
    return out


async def sweep(db: GatedAsyncSession, now: float) -> SweepResult:
    async with transaction(db) as s:
        return await remove_expired_consumables(s, now)
