# ticketshop/model/ledger.py
"""
Ledger store: holds, purchases and reservations against shoppables.

All functions here are UN-GATED and expect to run inside
`infra.sql.transaction()`. Every query on consumables/reservations is scoped
by an identification, a shoppable, or both.
"""

from __future__ import annotations
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .db import (
    Consumable, ConsumableReservation, GraceResolution, Member, Shoppable
)
from .identification import ShopIdentification


def _by_identification(model, identification: ShopIdentification):
    if identification.member_id is not None:
        return model.member_id == identification.member_id
    return model.external_code == identification.external_code


def _not_expired(now: float):
    return or_(Consumable.expires_at.is_(None), Consumable.expires_at > now)


def _not_removed(now: float):
    return or_(Shoppable.removed_at.is_(None), Shoppable.removed_at > now)


# ------------------------------------------------------------------------------
# Shoppables
# ------------------------------------------------------------------------------

async def lock_shoppable(
    db: AsyncSession, shoppable_id: str, now: float,
    include_removed: bool = False,
) -> Optional[Shoppable]:
    """
    Load a shoppable and lock its row for the rest of the transaction
    (FOR UPDATE on PostgreSQL; SQLite already holds the writer lock).
    All aggregate checks against this shoppable serialize on this lock.
    """
    stmt = select(Shoppable).where(Shoppable.id == shoppable_id)
    if not include_removed:
        stmt = stmt.where(_not_removed(now))
    stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def list_shoppables(
    db: AsyncSession, now: float, closed_after: float
) -> List[Shoppable]:
    rows = await db.execute(
        select(Shoppable)
        .where(
            _not_removed(now),
            or_(Shoppable.available_to.is_(None),
                Shoppable.available_to > closed_after),
        )
        .order_by(Shoppable.available_from.asc(), Shoppable.id)
    )
    return list(rows.scalars().all())


async def get_shoppable(
    db: AsyncSession, shoppable_id: str
) -> Optional[Shoppable]:
    return await db.get(Shoppable, shoppable_id)


# ------------------------------------------------------------------------------
# Aggregates
# ------------------------------------------------------------------------------

async def count_purchased(db: AsyncSession, shoppable_id: str) -> int:
    n = (await db.execute(
        select(func.count(Consumable.id)).where(
            Consumable.shoppable_id == shoppable_id,
            Consumable.purchased_at.is_not(None),
        )
    )).scalar_one()
    return int(n)


async def count_outstanding(
    db: AsyncSession, shoppable_id: str, now: float
) -> int:
    """
    Units taken: purchased plus unexpired holds.
    """
    n = (await db.execute(
        select(func.count(Consumable.id)).where(
            Consumable.shoppable_id == shoppable_id,
            _not_expired(now),
        )
    )).scalar_one()
    return int(n)


async def count_held_by(
    db: AsyncSession, identification: ShopIdentification,
    shoppable_id: str, now: float,
) -> int:
    # any state: holds and purchases
    n = (await db.execute(
        select(func.count(Consumable.id)).where(
            _by_identification(Consumable, identification),
            Consumable.shoppable_id == shoppable_id,
            _not_expired(now),
        )
    )).scalar_one()
    return int(n)


async def count_reservations(
    db: AsyncSession, identification: ShopIdentification,
    shoppable_id: Optional[str] = None,
) -> int:
    """
    shoppable_id=None counts reservations on any shoppable.
    """
    stmt = select(func.count(ConsumableReservation.id)).where(
        _by_identification(ConsumableReservation, identification)
    )
    if shoppable_id is not None:
        stmt = stmt.where(ConsumableReservation.shoppable_id == shoppable_id)
    return int((await db.execute(stmt)).scalar_one())


async def last_queue_order(
    db: AsyncSession, shoppable_id: str
) -> Optional[int]:
    # MAX ignores pooled (NULL) reservations
    return (await db.execute(
        select(func.max(ConsumableReservation.order)).where(
            ConsumableReservation.shoppable_id == shoppable_id
        )
    )).scalar_one()


# ------------------------------------------------------------------------------
# Consumables
# ------------------------------------------------------------------------------

async def add_consumable(
    db: AsyncSession,
    identification: ShopIdentification,
    shoppable_id: str,
    now: float,
    *,
    expires_at: Optional[float] = None,
    purchased_at: Optional[float] = None,
) -> Consumable:
    c = Consumable(
        **identification.db_identification(),
        shoppable_id=shoppable_id,
        expires_at=expires_at,
        purchased_at=purchased_at,
        created_at=now,
    )
    db.add(c)
    await db.flush()
    return c


async def delete_expired_consumables(
    db: AsyncSession, now: float
) -> List[str]:
    """
    Delete unpurchased holds with expires_at <= now.
    Returns the shoppable id of every deleted row.
    """
    rows = await db.execute(
        delete(Consumable)
        .where(
            Consumable.purchased_at.is_(None),
            Consumable.expires_at.is_not(None),
            Consumable.expires_at <= now,
        )
        .returning(Consumable.shoppable_id)
    )
    return [r[0] for r in rows.all()]


async def cart_holds(
    db: AsyncSession, identification: ShopIdentification, now: float
) -> List[Tuple[Consumable, Shoppable]]:
    rows = await db.execute(
        select(Consumable, Shoppable)
        .join(Shoppable, Shoppable.id == Consumable.shoppable_id)
        .where(
            _by_identification(Consumable, identification),
            Consumable.purchased_at.is_(None),
            _not_expired(now),
        )
        .order_by(Consumable.created_at, Consumable.id)
    )
    return [(c, s) for c, s in rows.all()]


async def user_consumables(
    db: AsyncSession, identification: ShopIdentification, now: float
) -> List[Consumable]:
    rows = await db.execute(
        select(Consumable).where(
            _by_identification(Consumable, identification),
            _not_expired(now),
        )
    )
    return list(rows.scalars().all())


async def set_intent(
    db: AsyncSession, consumable_ids: Sequence[str], intent_id: str
) -> int:
    if not consumable_ids:
        return 0
    res = await db.execute(
        update(Consumable)
        .where(
            Consumable.id.in_(list(consumable_ids)),
            Consumable.purchased_at.is_(None),
        )
        .values(stripe_intent_id=intent_id)
    )
    return res.rowcount


async def clear_intent(db: AsyncSession, intent_id: str) -> int:
    res = await db.execute(
        update(Consumable)
        .where(
            Consumable.stripe_intent_id == intent_id,
            Consumable.purchased_at.is_(None),
        )
        .values(stripe_intent_id=None)
    )
    return res.rowcount


async def mark_purchased(db: AsyncSession, intent_id: str, now: float) -> int:
    """
    One-way: only unpurchased, unexpired holds are touched, so a repeated
    confirmation updates nothing and a lapsed hold (whose unit may already
    be someone else's) is never sold.
    """
    res = await db.execute(
        update(Consumable)
        .where(
            Consumable.stripe_intent_id == intent_id,
            Consumable.purchased_at.is_(None),
            _not_expired(now),
        )
        .values(purchased_at=now, expires_at=None)
    )
    return res.rowcount


async def count_by_intent(
    db: AsyncSession, intent_id: str, purchased: bool
) -> int:
    cond = (Consumable.purchased_at.is_not(None) if purchased
            else Consumable.purchased_at.is_(None))
    n = (await db.execute(
        select(func.count(Consumable.id)).where(
            Consumable.stripe_intent_id == intent_id, cond
        )
    )).scalar_one()
    return int(n)


# ------------------------------------------------------------------------------
# Reservations
# ------------------------------------------------------------------------------

async def add_reservation(
    db: AsyncSession,
    identification: ShopIdentification,
    shoppable_id: str,
    now: float,
    order: Optional[int],
) -> ConsumableReservation:
    r = ConsumableReservation(
        **identification.db_identification(),
        shoppable_id=shoppable_id,
        order=order,
        created_at=now,
    )
    db.add(r)
    await db.flush()
    return r


async def pooled_reservations(
    db: AsyncSession, shoppable_id: str
) -> List[ConsumableReservation]:
    # stable input order so a seeded shuffle is reproducible
    rows = await db.execute(
        select(ConsumableReservation)
        .where(
            ConsumableReservation.shoppable_id == shoppable_id,
            ConsumableReservation.order.is_(None),
        )
        .order_by(ConsumableReservation.created_at, ConsumableReservation.id)
    )
    return list(rows.scalars().all())


async def queued_reservations(
    db: AsyncSession, shoppable_id: str, limit: Optional[int] = None
) -> List[ConsumableReservation]:
    stmt = (
        select(ConsumableReservation)
        .where(
            ConsumableReservation.shoppable_id == shoppable_id,
            ConsumableReservation.order.is_not(None),
        )
        .order_by(ConsumableReservation.order.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    rows = await db.execute(stmt)
    return list(rows.scalars().all())


async def queue_position(
    db: AsyncSession, shoppable_id: str, order: int
) -> int:
    """
    1-based place in the queue of the reservation with `order`.
    """
    n = (await db.execute(
        select(func.count(ConsumableReservation.id)).where(
            ConsumableReservation.shoppable_id == shoppable_id,
            ConsumableReservation.order.is_not(None),
            ConsumableReservation.order <= order,
        )
    )).scalar_one()
    return int(n)


async def user_reservations(
    db: AsyncSession, identification: ShopIdentification
) -> List[Tuple[ConsumableReservation, Shoppable]]:
    rows = await db.execute(
        select(ConsumableReservation, Shoppable)
        .join(Shoppable, Shoppable.id == ConsumableReservation.shoppable_id)
        .where(_by_identification(ConsumableReservation, identification))
        .order_by(ConsumableReservation.created_at)
    )
    return [(r, s) for r, s in rows.all()]


async def delete_reservations(db: AsyncSession, ids: Sequence[str]) -> int:
    if not ids:
        return 0
    res = await db.execute(
        delete(ConsumableReservation)
        .where(ConsumableReservation.id.in_(list(ids)))
    )
    return res.rowcount


# ------------------------------------------------------------------------------
# Grace window markers
# ------------------------------------------------------------------------------

def _insert_for(db: AsyncSession):
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


async def mark_grace_due(
    db: AsyncSession, shoppable_id: str, due_at: float
) -> bool:
    """
    Insert the "lottery due" marker. True if this call created it.
    """
    ins = _insert_for(db)
    row = (await db.execute(
        ins(GraceResolution)
        .values(shoppable_id=shoppable_id, due_at=due_at)
        .on_conflict_do_nothing(index_elements=["shoppable_id"])
        .returning(GraceResolution.shoppable_id)
    )).first()
    return row is not None


async def mark_grace_resolved(
    db: AsyncSession, shoppable_id: str, now: float
) -> int:
    res = await db.execute(
        update(GraceResolution)
        .where(
            GraceResolution.shoppable_id == shoppable_id,
            GraceResolution.resolved_at.is_(None),
        )
        .values(resolved_at=now)
    )
    return res.rowcount


async def unresolved_grace(db: AsyncSession) -> List[Tuple[str, float]]:
    rows = await db.execute(
        select(GraceResolution.shoppable_id, GraceResolution.due_at)
        .where(GraceResolution.resolved_at.is_(None))
        .order_by(GraceResolution.due_at)
    )
    return [(r[0], float(r[1])) for r in rows.all()]


# ------------------------------------------------------------------------------
# Members
# ------------------------------------------------------------------------------

async def get_member(db: AsyncSession, member_id: str) -> Optional[Member]:
    return await db.get(Member, member_id)


async def set_customer_id(
    db: AsyncSession, member_id: str, customer_id: Optional[str]
) -> None:
    await db.execute(
        update(Member)
        .where(Member.id == member_id)
        .values(stripe_customer_id=customer_id)
    )
