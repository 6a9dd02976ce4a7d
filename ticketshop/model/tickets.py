# ticketshop/model/tickets.py
"""
Read-only ticket listing, annotated for the buyer asking.
"""
from __future__ import annotations
from collections import Counter
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession, transaction
from . import ledger
from .db import Shoppable
from .identification import ShopIdentification
from .window import grace_period_ends_at


def _ticket_dict(
    s: Shoppable,
    purchased: int,
    in_cart: bool,
    owned: int,
) -> Dict[str, Any]:
    return {
        "id": s.id,
        "title": s.title,
        "price": s.price,
        "max_amount_per_user": s.max_amount_per_user,
        "available_from": to_iso(s.available_from),
        "available_to": to_iso(s.available_to),
        "grace_period_ends_at": to_iso(grace_period_ends_at(s)),
        "is_in_users_cart": in_cart,
        "user_already_has_max": owned >= s.max_amount_per_user,
        # exact sales are not public beyond the resolution
        "tickets_left": min(max(0, s.stock - purchased),
                            config.TICKETS_LEFT_RESOLUTION),
    }


async def _annotate(
    db: AsyncSession,
    shoppables: List[Shoppable],
    identification: ShopIdentification,
    now: float,
) -> List[Dict[str, Any]]:
    mine = await ledger.user_consumables(db, identification, now)
    reservations = await ledger.user_reservations(db, identification)
    purchased = {
        shop.id: await ledger.count_purchased(db, shop.id)
        for shop in shoppables
    }

    held = {c.shoppable_id for c in mine if c.purchased_at is None}
    reserved = {r.shoppable_id for r, _ in reservations}
    owned = Counter(c.shoppable_id for c in mine if c.purchased_at is not None)
    return [
        _ticket_dict(
            shop,
            purchased[shop.id],
            shop.id in held or shop.id in reserved,
            owned[shop.id],
        )
        for shop in shoppables
    ]


async def get_tickets(
    db: GatedAsyncSession,
    identification: ShopIdentification,
    *,
    now: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """
    Tickets not removed whose sale is open-ended or closed within the last
    TICKET_LISTING_DAYS days, ordered by sale start.
    """
    now = now_ts() if now is None else now
    closed_after = now - config.TICKET_LISTING_DAYS * 24 * 3600
    async with transaction(db) as s:
        shoppables = await ledger.list_shoppables(s, now, closed_after)
        return await _annotate(s, shoppables, identification, now)


async def get_ticket(
    db: GatedAsyncSession,
    shoppable_id: str,
    identification: ShopIdentification,
    *,
    now: Optional[float] = None,
) -> Optional[Dict[str, Any]]:
    """
    One ticket by id, including removed and long-closed ones.
    """
    now = now_ts() if now is None else now
    async with transaction(db) as s:
        shop = await ledger.get_shoppable(s, shoppable_id)
        if shop is None:
            return None
        [ticket] = await _annotate(s, [shop], identification, now)
    return ticket
