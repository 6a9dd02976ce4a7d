# ticketshop/model/cart.py
"""
Cart admission: the outcome of one "add ticket to cart" request.

Depending on where the ticket is in its sale window and how much of it is
taken, a buyer gets a hold in the cart, a reservation in the grace-window
lottery, a place in the overflow queue, or (free tickets) the ticket itself.
Everything is decided in a single transaction with the ticket row locked.
"""
from __future__ import annotations
import random
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..errors import ErrorCode, ValidationError
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession, transaction
from ..notify import Notifier, dispatch_notifications
from . import ledger
from .db import Shoppable
from .identification import ShopIdentification
from .lottery import ensure_state, sweep
from .purchase import (
    calculate_cart_price, price_with_transaction_fee, transaction_fee
)
from .window import WindowState, evaluate_window, grace_period_ends_at

if TYPE_CHECKING:
    from .scheduler import GraceScheduler


class AddToCartStatus(str, Enum):
    ADDED_TO_CART = "AddedToCart"
    RESERVED = "Reserved"
    PUT_IN_QUEUE = "PutInQueue"
    ADDED_TO_INVENTORY = "AddedToInventory"


@dataclass(frozen=True)
class AddToCartResult:
    status: AddToCartStatus
    queue_position: Optional[int] = None  # 1-based, PUT_IN_QUEUE only

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"status": self.status.value}
        if self.queue_position is not None:
            out["queue_position"] = self.queue_position
        return out


_REJECTIONS = {
    WindowState.NOT_YET_OPEN: (
        ErrorCode.SALE_NOT_STARTED, "Ticket sales have not started"),
    WindowState.CLOSED: (
        ErrorCode.SALE_CLOSED, "Ticket sales have closed"),
    WindowState.SOLD_OUT: (
        ErrorCode.SOLD_OUT, "The ticket is sold out"),
}

_ALREADY_RESERVED = (
    "The ticket is already reserved, you will be notified when the "
    "lottery is done"
)


# ------------------------------------------------------------------------------
# Admission
# ------------------------------------------------------------------------------

async def add_ticket_to_cart(
    db: GatedAsyncSession,
    shoppable_id: str,
    identification: ShopIdentification,
    *,
    now: Optional[float] = None,
    scheduler: Optional["GraceScheduler"] = None,
    notifier: Optional[Notifier] = None,
    rng: Optional[random.Random] = None,
) -> AddToCartResult:
    """
    Raises:
        ValidationError: ticket missing/removed, outside its sale window,
            sold out, per-buyer limit reached, or already reserved.
        ConcurrencyConflict: the transaction lost a race; retry the call.
    """
    now = now_ts() if now is None else now
    rejection: Optional[ValidationError] = None
    async with transaction(db) as s:
        notifications = await ensure_state(s, now, shoppable_id, rng)
        # _admit raises before it writes; a rejection must not roll back
        # what ensure_state did (expiries, an overdue lottery, promotions)
        try:
            result, grace_delay = await _admit(s, shoppable_id,
                                               identification, now)
        except ValidationError as e:
            rejection = e

    await dispatch_notifications(notifier, notifications)
    if rejection is not None:
        raise rejection
    if grace_delay is not None and scheduler is not None:
        await scheduler.arm(shoppable_id, grace_delay)
    return result


async def _admit(
    db: AsyncSession,
    shoppable_id: str,
    identification: ShopIdentification,
    now: float,
) -> Tuple[AddToCartResult, Optional[float]]:
    shoppable = await ledger.lock_shoppable(db, shoppable_id, now)
    if shoppable is None:
        raise ValidationError(ErrorCode.SHOPPABLE_NOT_FOUND,
                              "Could not find the ticket")

    purchased = await ledger.count_purchased(db, shoppable.id)
    state = evaluate_window(now, shoppable, purchased)
    if state in _REJECTIONS:
        raise ValidationError(*_REJECTIONS[state])

    await _check_user_max_amount(db, identification, shoppable, now)

    if state is WindowState.GRACE_WINDOW:
        return await _add_reservation_in_grace_window(
            db, identification, shoppable, now
        )

    taken = await ledger.count_outstanding(db, shoppable.id, now)
    if taken >= shoppable.stock:
        return await _add_to_queue(db, identification, shoppable, now), None

    if shoppable.price == 0:
        await ledger.add_consumable(db, identification, shoppable.id, now,
                                    purchased_at=now)
        return AddToCartResult(AddToCartStatus.ADDED_TO_INVENTORY), None

    await ledger.add_consumable(db, identification, shoppable.id, now,
                                expires_at=now + config.TIME_TO_BUY)
    return AddToCartResult(AddToCartStatus.ADDED_TO_CART), None


async def _check_user_max_amount(
    db: AsyncSession,
    identification: ShopIdentification,
    shoppable: Shoppable,
    now: float,
) -> None:
    in_cart = await ledger.count_held_by(db, identification, shoppable.id,
                                         now)
    if shoppable.max_amount_per_user == 1 and in_cart > 0:
        raise ValidationError(ErrorCode.ALREADY_IN_CART,
                              "You already have this ticket (in your cart)")
    if in_cart >= shoppable.max_amount_per_user:
        raise ValidationError(
            ErrorCode.MAX_AMOUNT_REACHED,
            "You already have the maximum number of tickets (in your cart)",
        )

    reserved = await ledger.count_reservations(db, identification,
                                               shoppable.id)
    if reserved > 0:
        raise ValidationError(ErrorCode.ALREADY_RESERVED, _ALREADY_RESERVED)


async def _add_reservation_in_grace_window(
    db: AsyncSession,
    identification: ShopIdentification,
    shoppable: Shoppable,
    now: float,
) -> Tuple[AddToCartResult, Optional[float]]:
    # any reservation at all blocks a new one, not just one for this ticket
    if await ledger.count_reservations(db, identification) > 0:
        raise ValidationError(ErrorCode.ALREADY_RESERVED, _ALREADY_RESERVED)

    await ledger.add_reservation(db, identification, shoppable.id, now,
                                 order=None)
    due_at = grace_period_ends_at(shoppable)
    await ledger.mark_grace_due(db, shoppable.id, due_at)
    return AddToCartResult(AddToCartStatus.RESERVED), due_at - now


async def _add_to_queue(
    db: AsyncSession,
    identification: ShopIdentification,
    shoppable: Shoppable,
    now: float,
) -> AddToCartResult:
    last = await ledger.last_queue_order(db, shoppable.id)
    last = -1 if last is None else last
    await ledger.add_reservation(db, identification, shoppable.id, now,
                                 order=last + 1)
    # live 1-based place in line, not order + 2: stays right as earlier
    # entries are promoted
    position = await ledger.queue_position(db, shoppable.id, last + 1)
    return AddToCartResult(AddToCartStatus.PUT_IN_QUEUE,
                           queue_position=position)


# ------------------------------------------------------------------------------
# Cart view
# ------------------------------------------------------------------------------

def _shoppable_dict(s: Shoppable) -> Dict[str, Any]:
    return {
        "id": s.id,
        "title": s.title,
        "price": s.price,
        "available_from": to_iso(s.available_from),
        "available_to": to_iso(s.available_to),
    }


async def get_cart(
    db: GatedAsyncSession,
    identification: ShopIdentification,
    *,
    now: Optional[float] = None,
    notifier: Optional[Notifier] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    now = now_ts() if now is None else now
    swept = await sweep(db, now)
    await dispatch_notifications(notifier, swept.queued_notifications)

    async with transaction(db) as s:
        holds = await ledger.cart_holds(s, identification, now)
        reservations = await ledger.user_reservations(s, identification)
        positions = {
            r.id: await ledger.queue_position(s, r.shoppable_id, r.order)
            for r, _ in reservations if r.order is not None
        }

    in_cart = [{
        "id": c.id,
        "expires_at": to_iso(c.expires_at),
        "stripe_intent_id": c.stripe_intent_id,
        "shoppable": _shoppable_dict(shop),
    } for c, shop in holds]
    reserved = [{
        "id": r.id,
        "queue_position": positions.get(r.id),
        "shoppable": {
            **_shoppable_dict(shop),
            "grace_period_ends_at": to_iso(grace_period_ends_at(shop)),
        },
    } for r, shop in reservations]
    return {"in_cart": in_cart, "reservations": reserved}


async def cart_load(
    db: GatedAsyncSession,
    identification: ShopIdentification,
    *,
    now: Optional[float] = None,
    notifier: Optional[Notifier] = None,
) -> Dict[str, Any]:
    cart = await get_cart(db, identification, now=now, notifier=notifier)
    cart_price = calculate_cart_price(
        item["shoppable"]["price"] for item in cart["in_cart"]
    )
    if config.PASS_ON_TRANSACTION_FEE and cart_price > 0:
        total = price_with_transaction_fee(cart_price)
        fee = transaction_fee(total)
    else:
        total, fee = cart_price, 0
    return {
        **cart,
        "cart_price": cart_price,
        "total_price": total,
        "transaction_fee": fee,
    }
