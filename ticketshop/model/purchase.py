# ticketshop/model/purchase.py
"""
Purchase/settlement: turns the holds in a cart into one provider payment
intent, and a confirmed intent into purchase records.

Provider calls never happen inside a ledger transaction. The intent id is
written to the holds only after the provider accepted the intent.
"""
from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from .. import config
from ..errors import ConcurrencyConflict, ErrorCode, ProviderError
from ..errors import ValidationError
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession, transaction
from ..payments.base import TERMINAL_STATUSES, PaymentProvider
from . import ledger
from .db import Member
from .identification import ShopIdentification

log = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Prices
# ------------------------------------------------------------------------------

def transaction_fee(total: int) -> int:
    """
    Provider fee (minor units) charged on a payment of `total`.
    """
    fee = total * config.TRANSACTION_FEE_PERCENT + config.TRANSACTION_FEE_FIXED
    return int(math.floor(fee + 0.5))


def price_with_transaction_fee(price: int) -> int:
    """
    Smallest total that leaves exactly `price` after the provider fee:
    price_with_transaction_fee(p) == p + transaction_fee(<that total>).
    """
    total = math.ceil(
        (price + config.TRANSACTION_FEE_FIXED)
        / (1 - config.TRANSACTION_FEE_PERCENT)
    )
    # t - transaction_fee(t) grows by 0 or 1 per step; walk onto the exact
    # smallest t
    while total - transaction_fee(total) < price:
        total += 1
    while total - 1 - transaction_fee(total - 1) >= price:
        total -= 1
    return total


def calculate_cart_price(prices: Iterable[int]) -> int:
    return sum(prices)


# ------------------------------------------------------------------------------
# Purchase
# ------------------------------------------------------------------------------

@dataclass
class PurchaseResult:
    client_secret: Optional[str]
    amount: int
    intent_id: Optional[str]
    message: Optional[str] = None


async def _ensure_customer(
    db: GatedAsyncSession, provider: PaymentProvider, member: Member
) -> str:
    if member.stripe_customer_id:
        try:
            found = await provider.retrieve_customer(member.stripe_customer_id)
        except ProviderError:
            log.warning("customer %s lookup failed, creating a new one",
                        member.stripe_customer_id)
            found = None
        if found:
            return found

    customer_id = await provider.create_customer(member.id, member.email)
    async with transaction(db) as s:
        await ledger.set_customer_id(s, member.id, customer_id)
    return customer_id


async def purchase_cart(
    db: GatedAsyncSession,
    provider: PaymentProvider,
    identification: ShopIdentification,
    idempotency_key: str,
    *,
    now: Optional[float] = None,
) -> PurchaseResult:
    """
    Create the payment intent for everything currently held in the cart,
    canceling any earlier intent on it first, so at most one intent per cart
    is live at the provider.

    Raises:
        ValidationError: empty cart or nonsensical price.
        ProviderError: the provider failed; the ledger is untouched.
        ConcurrencyConflict: the cart changed while the intent was created.
    """
    now = now_ts() if now is None else now
    async with transaction(db) as s:
        holds = await ledger.cart_holds(s, identification, now)
        member = None
        if identification.member_id is not None:
            member = await ledger.get_member(s, identification.member_id)

    if not holds:
        raise ValidationError(ErrorCode.CART_EMPTY, "Your cart is empty")
    prices = [shop.price for _, shop in holds]
    cart_price = calculate_cart_price(prices)
    if cart_price <= 0 or any(p < 0 for p in prices):
        raise ValidationError(ErrorCode.PRICE_INCONSISTENT,
                              "Could not compute the cart price")
    amount = (price_with_transaction_fee(cart_price)
              if config.PASS_ON_TRANSACTION_FEE else cart_price)

    for intent_id in sorted({c.stripe_intent_id for c, _ in holds
                             if c.stripe_intent_id}):
        status = await provider.retrieve_intent(intent_id)
        if status == "succeeded":
            # webhook not processed yet: settle here instead of charging twice
            await on_payment_success(db, intent_id, now=now)
            return PurchaseResult(
                client_secret=None, amount=amount, intent_id=intent_id,
                message="Payment already completed",
            )
        if status not in TERMINAL_STATUSES:
            await provider.cancel_intent(intent_id)

    customer_id = None
    if member is not None:
        customer_id = await _ensure_customer(db, provider, member)

    intent = await provider.create_intent(
        amount,
        config.CURRENCY,
        idempotency_key,
        customer_id=customer_id,
        metadata={
            **identification.as_dict(),
            "consumables": str(len(holds)),
        },
    )

    consumable_ids = [c.id for c, _ in holds]
    async with transaction(db) as s:
        updated = await ledger.set_intent(s, consumable_ids, intent["id"])
    if updated != len(consumable_ids):
        # a hold lapsed in between; the amount no longer matches the cart
        await provider.cancel_intent(intent["id"])
        async with transaction(db) as s:
            await ledger.clear_intent(s, intent["id"])
        raise ConcurrencyConflict("Your cart changed, please try again")

    return PurchaseResult(
        client_secret=intent["client_secret"],
        amount=amount,
        intent_id=intent["id"],
    )


# ------------------------------------------------------------------------------
# Provider callbacks
# ------------------------------------------------------------------------------

async def on_payment_success(
    db: GatedAsyncSession, intent_id: str, *, now: Optional[float] = None
) -> int:
    """
    Mark the holds carrying `intent_id` as purchased. Safe to receive more
    than once: later calls find nothing left to mark and return 0.
    """
    now = now_ts() if now is None else now
    async with transaction(db) as s:
        marked = await ledger.mark_purchased(s, intent_id, now)
        already = 0
        if marked == 0:
            already = await ledger.count_by_intent(s, intent_id,
                                                   purchased=True)
    if marked == 0 and already == 0:
        log.error("payment %s succeeded but no live holds carry it; "
                  "refund required", intent_id)
    return marked


async def on_payment_canceled(db: GatedAsyncSession, intent_id: str) -> int:
    """
    Detach a failed/canceled intent from the holds; they stay in the cart.
    """
    async with transaction(db) as s:
        return await ledger.clear_intent(s, intent_id)
