import pytest

from ticketshop import config
from ticketshop.errors import (
    ConcurrencyConflict, ErrorCode, ProviderError, ValidationError
)
from ticketshop.model import purchase as purchase_mod
from ticketshop.model.cart import add_ticket_to_cart
from ticketshop.model.purchase import (
    on_payment_canceled, on_payment_success, purchase_cart
)

from conftest import NOW


@pytest.fixture(autouse=True)
def _fees_on(monkeypatch):
    monkeypatch.setattr(config, "PASS_ON_TRANSACTION_FEE", True)


class FailingPay:
    """Provider whose intent creation always fails."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def create_intent(self, *args, **kw):
        raise ProviderError("card network down")


@pytest.mark.asyncio
async def test_creates_intent_for_cart(shop, db, mockpay, alice):
    s = await shop.add_shoppable(price=10000)
    await add_ticket_to_cart(db, s.id, alice, now=NOW)

    result = await purchase_cart(db, mockpay, alice, "key-1", now=NOW)

    assert result.amount == 10335
    assert result.client_secret.startswith(result.intent_id)
    intent = mockpay.intents[result.intent_id]
    assert intent["amount"] == 10335
    assert intent["currency"] == config.CURRENCY
    assert intent["metadata"]["external_code"] == "alice"
    assert intent["customer"] is None
    [hold] = await shop.consumables(s.id)
    assert hold.stripe_intent_id == result.intent_id


@pytest.mark.asyncio
async def test_sums_all_holds(shop, db, mockpay, alice, monkeypatch):
    monkeypatch.setattr(config, "PASS_ON_TRANSACTION_FEE", False)
    first = await shop.add_shoppable(price=1000)
    second = await shop.add_shoppable(price=2500)
    await add_ticket_to_cart(db, first.id, alice, now=NOW)
    await add_ticket_to_cart(db, second.id, alice, now=NOW)

    result = await purchase_cart(db, mockpay, alice, "key-1", now=NOW)

    assert result.amount == 3500
    for s in (first, second):
        [hold] = await shop.consumables(s.id)
        assert hold.stripe_intent_id == result.intent_id


@pytest.mark.asyncio
async def test_empty_cart(db, mockpay, alice):
    with pytest.raises(ValidationError) as e:
        await purchase_cart(db, mockpay, alice, "key-1", now=NOW)
    assert e.value.code is ErrorCode.CART_EMPTY


@pytest.mark.asyncio
async def test_expired_holds_are_not_charged(shop, db, mockpay, alice):
    s = await shop.add_shoppable()
    await shop.add_hold(alice, s.id, expires_at=NOW - 1)
    with pytest.raises(ValidationError) as e:
        await purchase_cart(db, mockpay, alice, "key-1", now=NOW)
    assert e.value.code is ErrorCode.CART_EMPTY
    assert mockpay.intents == {}


@pytest.mark.asyncio
async def test_repurchase_cancels_previous_intent(shop, db, mockpay, alice):
    s = await shop.add_shoppable()
    await add_ticket_to_cart(db, s.id, alice, now=NOW)

    first = await purchase_cart(db, mockpay, alice, "key-1", now=NOW)
    second = await purchase_cart(db, mockpay, alice, "key-2", now=NOW + 5)

    assert first.intent_id != second.intent_id
    assert mockpay.intents[first.intent_id]["status"] == "canceled"
    [hold] = await shop.consumables(s.id)
    assert hold.stripe_intent_id == second.intent_id


@pytest.mark.asyncio
async def test_prior_succeeded_intent_settles_cart(shop, db, mockpay, alice):
    s = await shop.add_shoppable()
    await add_ticket_to_cart(db, s.id, alice, now=NOW)
    first = await purchase_cart(db, mockpay, alice, "key-1", now=NOW)
    mockpay.intents[first.intent_id]["status"] = "succeeded"

    again = await purchase_cart(db, mockpay, alice, "key-2", now=NOW + 5)

    assert again.client_secret is None
    assert again.intent_id == first.intent_id
    assert len(mockpay.intents) == 1
    [c] = await shop.consumables(s.id)
    assert c.purchased_at == NOW + 5
    assert c.expires_at is None


@pytest.mark.asyncio
async def test_provider_error_leaves_ledger_untouched(shop, db, mockpay,
                                                     alice):
    s = await shop.add_shoppable()
    await add_ticket_to_cart(db, s.id, alice, now=NOW)

    with pytest.raises(ProviderError):
        await purchase_cart(db, FailingPay(mockpay), alice, "key-1", now=NOW)

    [hold] = await shop.consumables(s.id)
    assert hold.stripe_intent_id is None
    assert hold.purchased_at is None


@pytest.mark.asyncio
async def test_cart_changed_during_intent_creation(shop, db, mockpay, alice,
                                                  monkeypatch):
    s = await shop.add_shoppable()
    await add_ticket_to_cart(db, s.id, alice, now=NOW)

    async def nothing_updated(db, ids, intent_id):
        return 0

    monkeypatch.setattr(purchase_mod.ledger, "set_intent", nothing_updated)
    with pytest.raises(ConcurrencyConflict):
        await purchase_cart(db, mockpay, alice, "key-1", now=NOW)

    [intent] = mockpay.intents.values()
    assert intent["status"] == "canceled"


@pytest.mark.asyncio
async def test_member_gets_provider_customer(shop, db, mockpay, carol):
    await shop.add_member("carol", email="carol@example.com")
    s = await shop.add_shoppable()
    await add_ticket_to_cart(db, s.id, carol, now=NOW)

    first = await purchase_cart(db, mockpay, carol, "key-1", now=NOW)
    customer_id = mockpay.intents[first.intent_id]["customer"]
    assert customer_id in mockpay.customers
    assert mockpay.customers[customer_id]["email"] == "carol@example.com"

    second = await purchase_cart(db, mockpay, carol, "key-2", now=NOW + 1)
    assert mockpay.intents[second.intent_id]["customer"] == customer_id
    assert len(mockpay.customers) == 1


@pytest.mark.asyncio
async def test_deleted_customer_is_replaced(shop, db, mockpay, carol):
    await shop.add_member("carol")
    s = await shop.add_shoppable()
    await add_ticket_to_cart(db, s.id, carol, now=NOW)
    first = await purchase_cart(db, mockpay, carol, "key-1", now=NOW)
    old = mockpay.intents[first.intent_id]["customer"]
    mockpay.customers[old]["deleted"] = True

    second = await purchase_cart(db, mockpay, carol, "key-2", now=NOW + 1)
    new = mockpay.intents[second.intent_id]["customer"]
    assert new != old
    assert new in mockpay.customers


# ------------------------------------------------------------------------------
# provider callbacks
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_success_marks_purchased_once(shop, db, mockpay, alice):
    s = await shop.add_shoppable()
    await add_ticket_to_cart(db, s.id, alice, now=NOW)
    result = await purchase_cart(db, mockpay, alice, "key-1", now=NOW)

    assert await on_payment_success(db, result.intent_id, now=NOW + 10) == 1
    assert await on_payment_success(db, result.intent_id, now=NOW + 20) == 0

    [c] = await shop.consumables(s.id)
    assert c.purchased_at == NOW + 10
    assert c.expires_at is None


@pytest.mark.asyncio
async def test_success_after_hold_lapsed_sells_nothing(shop, db, mockpay,
                                                      alice):
    s = await shop.add_shoppable()
    await add_ticket_to_cart(db, s.id, alice, now=NOW)
    result = await purchase_cart(db, mockpay, alice, "key-1", now=NOW)

    late = NOW + config.TIME_TO_BUY + 1
    assert await on_payment_success(db, result.intent_id, now=late) == 0
    [c] = await shop.consumables(s.id)
    assert c.purchased_at is None


@pytest.mark.asyncio
async def test_cancel_clears_intent(shop, db, mockpay, alice):
    s = await shop.add_shoppable()
    await add_ticket_to_cart(db, s.id, alice, now=NOW)
    result = await purchase_cart(db, mockpay, alice, "key-1", now=NOW)

    assert await on_payment_canceled(db, result.intent_id) == 1
    [c] = await shop.consumables(s.id)
    assert c.stripe_intent_id is None
    assert c.purchased_at is None
