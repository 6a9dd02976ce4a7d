import random

import pytest
from sqlalchemy import select

from ticketshop import config
from ticketshop.infra.sql import transaction
from ticketshop.model.db import GraceResolution
from ticketshop.model.lottery import resolve_grace_window
from ticketshop.model import ledger
from ticketshop.notify import NotificationKind

from conftest import NOW


class ReversingRandom(random.Random):
    def shuffle(self, x):
        x.reverse()


async def _pooled_ticket(shop, alice, bob, **kw):
    fields = dict(available_from=NOW - 100, stock=1)
    fields.update(kw)
    s = await shop.add_shoppable(**fields)
    await shop.add_reservation(alice, s.id, created_at=NOW - 50)
    await shop.add_reservation(bob, s.id, created_at=NOW - 40)
    return s


def _grace_end(s):
    return s.available_from + config.GRACE_PERIOD_WINDOW


@pytest.mark.asyncio
async def test_one_slot_two_reservations(shop, db, rng, alice, bob):
    s = await _pooled_ticket(shop, alice, bob)
    notes = await resolve_grace_window(db, s.id, _grace_end(s), rng)

    holds = await shop.consumables(s.id)
    assert len(holds) == 1
    assert holds[0].expires_at == _grace_end(s) + config.TIME_TO_BUY
    assert await shop.reservations(s.id) == []
    assert sorted(n.kind.value for n in notes) == ["lottery_lost",
                                                   "lottery_won"]
    [won] = [n for n in notes if n.kind is NotificationKind.LOTTERY_WON]
    assert won.identification.external_code == holds[0].external_code


@pytest.mark.asyncio
async def test_resolution_is_idempotent(shop, db, rng, alice, bob):
    s = await _pooled_ticket(shop, alice, bob)
    await resolve_grace_window(db, s.id, _grace_end(s), rng)
    again = await resolve_grace_window(db, s.id, _grace_end(s) + 5, rng)

    assert again == []
    assert len(await shop.consumables(s.id)) == 1


@pytest.mark.asyncio
async def test_nothing_happens_inside_grace_window(shop, db, rng, alice, bob):
    s = await _pooled_ticket(shop, alice, bob)
    notes = await resolve_grace_window(db, s.id, _grace_end(s) - 1, rng)

    assert notes == []
    assert len(await shop.reservations(s.id)) == 2
    assert await shop.consumables(s.id) == []


@pytest.mark.asyncio
async def test_enough_stock_everyone_wins(shop, db, rng, alice, bob):
    s = await _pooled_ticket(shop, alice, bob, stock=3)
    notes = await resolve_grace_window(db, s.id, _grace_end(s), rng)

    assert {n.kind for n in notes} == {NotificationKind.LOTTERY_WON}
    assert len(await shop.consumables(s.id)) == 2


@pytest.mark.asyncio
async def test_draw_order_comes_from_rng(shop, db, alice, bob):
    s = await _pooled_ticket(shop, alice, bob)
    await resolve_grace_window(db, s.id, _grace_end(s), ReversingRandom())

    [hold] = await shop.consumables(s.id)
    assert hold.external_code == "bob"


@pytest.mark.asyncio
async def test_outstanding_holds_reduce_prizes(shop, db, rng, alice, bob,
                                               carol):
    s = await _pooled_ticket(shop, alice, bob, stock=2)
    await shop.add_hold(carol, s.id, expires_at=None, purchased_at=NOW - 1)
    notes = await resolve_grace_window(db, s.id, _grace_end(s), rng)

    assert sorted(n.kind.value for n in notes) == ["lottery_lost",
                                                   "lottery_won"]
    assert len(await shop.consumables(s.id)) == 2


@pytest.mark.asyncio
async def test_closed_sale_everyone_loses(shop, db, rng, alice, bob):
    s = await _pooled_ticket(shop, alice, bob, available_to=NOW + 100)
    notes = await resolve_grace_window(db, s.id, NOW + 300, rng)

    assert {n.kind for n in notes} == {NotificationKind.LOTTERY_LOST}
    assert await shop.consumables(s.id) == []
    assert await shop.reservations(s.id) == []


@pytest.mark.asyncio
async def test_free_ticket_winners_own_it(shop, db, rng, alice, bob):
    s = await _pooled_ticket(shop, alice, bob, price=0)
    await resolve_grace_window(db, s.id, _grace_end(s), rng)

    [c] = await shop.consumables(s.id)
    assert c.purchased_at == _grace_end(s)
    assert c.expires_at is None


@pytest.mark.asyncio
async def test_queue_entries_stay_out_of_the_draw(shop, db, rng, alice, bob,
                                                  carol):
    s = await _pooled_ticket(shop, alice, bob, stock=3)
    await shop.add_reservation(carol, s.id, order=0)
    await resolve_grace_window(db, s.id, _grace_end(s), rng)

    [left] = await shop.reservations(s.id)
    assert left.member_id == "carol"
    assert left.order == 0


@pytest.mark.asyncio
async def test_marks_grace_marker_resolved(shop, db, rng, alice, bob):
    s = await _pooled_ticket(shop, alice, bob)
    async with transaction(db) as t:
        await ledger.mark_grace_due(t, s.id, _grace_end(s))
        assert await ledger.unresolved_grace(t) == [(s.id, _grace_end(s))]

    await resolve_grace_window(db, s.id, _grace_end(s), rng)

    async with transaction(db) as t:
        assert await ledger.unresolved_grace(t) == []
        marker = (await t.execute(select(GraceResolution))).scalar_one()
        assert marker.resolved_at == _grace_end(s)
