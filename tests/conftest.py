import random
from contextlib import asynccontextmanager
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from ticketshop.infra.sql import GatedAsyncSession, make_async_engine
from ticketshop.infra.sql import transaction
from ticketshop.model.db import (
    Base, Consumable, ConsumableReservation, Member, Shoppable
)
from ticketshop.model.identification import ShopIdentification
from ticketshop.notify import Notification, Notifier
from ticketshop.payments.mockpay import MockPay

# fixed clock for every test, epoch seconds
NOW = 1_700_000_000.0


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: List[Notification] = []

    async def notify(self, notifications: List[Notification]) -> None:
        self.sent.extend(notifications)

    def kinds(self) -> List[str]:
        return sorted(n.kind.value for n in self.sent)


class Shop:
    """
    Per-test database plus shortcuts for seeding and inspecting the ledger.
    """

    def __init__(self, SessionAsync, gated) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated

    @asynccontextmanager
    async def db(self):
        async with self.SessionAsync() as session:
            yield GatedAsyncSession(session=session, gated=self.gated)

    async def add_shoppable(self, **kw) -> Shoppable:
        fields = dict(
            title="Gig", price=1000, stock=1, max_amount_per_user=1,
            available_from=NOW - 3600, available_to=None,
            created_at=NOW - 7200,
        )
        fields.update(kw)
        async with self.db() as db:
            async with transaction(db) as s:
                shop = Shoppable(**fields)
                s.add(shop)
                await s.flush()
        return shop

    async def add_member(self, member_id: str, **kw) -> Member:
        async with self.db() as db:
            async with transaction(db) as s:
                m = Member(id=member_id, **kw)
                s.add(m)
        return m

    async def add_hold(self, ident: ShopIdentification, shoppable_id: str,
                       expires_at: Optional[float] = NOW + 600,
                       purchased_at: Optional[float] = None) -> Consumable:
        async with self.db() as db:
            async with transaction(db) as s:
                c = Consumable(**ident.db_identification(),
                               shoppable_id=shoppable_id,
                               expires_at=expires_at,
                               purchased_at=purchased_at,
                               created_at=NOW - 60)
                s.add(c)
        return c

    async def add_reservation(self, ident: ShopIdentification,
                              shoppable_id: str, order: Optional[int] = None,
                              created_at: float = NOW - 60
                              ) -> ConsumableReservation:
        async with self.db() as db:
            async with transaction(db) as s:
                r = ConsumableReservation(**ident.db_identification(),
                                          shoppable_id=shoppable_id,
                                          order=order, created_at=created_at)
                s.add(r)
        return r

    async def consumables(self, shoppable_id: str) -> List[Consumable]:
        async with self.db() as db:
            async with transaction(db) as s:
                rows = await s.execute(
                    select(Consumable)
                    .where(Consumable.shoppable_id == shoppable_id)
                    .order_by(Consumable.created_at)
                )
                return list(rows.scalars().all())

    async def reservations(
        self, shoppable_id: str
    ) -> List[ConsumableReservation]:
        async with self.db() as db:
            async with transaction(db) as s:
                rows = await s.execute(
                    select(ConsumableReservation)
                    .where(ConsumableReservation.shoppable_id == shoppable_id)
                )
                return list(rows.scalars().all())

    async def count(self, model) -> int:
        async with self.db() as db:
            async with transaction(db) as s:
                return int((await s.execute(
                    select(func.count()).select_from(model)
                )).scalar_one())


@pytest_asyncio.fixture
async def shop(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'shop.db'}"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield Shop(SessionAsync, gated)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(shop):
    async with shop.db() as db:
        yield db


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mockpay():
    return MockPay(secret="test-secret")


@pytest.fixture
def alice():
    return ShopIdentification(external_code="alice")


@pytest.fixture
def bob():
    return ShopIdentification(external_code="bob")


@pytest.fixture
def carol():
    return ShopIdentification(member_id="carol")
