from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)

from ..helpers import new_id


Base = declarative_base()

_ONE_IDENTIFICATION = (
    "(member_id IS NULL) <> (external_code IS NULL)"
)


# ----------------------------
# ORM models
# ----------------------------
class Member(Base):
    # owned by the identity layer; we only keep the provider customer here
    __tablename__ = "members"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    stripe_customer_id = Column(String, nullable=True)


class Shoppable(Base):
    __tablename__ = "shoppables"
    id = Column(String, primary_key=True, default=new_id)
    title = Column(String, nullable=False, default="")
    price = Column(Integer, nullable=False)  # minor units
    stock = Column(Integer, nullable=False)  # max paid units
    max_amount_per_user = Column(Integer, nullable=False, default=1)

    # epoch seconds
    available_from = Column(Float, nullable=False)
    available_to = Column(Float, nullable=True)  # NULL = open-ended
    removed_at = Column(Float, nullable=True)  # soft delete
    created_at = Column(Float, nullable=True)


class Consumable(Base):
    # a cart hold while purchased_at is NULL, a purchase record after
    __tablename__ = "consumables"
    id = Column(String, primary_key=True, default=new_id)
    shoppable_id = Column(
        String, ForeignKey("shoppables.id"), nullable=False, index=True
    )
    member_id = Column(String, nullable=True)
    external_code = Column(String, nullable=True)

    # NULL = purchased, or a free item that never expires
    expires_at = Column(Float, nullable=True)
    purchased_at = Column(Float, nullable=True)
    stripe_intent_id = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint(_ONE_IDENTIFICATION, name="consumable_one_id"),
        Index("consumables_expiry_idx", "purchased_at", "expires_at"),
    )


class ConsumableReservation(Base):
    # queue_order NULL = in the lottery pool, else position in the queue
    __tablename__ = "consumable_reservations"
    id = Column(String, primary_key=True, default=new_id)
    shoppable_id = Column(
        String, ForeignKey("shoppables.id"), nullable=False, index=True
    )
    member_id = Column(String, nullable=True)
    external_code = Column(String, nullable=True)
    order = Column("queue_order", Integer, nullable=True)
    created_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint(_ONE_IDENTIFICATION, name="reservation_one_id"),
    )


class GraceResolution(Base):
    # one row per shoppable whose lottery has been scheduled
    __tablename__ = "grace_resolutions"
    shoppable_id = Column(String, ForeignKey("shoppables.id"),
                          primary_key=True)
    due_at = Column(Float, nullable=False)
    resolved_at = Column(Float, nullable=True)
