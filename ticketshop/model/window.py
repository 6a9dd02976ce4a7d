from enum import Enum
from typing import Optional

from .. import config
from .db import Shoppable


class WindowState(str, Enum):
    NOT_YET_OPEN = "not_yet_open"
    CLOSED = "closed"
    SOLD_OUT = "sold_out"
    GRACE_WINDOW = "grace_window"
    OPEN = "open"


def grace_period_ends_at(
    shoppable: Shoppable, grace_period: Optional[float] = None
) -> float:
    if grace_period is None:
        grace_period = config.GRACE_PERIOD_WINDOW
    return shoppable.available_from + grace_period


def evaluate_window(
    now: float,
    shoppable: Shoppable,
    purchased_count: int,
    grace_period: Optional[float] = None,
) -> WindowState:
    """
    Sale state of `shoppable` at `now`. Pure: pass counts read in the same
    transaction that acts on the result.
    """
    if grace_period is None:
        grace_period = config.GRACE_PERIOD_WINDOW
    if now < shoppable.available_from:
        return WindowState.NOT_YET_OPEN
    if shoppable.available_to is not None and now > shoppable.available_to:
        return WindowState.CLOSED
    if purchased_count >= shoppable.stock:
        return WindowState.SOLD_OUT
    if now - shoppable.available_from < grace_period:
        return WindowState.GRACE_WINDOW
    return WindowState.OPEN
