import pytest

from ticketshop import config
from ticketshop.model.db import Shoppable
from ticketshop.model.window import (
    WindowState, evaluate_window, grace_period_ends_at
)

from conftest import NOW


def _shoppable(**kw):
    fields = dict(price=1000, stock=2, max_amount_per_user=1,
                  available_from=NOW - 3600, available_to=None)
    fields.update(kw)
    return Shoppable(**fields)


def test_not_yet_open():
    s = _shoppable(available_from=NOW + 1)
    assert evaluate_window(NOW, s, 0) is WindowState.NOT_YET_OPEN


def test_closed_after_available_to():
    s = _shoppable(available_to=NOW - 1)
    assert evaluate_window(NOW, s, 0) is WindowState.CLOSED


def test_closed_wins_over_sold_out():
    s = _shoppable(available_to=NOW - 1, stock=1)
    assert evaluate_window(NOW, s, 1) is WindowState.CLOSED


def test_sold_out_counts_purchases_only():
    s = _shoppable(stock=2)
    assert evaluate_window(NOW, s, 1) is WindowState.OPEN
    assert evaluate_window(NOW, s, 2) is WindowState.SOLD_OUT


def test_grace_window_starts_at_available_from():
    s = _shoppable(available_from=NOW)
    assert evaluate_window(NOW, s, 0) is WindowState.GRACE_WINDOW


def test_grace_window_ends_after_grace_period():
    s = _shoppable(available_from=NOW - 299)
    assert evaluate_window(NOW, s, 0, grace_period=300) \
        is WindowState.GRACE_WINDOW
    assert evaluate_window(NOW + 1, s, 0, grace_period=300) \
        is WindowState.OPEN


def test_sold_out_during_grace_window():
    s = _shoppable(available_from=NOW - 10, stock=1)
    assert evaluate_window(NOW, s, 1) is WindowState.SOLD_OUT


def test_open_ended_sale_stays_open():
    s = _shoppable(available_to=None)
    assert evaluate_window(NOW + 10**8, s, 0) is WindowState.OPEN


def test_grace_period_follows_config(monkeypatch):
    monkeypatch.setattr(config, "GRACE_PERIOD_WINDOW", 0.0)
    s = _shoppable(available_from=NOW)
    assert evaluate_window(NOW, s, 0) is WindowState.OPEN
    assert grace_period_ends_at(s) == NOW


@pytest.mark.parametrize("grace", [60.0, 300.0])
def test_grace_period_ends_at(grace):
    s = _shoppable(available_from=NOW)
    assert grace_period_ends_at(s, grace) == NOW + grace
