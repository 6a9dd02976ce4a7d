import pytest

from ticketshop.model.purchase import (
    calculate_cart_price, price_with_transaction_fee, transaction_fee
)


def test_transaction_fee():
    assert transaction_fee(0) == 180
    assert transaction_fee(10000) == 330
    assert transaction_fee(10335) == 335


@pytest.mark.parametrize("price", [1, 99, 1000, 10000, 12345, 250000])
def test_fee_inclusive_price_is_minimal(price):
    total = price_with_transaction_fee(price)
    assert total - transaction_fee(total) >= price
    assert (total - 1) - transaction_fee(total - 1) < price


def test_known_fee_inclusive_price():
    total = price_with_transaction_fee(10000)
    assert total == 10335
    assert total == 10000 + transaction_fee(total)


def test_cart_price_is_a_plain_sum():
    assert calculate_cart_price([]) == 0
    assert calculate_cart_price([1000, 2500, 0]) == 3500
