"""
Tests for the escrow fee split and refund rules.
"""
from decimal import Decimal

import pytest

from ticketmatch.config import Settings
from ticketmatch.services.policy import EscrowPolicy


def test_split_charges_listing_price_times_quantity():
    amount, fee, seller_amount = EscrowPolicy().split(Decimal("90.00"), 2)

    assert amount == Decimal("180.00")
    assert fee == Decimal("9.00")
    assert seller_amount == Decimal("171.00")


def test_split_rounds_fee_half_up_and_seller_gets_remainder():
    policy = EscrowPolicy(platform_fee_rate=Decimal("0.05"))

    amount, fee, seller_amount = policy.split(Decimal("10.10"), 1)

    # 5% of 10.10 is 0.505
    assert fee == Decimal("0.51")
    assert seller_amount == Decimal("9.59")
    assert fee + seller_amount == amount


@pytest.mark.parametrize("price,quantity", [
    (Decimal("0.01"), 1),
    (Decimal("33.33"), 3),
    (Decimal("149.99"), 7),
])
def test_split_always_adds_back_up(price, quantity):
    amount, fee, seller_amount = EscrowPolicy().split(price, quantity)

    assert amount == price * quantity
    assert fee + seller_amount == amount


def test_zero_fee_rate_pays_seller_everything():
    amount, fee, seller_amount = EscrowPolicy(platform_fee_rate=Decimal("0")).split(Decimal("50.00"), 2)

    assert fee == Decimal("0.00")
    assert seller_amount == amount


def test_fee_rate_must_be_a_fraction():
    with pytest.raises(ValueError):
        EscrowPolicy(platform_fee_rate=Decimal("1"))
    with pytest.raises(ValueError):
        EscrowPolicy(platform_fee_rate=Decimal("-0.01"))


def test_refund_is_full_until_seller_is_paid_out():
    policy = EscrowPolicy()

    assert policy.refund_amount(Decimal("180.00"), Decimal("171.00"), seller_paid_out=False) == Decimal("180.00")
    assert policy.refund_amount(Decimal("180.00"), Decimal("171.00"), seller_paid_out=True) == Decimal("9.00")


def test_policy_from_settings_converts_windows():
    settings = Settings(
        confirmation_window_hours=48,
        dispute_window_hours=24,
        payment_window_minutes=15,
        settlement_lease_seconds=120,
        platform_fee_rate=Decimal("0.10"),
    )

    policy = EscrowPolicy.from_settings(settings)

    assert policy.confirmation_window.total_seconds() == 48 * 3600
    assert policy.dispute_window.total_seconds() == 24 * 3600
    assert policy.payment_window.total_seconds() == 15 * 60
    assert policy.settlement_lease.total_seconds() == 120
    assert policy.platform_fee_rate == Decimal("0.10")
