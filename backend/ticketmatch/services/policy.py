"""
Escrow Policy

Fee split and timing windows used by matching, the escrow engine and the
expiry sweep. Built from Settings in production; tests construct it directly.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple

from ..config import Settings

CENT = Decimal("0.01")


@dataclass(frozen=True)
class EscrowPolicy:
    platform_fee_rate: Decimal = Decimal("0.05")
    confirmation_window: timedelta = timedelta(hours=72)
    dispute_window: timedelta = timedelta(hours=72)
    payment_window: timedelta = timedelta(minutes=30)
    offer_reactivation: timedelta = timedelta(hours=24)
    gateway_timeout_seconds: float = 10.0
    settlement_lease: timedelta = timedelta(minutes=5)

    def __post_init__(self):
        if not Decimal("0") <= self.platform_fee_rate < Decimal("1"):
            raise ValueError("platform_fee_rate must be in [0, 1)")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EscrowPolicy":
        return cls(
            platform_fee_rate=Decimal(settings.platform_fee_rate),
            confirmation_window=timedelta(hours=settings.confirmation_window_hours),
            dispute_window=timedelta(hours=settings.dispute_window_hours),
            payment_window=timedelta(minutes=settings.payment_window_minutes),
            offer_reactivation=timedelta(hours=settings.offer_reactivation_hours),
            gateway_timeout_seconds=settings.gateway_timeout_seconds,
            settlement_lease=timedelta(seconds=settings.settlement_lease_seconds),
        )

    def split(self, unit_price: Decimal, quantity: int) -> Tuple[Decimal, Decimal, Decimal]:
        """
        Compute (amount, platform_fee, seller_amount) for a match.

        The fee is rounded half-up to the cent and the seller gets the rest,
        so seller_amount + platform_fee == amount exactly.
        """
        amount = (Decimal(unit_price) * quantity).quantize(CENT)
        platform_fee = (amount * self.platform_fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)
        seller_amount = amount - platform_fee
        return amount, platform_fee, seller_amount

    def refund_amount(self, amount: Decimal, seller_amount: Decimal, seller_paid_out: bool) -> Decimal:
        """Full refund unless the seller's share has already left escrow."""
        if seller_paid_out:
            return amount - seller_amount
        return amount
