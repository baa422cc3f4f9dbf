"""
Pydantic Transaction Model

Escrow record binding one offer to one listing.
Monetary values are Decimals with two places; amount always equals
seller_amount + platform_fee.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, model_validator


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
})


class Transaction(BaseModel):
    """
    Escrow transaction.

    Lifecycle:
    - PENDING: matched, payment not captured yet
    - PAID: buyer funds captured and held
    - DELIVERED: seller marked tickets as delivered
    - COMPLETED: buyer confirmed (or confirmation window elapsed); payout released
    - CANCELLED: cancelled before delivery, refunded if it was PAID
    - REFUNDED: disputed after delivery, buyer refunded
    """
    id: str = Field(pattern="^txn_")
    offer_id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    event_id: str
    amount: Decimal = Field(gt=0)
    platform_fee: Decimal = Field(ge=0)
    seller_amount: Decimal = Field(ge=0)
    status: TransactionStatus
    gateway_ref: Optional[str] = None
    paid_at: Optional[datetime] = None
    tickets_delivered: bool = False
    tickets_delivered_at: Optional[datetime] = None
    buyer_confirmed: bool = False
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    seller_paid_out: bool = False
    seller_paid_out_at: Optional[datetime] = None
    payout_ref: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refunded_at: Optional[datetime] = None
    refund_ref: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @model_validator(mode='after')
    def validate_split(self):
        """Ensure the fee split adds back up to the charged amount."""
        if self.seller_amount + self.platform_fee != self.amount:
            raise ValueError(
                f"seller_amount({self.seller_amount}) + platform_fee({self.platform_fee}) != amount({self.amount})"
            )
        return self


class TransactionStats(BaseModel):
    """Completed-sale totals for one user on both sides of the market."""
    user_id: str
    purchases: int = 0
    total_spent: Decimal = Decimal("0.00")
    sales: int = 0
    total_earned: Decimal = Decimal("0.00")
