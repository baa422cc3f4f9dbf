"""
SQLAlchemy ORM Models for TicketMatch

Offers, listings and the escrow transactions that bind them.
Offers and listings carry no pointer to their transaction; the link is
derived by querying transactions by offer_id / listing_id.
"""
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Text, JSON,
    CheckConstraint, Index, text
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()

CENT = Decimal("0.01")

OFFER_STATUSES = ("ACTIVE", "ACCEPTED", "EXPIRED", "CANCELLED")
LISTING_STATUSES = ("ACTIVE", "RESERVED", "SOLD", "CANCELLED", "EXPIRED")
TRANSACTION_STATUSES = ("PENDING", "PAID", "DELIVERED", "COMPLETED", "CANCELLED", "REFUNDED")


def _in(column: str, values: tuple) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class Money(TypeDecorator):
    """
    Decimal amount stored as integer cents.

    Keeps arithmetic exact on SQLite, which has no native decimal type.
    """

    impl = Integer
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int((Decimal(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(value) / 100).quantize(CENT)


class OfferModel(Base):
    """
    ORM model for offers table.

    A buyer's standing request to purchase tickets at or below max_price.
    """
    __tablename__ = "offers"

    id = Column(String, primary_key=True)
    buyer_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=False, index=True)
    max_price = Column(Money, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    section_ids = Column(JSON, nullable=False, default=list)
    message = Column(Text)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    accepted_at = Column(DateTime)
    accepted_by = Column(String)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(_in("status", OFFER_STATUSES), name="offer_status_check"),
        CheckConstraint("max_price > 0", name="offer_max_price_check"),
        CheckConstraint("quantity > 0", name="offer_quantity_check"),
    )


class ListingModel(Base):
    """
    ORM model for listings table.

    A seller's advertised ticket inventory for one section of one event.
    """
    __tablename__ = "listings"

    id = Column(String, primary_key=True)
    seller_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=False, index=True)
    section_id = Column(String, nullable=False)
    row = Column(String)
    seats = Column(JSON, nullable=False, default=list)
    price = Column(Money, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    notes = Column(Text)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    expires_at = Column(DateTime, index=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(_in("status", LISTING_STATUSES), name="listing_status_check"),
        CheckConstraint("price > 0", name="listing_price_check"),
        CheckConstraint("quantity > 0", name="listing_quantity_check"),
    )


class TransactionModel(Base):
    """
    ORM model for transactions table.

    Escrow record for one matched offer/listing pair. Rows are never deleted;
    terminal states are kept for audit.
    """
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    offer_id = Column(String, ForeignKey("offers.id"), nullable=False, index=True)
    listing_id = Column(String, ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=False)
    amount = Column(Money, nullable=False)
    platform_fee = Column(Money, nullable=False)
    seller_amount = Column(Money, nullable=False)
    status = Column(String, nullable=False, default="PENDING", index=True)

    # Capture
    gateway_ref = Column(String)
    paid_at = Column(DateTime)

    # Delivery and confirmation
    tickets_delivered = Column(Boolean, nullable=False, default=False)
    tickets_delivered_at = Column(DateTime, index=True)
    buyer_confirmed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime)
    completed_by = Column(String)

    # Payout settlement
    seller_paid_out = Column(Boolean, nullable=False, default=False)
    seller_paid_out_at = Column(DateTime)
    payout_ref = Column(String)
    payout_started_at = Column(DateTime)

    # Refund settlement
    refund_amount = Column(Money)
    refunded_at = Column(DateTime)
    refund_ref = Column(String)
    refund_started_at = Column(DateTime)

    # Cancellation
    cancelled_at = Column(DateTime)
    cancelled_by = Column(String)
    cancel_reason = Column(Text)

    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(_in("status", TRANSACTION_STATUSES), name="transaction_status_check"),
        CheckConstraint("amount > 0", name="transaction_amount_check"),
        CheckConstraint("seller_amount + platform_fee = amount", name="transaction_split_check"),
        # One live transaction per offer and per listing
        Index(
            "uq_transactions_live_offer", "offer_id", unique=True,
            sqlite_where=text("status != 'CANCELLED'"),
            postgresql_where=text("status != 'CANCELLED'"),
        ),
        Index(
            "uq_transactions_live_listing", "listing_id", unique=True,
            sqlite_where=text("status != 'CANCELLED'"),
            postgresql_where=text("status != 'CANCELLED'"),
        ),
    )
