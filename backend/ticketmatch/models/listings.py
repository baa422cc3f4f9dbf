"""
Pydantic Listing Models
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator, model_validator

from ..clock import to_naive_utc


class ListingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RESERVED = "RESERVED"
    SOLD = "SOLD"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class Listing(BaseModel):
    """
    Seller's advertised tickets for one section of one event.

    RESERVED is held only while a transaction for the listing is in flight.
    """
    id: str = Field(pattern="^lst_")
    seller_id: str
    event_id: str
    section_id: str
    row: Optional[str] = None
    seats: List[str]
    price: Decimal = Field(gt=0, decimal_places=2)
    quantity: int = Field(gt=0)
    notes: Optional[str] = None
    status: ListingStatus
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @model_validator(mode='after')
    def validate_seats(self):
        """Ensure one seat label per ticket."""
        if len(self.seats) != self.quantity:
            raise ValueError(f"Seat count {len(self.seats)} != quantity({self.quantity})")
        return self


class CreateListingRequest(BaseModel):
    """Body for POST /api/listings."""
    event_id: str = Field(min_length=1)
    section_id: str = Field(min_length=1)
    row: Optional[str] = None
    seats: List[str]
    price: Decimal = Field(gt=0, decimal_places=2)
    quantity: int = Field(gt=0, le=50)
    notes: Optional[str] = Field(default=None, max_length=1000)
    expires_at: Optional[datetime] = None

    @model_validator(mode='after')
    def validate_seats(self):
        """Ensure one seat label per ticket."""
        if len(self.seats) != self.quantity:
            raise ValueError(f"Seat count {len(self.seats)} != quantity({self.quantity})")
        if len(set(self.seats)) != len(self.seats):
            raise ValueError("Seat labels must be unique")
        return self

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None
