"""
Pydantic Offer Models

Read model for buyer offers plus the request bodies that create and extend
them.

Request datetimes may carry any UTC offset; they are normalized to naive UTC
before they reach the services.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator, model_validator

from ..clock import to_naive_utc


class OfferStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class Offer(BaseModel):
    """
    Buyer's standing request to purchase tickets at or below max_price.

    Status moves only ACTIVE -> ACCEPTED | EXPIRED | CANCELLED. An empty
    section_ids list means any section is acceptable.
    """
    id: str = Field(pattern="^off_")
    buyer_id: str
    event_id: str
    max_price: Decimal = Field(gt=0, decimal_places=2)
    quantity: int = Field(gt=0)
    section_ids: List[str] = Field(default_factory=list)
    message: Optional[str] = None
    status: OfferStatus
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CreateOfferRequest(BaseModel):
    """Body for POST /api/offers."""
    event_id: str = Field(min_length=1)
    max_price: Decimal = Field(gt=0, decimal_places=2)
    quantity: int = Field(gt=0, le=50)
    section_ids: List[str] = Field(default_factory=list)
    message: Optional[str] = Field(default=None, max_length=1000)
    expires_at: datetime

    @field_validator("section_ids")
    @classmethod
    def validate_sections(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("section_ids must not contain duplicates")
        return value

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class ExtendOfferRequest(BaseModel):
    """Body for PATCH /api/offers/{offer_id}/expiry."""
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class UpdateOfferRequest(BaseModel):
    """Body for PATCH /api/offers/{offer_id}; omitted fields are left unchanged."""
    max_price: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    quantity: Optional[int] = Field(default=None, gt=0, le=50)
    section_ids: Optional[List[str]] = None
    message: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("section_ids")
    @classmethod
    def validate_sections(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is not None and len(set(value)) != len(value):
            raise ValueError("section_ids must not contain duplicates")
        return value

    @model_validator(mode='after')
    def validate_not_empty(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self
