"""
Request bodies for the escrow endpoints.
"""
from typing import Optional
from pydantic import BaseModel, Field


class AcceptOfferRequest(BaseModel):
    """Seller picks one of their listings to satisfy a buyer's offer."""
    listing_id: str = Field(pattern="^lst_")


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    details: Optional[str] = Field(default=None, max_length=2000)
