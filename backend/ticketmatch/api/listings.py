"""
Listings API Endpoints

Sellers post and withdraw listings and browse the offers a listing can
satisfy.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import logging

from ..dependencies import Actor, ServiceContainer, get_actor, get_db, get_services
from ..exceptions import NotFoundError
from ..models.listings import Listing, ListingStatus, CreateListingRequest
from ..models.offers import Offer
from ..services import listing_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=201)
async def create_listing_endpoint(
    request: CreateListingRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
) -> Listing:
    """
    Post a new listing.

    Request Body:
        {
            "event_id": str,
            "section_id": str,
            "row": str,
            "seats": List[str],  # one label per ticket
            "price": decimal,  # per ticket
            "quantity": int,
            "notes": str,
            "expires_at": datetime  # optional
        }
    """
    return await listing_service.create_listing(db, actor.user_id, request, services.clock)


@router.get("/mine")
async def list_my_listings_endpoint(
    status: Optional[ListingStatus] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> List[Listing]:
    return await listing_service.get_seller_listings(db, actor.user_id, status, limit, offset)


@router.get("/{listing_id}")
async def get_listing_endpoint(
    listing_id: str,
    db: AsyncSession = Depends(get_db)
) -> Listing:
    listing = await listing_service.get_listing_by_id(db, listing_id)
    if not listing:
        raise NotFoundError("listing", listing_id)
    return listing


@router.post("/{listing_id}/cancel")
async def cancel_listing_endpoint(
    listing_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
) -> Listing:
    """Withdraw an ACTIVE listing. Listings held by a transaction answer 409."""
    return await listing_service.cancel_listing(db, listing_id, actor.user_id, services.clock)


@router.get("/{listing_id}/offers")
async def list_matching_offers_endpoint(
    listing_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
) -> List[Offer]:
    """
    Open offers this listing can be used to accept.

    Example:
        GET /api/listings/lst_abc123/offers?user_id=user_demo_seller
    """
    return await listing_service.get_listing_offers(db, listing_id, actor.user_id, services.clock)
