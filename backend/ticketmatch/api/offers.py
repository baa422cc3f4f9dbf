"""
Offers API Endpoints

Buyers post, browse, edit, withdraw and extend offers; sellers accept them
with one of their listings.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import logging

from ..dependencies import Actor, ServiceContainer, get_actor, get_db, get_services
from ..exceptions import NotFoundError
from ..models.offers import Offer, OfferStatus, CreateOfferRequest, ExtendOfferRequest, UpdateOfferRequest
from ..models.requests import AcceptOfferRequest
from ..models.transactions import Transaction
from ..permissions import SYSTEM_ACTOR
from ..services import offer_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=201)
async def create_offer_endpoint(
    request: CreateOfferRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
) -> Offer:
    """
    Post a new offer.

    Request Body:
        {
            "event_id": str,
            "max_price": decimal,
            "quantity": int,
            "section_ids": List[str],  # empty means any section
            "message": str,
            "expires_at": datetime  # ISO 8601, naive means UTC; must be in the future
        }

    Example:
        POST /api/offers?user_id=user_demo_buyer
    """
    return await offer_service.create_offer(db, actor.user_id, request, services.clock)


@router.get("")
async def list_event_offers_endpoint(
    event_id: str = Query(..., description="Event identifier"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
) -> List[Offer]:
    """
    Open offers for an event, highest max price first.

    Example:
        GET /api/offers?event_id=evt_123&limit=20
    """
    return await offer_service.get_event_offers(db, event_id, services.clock, limit, offset)


@router.get("/mine")
async def list_my_offers_endpoint(
    status: Optional[OfferStatus] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> List[Offer]:
    """The calling buyer's offers, most recent first."""
    return await offer_service.get_buyer_offers(db, actor.user_id, status, limit, offset)


@router.get("/{offer_id}")
async def get_offer_endpoint(
    offer_id: str,
    db: AsyncSession = Depends(get_db)
) -> Offer:
    logger.debug(f"Retrieving offer: {offer_id}")

    offer = await offer_service.get_offer_by_id(db, offer_id)
    if not offer:
        raise NotFoundError("offer", offer_id)
    return offer


@router.patch("/{offer_id}")
async def update_offer_endpoint(
    offer_id: str,
    request: UpdateOfferRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
) -> Offer:
    """
    Edit an active offer's price, quantity, sections or message.

    Example:
        PATCH /api/offers/off_abc123?user_id=user_demo_buyer
        {"max_price": "120.00"}
    """
    return await offer_service.update_offer(db, offer_id, actor.user_id, request, services.clock)


@router.post("/{offer_id}/cancel")
async def cancel_offer_endpoint(
    offer_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
) -> Offer:
    return await offer_service.cancel_offer(db, offer_id, actor.user_id, services.clock)


@router.patch("/{offer_id}/expiry")
async def extend_offer_endpoint(
    offer_id: str,
    request: ExtendOfferRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
) -> Offer:
    return await offer_service.extend_offer(db, offer_id, actor.user_id, request.expires_at, services.clock)


@router.post("/{offer_id}/accept", status_code=201)
async def accept_offer_endpoint(
    offer_id: str,
    request: AcceptOfferRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services)
) -> Transaction:
    """
    Accept an offer with one of the caller's listings and charge the buyer.

    Matching and capture are separate steps: if the charge is declined the
    match is undone and the gateway error is returned; the offer and listing
    are open again.

    Request Body:
        {
            "listing_id": str
        }

    Returns:
        The PAID transaction

    Example:
        POST /api/offers/off_abc123/accept?user_id=user_demo_seller
    """
    logger.info(f"Seller {actor.user_id} accepting offer {offer_id} with listing {request.listing_id}")

    transaction = await services.matching.accept_offer(offer_id, request.listing_id, actor.user_id)
    return await services.escrow.capture_payment(transaction.id, SYSTEM_ACTOR)
