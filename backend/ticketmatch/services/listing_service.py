"""
Listing Service

Seller inventory: create, browse, withdraw, and find the open offers a
listing can satisfy.
"""
import uuid
import logging
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..clock import Clock, system_clock
from ..db.models import ListingModel, OfferModel
from ..db.store import compare_and_set, load
from ..exceptions import AuthorizationError, ConflictError, PreconditionFailedError
from ..models.listings import Listing, ListingStatus, CreateListingRequest
from ..models.offers import Offer, OfferStatus
from .matching_service import match_violations

logger = logging.getLogger(__name__)


async def create_listing(
    db: AsyncSession,
    seller_id: str,
    request: CreateListingRequest,
    clock: Clock = system_clock
) -> Listing:
    """
    Create an ACTIVE listing for a seller.

    Raises:
        PreconditionFailedError: If an expiry is given and it is not in the future
    """
    now = clock.now()
    if request.expires_at is not None and request.expires_at <= now:
        raise PreconditionFailedError(
            "Listing expiry must be in the future",
            {"expires_at": request.expires_at.isoformat()}
        )

    listing_id = f"lst_{uuid.uuid4().hex[:16]}"
    db_listing = ListingModel(
        id=listing_id,
        seller_id=seller_id,
        event_id=request.event_id,
        section_id=request.section_id,
        row=request.row,
        seats=list(request.seats),
        price=request.price,
        quantity=request.quantity,
        notes=request.notes,
        status=ListingStatus.ACTIVE.value,
        expires_at=request.expires_at,
        created_at=now,
        updated_at=now,
    )

    db.add(db_listing)
    await db.commit()

    logger.info(f"Listing created: {listing_id} by seller {seller_id}, event={request.event_id}, price={request.price}")

    return Listing.model_validate(db_listing)


async def get_listing_by_id(db: AsyncSession, listing_id: str) -> Optional[Listing]:
    """Retrieve listing by ID, or None if not found."""
    db_listing = await db.get(ListingModel, listing_id, populate_existing=True)
    return Listing.model_validate(db_listing) if db_listing else None


async def get_seller_listings(
    db: AsyncSession,
    seller_id: str,
    status: Optional[ListingStatus] = None,
    limit: int = 20,
    offset: int = 0
) -> List[Listing]:
    query = select(ListingModel).where(ListingModel.seller_id == seller_id)
    if status:
        query = query.where(ListingModel.status == status.value)

    result = await db.execute(
        query.order_by(ListingModel.created_at.desc()).limit(limit).offset(offset)
    )
    return [Listing.model_validate(row) for row in result.scalars().all()]


async def cancel_listing(
    db: AsyncSession,
    listing_id: str,
    seller_id: str,
    clock: Clock = system_clock
) -> Listing:
    """
    Withdraw an ACTIVE listing.

    A RESERVED listing is part of an in-flight transaction and cannot be
    withdrawn; the transaction has to be cancelled instead.

    Raises:
        NotFoundError: Listing does not exist
        AuthorizationError: Caller is not the seller
        ConflictError: Listing is not ACTIVE
    """
    db_listing = await load(db, ListingModel, listing_id, "listing")
    if db_listing.seller_id != seller_id:
        raise AuthorizationError("Only the seller can cancel this listing", {"listing_id": listing_id})

    now = clock.now()
    cancelled = await compare_and_set(
        db, ListingModel, listing_id, ListingStatus.ACTIVE.value,
        status=ListingStatus.CANCELLED.value, updated_at=now
    )
    if not cancelled:
        status = db_listing.status
        await db.rollback()
        raise ConflictError(
            "Only active listings can be cancelled",
            {"listing_id": listing_id, "status": status}
        )

    await db.commit()
    await db.refresh(db_listing)

    logger.info(f"Listing cancelled: {listing_id} by seller {seller_id}")
    return Listing.model_validate(db_listing)


async def get_listing_offers(
    db: AsyncSession,
    listing_id: str,
    seller_id: str,
    clock: Clock = system_clock
) -> List[Offer]:
    """
    Open offers this listing could be used to accept, highest max price first.

    Raises:
        NotFoundError: Listing does not exist
        AuthorizationError: Caller is not the seller
    """
    db_listing = await load(db, ListingModel, listing_id, "listing")
    if db_listing.seller_id != seller_id:
        raise AuthorizationError("Only the seller can browse offers for this listing", {"listing_id": listing_id})

    result = await db.execute(
        select(OfferModel)
        .where(
            OfferModel.event_id == db_listing.event_id,
            OfferModel.status == OfferStatus.ACTIVE.value,
            OfferModel.expires_at > clock.now(),
            OfferModel.quantity == db_listing.quantity,
            OfferModel.max_price >= db_listing.price,
        )
        .order_by(OfferModel.max_price.desc(), OfferModel.created_at)
    )
    offers = [o for o in result.scalars().all() if not match_violations(o, db_listing)]

    logger.debug(f"Listing {listing_id} matches {len(offers)} open offers")
    return [Offer.model_validate(o) for o in offers]
