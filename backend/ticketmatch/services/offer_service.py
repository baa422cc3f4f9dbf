"""
Offer Service

Creates, lists, edits, cancels and extends buyer offers. Acceptance lives
in the matching service; expiry lives in the expiry sweep.
"""
import uuid
import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..clock import Clock, system_clock, to_naive_utc
from ..db.models import OfferModel
from ..db.store import compare_and_set, load
from ..exceptions import AuthorizationError, ConflictError, PreconditionFailedError
from ..models.offers import Offer, OfferStatus, CreateOfferRequest, UpdateOfferRequest

logger = logging.getLogger(__name__)


# ============================================================================
# Offer Creation
# ============================================================================

async def create_offer(
    db: AsyncSession,
    buyer_id: str,
    request: CreateOfferRequest,
    clock: Clock = system_clock
) -> Offer:
    """
    Create an ACTIVE offer for a buyer.

    Args:
        db: Database session
        buyer_id: Buyer placing the offer
        request: Validated offer fields
        clock: Time source for the expiry check

    Returns:
        Created Offer

    Raises:
        PreconditionFailedError: If expires_at is not in the future
    """
    now = clock.now()
    if request.expires_at <= now:
        raise PreconditionFailedError(
            "Offer expiry must be in the future",
            {"expires_at": request.expires_at.isoformat()}
        )

    offer_id = f"off_{uuid.uuid4().hex[:16]}"
    db_offer = OfferModel(
        id=offer_id,
        buyer_id=buyer_id,
        event_id=request.event_id,
        max_price=request.max_price,
        quantity=request.quantity,
        section_ids=list(request.section_ids),
        message=request.message,
        status=OfferStatus.ACTIVE.value,
        expires_at=request.expires_at,
        created_at=now,
        updated_at=now,
    )

    db.add(db_offer)
    await db.commit()

    logger.info(f"Offer created: {offer_id} by buyer {buyer_id}, event={request.event_id}, max_price={request.max_price}")

    return Offer.model_validate(db_offer)


# ============================================================================
# Offer Retrieval
# ============================================================================

async def get_offer_by_id(db: AsyncSession, offer_id: str) -> Optional[Offer]:
    """Retrieve offer by ID, or None if not found."""
    db_offer = await db.get(OfferModel, offer_id, populate_existing=True)
    return Offer.model_validate(db_offer) if db_offer else None


async def get_buyer_offers(
    db: AsyncSession,
    buyer_id: str,
    status: Optional[OfferStatus] = None,
    limit: int = 20,
    offset: int = 0
) -> List[Offer]:
    """A buyer's offers, most recent first."""
    query = select(OfferModel).where(OfferModel.buyer_id == buyer_id)
    if status:
        query = query.where(OfferModel.status == status.value)

    result = await db.execute(
        query.order_by(OfferModel.created_at.desc()).limit(limit).offset(offset)
    )
    return [Offer.model_validate(o) for o in result.scalars().all()]


async def get_event_offers(
    db: AsyncSession,
    event_id: str,
    clock: Clock = system_clock,
    limit: int = 20,
    offset: int = 0
) -> List[Offer]:
    """
    Open offers for an event, highest max price first.

    Open means ACTIVE and not yet past expires_at, even if the sweep has not
    run since.
    """
    result = await db.execute(
        select(OfferModel)
        .where(
            OfferModel.event_id == event_id,
            OfferModel.status == OfferStatus.ACTIVE.value,
            OfferModel.expires_at > clock.now(),
        )
        .order_by(OfferModel.max_price.desc(), OfferModel.created_at)
        .limit(limit)
        .offset(offset)
    )
    return [Offer.model_validate(o) for o in result.scalars().all()]


# ============================================================================
# Offer Updates
# ============================================================================

async def update_offer(
    db: AsyncSession,
    offer_id: str,
    buyer_id: str,
    request: UpdateOfferRequest,
    clock: Clock = system_clock
) -> Offer:
    """
    Edit the terms of an ACTIVE offer.

    Only the fields present in the request change. A null max_price,
    quantity or section_ids is ignored; a null message clears it.

    Raises:
        NotFoundError: Offer does not exist
        AuthorizationError: Caller is not the buyer
        ConflictError: Offer is no longer ACTIVE
    """
    db_offer = await load(db, OfferModel, offer_id, "offer")
    if db_offer.buyer_id != buyer_id:
        raise AuthorizationError("Only the buyer can update this offer", {"offer_id": offer_id})

    changes = {
        field: value
        for field, value in request.model_dump(exclude_unset=True).items()
        if value is not None or field == "message"
    }
    if "section_ids" in changes:
        changes["section_ids"] = list(changes["section_ids"])

    now = clock.now()
    updated = await compare_and_set(
        db, OfferModel, offer_id, OfferStatus.ACTIVE.value,
        OfferModel.expires_at > now,
        updated_at=now, **changes
    )
    if not updated:
        status = db_offer.status
        await db.rollback()
        raise ConflictError(
            "Only active offers can be updated",
            {"offer_id": offer_id, "status": status}
        )

    await db.commit()
    await db.refresh(db_offer)

    logger.info(f"Offer updated: {offer_id} by buyer {buyer_id}, fields={sorted(changes)}")
    return Offer.model_validate(db_offer)


async def cancel_offer(
    db: AsyncSession,
    offer_id: str,
    buyer_id: str,
    clock: Clock = system_clock
) -> Offer:
    """
    Withdraw an ACTIVE offer.

    Raises:
        NotFoundError: Offer does not exist
        AuthorizationError: Caller is not the buyer
        ConflictError: Offer is no longer ACTIVE
    """
    db_offer = await load(db, OfferModel, offer_id, "offer")
    if db_offer.buyer_id != buyer_id:
        raise AuthorizationError("Only the buyer can cancel this offer", {"offer_id": offer_id})

    now = clock.now()
    cancelled = await compare_and_set(
        db, OfferModel, offer_id, OfferStatus.ACTIVE.value,
        status=OfferStatus.CANCELLED.value, updated_at=now
    )
    if not cancelled:
        # rollback expires loaded instances
        status = db_offer.status
        await db.rollback()
        raise ConflictError(
            "Only active offers can be cancelled",
            {"offer_id": offer_id, "status": status}
        )

    await db.commit()
    await db.refresh(db_offer)

    logger.info(f"Offer cancelled: {offer_id} by buyer {buyer_id}")
    return Offer.model_validate(db_offer)


async def extend_offer(
    db: AsyncSession,
    offer_id: str,
    buyer_id: str,
    new_expires_at: datetime,
    clock: Clock = system_clock
) -> Offer:
    """
    Move an ACTIVE offer's expiry.

    Raises:
        NotFoundError: Offer does not exist
        AuthorizationError: Caller is not the buyer
        PreconditionFailedError: New expiry is not in the future
        ConflictError: Offer is no longer ACTIVE
    """
    new_expires_at = to_naive_utc(new_expires_at)
    db_offer = await load(db, OfferModel, offer_id, "offer")
    if db_offer.buyer_id != buyer_id:
        raise AuthorizationError("Only the buyer can extend this offer", {"offer_id": offer_id})

    now = clock.now()
    if new_expires_at <= now:
        raise PreconditionFailedError(
            "Offer expiry must be in the future",
            {"expires_at": new_expires_at.isoformat()}
        )

    extended = await compare_and_set(
        db, OfferModel, offer_id, OfferStatus.ACTIVE.value,
        OfferModel.expires_at > now,
        expires_at=new_expires_at, updated_at=now
    )
    if not extended:
        await db.rollback()
        raise ConflictError("Only active offers can be extended", {"offer_id": offer_id})

    await db.commit()
    await db.refresh(db_offer)

    logger.info(f"Offer extended: {offer_id} until {new_expires_at.isoformat()}")
    return Offer.model_validate(db_offer)
