"""
Matching Service

Binds one buyer offer to one seller listing. Acceptance flips the offer to
ACCEPTED, the listing to RESERVED and inserts a PENDING transaction in a
single database transaction. Each flip is a conditional update on status,
and the partial unique indexes on transactions reject a second live match,
so concurrent sellers racing for one offer (or one seller double-submitting
a listing) produce exactly one transaction.

Payment capture is a separate step owned by the escrow engine.
"""
import uuid
import logging
from datetime import datetime
from typing import Any, List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clock import Clock, system_clock
from ..db.models import OfferModel, ListingModel, TransactionModel
from ..db.store import compare_and_set, load
from ..exceptions import AuthorizationError, ConflictError, PreconditionFailedError
from ..models.transactions import Transaction, TransactionStatus
from .notification_service import NotificationSink
from .policy import EscrowPolicy

logger = logging.getLogger(__name__)

OFFER_UNAVAILABLE = "Offer is no longer available"


def match_violations(offer: Any, listing: Any) -> List[str]:
    """
    Business rules a listing must meet to satisfy an offer.

    Works on ORM rows and pydantic read models alike. Availability (status,
    expiry) is checked separately.

    Returns:
        Violation codes, empty if the listing satisfies the offer
    """
    violations = []
    if listing.event_id != offer.event_id:
        violations.append("event_mismatch")
    if listing.quantity != offer.quantity:
        violations.append("quantity_mismatch")
    if offer.section_ids and listing.section_id not in offer.section_ids:
        violations.append("section_not_requested")
    if listing.price > offer.max_price:
        violations.append("price_above_max")
    return violations


class MatchingService:
    """Seller-side acceptance of buyer offers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: EscrowPolicy,
        clock: Clock = system_clock,
        notifier: Optional[NotificationSink] = None
    ):
        self._session_factory = session_factory
        self._policy = policy
        self._clock = clock
        self._notifier = notifier

    async def accept_offer(self, offer_id: str, listing_id: str, acting_seller_id: str) -> Transaction:
        """
        Accept a buyer's offer with one of the seller's listings.

        Args:
            offer_id: Offer to accept
            listing_id: Listing that satisfies it
            acting_seller_id: Seller performing the acceptance

        Returns:
            The new PENDING Transaction

        Raises:
            NotFoundError: Offer or listing missing
            AuthorizationError: Seller does not own the listing
            PreconditionFailedError: Offer/listing closed, or the listing does not satisfy the offer
            ConflictError: Another acceptance got there first
        """
        now = self._clock.now()

        async with self._session_factory() as db:
            try:
                async with db.begin():
                    offer = await load(db, OfferModel, offer_id, "offer")
                    listing = await load(db, ListingModel, listing_id, "listing")

                    if listing.seller_id != acting_seller_id:
                        raise AuthorizationError(
                            "Only the listing's seller can accept offers with it",
                            {"listing_id": listing_id}
                        )

                    self._check_available(offer, listing, now)

                    violations = match_violations(offer, listing)
                    if violations:
                        raise PreconditionFailedError(
                            "Listing does not satisfy the offer",
                            {"offer_id": offer_id, "listing_id": listing_id, "violations": violations}
                        )

                    offer_taken = await compare_and_set(
                        db, OfferModel, offer_id, "ACTIVE",
                        OfferModel.expires_at > now,
                        status="ACCEPTED", accepted_at=now, accepted_by=acting_seller_id, updated_at=now
                    )
                    if not offer_taken:
                        raise ConflictError(OFFER_UNAVAILABLE, {"offer_id": offer_id})

                    listing_taken = await compare_and_set(
                        db, ListingModel, listing_id, "ACTIVE",
                        status="RESERVED", updated_at=now
                    )
                    if not listing_taken:
                        raise ConflictError("Listing is no longer available", {"listing_id": listing_id})

                    amount, platform_fee, seller_amount = self._policy.split(listing.price, offer.quantity)
                    db_transaction = TransactionModel(
                        id=f"txn_{uuid.uuid4().hex[:16]}",
                        offer_id=offer.id,
                        listing_id=listing.id,
                        buyer_id=offer.buyer_id,
                        seller_id=listing.seller_id,
                        event_id=offer.event_id,
                        amount=amount,
                        platform_fee=platform_fee,
                        seller_amount=seller_amount,
                        status=TransactionStatus.PENDING.value,
                        tickets_delivered=False,
                        buyer_confirmed=False,
                        seller_paid_out=False,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(db_transaction)
                    await db.flush()
            except IntegrityError as e:
                logger.info(f"Acceptance of {offer_id} with {listing_id} lost to a concurrent match")
                raise ConflictError(OFFER_UNAVAILABLE, {"offer_id": offer_id, "listing_id": listing_id}) from e

        transaction = Transaction.model_validate(db_transaction)
        logger.info(
            f"Offer {offer_id} accepted by seller {acting_seller_id} with listing {listing_id}: "
            f"transaction {transaction.id}, amount={transaction.amount}"
        )

        self._notify(transaction.buyer_id, "offer_accepted", {
            "offer_id": offer_id,
            "listing_id": listing_id,
            "transaction_id": transaction.id,
            "amount": str(transaction.amount),
        })
        return transaction

    @staticmethod
    def _check_available(offer: OfferModel, listing: ListingModel, now: datetime) -> None:
        """Closed records fail the precondition; records held by another match conflict."""
        if offer.status == "ACCEPTED":
            raise ConflictError(OFFER_UNAVAILABLE, {"offer_id": offer.id})
        if offer.status != "ACTIVE" or now >= offer.expires_at:
            raise PreconditionFailedError(
                "Offer is not open",
                {"offer_id": offer.id, "status": offer.status, "expires_at": offer.expires_at.isoformat()}
            )

        if listing.status in ("RESERVED", "SOLD"):
            raise ConflictError("Listing is no longer available", {"listing_id": listing.id})
        if listing.status != "ACTIVE" or (listing.expires_at is not None and now >= listing.expires_at):
            raise PreconditionFailedError(
                "Listing is not open",
                {"listing_id": listing.id, "status": listing.status}
            )

    def _notify(self, user_id: str, event_type: str, payload: dict) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(user_id, event_type, payload)
        except Exception as e:
            logger.error(f"Failed to notify {user_id} of {event_type}: {e}", exc_info=True)
