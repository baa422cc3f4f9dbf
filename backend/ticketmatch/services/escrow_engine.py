"""
Escrow Transaction Engine

State machine for a matched transaction:

    PENDING   -> PAID        capture succeeds
    PENDING   -> CANCELLED   capture fails, cancel, or payment window elapses
    PAID      -> DELIVERED   seller marks tickets delivered
    PAID      -> CANCELLED   buyer/seller cancels before delivery (refund issued)
    DELIVERED -> COMPLETED   buyer confirms, or confirmation window elapses
    DELIVERED -> REFUNDED    buyer/admin dispute within the dispute window

Every transition is one conditional UPDATE on status inside a short database
transaction. Gateway calls never run inside a database transaction; they
carry idempotency keys of the form "{transaction_id}:{operation}".

Payouts and refunds settle in two steps: the status change commits first,
then a lease column is claimed so exactly one worker calls the gateway. A
crash in between leaves the lease to expire and the expiry sweep retries it.
"""
import asyncio
import logging
from typing import Any, Dict, Optional
from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clock import Clock, system_clock
from ..db.models import ListingModel, OfferModel, TransactionModel
from ..db.store import compare_and_set, load, update_where
from ..exceptions import ConflictError, GatewayError, PreconditionFailedError
from ..mocks.credentials_provider import CredentialsProvider
from ..models.transactions import Transaction, TransactionStatus
from ..permissions import SYSTEM_ACTOR, Action, UserRole, require
from .notification_service import NotificationSink
from .payment_gateway import GatewayClient, PaymentGateway, idempotency_key
from .policy import EscrowPolicy

logger = logging.getLogger(__name__)

PENDING = TransactionStatus.PENDING.value
PAID = TransactionStatus.PAID.value
DELIVERED = TransactionStatus.DELIVERED.value
COMPLETED = TransactionStatus.COMPLETED.value
CANCELLED = TransactionStatus.CANCELLED.value
REFUNDED = TransactionStatus.REFUNDED.value


class EscrowTransactionEngine:
    """
    Drives transactions from capture to payout or refund.

    Args:
        session_factory: Async session factory for the marketplace database
        gateway: Payment gateway; wrapped in a GatewayClient with the policy timeout
        credentials: Resolves buyer payment tokens and seller payout accounts
        policy: Fee split and timing windows
        clock: Time source for every deadline check
        notifier: Fire-and-forget notification sink
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        credentials: CredentialsProvider,
        policy: EscrowPolicy,
        clock: Clock = system_clock,
        notifier: Optional[NotificationSink] = None
    ):
        self._session_factory = session_factory
        self._gateway = GatewayClient(gateway, policy.gateway_timeout_seconds)
        self._credentials = credentials
        self._policy = policy
        self._clock = clock
        self._notifier = notifier

    # ========================================================================
    # Capture
    # ========================================================================

    async def capture_payment(
        self,
        transaction_id: str,
        actor_id: str = SYSTEM_ACTOR,
        role: Optional[UserRole] = None
    ) -> Transaction:
        """
        Charge the buyer and hold the funds in escrow.

        On a decline the match is undone: the transaction is CANCELLED, the
        offer returns to ACTIVE with a fresh expiry and the listing returns
        to ACTIVE. A timeout leaves the transaction PENDING; retrying reuses
        the same idempotency key.

        Raises:
            ConflictError: Transaction is past PAID, or was cancelled while the charge was in flight
            GatewayError: Charge declined (match undone)
            GatewayTimeoutError: Gateway did not answer and has no record of the charge
            PreconditionFailedError: Buyer has no payment method (match undone)
        """
        async with self._session_factory() as db:
            async with db.begin():
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                require(Action.CAPTURE_PAYMENT, txn.buyer_id, txn.seller_id, actor_id, role)

        if txn.status == PAID:
            logger.debug(f"Transaction {transaction_id} already captured")
            return Transaction.model_validate(txn)
        if txn.status != PENDING:
            raise ConflictError(
                "Payment can only be captured for pending transactions",
                {"transaction_id": transaction_id, "status": txn.status}
            )

        key = idempotency_key(transaction_id, "capture")
        try:
            payment_token = self._credentials.default_payment_token(txn.buyer_id)
        except ValueError as e:
            await self._undo_match(transaction_id, "no_payment_method")
            raise PreconditionFailedError(
                "Buyer has no payment method on file",
                {"transaction_id": transaction_id}
            ) from e

        try:
            result = await self._gateway.capture(txn.amount, payment_token, key)
        except GatewayError as e:
            if e.retryable:
                logger.warning(f"Capture for {transaction_id} unresolved, transaction stays PENDING")
                raise
            await self._undo_match(transaction_id, e.details.get("reason") or "declined")
            raise

        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                paid = await compare_and_set(
                    db, TransactionModel, transaction_id, PENDING,
                    status=PAID, gateway_ref=result.gateway_ref, paid_at=now, updated_at=now
                )
                txn = await load(db, TransactionModel, transaction_id, "transaction")

        if not paid:
            if txn.status != CANCELLED:
                logger.debug(f"Transaction {transaction_id} captured concurrently")
                return Transaction.model_validate(txn)
            await self._reverse_capture(txn, result.gateway_ref)
            raise ConflictError(
                "Transaction was cancelled while payment was in flight; the charge has been reversed",
                {"transaction_id": transaction_id}
            )

        logger.info(f"Payment captured for {transaction_id}: amount={txn.amount}, ref={result.gateway_ref}")
        self._notify(txn.buyer_id, "payment_captured", self._payload(txn))
        self._notify(txn.seller_id, "payment_captured", self._payload(txn))
        return Transaction.model_validate(txn)

    async def _undo_match(self, transaction_id: str, reason: str) -> None:
        """Cancel a PENDING transaction after a failed capture and reopen its offer and listing."""
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                cancelled = await compare_and_set(
                    db, TransactionModel, transaction_id, PENDING,
                    status=CANCELLED, cancelled_at=now, cancelled_by=SYSTEM_ACTOR,
                    cancel_reason=f"payment_failed: {reason}", updated_at=now
                )
                if not cancelled:
                    logger.info(f"Transaction {transaction_id} left PENDING before the capture failure was recorded")
                    return
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                await compare_and_set(
                    db, OfferModel, txn.offer_id, "ACCEPTED",
                    status="ACTIVE", expires_at=now + self._policy.offer_reactivation,
                    accepted_at=None, accepted_by=None, updated_at=now
                )
                await compare_and_set(
                    db, ListingModel, txn.listing_id, "RESERVED",
                    status="ACTIVE", updated_at=now
                )

        logger.info(f"Capture failed for {transaction_id} ({reason}); offer {txn.offer_id} and listing {txn.listing_id} reopened")
        payload = dict(self._payload(txn), reason=reason)
        self._notify(txn.buyer_id, "payment_failed", payload)
        self._notify(txn.seller_id, "payment_failed", payload)

    async def _reverse_capture(self, txn: TransactionModel, gateway_ref: str) -> Transaction:
        """Refund a charge that landed on an already-cancelled transaction."""
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                await update_where(
                    db, TransactionModel, txn.id,
                    TransactionModel.refund_amount.is_(None),
                    gateway_ref=gateway_ref, refund_amount=txn.amount, updated_at=now
                )
        logger.warning(f"Reversing late capture {gateway_ref} on cancelled transaction {txn.id}")
        return await self._settle_refund_or_defer(txn.id, txn)

    # ========================================================================
    # Delivery and confirmation
    # ========================================================================

    async def mark_delivered(
        self,
        transaction_id: str,
        seller_id: str,
        role: Optional[UserRole] = None
    ) -> Transaction:
        """
        Record that the seller delivered the tickets.

        Repeating the call on a DELIVERED transaction succeeds without
        changing the delivery timestamp.

        Raises:
            AuthorizationError: Caller is not the seller
            ConflictError: Transaction is not PAID
        """
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                require(Action.MARK_DELIVERED, txn.buyer_id, txn.seller_id, seller_id, role)

                delivered = await compare_and_set(
                    db, TransactionModel, transaction_id, PAID,
                    status=DELIVERED, tickets_delivered=True, tickets_delivered_at=now, updated_at=now
                )
                txn = await load(db, TransactionModel, transaction_id, "transaction")

        if not delivered:
            if txn.status == DELIVERED:
                logger.debug(f"Transaction {transaction_id} already delivered")
                return Transaction.model_validate(txn)
            raise ConflictError(
                "Tickets can only be delivered for paid transactions",
                {"transaction_id": transaction_id, "status": txn.status}
            )

        logger.info(f"Tickets delivered for {transaction_id} by seller {seller_id}")
        self._notify(txn.buyer_id, "tickets_delivered", self._payload(txn))
        return Transaction.model_validate(txn)

    async def confirm_receipt(
        self,
        transaction_id: str,
        buyer_id: str,
        role: Optional[UserRole] = None
    ) -> Transaction:
        """
        Buyer confirms the tickets arrived; completes the sale and releases the payout.

        Raises:
            AuthorizationError: Caller is not the buyer
            ConflictError: Transaction is not DELIVERED
        """
        async with self._session_factory() as db:
            async with db.begin():
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                require(Action.CONFIRM_RECEIPT, txn.buyer_id, txn.seller_id, buyer_id, role)

        return await self._complete(transaction_id, buyer_id, buyer_confirmed=True)

    async def auto_release_if_expired(self, transaction_id: str) -> Optional[Transaction]:
        """
        Complete a delivered transaction the buyer never confirmed.

        Acts only once the confirmation window has elapsed since delivery.

        Returns:
            The completed Transaction, or None if it was not eligible
        """
        async with self._session_factory() as db:
            async with db.begin():
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                require(Action.AUTO_RELEASE, txn.buyer_id, txn.seller_id, SYSTEM_ACTOR)

        deadline = self._clock.now() - self._policy.confirmation_window
        if (
            txn.status != DELIVERED
            or txn.buyer_confirmed
            or txn.tickets_delivered_at is None
            or txn.tickets_delivered_at > deadline
        ):
            logger.debug(f"Transaction {transaction_id} not eligible for auto-release")
            return None

        try:
            return await self._complete(
                transaction_id, SYSTEM_ACTOR, buyer_confirmed=False,
                conditions=(
                    TransactionModel.buyer_confirmed.is_(False),
                    TransactionModel.tickets_delivered_at <= deadline,
                )
            )
        except ConflictError:
            logger.debug(f"Transaction {transaction_id} left DELIVERED before auto-release")
            return None

    async def _complete(
        self,
        transaction_id: str,
        completed_by: str,
        buyer_confirmed: bool,
        conditions: tuple = ()
    ) -> Transaction:
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                completed = await compare_and_set(
                    db, TransactionModel, transaction_id, DELIVERED, *conditions,
                    status=COMPLETED, buyer_confirmed=buyer_confirmed,
                    completed_at=now, completed_by=completed_by, updated_at=now
                )
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                if completed:
                    await compare_and_set(
                        db, ListingModel, txn.listing_id, "RESERVED",
                        status="SOLD", updated_at=now
                    )

        if not completed:
            if txn.status == COMPLETED and completed_by != SYSTEM_ACTOR:
                logger.debug(f"Transaction {transaction_id} already completed by {txn.completed_by}")
                return Transaction.model_validate(txn)
            raise ConflictError(
                "Only delivered transactions can be completed",
                {"transaction_id": transaction_id, "status": txn.status}
            )

        logger.info(f"Transaction {transaction_id} completed by {completed_by}")
        self._notify(txn.buyer_id, "transaction_completed", self._payload(txn))
        self._notify(txn.seller_id, "transaction_completed", self._payload(txn))

        try:
            return await self.release_payout(transaction_id)
        except (GatewayError, PreconditionFailedError) as e:
            logger.warning(f"Payout for {transaction_id} deferred to the expiry sweep: {e.message}")
            return Transaction.model_validate(txn)

    # ========================================================================
    # Settlement
    # ========================================================================

    async def release_payout(self, transaction_id: str) -> Transaction:
        """
        Transfer the seller's share of a completed transaction.

        Only the worker that claims the payout lease calls the gateway; a
        second call while the lease is held, or after the payout landed,
        returns the current record.

        Raises:
            ConflictError: Transaction is not COMPLETED
            PreconditionFailedError: Seller has no payout account
            GatewayError: Transfer refused; the sweep retries once the lease expires
        """
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                if txn.status != COMPLETED:
                    raise ConflictError(
                        "Payouts are only released for completed transactions",
                        {"transaction_id": transaction_id, "status": txn.status}
                    )
                if txn.seller_paid_out:
                    return Transaction.model_validate(txn)

                claimed = await self._claim_lease(db, transaction_id, TransactionModel.payout_started_at, now)
                if not claimed:
                    logger.debug(f"Payout for {transaction_id} already in progress")
                    return Transaction.model_validate(txn)

        try:
            payout_account = self._credentials.payout_account_id(txn.seller_id)
        except ValueError as e:
            raise PreconditionFailedError(
                "Seller has no payout account enabled",
                {"transaction_id": transaction_id, "seller_id": txn.seller_id}
            ) from e

        result = await self._gateway.transfer(
            txn.seller_amount, payout_account, idempotency_key(transaction_id, "payout")
        )

        paid_at = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                await update_where(
                    db, TransactionModel, transaction_id,
                    TransactionModel.seller_paid_out.is_(False),
                    seller_paid_out=True, seller_paid_out_at=paid_at,
                    payout_ref=result.gateway_ref, updated_at=paid_at
                )
                txn = await load(db, TransactionModel, transaction_id, "transaction")

        logger.info(f"Payout released for {transaction_id}: {txn.seller_amount} to seller {txn.seller_id}")
        self._notify(txn.seller_id, "payout_released", self._payload(txn))
        return Transaction.model_validate(txn)

    async def settle_refund(self, transaction_id: str) -> Transaction:
        """
        Send an owed refund back to the buyer.

        A refund is owed once a cancelled or refunded transaction has a
        refund_amount and no refunded_at. Lease and retry rules match
        release_payout.
        """
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                if txn.refund_amount is None or txn.refunded_at is not None:
                    return Transaction.model_validate(txn)
                if txn.status not in (CANCELLED, REFUNDED):
                    raise ConflictError(
                        "Refunds settle only for cancelled or refunded transactions",
                        {"transaction_id": transaction_id, "status": txn.status}
                    )

                claimed = await self._claim_lease(db, transaction_id, TransactionModel.refund_started_at, now)
                if not claimed:
                    logger.debug(f"Refund for {transaction_id} already in progress")
                    return Transaction.model_validate(txn)

        # A charge that never made it to PAID is returned as a capture reversal
        operation = "refund" if txn.paid_at is not None else "capture-reversal"
        result = await self._gateway.refund(
            txn.gateway_ref, txn.refund_amount, idempotency_key(transaction_id, operation)
        )

        refunded_at = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                await update_where(
                    db, TransactionModel, transaction_id,
                    TransactionModel.refunded_at.is_(None),
                    refunded_at=refunded_at, refund_ref=result.gateway_ref, updated_at=refunded_at
                )
                txn = await load(db, TransactionModel, transaction_id, "transaction")

        logger.info(f"Refund settled for {transaction_id}: {txn.refund_amount} to buyer {txn.buyer_id}")
        self._notify(txn.buyer_id, "transaction_refunded", self._payload(txn))
        return Transaction.model_validate(txn)

    async def _claim_lease(self, db: AsyncSession, transaction_id: str, lease_column: Any, now) -> bool:
        """True if no other worker holds a live lease on this settlement."""
        stale_before = now - self._policy.settlement_lease
        return await update_where(
            db, TransactionModel, transaction_id,
            or_(lease_column.is_(None), lease_column <= stale_before),
            **{lease_column.key: now, "updated_at": now}
        )

    # ========================================================================
    # Cancellation and refund
    # ========================================================================

    async def cancel_transaction(
        self,
        transaction_id: str,
        actor_id: str,
        reason: str,
        role: Optional[UserRole] = None
    ) -> Transaction:
        """
        Cancel a transaction before delivery.

        The listing goes back on sale and the offer is closed as CANCELLED;
        the buyer has to place a new offer. A PAID transaction is refunded in
        full. Cancelling an already-cancelled transaction returns it.

        Raises:
            AuthorizationError: Actor is not a party to the transaction
            ConflictError: Tickets were already delivered (use a refund)
        """
        return await self._cancel(transaction_id, actor_id, reason, role, cancellable=(PENDING, PAID))

    async def cancel_if_unpaid(self, transaction_id: str) -> Optional[Transaction]:
        """
        Cancel a PENDING transaction whose payment window has elapsed.

        Returns:
            The cancelled Transaction, or None if it was paid or is not yet overdue
        """
        deadline = self._clock.now() - self._policy.payment_window
        try:
            return await self._cancel(
                transaction_id, SYSTEM_ACTOR, "payment_window_elapsed", None,
                cancellable=(PENDING,),
                conditions=(TransactionModel.created_at <= deadline,),
                idempotent=False
            )
        except ConflictError:
            logger.debug(f"Transaction {transaction_id} not eligible for unpaid cancellation")
            return None

    async def _cancel(
        self,
        transaction_id: str,
        actor_id: str,
        reason: str,
        role: Optional[UserRole],
        cancellable: tuple,
        conditions: tuple = (),
        idempotent: bool = True
    ) -> Transaction:
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                require(Action.CANCEL, txn.buyer_id, txn.seller_id, actor_id, role)

                if txn.status == CANCELLED and idempotent:
                    logger.debug(f"Transaction {transaction_id} already cancelled")
                    return Transaction.model_validate(txn)
                if txn.status not in cancellable:
                    raise ConflictError(
                        "Transactions can only be cancelled before delivery",
                        {"transaction_id": transaction_id, "status": txn.status}
                    )

                prior_status = txn.status
                cancelled = await compare_and_set(
                    db, TransactionModel, transaction_id, prior_status, *conditions,
                    status=CANCELLED, cancelled_at=now, cancelled_by=actor_id, cancel_reason=reason,
                    refund_amount=txn.amount if prior_status == PAID else None,
                    updated_at=now
                )
                if not cancelled:
                    raise ConflictError(
                        "Transaction changed while cancelling",
                        {"transaction_id": transaction_id}
                    )

                await compare_and_set(
                    db, ListingModel, txn.listing_id, "RESERVED",
                    status="ACTIVE", updated_at=now
                )
                await compare_and_set(
                    db, OfferModel, txn.offer_id, "ACCEPTED",
                    status="CANCELLED", updated_at=now
                )
                txn = await load(db, TransactionModel, transaction_id, "transaction")

        logger.info(f"Transaction {transaction_id} cancelled by {actor_id} from {prior_status}: {reason}")
        payload = dict(self._payload(txn), reason=reason)
        self._notify(txn.buyer_id, "transaction_cancelled", payload)
        self._notify(txn.seller_id, "transaction_cancelled", payload)

        if prior_status == PAID:
            return await self._settle_refund_or_defer(transaction_id, txn)

        reversed_txn = await self._reconcile_pending_capture(txn)
        return reversed_txn or Transaction.model_validate(txn)

    async def _reconcile_pending_capture(self, txn: TransactionModel) -> Optional[Transaction]:
        """A capture that timed out may still have gone through; reverse it if so."""
        key = idempotency_key(txn.id, "capture")
        try:
            recorded = await self._gateway.reconcile(key)
        except asyncio.TimeoutError:
            logger.warning(f"Could not reconcile capture for cancelled transaction {txn.id}")
            return None

        if recorded is None or not recorded.success:
            return None
        return await self._reverse_capture(txn, recorded.gateway_ref)

    async def refund_transaction(
        self,
        transaction_id: str,
        actor_id: str,
        reason: str,
        role: Optional[UserRole] = None
    ) -> Transaction:
        """
        Refund a delivered transaction disputed within the dispute window.

        The listing is closed as CANCELLED since its tickets already changed
        hands. Refunding an already-refunded transaction returns it.

        Raises:
            AuthorizationError: Actor is neither the buyer nor an admin
            ConflictError: Transaction is not DELIVERED
            PreconditionFailedError: Dispute window has closed
        """
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                txn = await load(db, TransactionModel, transaction_id, "transaction")
                require(Action.REFUND, txn.buyer_id, txn.seller_id, actor_id, role)

                if txn.status == REFUNDED:
                    logger.debug(f"Transaction {transaction_id} already refunded")
                    return Transaction.model_validate(txn)
                if txn.status != DELIVERED:
                    raise ConflictError(
                        "Refunds are only available for delivered transactions",
                        {"transaction_id": transaction_id, "status": txn.status}
                    )
                if now - txn.tickets_delivered_at > self._policy.dispute_window:
                    raise PreconditionFailedError(
                        "Dispute window has closed",
                        {"transaction_id": transaction_id, "delivered_at": txn.tickets_delivered_at.isoformat()}
                    )

                refund_amount = self._policy.refund_amount(txn.amount, txn.seller_amount, txn.seller_paid_out)
                refunded = await compare_and_set(
                    db, TransactionModel, transaction_id, DELIVERED,
                    status=REFUNDED, refund_amount=refund_amount, updated_at=now
                )
                if not refunded:
                    raise ConflictError(
                        "Transaction changed while refunding",
                        {"transaction_id": transaction_id}
                    )

                await compare_and_set(
                    db, ListingModel, txn.listing_id, "RESERVED",
                    status="CANCELLED", updated_at=now
                )
                txn = await load(db, TransactionModel, transaction_id, "transaction")

        logger.info(f"Transaction {transaction_id} refunded ({refund_amount}) on request of {actor_id}: {reason}")
        self._notify(txn.seller_id, "transaction_refunded", dict(self._payload(txn), reason=reason))

        return await self._settle_refund_or_defer(transaction_id, txn)

    async def _settle_refund_or_defer(self, transaction_id: str, txn: TransactionModel) -> Transaction:
        try:
            return await self.settle_refund(transaction_id)
        except GatewayError as e:
            logger.warning(f"Refund for {transaction_id} deferred to the expiry sweep: {e.message}")
            return Transaction.model_validate(txn)

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _payload(txn: TransactionModel) -> Dict[str, Any]:
        return {
            "transaction_id": txn.id,
            "offer_id": txn.offer_id,
            "listing_id": txn.listing_id,
            "status": txn.status,
            "amount": str(txn.amount),
        }

    def _notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(user_id, event_type, payload)
        except Exception as e:
            logger.error(f"Failed to notify {user_id} of {event_type}: {e}", exc_info=True)
