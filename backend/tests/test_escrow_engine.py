"""
Tests for the escrow state machine: capture, delivery, completion, payout,
cancellation and refund, plus the races between them.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import BUYER, OTHER_SELLER, SELLER
from ticketmatch.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
    PreconditionFailedError,
)
from ticketmatch.mocks.payment_processor import MockPaymentGateway
from ticketmatch.models.listings import ListingStatus
from ticketmatch.models.offers import OfferStatus
from ticketmatch.models.transactions import TransactionStatus
from ticketmatch.permissions import UserRole
from ticketmatch.services.escrow_engine import EscrowTransactionEngine
from ticketmatch.services.policy import EscrowPolicy


# ============================================================================
# Happy path
# ============================================================================

async def test_full_escrow_flow_with_auto_release(services, clock, gateway, make_offer, make_listing, fetch):
    offer = await make_offer(max_price="100.00", quantity=2)
    listing = await make_listing(price="90.00", quantity=2)
    escrow = services.escrow

    transaction = await services.matching.accept_offer(offer.id, listing.id, SELLER)
    assert transaction.amount == Decimal("180.00")

    paid = await escrow.capture_payment(transaction.id)
    assert paid.status == TransactionStatus.PAID
    assert paid.gateway_ref.startswith("ch_")
    assert paid.paid_at == clock.now()

    delivered = await escrow.mark_delivered(transaction.id, SELLER)
    assert delivered.status == TransactionStatus.DELIVERED
    assert delivered.tickets_delivered

    clock.advance(timedelta(hours=72))
    completed = await escrow.auto_release_if_expired(transaction.id)

    assert completed.status == TransactionStatus.COMPLETED
    assert completed.completed_by == "system"
    assert not completed.buyer_confirmed
    assert completed.seller_paid_out
    assert completed.payout_ref.startswith("tr_")
    assert (await fetch.listing(listing.id)).status == ListingStatus.SOLD
    assert gateway.executed == [f"{transaction.id}:capture", f"{transaction.id}:payout"]


async def test_buyer_confirmation_completes_and_pays_out(services, gateway, make_transaction):
    transaction = await make_transaction("DELIVERED")

    completed = await services.escrow.confirm_receipt(transaction.id, BUYER)

    assert completed.status == TransactionStatus.COMPLETED
    assert completed.buyer_confirmed
    assert completed.completed_by == BUYER
    assert completed.seller_paid_out
    assert gateway.executed_count("transfer") == 1
    assert services.notifications.recent(SELLER, "payout_released")


async def test_auto_release_waits_for_confirmation_window(services, clock, make_transaction):
    transaction = await make_transaction("DELIVERED")
    clock.advance(timedelta(hours=71, minutes=59))

    assert await services.escrow.auto_release_if_expired(transaction.id) is None


async def test_auto_release_skips_confirmed(services, clock, make_transaction):
    transaction = await make_transaction("DELIVERED")
    await services.escrow.confirm_receipt(transaction.id, BUYER)
    clock.advance(timedelta(hours=80))

    assert await services.escrow.auto_release_if_expired(transaction.id) is None


# ============================================================================
# Capture
# ============================================================================

async def test_capture_is_idempotent(services, gateway, make_transaction):
    transaction = await make_transaction()

    first = await services.escrow.capture_payment(transaction.id)
    second = await services.escrow.capture_payment(transaction.id)

    assert first.gateway_ref == second.gateway_ref
    assert gateway.count("capture") == 1


async def test_declined_capture_undoes_the_match(services, clock, credentials, make_transaction, fetch):
    credentials.register_payment_method(BUYER, "tok_decline")
    transaction = await make_transaction()

    with pytest.raises(GatewayError) as exc_info:
        await services.escrow.capture_payment(transaction.id)

    assert exc_info.value.details["reason"] == "insufficient_funds"

    cancelled = await fetch.transaction(transaction.id)
    assert cancelled.status == TransactionStatus.CANCELLED
    assert cancelled.cancelled_by == "system"
    assert cancelled.cancel_reason == "payment_failed: insufficient_funds"
    assert cancelled.refund_amount is None

    offer = await fetch.offer(transaction.offer_id)
    assert offer.status == OfferStatus.ACTIVE
    assert offer.expires_at == clock.now() + timedelta(hours=24)
    assert offer.accepted_by is None
    assert (await fetch.listing(transaction.listing_id)).status == ListingStatus.ACTIVE
    assert services.notifications.recent(BUYER, "payment_failed")


async def test_reopened_offer_can_be_matched_again(services, credentials, make_transaction):
    credentials.register_payment_method(BUYER, "tok_decline")
    transaction = await make_transaction()
    with pytest.raises(GatewayError):
        await services.escrow.capture_payment(transaction.id)

    credentials.register_payment_method(BUYER, "tok_visa_4242")
    retry = await services.matching.accept_offer(transaction.offer_id, transaction.listing_id, SELLER)
    paid = await services.escrow.capture_payment(retry.id)

    assert retry.id != transaction.id
    assert paid.status == TransactionStatus.PAID


async def test_capture_without_payment_method(services, credentials, make_offer, make_listing, fetch):
    offer = await make_offer(buyer_id="user_no_card")
    listing = await make_listing()
    transaction = await services.matching.accept_offer(offer.id, listing.id, SELLER)

    with pytest.raises(PreconditionFailedError):
        await services.escrow.capture_payment(transaction.id)

    assert (await fetch.transaction(transaction.id)).status == TransactionStatus.CANCELLED
    assert (await fetch.offer(offer.id)).status == OfferStatus.ACTIVE


async def test_capture_timeout_leaves_transaction_pending(services, gateway, make_transaction, fetch):
    transaction = await make_transaction()
    gateway.hang_next("capture")

    with pytest.raises(GatewayTimeoutError) as exc_info:
        await services.escrow.capture_payment(transaction.id)

    assert exc_info.value.retryable
    assert (await fetch.transaction(transaction.id)).status == TransactionStatus.PENDING
    assert ("lookup", f"{transaction.id}:capture") in gateway.calls

    paid = await services.escrow.capture_payment(transaction.id)
    assert paid.status == TransactionStatus.PAID
    assert gateway.executed_count("capture") == 1


async def test_late_capture_answer_is_reconciled(session_factory, clock, credentials, make_transaction):
    slow_gateway = MockPaymentGateway(latency_seconds=0.5)
    escrow = EscrowTransactionEngine(
        session_factory, slow_gateway, credentials, EscrowPolicy(gateway_timeout_seconds=0.1), clock
    )
    transaction = await make_transaction()

    paid = await escrow.capture_payment(transaction.id)

    assert paid.status == TransactionStatus.PAID
    assert slow_gateway.executed_count("capture") == 1
    assert slow_gateway.count("lookup") == 1


async def test_capture_landing_after_cancel_is_reversed(session_factory, clock, credentials, make_transaction, fetch):
    class CancelDuringCapture(MockPaymentGateway):
        on_capture = None

        async def authorize_and_capture(self, amount, buyer_payment_method, idempotency_key):
            result = await super().authorize_and_capture(amount, buyer_payment_method, idempotency_key)
            if self.on_capture is not None:
                await self.on_capture()
            return result

    racing_gateway = CancelDuringCapture()
    escrow = EscrowTransactionEngine(
        session_factory, racing_gateway, credentials, EscrowPolicy(gateway_timeout_seconds=5), clock
    )
    transaction = await make_transaction()

    async def cancel():
        await escrow.cancel_transaction(transaction.id, SELLER, "sold elsewhere")
    racing_gateway.on_capture = cancel

    with pytest.raises(ConflictError):
        await escrow.capture_payment(transaction.id)

    stored = await fetch.transaction(transaction.id)
    assert stored.status == TransactionStatus.CANCELLED
    assert stored.refund_amount == stored.amount
    assert stored.refunded_at is not None
    assert stored.paid_at is None
    assert racing_gateway.executed_count("refund") == 1
    assert f"{transaction.id}:capture-reversal" in racing_gateway.executed


async def test_capture_on_cancelled_transaction_conflicts(services, make_transaction):
    transaction = await make_transaction()
    await services.escrow.cancel_transaction(transaction.id, BUYER, "changed my mind")

    with pytest.raises(ConflictError):
        await services.escrow.capture_payment(transaction.id)


async def test_capture_by_seller_is_forbidden(services, make_transaction):
    transaction = await make_transaction()

    with pytest.raises(AuthorizationError):
        await services.escrow.capture_payment(transaction.id, SELLER)


# ============================================================================
# Delivery
# ============================================================================

async def test_mark_delivered_twice_keeps_first_timestamp(services, clock, make_transaction):
    transaction = await make_transaction("PAID")

    first = await services.escrow.mark_delivered(transaction.id, SELLER)
    clock.advance(timedelta(minutes=10))
    second = await services.escrow.mark_delivered(transaction.id, SELLER)

    assert second.status == TransactionStatus.DELIVERED
    assert second.tickets_delivered_at == first.tickets_delivered_at
    assert len(services.notifications.recent(BUYER, "tickets_delivered")) == 1


async def test_only_seller_marks_delivered(services, make_transaction):
    transaction = await make_transaction("PAID")

    with pytest.raises(AuthorizationError):
        await services.escrow.mark_delivered(transaction.id, BUYER)
    with pytest.raises(AuthorizationError):
        await services.escrow.mark_delivered(transaction.id, OTHER_SELLER)


async def test_stale_transitions_conflict_without_side_effects(services, make_transaction, fetch):
    transaction = await make_transaction()

    with pytest.raises(ConflictError):
        await services.escrow.mark_delivered(transaction.id, SELLER)
    with pytest.raises(ConflictError):
        await services.escrow.confirm_receipt(transaction.id, BUYER)
    with pytest.raises(ConflictError):
        await services.escrow.refund_transaction(transaction.id, BUYER, "no tickets")

    stored = await fetch.transaction(transaction.id)
    assert stored.status == TransactionStatus.PENDING
    assert not stored.tickets_delivered


async def test_unknown_transaction(services):
    with pytest.raises(NotFoundError):
        await services.escrow.mark_delivered("txn_missing", SELLER)


# ============================================================================
# Completion and payout
# ============================================================================

async def test_confirm_and_auto_release_race_pays_out_once(services, clock, gateway, make_transaction, fetch):
    transaction = await make_transaction("DELIVERED")
    clock.advance(timedelta(hours=73))

    results = await asyncio.gather(
        services.escrow.confirm_receipt(transaction.id, BUYER),
        services.escrow.auto_release_if_expired(transaction.id),
        return_exceptions=True
    )

    assert not any(isinstance(r, Exception) for r in results)
    stored = await fetch.transaction(transaction.id)
    assert stored.status == TransactionStatus.COMPLETED
    assert stored.seller_paid_out
    assert gateway.count("transfer") == 1
    assert gateway.executed_count("transfer") == 1


async def test_confirm_twice_returns_completed(services, gateway, make_transaction):
    transaction = await make_transaction("DELIVERED")

    await services.escrow.confirm_receipt(transaction.id, BUYER)
    again = await services.escrow.confirm_receipt(transaction.id, BUYER)

    assert again.status == TransactionStatus.COMPLETED
    assert gateway.count("transfer") == 1


async def test_failed_payout_is_retried_once_the_lease_lapses(services, clock, gateway, make_transaction):
    transaction = await make_transaction("DELIVERED")
    gateway.fail_next("transfer")

    completed = await services.escrow.confirm_receipt(transaction.id, BUYER)
    assert completed.status == TransactionStatus.COMPLETED
    assert not completed.seller_paid_out

    # lease still held by the failed attempt
    held = await services.escrow.release_payout(transaction.id)
    assert not held.seller_paid_out
    assert gateway.count("transfer") == 1

    clock.advance(timedelta(minutes=6))
    results = await asyncio.gather(
        services.escrow.release_payout(transaction.id),
        services.escrow.release_payout(transaction.id),
    )

    assert any(r.seller_paid_out for r in results)
    assert gateway.count("transfer") == 2
    assert gateway.executed_count("transfer") == 1


async def test_payout_requires_completed(services, make_transaction):
    transaction = await make_transaction("DELIVERED")

    with pytest.raises(ConflictError):
        await services.escrow.release_payout(transaction.id)


async def test_seller_without_payout_account_is_deferred(services, gateway, make_transaction):
    transaction = await make_transaction("DELIVERED", seller_id="user_seller_no_account")

    completed = await services.escrow.confirm_receipt(transaction.id, BUYER)

    assert completed.status == TransactionStatus.COMPLETED
    assert not completed.seller_paid_out
    assert gateway.count("transfer") == 0


# ============================================================================
# Cancellation
# ============================================================================

async def test_cancel_paid_transaction_refunds_in_full(services, gateway, make_transaction, fetch):
    transaction = await make_transaction("PAID")

    cancelled = await services.escrow.cancel_transaction(transaction.id, BUYER, "can't attend")

    assert cancelled.status == TransactionStatus.CANCELLED
    assert cancelled.cancelled_by == BUYER
    assert cancelled.refund_amount == Decimal("180.00")
    assert cancelled.refunded_at is not None
    assert f"{transaction.id}:refund" in gateway.executed
    assert (await fetch.listing(transaction.listing_id)).status == ListingStatus.ACTIVE
    assert (await fetch.offer(transaction.offer_id)).status == OfferStatus.CANCELLED
    assert services.notifications.recent(BUYER, "transaction_refunded")


async def test_cancel_pending_transaction_moves_no_money(services, gateway, make_transaction, fetch):
    transaction = await make_transaction()

    cancelled = await services.escrow.cancel_transaction(transaction.id, SELLER, "sold elsewhere")

    assert cancelled.status == TransactionStatus.CANCELLED
    assert cancelled.refund_amount is None
    assert gateway.executed == []
    assert (await fetch.listing(transaction.listing_id)).status == ListingStatus.ACTIVE


async def test_cancel_is_idempotent(services, gateway, make_transaction):
    transaction = await make_transaction("PAID")

    await services.escrow.cancel_transaction(transaction.id, BUYER, "can't attend")
    again = await services.escrow.cancel_transaction(transaction.id, BUYER, "can't attend")

    assert again.status == TransactionStatus.CANCELLED
    assert gateway.count("refund") == 1


async def test_cancel_after_delivery_conflicts(services, make_transaction):
    transaction = await make_transaction("DELIVERED")

    with pytest.raises(ConflictError):
        await services.escrow.cancel_transaction(transaction.id, BUYER, "too late")


async def test_stranger_cannot_cancel(services, make_transaction):
    transaction = await make_transaction("PAID")

    with pytest.raises(AuthorizationError):
        await services.escrow.cancel_transaction(transaction.id, "user_stranger", "mischief")


async def test_admin_can_cancel(services, make_transaction):
    transaction = await make_transaction("PAID")

    cancelled = await services.escrow.cancel_transaction(
        transaction.id, "user_support", "fraud review", UserRole.ADMIN
    )

    assert cancelled.cancelled_by == "user_support"


async def test_failed_refund_is_recorded_as_owed(services, gateway, make_transaction):
    transaction = await make_transaction("PAID")
    gateway.fail_next("refund")

    cancelled = await services.escrow.cancel_transaction(transaction.id, BUYER, "can't attend")

    assert cancelled.status == TransactionStatus.CANCELLED
    assert cancelled.refund_amount == Decimal("180.00")
    assert cancelled.refunded_at is None


async def test_unpaid_cancel_waits_for_payment_window(services, clock, make_transaction):
    transaction = await make_transaction()

    clock.advance(timedelta(minutes=29))
    assert await services.escrow.cancel_if_unpaid(transaction.id) is None

    clock.advance(timedelta(minutes=1))
    cancelled = await services.escrow.cancel_if_unpaid(transaction.id)
    assert cancelled.status == TransactionStatus.CANCELLED
    assert cancelled.cancel_reason == "payment_window_elapsed"


async def test_unpaid_cancel_leaves_paid_transaction_alone(services, clock, make_transaction):
    transaction = await make_transaction("PAID")
    clock.advance(timedelta(hours=1))

    assert await services.escrow.cancel_if_unpaid(transaction.id) is None


# ============================================================================
# Refunds
# ============================================================================

async def test_refund_within_dispute_window(services, clock, gateway, make_transaction, fetch):
    transaction = await make_transaction("DELIVERED")
    clock.advance(timedelta(hours=24))

    refunded = await services.escrow.refund_transaction(transaction.id, BUYER, "tickets invalid")

    assert refunded.status == TransactionStatus.REFUNDED
    assert refunded.refund_amount == Decimal("180.00")
    assert refunded.refunded_at == clock.now()
    assert gateway.executed_count("refund") == 1
    assert (await fetch.listing(transaction.listing_id)).status == ListingStatus.CANCELLED
    assert services.notifications.recent(SELLER, "transaction_refunded")


async def test_refund_after_dispute_window(services, clock, make_transaction, fetch):
    transaction = await make_transaction("DELIVERED")
    clock.advance(timedelta(hours=72, seconds=1))

    with pytest.raises(PreconditionFailedError):
        await services.escrow.refund_transaction(transaction.id, BUYER, "tickets invalid")

    assert (await fetch.transaction(transaction.id)).status == TransactionStatus.DELIVERED


async def test_refund_by_admin_but_not_seller(services, make_transaction):
    transaction = await make_transaction("DELIVERED")

    with pytest.raises(AuthorizationError):
        await services.escrow.refund_transaction(transaction.id, SELLER, "changed my mind")

    refunded = await services.escrow.refund_transaction(
        transaction.id, "user_support", "duplicate seats", UserRole.ADMIN
    )
    assert refunded.status == TransactionStatus.REFUNDED


async def test_refund_twice_returns_refunded(services, gateway, make_transaction):
    transaction = await make_transaction("DELIVERED")

    await services.escrow.refund_transaction(transaction.id, BUYER, "tickets invalid")
    again = await services.escrow.refund_transaction(transaction.id, BUYER, "tickets invalid")

    assert again.status == TransactionStatus.REFUNDED
    assert gateway.count("refund") == 1


async def test_completed_transaction_cannot_be_refunded(services, make_transaction):
    transaction = await make_transaction("DELIVERED")
    await services.escrow.confirm_receipt(transaction.id, BUYER)

    with pytest.raises(ConflictError):
        await services.escrow.refund_transaction(transaction.id, BUYER, "too late")
