"""
Transactions API Endpoints

Escrow lifecycle actions (capture, deliver, confirm, cancel, refund) and
transaction history for buyers and sellers.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Literal, Optional
import logging

from ..dependencies import Actor, ServiceContainer, get_actor, get_db, get_services
from ..models.requests import CancelRequest, RefundRequest
from ..models.transactions import Transaction, TransactionStats, TransactionStatus
from ..services.transaction_service import (
    get_transaction_for_actor,
    get_user_transactions,
    get_user_transaction_stats
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# History
# ============================================================================

@router.get("")
async def list_transactions_endpoint(
    side: Optional[Literal["buyer", "seller"]] = Query(None, description="Purchases or sales only"),
    status: Optional[TransactionStatus] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> List[Transaction]:
    """
    Get the caller's transactions.

    Query Parameters:
        user_id: Acting user (required)
        side: "buyer" or "seller" (optional)
        status: Filter by status (optional)
        limit: Max results (default 10)
        offset: Pagination offset (default 0)

    Example:
        GET /api/transactions?user_id=user_demo_buyer&side=buyer&status=COMPLETED
    """
    return await get_user_transactions(db, actor.user_id, side, status, limit, offset)


@router.get("/stats")
async def transaction_stats_endpoint(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> TransactionStats:
    return await get_user_transaction_stats(db, actor.user_id)


@router.get("/{transaction_id}")
async def get_transaction_endpoint(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Transaction:
    """
    Get transaction details.

    Only the buyer, the seller and admins may view a transaction.

    Example:
        GET /api/transactions/txn_abc123?user_id=user_demo_buyer
    """
    logger.debug(f"Retrieving transaction: {transaction_id}")
    return await get_transaction_for_actor(db, transaction_id, actor.user_id, actor.role)


# ============================================================================
# Lifecycle
# ============================================================================

@router.post("/{transaction_id}/capture")
async def capture_payment_endpoint(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services)
) -> Transaction:
    """
    Retry payment capture for a PENDING transaction.

    Used after a gateway timeout (504); the retry reuses the original
    idempotency key so the buyer is never charged twice.
    """
    return await services.escrow.capture_payment(transaction_id, actor.user_id, actor.role)


@router.post("/{transaction_id}/deliver")
async def mark_delivered_endpoint(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services)
) -> Transaction:
    return await services.escrow.mark_delivered(transaction_id, actor.user_id, actor.role)


@router.post("/{transaction_id}/confirm")
async def confirm_receipt_endpoint(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services)
) -> Transaction:
    return await services.escrow.confirm_receipt(transaction_id, actor.user_id, actor.role)


@router.post("/{transaction_id}/cancel")
async def cancel_transaction_endpoint(
    transaction_id: str,
    request: CancelRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services)
) -> Transaction:
    """
    Cancel before delivery.

    A paid transaction is refunded in full; the listing goes back on sale
    and the buyer's offer is closed.
    """
    return await services.escrow.cancel_transaction(transaction_id, actor.user_id, request.reason, actor.role)


@router.post("/{transaction_id}/refund")
async def refund_transaction_endpoint(
    transaction_id: str,
    request: RefundRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services)
) -> Transaction:
    """
    Dispute a delivered transaction within the dispute window.

    Request Body:
        {
            "reason": str,
            "details": str  # optional
        }
    """
    reason = f"{request.reason}: {request.details}" if request.details else request.reason
    return await services.escrow.refund_transaction(transaction_id, actor.user_id, reason, actor.role)
