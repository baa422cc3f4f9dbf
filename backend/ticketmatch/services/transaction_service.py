"""
Transaction Service

Read-side queries over escrow transactions: single lookups with a view
check, per-user history on either side of the market, and sale totals.
State changes go through the escrow engine.
"""
from typing import List, Literal, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db.models import TransactionModel
from ..exceptions import NotFoundError
from ..models.transactions import Transaction, TransactionStats, TransactionStatus
from ..permissions import Action, UserRole, require

logger = logging.getLogger(__name__)


# ============================================================================
# Transaction Retrieval
# ============================================================================

async def get_transaction_by_id(
    db: AsyncSession,
    transaction_id: str
) -> Optional[Transaction]:
    """
    Retrieve transaction by ID.

    Args:
        db: Database session
        transaction_id: Transaction identifier

    Returns:
        Transaction or None if not found
    """
    db_transaction = await db.get(TransactionModel, transaction_id, populate_existing=True)

    if not db_transaction:
        return None

    return Transaction.model_validate(db_transaction)


async def get_transaction_for_actor(
    db: AsyncSession,
    transaction_id: str,
    actor_id: str,
    role: Optional[UserRole] = None
) -> Transaction:
    """
    Retrieve a transaction the actor is allowed to see.

    Raises:
        NotFoundError: No such transaction
        AuthorizationError: Actor is neither a party nor an admin
    """
    transaction = await get_transaction_by_id(db, transaction_id)
    if transaction is None:
        raise NotFoundError("transaction", transaction_id)

    require(Action.VIEW, transaction.buyer_id, transaction.seller_id, actor_id, role)
    return transaction


async def get_user_transactions(
    db: AsyncSession,
    user_id: str,
    side: Optional[Literal["buyer", "seller"]] = None,
    status: Optional[TransactionStatus] = None,
    limit: int = 10,
    offset: int = 0
) -> List[Transaction]:
    """
    Get transactions for a user.

    Args:
        db: Database session
        user_id: User identifier
        side: Only purchases ("buyer") or only sales ("seller"); both if None
        status: Optional status filter
        limit: Max results
        offset: Pagination offset

    Returns:
        List of transactions (most recent first)
    """
    query = select(TransactionModel)
    if side == "buyer":
        query = query.where(TransactionModel.buyer_id == user_id)
    elif side == "seller":
        query = query.where(TransactionModel.seller_id == user_id)
    else:
        query = query.where(
            (TransactionModel.buyer_id == user_id) | (TransactionModel.seller_id == user_id)
        )

    if status:
        query = query.where(TransactionModel.status == status.value)

    result = await db.execute(
        query.order_by(TransactionModel.created_at.desc()).limit(limit).offset(offset)
    )
    return [Transaction.model_validate(t) for t in result.scalars().all()]


# ============================================================================
# Statistics
# ============================================================================

async def get_user_transaction_stats(db: AsyncSession, user_id: str) -> TransactionStats:
    """
    Completed purchases and sales for a user.

    Spent is the full amount the buyer paid; earned is the seller's share
    after the platform fee.
    """
    # sum() and coalesce() keep the Money type, so totals come back as Decimal
    completed = TransactionModel.status == TransactionStatus.COMPLETED.value

    purchases = await db.execute(
        select(func.count(TransactionModel.id), func.coalesce(func.sum(TransactionModel.amount), 0))
        .where(TransactionModel.buyer_id == user_id, completed)
    )
    purchase_count, total_spent = purchases.one()

    sales = await db.execute(
        select(func.count(TransactionModel.id), func.coalesce(func.sum(TransactionModel.seller_amount), 0))
        .where(TransactionModel.seller_id == user_id, completed)
    )
    sale_count, total_earned = sales.one()

    logger.debug(f"Stats for {user_id}: {purchase_count} purchases, {sale_count} sales")

    return TransactionStats(
        user_id=user_id,
        purchases=purchase_count,
        total_spent=total_spent,
        sales=sale_count,
        total_earned=total_earned,
    )