"""
APScheduler Configuration for the Expiry Sweep

Runs one periodic job that moves time-based state forward:
- ACTIVE offers and listings past expires_at become EXPIRED
- PENDING transactions never paid within the payment window are cancelled
- DELIVERED transactions past the confirmation window are auto-released
- Payouts and refunds whose settlement lease lapsed are retried

Every step re-reads state through a conditional update before acting, so a
sweep interrupted halfway (crash, restart) is safe to run again.
"""
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Awaitable, Callable, Dict, List, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clock import Clock, system_clock
from ..db.models import ListingModel, OfferModel, TransactionModel
from ..db.store import compare_and_set, load
from ..exceptions import MarketplaceError
from .escrow_engine import EscrowTransactionEngine
from .notification_service import NotificationSink
from .policy import EscrowPolicy

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "expiry_sweep"


@dataclass
class SweepReport:
    """Records changed by one sweep, plus records that failed and will be retried."""
    offers_expired: int = 0
    listings_expired: int = 0
    transactions_cancelled: int = 0
    transactions_released: int = 0
    payouts_settled: int = 0
    refunds_settled: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class ExpiryScheduler:
    """
    Periodic expiry sweep on an AsyncIOScheduler.

    The job is registered at start-up and kept in memory; the sweep holds no
    state of its own, so nothing needs to survive a restart.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: EscrowTransactionEngine,
        policy: EscrowPolicy,
        clock: Clock = system_clock,
        notifier: Optional[NotificationSink] = None,
        interval_seconds: int = 60,
        concurrency: int = 8
    ):
        self._session_factory = session_factory
        self._engine = engine
        self._policy = policy
        self._clock = clock
        self._notifier = notifier
        self._interval_seconds = interval_seconds
        self._concurrency = concurrency
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._sweep_task: Optional[asyncio.Task] = None

    def _initialize_scheduler(self) -> AsyncIOScheduler:
        """
        Configure APScheduler.

        Configuration:
        - AsyncIOScheduler so the sweep runs on the application's event loop
        - MemoryJobStore; the job is re-registered on every start
        - Coalesce: True (a backlog of missed runs collapses into one)
        - Max instances: 1 (sweeps never overlap)
        """
        scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 300
            },
            timezone='UTC'
        )
        logger.info("APScheduler initialized for expiry sweep")
        return scheduler

    def start(self) -> None:
        """
        Start the scheduler and register the sweep job.

        Should be called during FastAPI app startup.
        """
        if self._scheduler is None:
            self._scheduler = self._initialize_scheduler()

        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler.add_job(
            self._scheduled_sweep,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=SWEEP_JOB_ID,
            replace_existing=True
        )
        self._scheduler.start()
        logger.info(f"Scheduler started: expiry sweep every {self._interval_seconds}s")

    async def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the scheduler gracefully.

        Stopping the executor cancels whatever job it is running, so with
        wait the sweep job is removed first and an in-flight sweep is awaited
        before the scheduler itself stops.

        Args:
            wait: Wait for a running sweep to complete before shutdown
        """
        if not self.running:
            return

        scheduler = self._scheduler
        if wait:
            scheduler.remove_job(SWEEP_JOB_ID)
            await self._wait_for_sweep()

        scheduler.shutdown(wait=False)
        await self._wait_for_sweep()

        # AsyncIOScheduler may apply shutdown on the next loop iteration
        await asyncio.sleep(0)
        self._scheduler = None
        logger.info(f"Scheduler shutdown (wait={wait})")

    async def _wait_for_sweep(self) -> None:
        task = self._sweep_task
        if task is None or task.done():
            return
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"In-flight sweep failed: {task.exception()}")

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    async def _scheduled_sweep(self) -> None:
        """Job entry point; remembers the task so shutdown can wait for it."""
        self._sweep_task = asyncio.current_task()
        try:
            await self.run_sweep()
        finally:
            self._sweep_task = None

    # ========================================================================
    # Sweep
    # ========================================================================

    async def run_sweep(self) -> SweepReport:
        """
        Run every sweep step once.

        Steps run in order; the records within a step are processed
        concurrently, each in its own database transaction.
        """
        report = SweepReport()
        now = self._clock.now()

        report.offers_expired = await self._run_step(
            report, "expire_offer", await self._expired_offer_ids(now), self._expire_offer
        )
        report.listings_expired = await self._run_step(
            report, "expire_listing", await self._expired_listing_ids(now), self._expire_listing
        )
        report.transactions_cancelled = await self._run_step(
            report, "cancel_unpaid", await self._unpaid_transaction_ids(now), self._cancel_unpaid
        )
        report.transactions_released = await self._run_step(
            report, "auto_release", await self._overdue_delivery_ids(now), self._auto_release
        )
        report.payouts_settled = await self._run_step(
            report, "retry_payout", await self._stalled_payout_ids(now), self._retry_payout
        )
        report.refunds_settled = await self._run_step(
            report, "retry_refund", await self._stalled_refund_ids(now), self._retry_refund
        )

        logger.info(f"Expiry sweep finished: {report.to_dict()}")
        return report

    async def _run_step(
        self,
        report: SweepReport,
        step: str,
        record_ids: List[str],
        action: Callable[[str], Awaitable[bool]]
    ) -> int:
        """Apply action to every record with bounded concurrency; returns how many changed."""
        if not record_ids:
            return 0

        semaphore = asyncio.Semaphore(self._concurrency)

        async def guarded(record_id: str) -> bool:
            async with semaphore:
                try:
                    return await action(record_id)
                except MarketplaceError as e:
                    logger.warning(f"Sweep {step} failed for {record_id}: {e.error_code} {e.message}")
                except Exception as e:
                    logger.error(f"Sweep {step} failed for {record_id}: {e}", exc_info=True)
                report.errors += 1
                return False

        results = await asyncio.gather(*(guarded(record_id) for record_id in record_ids))
        changed = sum(1 for r in results if r)
        logger.debug(f"Sweep {step}: {changed}/{len(record_ids)} records changed")
        return changed

    # ------------------------------------------------------------------
    # Candidate queries
    # ------------------------------------------------------------------

    async def _ids(self, query) -> List[str]:
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def _expired_offer_ids(self, now) -> List[str]:
        return await self._ids(
            select(OfferModel.id).where(OfferModel.status == "ACTIVE", OfferModel.expires_at <= now)
        )

    async def _expired_listing_ids(self, now) -> List[str]:
        return await self._ids(
            select(ListingModel.id).where(
                ListingModel.status == "ACTIVE",
                ListingModel.expires_at.is_not(None),
                ListingModel.expires_at <= now,
            )
        )

    async def _unpaid_transaction_ids(self, now) -> List[str]:
        return await self._ids(
            select(TransactionModel.id).where(
                TransactionModel.status == "PENDING",
                TransactionModel.created_at <= now - self._policy.payment_window,
            )
        )

    async def _overdue_delivery_ids(self, now) -> List[str]:
        return await self._ids(
            select(TransactionModel.id).where(
                TransactionModel.status == "DELIVERED",
                TransactionModel.buyer_confirmed.is_(False),
                TransactionModel.tickets_delivered_at <= now - self._policy.confirmation_window,
            )
        )

    async def _stalled_payout_ids(self, now) -> List[str]:
        return await self._ids(
            select(TransactionModel.id).where(
                TransactionModel.status == "COMPLETED",
                TransactionModel.seller_paid_out.is_(False),
                or_(
                    TransactionModel.payout_started_at.is_(None),
                    TransactionModel.payout_started_at <= now - self._policy.settlement_lease,
                ),
            )
        )

    async def _stalled_refund_ids(self, now) -> List[str]:
        return await self._ids(
            select(TransactionModel.id).where(
                TransactionModel.status.in_(("CANCELLED", "REFUNDED")),
                TransactionModel.refund_amount.is_not(None),
                TransactionModel.refunded_at.is_(None),
                or_(
                    TransactionModel.refund_started_at.is_(None),
                    TransactionModel.refund_started_at <= now - self._policy.settlement_lease,
                ),
            )
        )

    # ------------------------------------------------------------------
    # Per-record actions
    # ------------------------------------------------------------------

    async def _expire_offer(self, offer_id: str) -> bool:
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                expired = await compare_and_set(
                    db, OfferModel, offer_id, "ACTIVE",
                    OfferModel.expires_at <= now,
                    status="EXPIRED", updated_at=now
                )
                if not expired:
                    return False
                offer = await load(db, OfferModel, offer_id, "offer")

        logger.info(f"Offer expired: {offer_id}")
        self._notify(offer.buyer_id, "offer_expired", {"offer_id": offer_id})
        return True

    async def _expire_listing(self, listing_id: str) -> bool:
        now = self._clock.now()
        async with self._session_factory() as db:
            async with db.begin():
                expired = await compare_and_set(
                    db, ListingModel, listing_id, "ACTIVE",
                    ListingModel.expires_at <= now,
                    status="EXPIRED", updated_at=now
                )
                if not expired:
                    return False
                listing = await load(db, ListingModel, listing_id, "listing")

        logger.info(f"Listing expired: {listing_id}")
        self._notify(listing.seller_id, "listing_expired", {"listing_id": listing_id})
        return True

    async def _cancel_unpaid(self, transaction_id: str) -> bool:
        return await self._engine.cancel_if_unpaid(transaction_id) is not None

    async def _auto_release(self, transaction_id: str) -> bool:
        return await self._engine.auto_release_if_expired(transaction_id) is not None

    async def _retry_payout(self, transaction_id: str) -> bool:
        transaction = await self._engine.release_payout(transaction_id)
        return transaction.seller_paid_out

    async def _retry_refund(self, transaction_id: str) -> bool:
        transaction = await self._engine.settle_refund(transaction_id)
        return transaction.refunded_at is not None

    def _notify(self, user_id: str, event_type: str, payload: dict) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(user_id, event_type, payload)
        except Exception as e:
            logger.error(f"Failed to notify {user_id} of {event_type}: {e}", exc_info=True)
