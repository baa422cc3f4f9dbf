"""
Service wiring and FastAPI dependencies.

build_services() assembles the matching service, escrow engine, expiry
scheduler and their collaborators from Settings. The app keeps the result on
app.state.services; tests build their own container around a temporary
database, a manual clock and the mock gateway.
"""
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .clock import Clock, system_clock
from .config import Settings
from .exceptions import AuthorizationError
from .mocks.credentials_provider import CredentialsProvider
from .mocks.payment_processor import MockPaymentGateway
from .permissions import SYSTEM_ACTOR, UserRole
from .services.escrow_engine import EscrowTransactionEngine
from .services.matching_service import MatchingService
from .services.notification_service import NotificationHub
from .services.payment_gateway import PaymentGateway
from .services.policy import EscrowPolicy
from .services.scheduler import ExpiryScheduler


@dataclass
class ServiceContainer:
    session_factory: async_sessionmaker[AsyncSession]
    clock: Clock
    policy: EscrowPolicy
    gateway: PaymentGateway
    credentials: CredentialsProvider
    notifications: NotificationHub
    matching: MatchingService
    escrow: EscrowTransactionEngine
    scheduler: ExpiryScheduler


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: Clock = system_clock,
    gateway: Optional[PaymentGateway] = None,
    credentials: Optional[CredentialsProvider] = None,
    policy: Optional[EscrowPolicy] = None
) -> ServiceContainer:
    """
    Wire every service around one session factory, clock and gateway.

    Args:
        settings: Application settings
        session_factory: Async session factory for the marketplace database
        clock: Time source shared by every deadline check
        gateway: Payment gateway; the mock gateway if omitted
        credentials: Payment instrument registry; the demo registry if omitted
        policy: Escrow policy; derived from settings if omitted
    """
    policy = policy or EscrowPolicy.from_settings(settings)
    gateway = gateway or MockPaymentGateway(approve_all=settings.demo_mode)
    credentials = credentials or CredentialsProvider()
    notifications = NotificationHub(
        queue_size=settings.notification_queue_size,
        history_size=settings.notification_history_size,
        max_history_users=settings.notification_history_users
    )

    matching = MatchingService(session_factory, policy, clock, notifications)
    escrow = EscrowTransactionEngine(session_factory, gateway, credentials, policy, clock, notifications)
    scheduler = ExpiryScheduler(
        session_factory,
        escrow,
        policy,
        clock,
        notifications,
        interval_seconds=settings.sweep_interval_seconds,
        concurrency=settings.sweep_concurrency
    )

    return ServiceContainer(
        session_factory=session_factory,
        clock=clock,
        policy=policy,
        gateway=gateway,
        credentials=credentials,
        notifications=notifications,
        matching=matching,
        escrow=escrow,
        scheduler=scheduler,
    )


# ============================================================================
# FastAPI dependencies
# ============================================================================

def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.

    Usage:
        @app.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_services(request).session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@dataclass
class Actor:
    """Caller identity as passed on the request."""
    user_id: str
    role: Optional[UserRole] = None


def get_actor(
    user_id: str = Query(..., min_length=1, description="Acting user"),
    role: Optional[UserRole] = Query(None, description="Platform role of the acting user")
) -> Actor:
    if user_id == SYSTEM_ACTOR:
        raise AuthorizationError("Reserved actor id", {"user_id": user_id})
    return Actor(user_id=user_id, role=role)
