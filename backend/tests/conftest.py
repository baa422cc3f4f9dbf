"""
Shared fixtures: a fresh SQLite database per test, a manual clock, the mock
payment gateway and a fully wired service container.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient

from ticketmatch.clock import ManualClock
from ticketmatch.config import Settings
from ticketmatch.db.init_db import create_db_engine, create_session_factory, initialize_database
from ticketmatch.dependencies import build_services
from ticketmatch.main import create_app
from ticketmatch.mocks.credentials_provider import CredentialsProvider
from ticketmatch.mocks.payment_processor import MockPaymentGateway
from ticketmatch.models.listings import CreateListingRequest
from ticketmatch.models.offers import CreateOfferRequest
from ticketmatch.services import listing_service, offer_service, transaction_service
from ticketmatch.services.policy import EscrowPolicy

START = datetime(2026, 3, 1, 12, 0, 0)

BUYER = "user_buyer"
OTHER_BUYER = "user_buyer_2"
SELLER = "user_seller"
OTHER_SELLER = "user_seller_2"
EVENT = "evt_finals"


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'ticketmatch.db'}")
    await initialize_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def credentials():
    provider = CredentialsProvider(payment_methods={}, payout_accounts={})
    provider.register_payment_method(BUYER, "tok_visa_4242")
    provider.register_payment_method(OTHER_BUYER, "tok_visa_1881", last_four="1881")
    provider.register_payout_account(SELLER, "acct_seller")
    provider.register_payout_account(OTHER_SELLER, "acct_seller_2")
    return provider


@pytest.fixture
def policy():
    return EscrowPolicy(gateway_timeout_seconds=0.5)


@pytest.fixture
def services(session_factory, clock, gateway, credentials, policy):
    return build_services(
        Settings(),
        session_factory,
        clock=clock,
        gateway=gateway,
        credentials=credentials,
        policy=policy
    )


@pytest.fixture
async def client(services):
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def make_offer(session_factory, clock):
    async def _make(
        buyer_id: str = BUYER,
        event_id: str = EVENT,
        max_price: str = "100.00",
        quantity: int = 2,
        section_ids: tuple = (),
        expires_in: timedelta = timedelta(days=1)
    ):
        request = CreateOfferRequest(
            event_id=event_id,
            max_price=Decimal(max_price),
            quantity=quantity,
            section_ids=list(section_ids),
            expires_at=clock.now() + expires_in,
        )
        async with session_factory() as db:
            return await offer_service.create_offer(db, buyer_id, request, clock)

    return _make


@pytest.fixture
def make_listing(session_factory, clock):
    async def _make(
        seller_id: str = SELLER,
        event_id: str = EVENT,
        price: str = "90.00",
        quantity: int = 2,
        section_id: str = "sec_101",
        expires_in: Optional[timedelta] = None
    ):
        request = CreateListingRequest(
            event_id=event_id,
            section_id=section_id,
            row="F",
            seats=[f"F{n}" for n in range(1, quantity + 1)],
            price=Decimal(price),
            quantity=quantity,
            expires_at=clock.now() + expires_in if expires_in else None,
        )
        async with session_factory() as db:
            return await listing_service.create_listing(db, seller_id, request, clock)

    return _make


@pytest.fixture
def make_transaction(services, make_offer, make_listing):
    """Match a default offer and listing, then drive the transaction to status."""
    async def _make(status: str = "PENDING", buyer_id: str = BUYER, seller_id: str = SELLER):
        offer = await make_offer(buyer_id=buyer_id)
        listing = await make_listing(seller_id=seller_id)
        transaction = await services.matching.accept_offer(offer.id, listing.id, seller_id)
        if status in ("PAID", "DELIVERED"):
            transaction = await services.escrow.capture_payment(transaction.id)
        if status == "DELIVERED":
            transaction = await services.escrow.mark_delivered(transaction.id, seller_id)
        return transaction

    return _make


class Fetch:
    """Fresh reads of stored records."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def offer(self, offer_id: str):
        async with self._session_factory() as db:
            return await offer_service.get_offer_by_id(db, offer_id)

    async def listing(self, listing_id: str):
        async with self._session_factory() as db:
            return await listing_service.get_listing_by_id(db, listing_id)

    async def transaction(self, transaction_id: str):
        async with self._session_factory() as db:
            return await transaction_service.get_transaction_by_id(db, transaction_id)

    async def transactions_for(self, user_id: str):
        async with self._session_factory() as db:
            return await transaction_service.get_user_transactions(db, user_id, limit=100)


@pytest.fixture
def fetch(session_factory):
    return Fetch(session_factory)
