"""
TicketMatch Backend - FastAPI Application

Ticket-resale marketplace backend: buyers post offers, sellers accept them
with listings, and the escrow engine carries each match from payment
capture through delivery to payout or refund.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

from .config import settings
from .exceptions import MarketplaceError
from .db.init_db import AsyncSessionLocal, engine, initialize_database
from .dependencies import ServiceContainer, build_services
from .mocks.payment_processor import get_processor_status
from .api.offers import router as offers_router
from .api.listings import router as listings_router
from .api.transactions import router as transactions_router
from .api.notifications import router as notifications_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Initialize database, wire services, start the expiry sweep
    - Shutdown: Stop the sweep, dispose of the database engine
    """
    # Startup
    logger.info("Starting TicketMatch backend server...")
    logger.info(f"Demo mode: {settings.demo_mode}")

    services: Optional[ServiceContainer] = getattr(app.state, "services", None)
    owns_engine = services is None
    if owns_engine:
        try:
            await initialize_database(engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        services = build_services(settings, AsyncSessionLocal)
        app.state.services = services

    services.scheduler.start()
    logger.info("Server startup complete")

    yield

    # Shutdown
    logger.info("Shutting down TicketMatch backend server...")

    # Stop scheduler (wait for a running sweep to complete)
    await services.scheduler.shutdown(wait=True)
    if owns_engine:
        await engine.dispose()
    logger.info("Shutdown complete")


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built service container; when omitted the lifespan
            initializes the default database and wires services from settings
    """
    app = FastAPI(
        title="TicketMatch API",
        description="Ticket resale marketplace with escrowed offer matching",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Configure CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        """
        Handle marketplace errors with standardized response format.

        Status comes from the exception class (404, 409, 422, 403, 502, 504).
        """
        logger.warning(
            f"Marketplace error: {exc.error_code} - {exc.message}",
            extra={"details": exc.details}
        )

        headers = {"Retry-After": "1"} if exc.retryable else None
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=headers
        )

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unexpected errors.

        Logs full exception for debugging but returns generic message to client.
        """
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "error_code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {}
            }
        )

    @app.get("/api/health")
    async def health_check(request: Request):
        """
        Health check endpoint for monitoring and load balancers.

        Returns:
            Server status, sweep state, open notification streams and payment
            processor availability
        """
        services: Optional[ServiceContainer] = getattr(request.app.state, "services", None)
        return {
            "status": "healthy",
            "version": "0.1.0",
            "demo_mode": settings.demo_mode,
            "scheduler_running": bool(services and services.scheduler.running),
            "notification_streams": services.notifications.get_active_stream_count() if services else 0,
            "payment_processor": get_processor_status()["status"],
        }

    # Include API routers
    app.include_router(offers_router, prefix="/api/offers", tags=["Offers"])
    app.include_router(listings_router, prefix="/api/listings", tags=["Listings"])
    app.include_router(transactions_router, prefix="/api/transactions", tags=["Transactions"])
    app.include_router(notifications_router, prefix="/api/notifications", tags=["Notifications"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ticketmatch.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.demo_mode,
        log_level=settings.log_level.lower()
    )
