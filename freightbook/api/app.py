"""
FastAPI application factory.

* Registers routes for bookings, tokens and admin.
* Starts / stops the background reward settler via lifespan events.
* Applies rate-limiting middleware and maps domain errors to JSON.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from freightbook.api.errors import register_error_handlers
from freightbook.api.middleware import limiter
from freightbook.api.routes import admin, bookings, tokens
from freightbook.infrastructure.database import dispose_engine
from freightbook.infrastructure.redis_client import close_redis
from freightbook.workers import reward_settler as _settler

logging.basicConfig(level=logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the reward settler on startup; stop it and close pools on shutdown."""
    await _settler.start_settle_loop()
    yield
    await _settler.stop_settle_loop()
    await close_redis()
    await dispose_engine()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Freight Booking API",
        description=(
            "Binds a driver's trip to a customer's shipment request and moves "
            "the booking through confirmation, OTP-verified pickup and "
            "delivery, paying the driver reward tokens at each milestone."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_error_handlers(app)

    # Routers
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(tokens.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
