"""Side-effect cascade run when a booking is confirmed."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from freightbook.infrastructure.models import BookingModel
from freightbook.infrastructure.repositories import (
    BookingRepository,
    ConnectRequestRepository,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    bookings_rejected: int
    connect_requests_rejected: int


class ConnectRequestReconciler:
    """Rejects everything competing with a freshly confirmed booking.

    Runs inside the accepting transaction so the confirmation and its
    cascade commit (or roll back) together.
    """

    def __init__(self, session: AsyncSession):
        self.bookings = BookingRepository(session)
        self.connects = ConnectRequestRepository(session)

    async def reconcile(self, booking: BookingModel, now: datetime) -> ReconcileResult:
        rejected = await self.bookings.reject_competing_pending(
            booking.trip_id, booking.customer_request_id, booking.id, now
        )
        connects = await self.connects.reject_open_for_customer_request(
            booking.customer_request_id, now
        )
        logger.info(
            "Booking %s confirmed: rejected %d competing bookings, %d connect requests",
            booking.id,
            rejected,
            connects,
        )
        return ReconcileResult(rejected, connects)
