"""
Booking state machine
=====================

Orchestrates every command on a booking::

    pending ──accept──▶ confirmed ──pickup OTP──▶ picked_up ──delivery OTP──▶ delivered
       │                   │  └──complete──▶ completed
       ├──reject──▶ rejected
       └──cancel──▶ cancelled ◀──two-phase cancel── confirmed

Unit of work
------------
Each command validates its preconditions, then performs its writes as
conditional updates in one transaction and commits.  Ledger side effects are
queued as reward claims inside that transaction and applied afterwards
(see ``settlement``); a ledger failure is logged and retried later but never
reverts the committed transition.

Concurrency
-----------
* accept      -- trip and customer-request rows are locked, occupancy is
  re-checked, and the status write is conditional on ``pending``.
* cancel      -- finalisation is conditional on the pending request still
  being there, so only one finaliser (and one clawback) can win.
* milestones  -- OTP consumption and the status write are both conditional.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from freightbook.config import Settings, settings as default_settings
from freightbook.domain.clock import as_utc, utcnow
from freightbook.domain.entities import Principal, check_transition
from freightbook.domain.enums import (
    TERMINAL_STATUSES,
    UNDELETABLE_STATUSES,
    BookingStatus,
    CustomerRequestStatus,
    OtpKind,
    RewardStage,
    UserRole,
)
from freightbook.domain.errors import (
    ConfigurationMissing,
    Conflict,
    Forbidden,
    NotFound,
    StateViolation,
    ValidationFailed,
)
from freightbook.domain.rewards import (
    distance_km_from_meters,
    enforce_min_elapsed,
    resolve_slab,
)
from freightbook.infrastructure.models import (
    BookingModel,
    BookingOtpModel,
    RewardClaimModel,
)
from freightbook.infrastructure.repositories import (
    BookingRepository,
    ConnectRequestRepository,
    CustomerRequestRepository,
    TripRepository,
)

from .access import ensure_participant_or_admin, is_participant
from .otp_manager import OtpChallengeManager
from .reconciler import ConnectRequestReconciler
from .reward_settings import RewardSettingsProvider
from .settlement import RewardSettlement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Milestone:
    from_status: BookingStatus
    to_status: BookingStatus
    since_field: str
    stamp_field: str
    threshold_field: str
    request_status: CustomerRequestStatus
    stage: RewardStage
    label: str


MILESTONES: dict[OtpKind, _Milestone] = {
    OtpKind.PICKUP: _Milestone(
        from_status=BookingStatus.CONFIRMED,
        to_status=BookingStatus.PICKED_UP,
        since_field="accepted_at",
        stamp_field="pickup_at",
        threshold_field="min_minutes_confirm_to_pickup",
        request_status=CustomerRequestStatus.PICKED_UP,
        stage=RewardStage.PICKUP,
        label="Pickup",
    ),
    OtpKind.DELIVERY: _Milestone(
        from_status=BookingStatus.PICKED_UP,
        to_status=BookingStatus.DELIVERED,
        since_field="pickup_at",
        stamp_field="delivered_at",
        threshold_field="min_minutes_pickup_to_delivery",
        request_status=CustomerRequestStatus.DELIVERED,
        stage=RewardStage.DELIVERY,
        label="Delivery",
    ),
}


@dataclass
class TransitionResult:
    booking: BookingModel
    message: str
    tokens_awarded: int = 0


def can_respond_to_cancellation(booking: BookingModel, principal: Principal) -> bool:
    """True when *principal* is the participant who may finalise a pending cancel."""
    return bool(
        booking.cancellation_pending
        and booking.cancellation_requested_by is not None
        and booking.cancellation_requested_by != principal.user_id
        and is_participant(booking, principal)
    )


class BookingService:
    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable[[], datetime] = utcnow,
        config: Optional[Settings] = None,
    ):
        self.session = session
        self.clock = clock
        self.config = config or default_settings
        self.bookings = BookingRepository(session)
        self.trips = TripRepository(session)
        self.requests = CustomerRequestRepository(session)
        self.connects = ConnectRequestRepository(session)
        self.rewards = RewardSettingsProvider(session)
        self.reconciler = ConnectRequestReconciler(session)
        self.settlement = RewardSettlement(session, clock=clock, config=self.config)
        self.otps = OtpChallengeManager(session, clock=clock, config=self.config)

    # ── Helpers ───────────────────────────────────────────────────────

    async def _load(self, booking_id: int) -> BookingModel:
        booking = await self.bookings.get_active(booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    async def _distance_km(self, booking: BookingModel) -> float:
        request = await self.requests.get_by_id(booking.customer_request_id)
        return distance_km_from_meters(request.distance_m if request else None)

    async def _queue_reward(
        self, booking: BookingModel, stage: RewardStage, actor_id: int
    ) -> Optional[RewardClaimModel]:
        try:
            settings = await self.rewards.active_settings()
        except ConfigurationMissing:
            logger.warning(
                "Booking %s: no active reward settings, %s reward skipped",
                booking.id,
                stage.value,
            )
            return None
        distance_km = await self._distance_km(booking)
        return await self.settlement.queue(
            booking, stage, settings, distance_km, actor_id
        )

    async def _apply(self, claim: Optional[RewardClaimModel]) -> int:
        if claim is None:
            return 0
        amount = claim.amount
        return amount if await self.settlement.apply(claim) else 0

    async def _commit_or_conflict(self, message: str) -> None:
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise Conflict(message)

    async def _lost_race(self, message: str) -> None:
        await self.session.rollback()
        raise StateViolation(message)

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, booking_id: int, principal: Principal) -> BookingModel:
        booking = await self._load(booking_id)
        ensure_participant_or_admin(booking, principal)
        return booking

    async def list(
        self,
        principal: Principal,
        *,
        status: Optional[BookingStatus] = None,
        trip_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        size: Optional[int] = None,
    ) -> tuple[list[BookingModel], int]:
        size = min(size or self.config.default_page_size, self.config.max_page_size)
        page = max(page, 1)
        return await self.bookings.list_visible(
            offset=(page - 1) * size,
            limit=size,
            user_id=None if principal.is_admin else principal.user_id,
            status=status,
            trip_id=trip_id,
            date_from=date_from,
            date_to=date_to,
        )

    async def stats(self, principal: Principal) -> dict:
        rows = await self.bookings.status_breakdown(
            None if principal.is_admin else principal.user_id
        )
        by_status = {status.value: 0 for status in BookingStatus}
        total = 0
        revenue = 0.0
        for status, count, price_sum in rows:
            by_status[BookingStatus(status).value] = count
            total += count
            revenue += price_sum or 0.0
        return {
            "total": total,
            "by_status": by_status,
            "total_revenue": revenue,
            "avg_price": (revenue / total) if total else None,
        }

    # ── Commands ──────────────────────────────────────────────────────

    async def create(
        self,
        principal: Principal,
        *,
        trip_id: int,
        customer_request_id: int,
        connect_request_id: int,
        price: float,
        pickup_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> BookingModel:
        uid = principal.user_id
        now = self.clock()

        trip = await self.trips.get_by_id(trip_id)
        if trip is None or not trip.is_active:
            raise NotFound("Trip not found or inactive")
        request = await self.requests.get_by_id(customer_request_id)
        if request is None or not request.is_active:
            raise NotFound("Customer request not found or inactive")

        # The caller owns one side; the other side's owner is the counterparty.
        if principal.role == UserRole.DRIVER:
            if trip.owner_id != uid:
                raise Forbidden("Trip does not belong to the driver (initiator)")
            driver_id, customer_id = uid, request.owner_id
        elif principal.role == UserRole.CUSTOMER:
            if request.owner_id != uid:
                raise Forbidden(
                    "Customer request does not belong to the customer (initiator)"
                )
            driver_id, customer_id = trip.owner_id, uid
        else:
            raise Forbidden("Only drivers or customers can initiate bookings")
        if driver_id == customer_id:
            raise ValidationFailed("A booking needs two distinct parties")

        if await self.bookings.find_open_for_pair(trip_id, customer_request_id):
            raise Conflict("A booking already exists for this trip and customer request")
        if await self.bookings.find_live_for_customer_request(customer_request_id):
            raise Conflict("Customer request is already bound to a booking")

        conn = await self.connects.get_by_id(connect_request_id)
        if conn is None or not conn.is_active:
            raise NotFound("Connect request not found or inactive")
        if conn.trip_id != trip_id or conn.customer_request_id != customer_request_id:
            raise Forbidden(
                "Connect request does not match the provided trip or customer request"
            )
        if uid not in (conn.initiator_id, conn.recipient_id):
            raise Forbidden(
                "Only the initiator or recipient of the connect request can create a booking"
            )
        if {conn.initiator_id, conn.recipient_id} != {driver_id, customer_id}:
            raise Forbidden(
                "Connect request participants must be the same driver and customer"
            )

        if pickup_date is not None and as_utc(pickup_date) <= now:
            raise ValidationFailed("Pickup date must be in the future")

        booking = await self.bookings.create(
            BookingModel(
                trip_id=trip_id,
                customer_request_id=customer_request_id,
                connect_request_id=conn.id,
                driver_id=driver_id,
                customer_id=customer_id,
                initiator_id=uid,
                recipient_id=customer_id if uid == driver_id else driver_id,
                price=price,
                pickup_date=pickup_date,
                notes=notes,
                status=BookingStatus.PENDING,
                recipient_accepted=False,
                cancellation_pending=False,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
        )
        await self._commit_or_conflict("Customer request is already bound to a booking")
        logger.info(
            "Booking %s created by %s (trip=%s, request=%s)",
            booking.id,
            uid,
            trip_id,
            customer_request_id,
        )
        return booking

    async def update(
        self,
        booking_id: int,
        principal: Principal,
        *,
        price: Optional[float] = None,
        pickup_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> BookingModel:
        booking = await self._load(booking_id)
        ensure_participant_or_admin(booking, principal)
        if BookingStatus(booking.status) in TERMINAL_STATUSES:
            raise StateViolation(
                f"Cannot update a {BookingStatus(booking.status).value} booking"
            )
        if price is None and pickup_date is None and notes is None:
            raise ValidationFailed("Nothing to update")
        if pickup_date is not None and as_utc(pickup_date) <= self.clock():
            raise ValidationFailed("Pickup date must be in the future")

        if price is not None:
            booking.price = price
        if pickup_date is not None:
            booking.pickup_date = pickup_date
        if notes is not None:
            booking.notes = notes
        await self.session.commit()
        return await self.bookings.refresh(booking)

    async def accept(self, booking_id: int, principal: Principal) -> TransitionResult:
        booking = await self._load(booking_id)
        if booking.recipient_id != principal.user_id:
            raise Forbidden("Only the recipient can accept this booking")
        check_transition(booking.status, BookingStatus.CONFIRMED)

        # Serialise confirmations per trip / request, then re-check occupancy.
        await self.trips.lock(booking.trip_id)
        await self.requests.lock(booking.customer_request_id)
        if await self.bookings.find_occupying(
            booking.trip_id, booking.customer_request_id, booking.id
        ):
            await self.session.rollback()
            raise Conflict("Trip already has a confirmed booking")

        now = self.clock()
        if not await self.bookings.transition(
            booking.id,
            BookingStatus.PENDING,
            status=BookingStatus.CONFIRMED,
            recipient_accepted=True,
            accepted_at=now,
        ):
            await self._lost_race("Booking is no longer pending")

        await self.requests.set_status(
            booking.customer_request_id, CustomerRequestStatus.BOOKED
        )
        await self.reconciler.reconcile(booking, now)
        claim = await self._queue_reward(
            booking, RewardStage.CONFIRMATION, principal.user_id
        )
        await self._commit_or_conflict("Trip already has a confirmed booking")
        logger.info("Booking %s confirmed by %s", booking.id, principal.user_id)

        tokens = await self._apply(claim)
        await self.bookings.refresh(booking)
        return TransitionResult(booking, "Booking accepted successfully", tokens)

    async def reject(self, booking_id: int, principal: Principal) -> TransitionResult:
        booking = await self._load(booking_id)
        if booking.recipient_id != principal.user_id:
            raise Forbidden("Only the recipient can reject this booking")
        if BookingStatus(booking.status) != BookingStatus.PENDING:
            raise StateViolation("Booking is not in pending status")

        if not await self.bookings.transition(
            booking.id,
            BookingStatus.PENDING,
            status=BookingStatus.REJECTED,
            rejected_at=self.clock(),
        ):
            await self._lost_race("Booking is no longer pending")
        await self.session.commit()
        logger.info("Booking %s rejected by %s", booking.id, principal.user_id)
        await self.bookings.refresh(booking)
        return TransitionResult(booking, "Booking rejected successfully")

    async def cancel(
        self, booking_id: int, principal: Principal, reason: str
    ) -> TransitionResult:
        reason = (reason or "").strip()
        if not 3 <= len(reason) <= 500:
            raise ValidationFailed(
                "Cancellation reason must be between 3 and 500 characters"
            )
        booking = await self._load(booking_id)
        ensure_participant_or_admin(booking, principal)
        status = BookingStatus(booking.status)
        uid = principal.user_id
        now = self.clock()

        if status == BookingStatus.PENDING:
            if not await self.bookings.transition(
                booking.id,
                BookingStatus.PENDING,
                status=BookingStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=uid,
                cancellation_reason=reason,
                cancellation_pending=False,
            ):
                await self._lost_race("Booking is no longer pending")
            await self.requests.set_status(
                booking.customer_request_id, CustomerRequestStatus.PENDING
            )
            await self.session.commit()
            logger.info("Booking %s cancelled by %s while pending", booking.id, uid)
            await self.bookings.refresh(booking)
            return TransitionResult(booking, "Booking cancelled successfully")

        if status != BookingStatus.CONFIRMED:
            raise StateViolation(
                f"Booking is already {status.value} and cannot be cancelled"
            )

        if not booking.cancellation_pending:
            if not await self.bookings.request_cancellation(booking.id, uid, reason, now):
                await self._lost_race("Booking changed while requesting cancellation")
            await self.session.commit()
            logger.info("Booking %s: cancellation requested by %s", booking.id, uid)
            await self.bookings.refresh(booking)
            return TransitionResult(
                booking,
                "Cancellation request created. Awaiting other party's confirmation.",
            )

        requested_by = booking.cancellation_requested_by
        if requested_by == uid:
            raise Forbidden(
                "You have already requested cancellation. Await the other party's action."
            )
        if not await self.bookings.finalize_cancellation(
            booking.id, requested_by, uid, now
        ):
            await self._lost_race("Cancellation was already finalised")
        await self.requests.set_status(
            booking.customer_request_id, CustomerRequestStatus.PENDING
        )

        claim = await self.settlement.queue_clawback(
            booking, await self._distance_km(booking), uid
        )
        await self.session.commit()
        logger.info(
            "Booking %s cancelled: requested by %s, confirmed by %s",
            booking.id,
            requested_by,
            uid,
        )
        # A failed clawback stays queued; the cancellation stands regardless.
        await self._apply(claim)
        await self.bookings.refresh(booking)
        return TransitionResult(booking, "Booking cancelled successfully")

    async def complete(self, booking_id: int, principal: Principal) -> TransitionResult:
        booking = await self._load(booking_id)
        if principal.role != UserRole.DRIVER:
            raise Forbidden("Only drivers can complete bookings")
        if booking.driver_id != principal.user_id:
            raise Forbidden("Only the assigned driver can complete this booking")
        if BookingStatus(booking.status) != BookingStatus.CONFIRMED:
            raise StateViolation("Booking must be confirmed to complete")

        if not await self.bookings.transition(
            booking.id,
            BookingStatus.CONFIRMED,
            status=BookingStatus.COMPLETED,
            completed_at=self.clock(),
            cancellation_pending=False,
        ):
            await self._lost_race("Booking is no longer confirmed")
        await self.session.commit()
        logger.info("Booking %s completed by driver %s", booking.id, principal.user_id)
        await self.bookings.refresh(booking)
        return TransitionResult(booking, "Booking completed successfully")

    async def delete(self, booking_id: int, principal: Principal) -> None:
        booking = await self._load(booking_id)
        ensure_participant_or_admin(booking, principal)
        if BookingStatus(booking.status) in UNDELETABLE_STATUSES:
            raise StateViolation(
                "Cannot delete booking that is in progress or completed"
            )
        if not await self.bookings.soft_delete(booking.id, principal.user_id, self.clock()):
            await self.session.rollback()
            raise NotFound("Booking not found")
        await self.session.commit()
        logger.info("Booking %s deleted by %s", booking.id, principal.user_id)

    # ── Milestones ────────────────────────────────────────────────────

    async def generate_otp(
        self,
        booking_id: int,
        kind: OtpKind,
        principal: Principal,
        issued_to: Optional[UserRole] = None,
    ) -> BookingOtpModel:
        booking = await self._load(booking_id)
        otp = await self.otps.generate(booking, kind, principal, issued_to)
        await self.session.commit()
        return otp

    async def verify_otp(
        self, booking_id: int, kind: OtpKind, code: str, principal: Principal
    ) -> TransitionResult:
        booking = await self._load(booking_id)
        otp = await self.otps.verify(booking, kind, code, principal)
        milestone = MILESTONES[kind]

        if BookingStatus(booking.status) != milestone.from_status:
            raise StateViolation(
                f"{milestone.label} needs the booking to be {milestone.from_status.value}"
            )
        since = getattr(booking, milestone.since_field)
        if since is None:
            raise StateViolation(
                f"Booking has no recorded {milestone.since_field.replace('_', ' ')}"
            )

        settings = await self.rewards.active_settings()
        distance_km = await self._distance_km(booking)
        slab = resolve_slab(settings.slabs, distance_km)
        now = self.clock()
        if slab is not None:
            enforce_min_elapsed(
                since, now, getattr(slab, milestone.threshold_field), milestone.label
            )
        else:
            logger.warning(
                "Booking %s: no slab for %.1f km; %s has no time gate or reward",
                booking.id,
                distance_km,
                milestone.label.lower(),
            )

        await self.otps.consume(otp, now)
        if not await self.bookings.transition(
            booking.id,
            milestone.from_status,
            status=milestone.to_status,
            cancellation_pending=False,
            **{milestone.stamp_field: now},
        ):
            await self._lost_race(f"Booking is no longer {milestone.from_status.value}")
        await self.requests.set_status(
            booking.customer_request_id, milestone.request_status
        )
        claim = await self.settlement.queue(
            booking, milestone.stage, settings, distance_km, principal.user_id
        )
        await self.session.commit()
        logger.info(
            "Booking %s %s verified by %s",
            booking.id,
            milestone.to_status.value,
            principal.user_id,
        )

        tokens = await self._apply(claim)
        await self.bookings.refresh(booking)
        return TransitionResult(
            booking, f"{milestone.label} verified successfully", tokens
        )
