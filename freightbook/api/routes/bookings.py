"""
Booking endpoints
=================

POST   /api/v1/bookings                                -- create (pending)
GET    /api/v1/bookings                                -- list visible bookings
GET    /api/v1/bookings/stats                          -- counts / revenue by status
GET    /api/v1/bookings/{booking_id}                   -- details
PUT    /api/v1/bookings/{booking_id}                   -- update price / date / notes
DELETE /api/v1/bookings/{booking_id}                   -- soft delete
PUT    /api/v1/bookings/{booking_id}/accept            -- recipient confirms
PUT    /api/v1/bookings/{booking_id}/reject            -- recipient declines
PUT    /api/v1/bookings/{booking_id}/cancel            -- cancel / two-phase cancel
PUT    /api/v1/bookings/{booking_id}/complete          -- driver closes
POST   /api/v1/bookings/{booking_id}/otp/{kind}/generate
POST   /api/v1/bookings/{booking_id}/otp/{kind}/verify
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from freightbook.api.dependencies import get_booking_service, get_principal
from freightbook.api.middleware import limiter
from freightbook.api.schemas import (
    BookingActionResponse,
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    BookingStatsResponse,
    BookingUpdateRequest,
    CancelRequest,
    OtpGenerateRequest,
    OtpResponse,
    OtpVerifyRequest,
)
from freightbook.config import settings
from freightbook.domain.entities import Principal
from freightbook.domain.enums import BookingStatus, OtpKind
from freightbook.infrastructure.models import BookingModel
from freightbook.services.bookings import (
    BookingService,
    TransitionResult,
    can_respond_to_cancellation,
)

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _to_response(booking: BookingModel, principal: Principal) -> BookingResponse:
    dto = BookingResponse.model_validate(booking)
    dto.can_respond_to_cancellation = can_respond_to_cancellation(booking, principal)
    return dto


def _action(result: TransitionResult, principal: Principal) -> BookingActionResponse:
    return BookingActionResponse(
        message=result.message,
        booking=_to_response(result.booking, principal),
        tokens_awarded=result.tokens_awarded,
    )


@router.post(
    "",
    status_code=201,
    response_model=BookingResponse,
    summary="Create a booking from an accepted connect request",
)
@limiter.limit(settings.rate_limit)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.create(
        principal,
        trip_id=body.trip_id,
        customer_request_id=body.customer_request_id,
        connect_request_id=body.connect_request_id,
        price=body.price,
        pickup_date=body.pickup_date,
        notes=body.notes,
    )
    return _to_response(booking, principal)


@router.get("", response_model=BookingListResponse, summary="List bookings")
@limiter.limit(settings.rate_limit)
async def list_bookings(
    request: Request,
    status: Optional[BookingStatus] = None,
    trip_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    items, total = await service.list(
        principal,
        status=status,
        trip_id=trip_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        size=size,
    )
    return BookingListResponse(
        items=[_to_response(b, principal) for b in items],
        total=total,
        page=page,
        size=size,
        pages=math.ceil(total / size) if total else 0,
    )


@router.get(
    "/stats",
    response_model=BookingStatsResponse,
    summary="Booking counts and revenue by status",
)
@limiter.limit(settings.rate_limit)
async def booking_stats(
    request: Request,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    return await service.stats(principal)


@router.get("/{booking_id}", response_model=BookingResponse, summary="Get a booking")
@limiter.limit(settings.rate_limit)
async def get_booking(
    request: Request,
    booking_id: int,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.get(booking_id, principal)
    return _to_response(booking, principal)


@router.put(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Update price, pickup date or notes",
    description="Status is never changed here; use the lifecycle endpoints.",
)
@limiter.limit(settings.rate_limit)
async def update_booking(
    request: Request,
    booking_id: int,
    body: BookingUpdateRequest,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.update(
        booking_id,
        principal,
        price=body.price,
        pickup_date=body.pickup_date,
        notes=body.notes,
    )
    return _to_response(booking, principal)


@router.delete("/{booking_id}", status_code=204, summary="Soft-delete a booking")
@limiter.limit(settings.rate_limit)
async def delete_booking(
    request: Request,
    booking_id: int,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    await service.delete(booking_id, principal)


# ── Lifecycle ─────────────────────────────────────────────────────────


@router.put(
    "/{booking_id}/accept",
    response_model=BookingActionResponse,
    summary="Accept a pending booking",
    description=(
        "Recipient only. Confirms the booking, rejects competing pending "
        "bookings and connect requests, and credits the confirmation reward."
    ),
)
@limiter.limit(settings.rate_limit)
async def accept_booking(
    request: Request,
    booking_id: int,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    return _action(await service.accept(booking_id, principal), principal)


@router.put(
    "/{booking_id}/reject",
    response_model=BookingActionResponse,
    summary="Reject a pending booking",
)
@limiter.limit(settings.rate_limit)
async def reject_booking(
    request: Request,
    booking_id: int,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    return _action(await service.reject(booking_id, principal), principal)


@router.put(
    "/{booking_id}/cancel",
    response_model=BookingActionResponse,
    summary="Cancel a booking",
    description=(
        "A pending booking is cancelled at once.  A confirmed booking needs "
        "both parties: the first call records the request, the other "
        "party's call finalises it and claws back the confirmation reward."
    ),
)
@limiter.limit(settings.rate_limit)
async def cancel_booking(
    request: Request,
    booking_id: int,
    body: CancelRequest,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    result = await service.cancel(booking_id, principal, body.cancellation_reason)
    return _action(result, principal)


@router.put(
    "/{booking_id}/complete",
    response_model=BookingActionResponse,
    summary="Complete a confirmed booking (driver)",
)
@limiter.limit(settings.rate_limit)
async def complete_booking(
    request: Request,
    booking_id: int,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    return _action(await service.complete(booking_id, principal), principal)


# ── Milestone codes ───────────────────────────────────────────────────


@router.post(
    "/{booking_id}/otp/{kind}/generate",
    status_code=201,
    response_model=OtpResponse,
    summary="Issue a pickup or delivery code",
)
@limiter.limit(settings.rate_limit)
async def generate_otp(
    request: Request,
    booking_id: int,
    kind: OtpKind,
    body: Optional[OtpGenerateRequest] = None,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    otp = await service.generate_otp(
        booking_id, kind, principal, body.issued_to if body else None
    )
    return OtpResponse(
        otp_id=otp.id,
        booking_id=otp.booking_id,
        kind=otp.kind,
        code=otp.code,
        issued_to=otp.issued_to,
        expires_at=otp.expires_at,
        max_attempts=otp.max_attempts,
    )


@router.post(
    "/{booking_id}/otp/{kind}/verify",
    response_model=BookingActionResponse,
    summary="Verify a pickup or delivery code",
    description=(
        "Advances the booking to picked_up / delivered and credits the "
        "stage reward once the slab's minimum elapsed time has passed."
    ),
)
@limiter.limit(settings.rate_limit)
async def verify_otp(
    request: Request,
    booking_id: int,
    kind: OtpKind,
    body: OtpVerifyRequest,
    principal: Principal = Depends(get_principal),
    service: BookingService = Depends(get_booking_service),
):
    result = await service.verify_otp(booking_id, kind, body.otp, principal)
    return _action(result, principal)
