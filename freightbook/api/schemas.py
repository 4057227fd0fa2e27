"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from freightbook.domain.enums import (
    BookingStatus,
    LedgerDirection,
    OtpKind,
    RewardClaimStatus,
    RewardStage,
    UserRole,
)


# ── Requests ──────────────────────────────────────────────────────────


class BookingCreateRequest(BaseModel):
    trip_id: int
    customer_request_id: int
    connect_request_id: int
    price: float = Field(..., ge=0)
    pickup_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)


class BookingUpdateRequest(BaseModel):
    price: Optional[float] = Field(None, ge=0)
    pickup_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)


class CancelRequest(BaseModel):
    cancellation_reason: str = Field(..., min_length=3, max_length=500)


class OtpGenerateRequest(BaseModel):
    issued_to: Optional[UserRole] = Field(
        None,
        description="Party the code is handed to; defaults to the counterparty.",
    )


class OtpVerifyRequest(BaseModel):
    otp: str = Field(..., min_length=4, max_length=12, pattern=r"^\s*\d+\s*$")


class DistanceSlabIn(BaseModel):
    min_km: float = Field(..., ge=0)
    max_km: float = Field(..., gt=0)
    base_tokens: int = Field(..., ge=0)
    min_minutes_confirm_to_pickup: int = Field(0, ge=0)
    min_minutes_pickup_to_delivery: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _range(self):
        if self.max_km <= self.min_km:
            raise ValueError("max_km must be greater than min_km")
        return self


class RewardSettingsRequest(BaseModel):
    confirmation_pct: float = Field(..., ge=0, le=100)
    pickup_pct: float = Field(..., ge=0, le=100)
    delivery_pct: float = Field(..., ge=0, le=100)
    slabs: list[DistanceSlabIn] = Field(..., min_length=1)
    effective_at: Optional[datetime] = None


class WalletAdjustRequest(BaseModel):
    driver_id: int
    amount: int = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=255)
    reference: Optional[str] = Field(None, min_length=1, max_length=96)


# ── Responses ─────────────────────────────────────────────────────────


class BookingResponse(BaseModel):
    id: int
    trip_id: int
    customer_request_id: int
    connect_request_id: Optional[int] = None
    driver_id: int
    customer_id: int
    initiator_id: int
    recipient_id: int
    price: Optional[float] = None
    pickup_date: Optional[datetime] = None
    notes: Optional[str] = None
    status: BookingStatus
    recipient_accepted: bool
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    pickup_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancellation_pending: bool = False
    cancellation_requested_by: Optional[int] = None
    cancellation_requested_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[int] = None
    can_respond_to_cancellation: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BookingActionResponse(BaseModel):
    message: str
    booking: BookingResponse
    tokens_awarded: int = 0


class BookingListResponse(BaseModel):
    items: list[BookingResponse]
    total: int
    page: int
    size: int
    pages: int


class BookingStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    total_revenue: float
    avg_price: Optional[float] = None


class OtpResponse(BaseModel):
    otp_id: int
    booking_id: int
    kind: OtpKind
    code: str
    issued_to: UserRole
    expires_at: datetime
    max_attempts: int


class BalanceResponse(BaseModel):
    driver_id: int
    balance: int


class TokenTransactionResponse(BaseModel):
    id: int
    driver_id: int
    direction: LedgerDirection
    amount: int
    reason: Optional[str] = None
    reference: Optional[str] = None
    actor_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TokenTransactionListResponse(BaseModel):
    items: list[TokenTransactionResponse]
    total: int
    page: int
    size: int


class DistanceSlabResponse(BaseModel):
    min_km: float
    max_km: float
    base_tokens: int
    min_minutes_confirm_to_pickup: int
    min_minutes_pickup_to_delivery: int

    model_config = {"from_attributes": True}


class RewardSettingsResponse(BaseModel):
    id: int
    is_active: bool
    confirmation_pct: float
    pickup_pct: float
    delivery_pct: float
    effective_at: datetime
    added_by: Optional[int] = None
    slabs: list[DistanceSlabResponse] = []

    model_config = {"from_attributes": True}


class RewardClaimResponse(BaseModel):
    id: int
    booking_id: int
    driver_id: int
    stage: RewardStage
    direction: LedgerDirection
    amount: int
    reference: str
    reason: Optional[str] = None
    status: RewardClaimStatus
    attempts: int
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SettleResponse(BaseModel):
    applied: int


class WalletAdjustResponse(BaseModel):
    balance: int
    transaction: TokenTransactionResponse


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    error: str
    detail: str
