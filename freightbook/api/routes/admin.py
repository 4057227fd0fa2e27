"""
Admin / observability endpoints
===============================

GET  /api/v1/admin/health                -- simple health check
POST /api/v1/admin/reward-settings       -- publish a new reward configuration
GET  /api/v1/admin/reward-settings       -- configuration history, newest first
GET  /api/v1/admin/reward-claims         -- reward claims by status
POST /api/v1/admin/reward-claims/settle  -- re-apply pending claims now
POST /api/v1/admin/tokens/credit         -- manual wallet credit
POST /api/v1/admin/tokens/debit          -- manual wallet debit
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from freightbook.api.dependencies import get_clock, get_db, require_admin
from freightbook.api.middleware import limiter
from freightbook.api.schemas import (
    HealthResponse,
    RewardClaimResponse,
    RewardSettingsRequest,
    RewardSettingsResponse,
    SettleResponse,
    TokenTransactionResponse,
    WalletAdjustRequest,
    WalletAdjustResponse,
)
from freightbook.config import settings
from freightbook.domain.entities import DistanceSlab, Principal
from freightbook.domain.enums import LedgerDirection, RewardClaimStatus
from freightbook.infrastructure.repositories import RewardClaimRepository
from freightbook.services.ledger import TokenLedger
from freightbook.services.reward_settings import RewardSettingsProvider
from freightbook.services.settlement import RewardSettlement

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()


@router.post(
    "/reward-settings",
    status_code=201,
    response_model=RewardSettingsResponse,
    summary="Publish reward settings",
    description=(
        "The newest active settings apply to every milestone reached from "
        "now on, including milestones of bookings already in flight."
    ),
)
@limiter.limit(settings.rate_limit)
async def publish_reward_settings(
    request: Request,
    body: RewardSettingsRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    model = await RewardSettingsProvider(db).publish(
        confirmation_pct=body.confirmation_pct,
        pickup_pct=body.pickup_pct,
        delivery_pct=body.delivery_pct,
        slabs=[DistanceSlab(**slab.model_dump()) for slab in body.slabs],
        added_by=principal.user_id,
        effective_at=body.effective_at,
    )
    return model


@router.get(
    "/reward-settings",
    response_model=list[RewardSettingsResponse],
    summary="Reward settings history",
)
@limiter.limit(settings.rate_limit)
async def list_reward_settings(
    request: Request,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await RewardSettingsProvider(db).history()


@router.get(
    "/reward-claims",
    response_model=list[RewardClaimResponse],
    summary="Reward claims by status",
)
@limiter.limit(settings.rate_limit)
async def list_reward_claims(
    request: Request,
    status: Optional[RewardClaimStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    statuses = [status] if status else list(RewardClaimStatus)
    return await RewardClaimRepository(db).list_by_status(statuses, limit=limit)


@router.post(
    "/reward-claims/settle",
    response_model=SettleResponse,
    summary="Apply pending reward claims now",
)
@limiter.limit(settings.rate_limit)
async def settle_reward_claims(
    request: Request,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    applied = await RewardSettlement(db, clock=clock).settle_pending()
    return SettleResponse(applied=applied)


# ── Wallet adjustments ────────────────────────────────────────────────


async def _adjust(
    db: AsyncSession,
    direction: LedgerDirection,
    body: WalletAdjustRequest,
    principal: Principal,
) -> WalletAdjustResponse:
    ledger = TokenLedger(db)
    default_reason = (
        "Manual credit" if direction == LedgerDirection.CREDIT else "Manual debit"
    )
    txn = await ledger.adjust(
        direction,
        body.driver_id,
        body.amount,
        body.reason or default_reason,
        principal.user_id,
        reference=body.reference,
    )
    return WalletAdjustResponse(
        balance=await ledger.balance(body.driver_id),
        transaction=TokenTransactionResponse.model_validate(txn),
    )


@router.post(
    "/tokens/credit",
    status_code=201,
    response_model=WalletAdjustResponse,
    summary="Credit a driver's wallet",
    description="Repeating a request with the same ``reference`` credits once.",
)
@limiter.limit(settings.rate_limit)
async def credit_wallet(
    request: Request,
    body: WalletAdjustRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await _adjust(db, LedgerDirection.CREDIT, body, principal)


@router.post(
    "/tokens/debit",
    response_model=WalletAdjustResponse,
    summary="Debit a driver's wallet",
    description="Refused with ``ledger_failure`` when the balance is too low.",
)
@limiter.limit(settings.rate_limit)
async def debit_wallet(
    request: Request,
    body: WalletAdjustRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await _adjust(db, LedgerDirection.DEBIT, body, principal)
