"""
Token wallet endpoints (drivers)
================================

GET /api/v1/tokens/balance      -- caller's current balance
GET /api/v1/tokens/transactions -- caller's ledger entries, newest first
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from freightbook.api.dependencies import get_db, require_driver
from freightbook.api.middleware import limiter
from freightbook.api.schemas import (
    BalanceResponse,
    TokenTransactionListResponse,
    TokenTransactionResponse,
)
from freightbook.config import settings
from freightbook.domain.entities import Principal
from freightbook.services.ledger import TokenLedger

router = APIRouter(prefix="/tokens", tags=["tokens"])


@router.get("/balance", response_model=BalanceResponse, summary="Token balance")
@limiter.limit(settings.rate_limit)
async def get_balance(
    request: Request,
    principal: Principal = Depends(require_driver),
    db: AsyncSession = Depends(get_db),
):
    balance = await TokenLedger(db).balance(principal.user_id)
    return BalanceResponse(driver_id=principal.user_id, balance=balance)


@router.get(
    "/transactions",
    response_model=TokenTransactionListResponse,
    summary="Ledger entries",
)
@limiter.limit(settings.rate_limit)
async def list_transactions(
    request: Request,
    page: int = Query(1, ge=1),
    size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    principal: Principal = Depends(require_driver),
    db: AsyncSession = Depends(get_db),
):
    items, total = await TokenLedger(db).transactions(
        principal.user_id, offset=(page - 1) * size, limit=size
    )
    return TokenTransactionListResponse(
        items=[TokenTransactionResponse.model_validate(t) for t in items],
        total=total,
        page=page,
        size=size,
    )
