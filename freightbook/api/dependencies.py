"""FastAPI dependency injection helpers."""

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from freightbook.domain.clock import utcnow
from freightbook.domain.entities import Principal
from freightbook.domain.enums import UserRole
from freightbook.domain.errors import Forbidden, Unauthenticated
from freightbook.infrastructure.database import async_session_factory
from freightbook.infrastructure.repositories import UserRepository
from freightbook.services.bookings import BookingService


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_clock():
    """Time source for services; overridden in tests."""
    return utcnow


async def get_principal(
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Resolve the caller once from the ``X-User-Id`` header set by the gateway."""
    if not x_user_id:
        raise Unauthenticated("Missing X-User-Id header")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise Unauthenticated("Malformed X-User-Id header")
    user = await UserRepository(db).get_by_id(user_id)
    if user is None or not user.is_active:
        raise Unauthenticated("Unknown or inactive user")
    return Principal(user_id=user.id, role=UserRole(user.role))


async def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise Forbidden("Admin access required")
    return principal


async def require_driver(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.role != UserRole.DRIVER:
        raise Forbidden("Only drivers hold a token wallet")
    return principal


def get_booking_service(
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
) -> BookingService:
    return BookingService(db, clock=clock)
