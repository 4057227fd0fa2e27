"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Every state-changing write that has to win
against a concurrent writer is a conditional ``UPDATE`` whose ``WHERE``
clause restates the precondition; callers inspect the returned row count.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    BookingModel,
    BookingOtpModel,
    ConnectRequestModel,
    CustomerRequestModel,
    RewardClaimModel,
    RewardSettingsModel,
    TokenTransactionModel,
    TokenWalletModel,
    TripModel,
    UserModel,
)
from freightbook.domain.enums import (
    OCCUPYING_STATUSES,
    BookingStatus,
    ConnectRequestStatus,
    CustomerRequestStatus,
    OtpKind,
    RewardClaimStatus,
)


def _conditional(model, *criteria):
    return (
        update(model)
        .where(*criteria)
        .execution_options(synchronize_session=False)
    )


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[UserModel]:
        return await self.session.get(UserModel, user_id)


class TripRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, trip_id: int) -> Optional[TripModel]:
        return await self.session.get(TripModel, trip_id)

    async def lock(self, trip_id: int) -> Optional[TripModel]:
        """SELECT ... FOR UPDATE to serialise confirmations on one trip."""
        result = await self.session.execute(
            select(TripModel).where(TripModel.id == trip_id).with_for_update()
        )
        return result.scalar_one_or_none()


class CustomerRequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, request_id: int) -> Optional[CustomerRequestModel]:
        return await self.session.get(CustomerRequestModel, request_id)

    async def lock(self, request_id: int) -> Optional[CustomerRequestModel]:
        result = await self.session.execute(
            select(CustomerRequestModel)
            .where(CustomerRequestModel.id == request_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def set_status(
        self, request_id: int, status: CustomerRequestStatus
    ) -> None:
        await self.session.execute(
            _conditional(
                CustomerRequestModel, CustomerRequestModel.id == request_id
            ).values(status=status)
        )


class ConnectRequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, connect_id: int) -> Optional[ConnectRequestModel]:
        return await self.session.get(ConnectRequestModel, connect_id)

    async def reject_open_for_customer_request(
        self, request_id: int, now: datetime
    ) -> int:
        result = await self.session.execute(
            _conditional(
                ConnectRequestModel,
                ConnectRequestModel.customer_request_id == request_id,
                ConnectRequestModel.status.in_(
                    [ConnectRequestStatus.PENDING, ConnectRequestStatus.HOLD]
                ),
                ConnectRequestModel.is_active.is_(True),
            ).values(status=ConnectRequestStatus.REJECTED, rejected_at=now)
        )
        return result.rowcount or 0


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, booking: BookingModel) -> BookingModel:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def get_by_id(self, booking_id: int) -> Optional[BookingModel]:
        return await self.session.get(BookingModel, booking_id)

    async def get_active(self, booking_id: int) -> Optional[BookingModel]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.id == booking_id, BookingModel.is_active.is_(True))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def refresh(self, booking: BookingModel) -> BookingModel:
        await self.session.refresh(booking)
        return booking

    async def find_open_for_pair(
        self, trip_id: int, request_id: int
    ) -> Optional[BookingModel]:
        result = await self.session.execute(
            select(BookingModel)
            .where(
                BookingModel.trip_id == trip_id,
                BookingModel.customer_request_id == request_id,
                BookingModel.is_active.is_(True),
                BookingModel.status.in_(
                    [BookingStatus.PENDING, BookingStatus.CONFIRMED]
                ),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_live_for_customer_request(
        self, request_id: int
    ) -> Optional[BookingModel]:
        result = await self.session.execute(
            select(BookingModel)
            .where(
                BookingModel.customer_request_id == request_id,
                BookingModel.is_active.is_(True),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_occupying(
        self, trip_id: int, request_id: int, exclude_id: int
    ) -> Optional[BookingModel]:
        """Another booking already holding the trip or the customer request."""
        result = await self.session.execute(
            select(BookingModel)
            .where(
                or_(
                    BookingModel.trip_id == trip_id,
                    BookingModel.customer_request_id == request_id,
                ),
                BookingModel.id != exclude_id,
                BookingModel.status.in_(list(OCCUPYING_STATUSES)),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        booking_id: int,
        from_status: BookingStatus,
        **values: Any,
    ) -> int:
        """Apply *values* only if the booking is still in *from_status*."""
        result = await self.session.execute(
            _conditional(
                BookingModel,
                BookingModel.id == booking_id,
                BookingModel.status == from_status,
                BookingModel.is_active.is_(True),
            ).values(**values)
        )
        return result.rowcount or 0

    async def request_cancellation(
        self, booking_id: int, user_id: int, reason: str, now: datetime
    ) -> int:
        result = await self.session.execute(
            _conditional(
                BookingModel,
                BookingModel.id == booking_id,
                BookingModel.status == BookingStatus.CONFIRMED,
                BookingModel.cancellation_pending.is_(False),
                BookingModel.is_active.is_(True),
            ).values(
                cancellation_pending=True,
                cancellation_requested_by=user_id,
                cancellation_requested_at=now,
                cancellation_reason=reason,
            )
        )
        return result.rowcount or 0

    async def finalize_cancellation(
        self, booking_id: int, requested_by: int, user_id: int, now: datetime
    ) -> int:
        """Second party agrees; only one finaliser can see the pending flag."""
        result = await self.session.execute(
            _conditional(
                BookingModel,
                BookingModel.id == booking_id,
                BookingModel.status == BookingStatus.CONFIRMED,
                BookingModel.cancellation_pending.is_(True),
                BookingModel.cancellation_requested_by == requested_by,
                BookingModel.is_active.is_(True),
            ).values(
                status=BookingStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=user_id,
                cancellation_pending=False,
                cancellation_accepted_by=user_id,
                cancellation_accepted_at=now,
            )
        )
        return result.rowcount or 0

    async def reject_competing_pending(
        self, trip_id: int, request_id: int, exclude_id: int, now: datetime
    ) -> int:
        result = await self.session.execute(
            _conditional(
                BookingModel,
                or_(
                    BookingModel.trip_id == trip_id,
                    BookingModel.customer_request_id == request_id,
                ),
                BookingModel.id != exclude_id,
                BookingModel.status == BookingStatus.PENDING,
            ).values(status=BookingStatus.REJECTED, rejected_at=now)
        )
        return result.rowcount or 0

    async def soft_delete(self, booking_id: int, user_id: int, now: datetime) -> int:
        result = await self.session.execute(
            _conditional(
                BookingModel,
                BookingModel.id == booking_id,
                BookingModel.is_active.is_(True),
            ).values(is_active=False, deleted_at=now, deleted_by=user_id)
        )
        return result.rowcount or 0

    # ── Reads ─────────────────────────────────────────────────────────

    @staticmethod
    def _visibility(
        user_id: Optional[int],
        status: Optional[BookingStatus] = None,
        trip_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list:
        criteria = [BookingModel.is_active.is_(True)]
        if user_id is not None:
            criteria.append(
                or_(
                    BookingModel.initiator_id == user_id,
                    BookingModel.recipient_id == user_id,
                )
            )
        if status is not None:
            criteria.append(BookingModel.status == status)
        if trip_id is not None:
            criteria.append(BookingModel.trip_id == trip_id)
        if date_from is not None:
            criteria.append(BookingModel.pickup_date >= date_from)
        if date_to is not None:
            criteria.append(BookingModel.pickup_date <= date_to)
        return criteria

    async def list_visible(
        self, *, offset: int, limit: int, **filters: Any
    ) -> tuple[list[BookingModel], int]:
        criteria = self._visibility(**filters)
        result = await self.session.execute(
            select(BookingModel)
            .where(and_(*criteria))
            .order_by(BookingModel.created_at.desc(), BookingModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        total = await self.session.execute(
            select(func.count()).select_from(BookingModel).where(and_(*criteria))
        )
        return list(result.scalars().all()), total.scalar() or 0

    async def status_breakdown(
        self, user_id: Optional[int]
    ) -> list[tuple[BookingStatus, int, Optional[float]]]:
        result = await self.session.execute(
            select(
                BookingModel.status,
                func.count(),
                func.sum(BookingModel.price),
            )
            .where(and_(*self._visibility(user_id)))
            .group_by(BookingModel.status)
        )
        return [tuple(row) for row in result.all()]


class OtpRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, otp: BookingOtpModel) -> BookingOtpModel:
        self.session.add(otp)
        await self.session.flush()
        return otp

    async def deactivate_active(self, booking_id: int, kind: OtpKind) -> int:
        result = await self.session.execute(
            _conditional(
                BookingOtpModel,
                BookingOtpModel.booking_id == booking_id,
                BookingOtpModel.kind == kind,
                BookingOtpModel.is_active.is_(True),
            ).values(is_active=False)
        )
        return result.rowcount or 0

    async def latest_active(
        self, booking_id: int, kind: OtpKind
    ) -> Optional[BookingOtpModel]:
        result = await self.session.execute(
            select(BookingOtpModel)
            .where(
                BookingOtpModel.booking_id == booking_id,
                BookingOtpModel.kind == kind,
                BookingOtpModel.is_active.is_(True),
            )
            .order_by(BookingOtpModel.created_at.desc(), BookingOtpModel.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def register_failed_attempt(
        self, otp_id: int
    ) -> Optional[tuple[int, bool]]:
        """Atomically bump ``attempts``; deactivate once the limit is reached.

        Returns ``(attempts, is_active)`` after the increment, or ``None`` if
        the challenge was no longer active.
        """
        new_attempts = BookingOtpModel.attempts + 1
        result = await self.session.execute(
            _conditional(
                BookingOtpModel,
                BookingOtpModel.id == otp_id,
                BookingOtpModel.is_active.is_(True),
            )
            .values(
                attempts=new_attempts,
                is_active=new_attempts < BookingOtpModel.max_attempts,
            )
            .returning(BookingOtpModel.attempts, BookingOtpModel.is_active)
        )
        row = result.first()
        if row is None:
            return None
        return int(row[0]), bool(row[1])

    async def consume(self, otp_id: int, now: datetime) -> int:
        result = await self.session.execute(
            _conditional(
                BookingOtpModel,
                BookingOtpModel.id == otp_id,
                BookingOtpModel.is_active.is_(True),
            ).values(is_active=False, consumed_at=now)
        )
        return result.rowcount or 0


class RewardSettingsRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active(self) -> Optional[RewardSettingsModel]:
        result = await self.session.execute(
            select(RewardSettingsModel)
            .where(RewardSettingsModel.is_active.is_(True))
            .order_by(
                RewardSettingsModel.effective_at.desc(),
                RewardSettingsModel.id.desc(),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(self, model: RewardSettingsModel) -> RewardSettingsModel:
        self.session.add(model)
        await self.session.flush()
        return model

    async def list_all(self) -> list[RewardSettingsModel]:
        result = await self.session.execute(
            select(RewardSettingsModel).order_by(
                RewardSettingsModel.effective_at.desc(),
                RewardSettingsModel.id.desc(),
            )
        )
        return list(result.scalars().all())


class TokenRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_reference(
        self, reference: str
    ) -> Optional[TokenTransactionModel]:
        result = await self.session.execute(
            select(TokenTransactionModel).where(
                TokenTransactionModel.reference == reference
            )
        )
        return result.scalar_one_or_none()

    async def get_wallet(self, driver_id: int) -> Optional[TokenWalletModel]:
        result = await self.session.execute(
            select(TokenWalletModel)
            .where(TokenWalletModel.driver_id == driver_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_wallet(self, driver_id: int) -> TokenWalletModel:
        wallet = await self.get_wallet(driver_id)
        if wallet is None:
            wallet = TokenWalletModel(driver_id=driver_id, balance=0)
            self.session.add(wallet)
            await self.session.flush()
        return wallet

    async def add_to_balance(self, driver_id: int, amount: int) -> int:
        result = await self.session.execute(
            _conditional(
                TokenWalletModel, TokenWalletModel.driver_id == driver_id
            ).values(balance=TokenWalletModel.balance + amount)
        )
        return result.rowcount or 0

    async def withdraw(self, driver_id: int, amount: int) -> int:
        """Debit the wallet only if it holds at least *amount* tokens."""
        result = await self.session.execute(
            _conditional(
                TokenWalletModel,
                TokenWalletModel.driver_id == driver_id,
                TokenWalletModel.balance >= amount,
            ).values(balance=TokenWalletModel.balance - amount)
        )
        return result.rowcount or 0

    async def add_transaction(
        self, txn: TokenTransactionModel
    ) -> TokenTransactionModel:
        self.session.add(txn)
        await self.session.flush()
        return txn

    async def list_transactions(
        self, driver_id: int, *, offset: int, limit: int
    ) -> tuple[list[TokenTransactionModel], int]:
        result = await self.session.execute(
            select(TokenTransactionModel)
            .where(TokenTransactionModel.driver_id == driver_id)
            .order_by(
                TokenTransactionModel.created_at.desc(),
                TokenTransactionModel.id.desc(),
            )
            .offset(offset)
            .limit(limit)
        )
        total = await self.session.execute(
            select(func.count())
            .select_from(TokenTransactionModel)
            .where(TokenTransactionModel.driver_id == driver_id)
        )
        return list(result.scalars().all()), total.scalar() or 0


class RewardClaimRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, claim: RewardClaimModel) -> RewardClaimModel:
        self.session.add(claim)
        await self.session.flush()
        return claim

    async def get_by_id(self, claim_id: int) -> Optional[RewardClaimModel]:
        return await self.session.get(RewardClaimModel, claim_id)

    async def get_by_reference(self, reference: str) -> Optional[RewardClaimModel]:
        result = await self.session.execute(
            select(RewardClaimModel).where(RewardClaimModel.reference == reference)
        )
        return result.scalar_one_or_none()

    async def list_by_status(
        self, statuses: Iterable[RewardClaimStatus], limit: int = 100
    ) -> list[RewardClaimModel]:
        result = await self.session.execute(
            select(RewardClaimModel)
            .where(RewardClaimModel.status.in_(list(statuses)))
            .order_by(RewardClaimModel.created_at, RewardClaimModel.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_for_booking(self, booking_id: int) -> list[RewardClaimModel]:
        result = await self.session.execute(
            select(RewardClaimModel)
            .where(RewardClaimModel.booking_id == booking_id)
            .order_by(RewardClaimModel.id)
        )
        return list(result.scalars().all())
