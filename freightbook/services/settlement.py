"""
Reward settlement
=================

Milestone rewards and clawbacks reach the ledger in two steps:

1. **Queue** -- inside the transaction that moves the booking, a
   ``reward_claims`` row is inserted with a per-(booking, stage) reference.
   The row is the booking-side "already rewarded" marker: the stage cannot
   be claimed twice because the reference is unique.
2. **Apply** -- after that transaction commits, the claim is written to the
   ledger in its own transaction, using the same reference as the ledger
   idempotency key.  A failure is recorded on the claim and left for the
   reward settler worker; it never undoes the status transition.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from freightbook.config import Settings, settings as default_settings
from freightbook.domain.clock import utcnow
from freightbook.domain.entities import RewardSettings
from freightbook.domain.enums import LedgerDirection, RewardClaimStatus, RewardStage
from freightbook.domain.errors import LedgerFailure
from freightbook.domain.rewards import compute_stage_tokens
from freightbook.infrastructure.models import BookingModel, RewardClaimModel
from freightbook.infrastructure.repositories import RewardClaimRepository

from .ledger import TokenLedger

logger = logging.getLogger(__name__)

_REASONS = {
    RewardStage.CONFIRMATION: "Booking confirmation reward for booking {id} ({km:.1f} km)",
    RewardStage.PICKUP: "Pickup reward for booking {id} ({km:.1f} km)",
    RewardStage.DELIVERY: "Delivery reward for booking {id} ({km:.1f} km)",
    RewardStage.CONFIRMATION_CLAWBACK: (
        "Clawback: booking cancelled after confirmation ({km:.1f} km, booking {id})"
    ),
}


def claim_reference(booking_id: int, stage: RewardStage) -> str:
    return f"booking:{booking_id}:{stage.value}"


class RewardSettlement:
    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable = utcnow,
        config: Optional[Settings] = None,
    ):
        self.session = session
        self.claims = RewardClaimRepository(session)
        self.clock = clock
        self.config = config or default_settings

    async def queue(
        self,
        booking: BookingModel,
        stage: RewardStage,
        settings: RewardSettings,
        distance_km: float,
        actor_id: Optional[int],
    ) -> Optional[RewardClaimModel]:
        """Record the ledger intent for *stage*; zero-token stages queue nothing."""
        amount = compute_stage_tokens(settings, distance_km, stage)
        if amount <= 0:
            logger.info(
                "Booking %s: no %s tokens for %.1f km", booking.id, stage.value, distance_km
            )
            return None
        return await self._claim(booking, stage, amount, distance_km, actor_id)

    async def queue_clawback(
        self, booking: BookingModel, distance_km: float, actor_id: Optional[int]
    ) -> Optional[RewardClaimModel]:
        """Queue the reversal of the confirmation reward, for the amount granted.

        Nothing is queued when no confirmation claim exists or it was parked
        as failed, since no tokens reached the wallet.
        """
        granted = await self.claims.get_by_reference(
            claim_reference(booking.id, RewardStage.CONFIRMATION)
        )
        if granted is None or granted.status == RewardClaimStatus.FAILED:
            logger.info("Booking %s: no confirmation reward to claw back", booking.id)
            return None
        return await self._claim(
            booking,
            RewardStage.CONFIRMATION_CLAWBACK,
            granted.amount,
            distance_km,
            actor_id,
        )

    async def _claim(
        self,
        booking: BookingModel,
        stage: RewardStage,
        amount: int,
        distance_km: float,
        actor_id: Optional[int],
    ) -> RewardClaimModel:
        reference = claim_reference(booking.id, stage)
        existing = await self.claims.get_by_reference(reference)
        if existing is not None:
            logger.warning("Booking %s: %s already claimed", booking.id, stage.value)
            return existing

        direction = (
            LedgerDirection.DEBIT
            if stage == RewardStage.CONFIRMATION_CLAWBACK
            else LedgerDirection.CREDIT
        )
        return await self.claims.create(
            RewardClaimModel(
                booking_id=booking.id,
                driver_id=booking.driver_id,
                stage=stage,
                direction=direction,
                amount=amount,
                reference=reference,
                reason=_REASONS[stage].format(id=booking.id, km=distance_km),
                actor_id=actor_id,
                status=RewardClaimStatus.PENDING,
                attempts=0,
                created_at=self.clock(),
            )
        )

    async def apply(self, claim: RewardClaimModel) -> bool:
        """Write *claim* to the ledger and commit. Returns True when applied."""
        claim_id = claim.id
        ledger = TokenLedger(self.session)
        try:
            if claim.direction == LedgerDirection.CREDIT:
                await ledger.credit(
                    claim.driver_id,
                    claim.amount,
                    claim.reason,
                    claim.actor_id,
                    reference=claim.reference,
                )
            else:
                await ledger.debit(
                    claim.driver_id,
                    claim.amount,
                    claim.reason,
                    claim.actor_id,
                    reference=claim.reference,
                )
            claim.status = RewardClaimStatus.APPLIED
            claim.applied_at = self.clock()
            claim.attempts = claim.attempts + 1
            claim.last_error = None
            await self.session.commit()
            return True
        except (LedgerFailure, SQLAlchemyError) as exc:
            await self.session.rollback()
            logger.exception("Reward claim %s could not be applied", claim_id)
            await self._record_failure(claim_id, str(exc))
            return False

    async def _record_failure(self, claim_id: int, error: str) -> None:
        claim = await self.claims.get_by_id(claim_id)
        if claim is None:
            return
        claim.attempts = claim.attempts + 1
        claim.last_error = error[:1000]
        if claim.attempts >= self.config.reward_max_attempts:
            claim.status = RewardClaimStatus.FAILED
            logger.error(
                "Reward claim %s (%s) parked as failed after %d attempts",
                claim_id,
                claim.reference,
                claim.attempts,
            )
        await self.session.commit()

    async def apply_all(self, claims: list[RewardClaimModel]) -> int:
        # A failed apply rolls back and expires every loaded instance, so each
        # claim is re-read by id before it is applied.
        claim_ids = [claim.id for claim in claims]
        applied = 0
        for claim_id in claim_ids:
            claim = await self.claims.get_by_id(claim_id)
            if claim is None or claim.status != RewardClaimStatus.PENDING:
                continue
            if await self.apply(claim):
                applied += 1
        return applied

    async def settle_pending(self, limit: int = 100) -> int:
        """Retry every pending claim, oldest first. Returns the number applied."""
        pending = await self.claims.list_by_status(
            [RewardClaimStatus.PENDING], limit=limit
        )
        applied = await self.apply_all(pending)
        if pending:
            logger.info("Reward settler: %d/%d pending claims applied", applied, len(pending))
        return applied
