"""Reward settings provider: resolves and publishes reward configuration."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from freightbook.domain.clock import utcnow
from freightbook.domain.entities import DistanceSlab, RewardSettings
from freightbook.domain.errors import ConfigurationMissing, ValidationFailed
from freightbook.domain.rewards import validate_slabs
from freightbook.infrastructure.models import DistanceSlabModel, RewardSettingsModel
from freightbook.infrastructure.repositories import RewardSettingsRepository

logger = logging.getLogger(__name__)


def to_snapshot(model: RewardSettingsModel) -> RewardSettings:
    return RewardSettings(
        id=model.id,
        effective_at=model.effective_at,
        confirmation_pct=model.confirmation_pct,
        pickup_pct=model.pickup_pct,
        delivery_pct=model.delivery_pct,
        slabs=tuple(
            DistanceSlab(
                min_km=s.min_km,
                max_km=s.max_km,
                base_tokens=s.base_tokens,
                min_minutes_confirm_to_pickup=s.min_minutes_confirm_to_pickup,
                min_minutes_pickup_to_delivery=s.min_minutes_pickup_to_delivery,
            )
            for s in model.slabs
        ),
    )


class RewardSettingsProvider:
    """Always answers with the configuration active *now*.

    Nothing is cached: each milestone of an in-flight booking is paid with
    whatever settings are active when that milestone is reached.
    """

    def __init__(self, session: AsyncSession):
        self.repo = RewardSettingsRepository(session)

    async def active_settings(self) -> RewardSettings:
        model = await self.repo.get_active()
        if model is None:
            raise ConfigurationMissing("No active reward settings configured")
        return to_snapshot(model)

    async def publish(
        self,
        *,
        confirmation_pct: float,
        pickup_pct: float,
        delivery_pct: float,
        slabs: Sequence[DistanceSlab],
        added_by: Optional[int],
        effective_at: Optional[datetime] = None,
    ) -> RewardSettingsModel:
        problems = [
            f"{name} must be between 0 and 100"
            for name, pct in (
                ("confirmation_pct", confirmation_pct),
                ("pickup_pct", pickup_pct),
                ("delivery_pct", delivery_pct),
            )
            if not 0 <= pct <= 100
        ]
        problems.extend(validate_slabs(slabs))
        if problems:
            raise ValidationFailed("Invalid reward settings", errors=problems)

        model = RewardSettingsModel(
            confirmation_pct=confirmation_pct,
            pickup_pct=pickup_pct,
            delivery_pct=delivery_pct,
            effective_at=effective_at or utcnow(),
            added_by=added_by,
            is_active=True,
            slabs=[
                DistanceSlabModel(
                    position=i,
                    min_km=s.min_km,
                    max_km=s.max_km,
                    base_tokens=s.base_tokens,
                    min_minutes_confirm_to_pickup=s.min_minutes_confirm_to_pickup,
                    min_minutes_pickup_to_delivery=s.min_minutes_pickup_to_delivery,
                )
                for i, s in enumerate(slabs)
            ],
        )
        model = await self.repo.create(model)
        logger.info(
            "Reward settings %s published (%d slabs)", model.id, len(slabs)
        )
        return model

    async def history(self) -> list[RewardSettingsModel]:
        return await self.repo.list_all()
