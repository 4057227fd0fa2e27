"""
Domain value objects and lifecycle rules.

Patterns used
-------------
- **State Pattern** on bookings: ``check_transition`` enforces the lifecycle
  (pending -> confirmed -> picked_up -> delivered, with rejected / cancelled /
  completed branches) against ``BOOKING_TRANSITIONS``.
- ``Principal`` is resolved once at the API boundary and passed into the
  services as an immutable value; role checks never re-read the user.
- ``RewardSettings`` / ``DistanceSlab`` are immutable snapshots of the active
  reward configuration taken at the moment a milestone is settled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .enums import BOOKING_TRANSITIONS, BookingStatus, RewardStage, UserRole
from .errors import StateViolation


def check_transition(current: BookingStatus, new_status: BookingStatus) -> None:
    """Raise ``StateViolation`` unless *current* -> *new_status* is legal."""
    allowed = BOOKING_TRANSITIONS.get(BookingStatus(current), set())
    if new_status not in allowed:
        raise StateViolation(
            f"Cannot move booking from {BookingStatus(current).value} "
            f"to {new_status.value}"
        )


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class DistanceSlab:
    min_km: float  # inclusive
    max_km: float  # exclusive
    base_tokens: int
    min_minutes_confirm_to_pickup: int
    min_minutes_pickup_to_delivery: int

    def contains(self, distance_km: float) -> bool:
        return self.min_km <= distance_km < self.max_km


@dataclass(frozen=True)
class RewardSettings:
    confirmation_pct: float
    pickup_pct: float
    delivery_pct: float
    slabs: tuple[DistanceSlab, ...] = field(default_factory=tuple)
    id: Optional[int] = None
    effective_at: Optional[datetime] = None

    def pct_for(self, stage: RewardStage) -> float:
        if stage in (RewardStage.CONFIRMATION, RewardStage.CONFIRMATION_CLAWBACK):
            return self.confirmation_pct
        if stage == RewardStage.PICKUP:
            return self.pickup_pct
        return self.delivery_pct
