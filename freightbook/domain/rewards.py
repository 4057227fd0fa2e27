"""
Distance-slab reward rules
==========================

Formula
-------
stage_tokens = floor(slab.base_tokens x stage_pct / 100)

* The slab is the first one whose ``[min_km, max_km)`` range holds the
  shipment distance.  Slabs are expected to be ordered and non-overlapping;
  if an author declares overlapping slabs the first declared wins.
* Stage percentages are independent (0..100 each) and need not sum to 100.

Time gates
----------
A pickup may only be settled once ``min_minutes_confirm_to_pickup`` have
elapsed since acceptance; a delivery once ``min_minutes_pickup_to_delivery``
have elapsed since pickup.

Complexity: O(S) per lookup where S = number of slabs.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional, Sequence

from .clock import elapsed_minutes
from .entities import DistanceSlab, RewardSettings
from .enums import RewardStage
from .errors import MilestoneTooSoon


def resolve_slab(
    slabs: Sequence[DistanceSlab], distance_km: float
) -> Optional[DistanceSlab]:
    """Return the first slab with ``min_km <= distance_km < max_km``."""
    for slab in slabs:
        if slab.contains(distance_km):
            return slab
    return None


def distance_km_from_meters(distance_m: Optional[float]) -> float:
    return (distance_m or 0) / 1000.0


def compute_stage_tokens(
    settings: RewardSettings, distance_km: float, stage: RewardStage
) -> int:
    """Tokens unlocked at *stage* for a shipment of *distance_km*."""
    slab = resolve_slab(settings.slabs, distance_km)
    if slab is None:
        return 0
    return math.floor(slab.base_tokens * settings.pct_for(stage) / 100)


def enforce_min_elapsed(
    since: datetime, now: datetime, required_minutes: int, milestone: str
) -> float:
    """Raise ``MilestoneTooSoon`` unless *required_minutes* have passed."""
    actual = elapsed_minutes(since, now)
    if actual < required_minutes:
        raise MilestoneTooSoon(
            f"{milestone} too soon: {required_minutes} min required, "
            f"{actual:.1f} min elapsed",
            required_minutes=required_minutes,
            actual_minutes=round(actual, 2),
        )
    return actual


def validate_slabs(slabs: Sequence[DistanceSlab]) -> list[str]:
    """Return authoring problems with *slabs*; empty means well-formed."""
    problems: list[str] = []
    for i, slab in enumerate(slabs):
        if slab.min_km < 0 or slab.max_km <= slab.min_km:
            problems.append(f"slab {i}: need 0 <= min_km < max_km")
        if slab.base_tokens < 0:
            problems.append(f"slab {i}: base_tokens must be >= 0")
        if (
            slab.min_minutes_confirm_to_pickup < 0
            or slab.min_minutes_pickup_to_delivery < 0
        ):
            problems.append(f"slab {i}: minute thresholds must be >= 0")

    ordered = sorted(slabs, key=lambda s: s.min_km)
    for prev, cur in zip(ordered, ordered[1:]):
        if cur.min_km < prev.max_km:
            problems.append(
                f"slabs [{prev.min_km}, {prev.max_km}) and "
                f"[{cur.min_km}, {cur.max_km}) overlap"
            )
    return problems
