"""Unit tests for the distance-slab reward rules."""

from datetime import datetime, timedelta, timezone

import pytest

from freightbook.domain.entities import DistanceSlab, RewardSettings
from freightbook.domain.enums import RewardStage
from freightbook.domain.errors import MilestoneTooSoon
from freightbook.domain.rewards import (
    compute_stage_tokens,
    distance_km_from_meters,
    enforce_min_elapsed,
    resolve_slab,
    validate_slabs,
)

SLABS = (
    DistanceSlab(0, 50, 100, 15, 30),
    DistanceSlab(50, 300, 250, 60, 120),
)


class TestResolveSlab:
    def test_lower_bound_is_inclusive(self):
        assert resolve_slab(SLABS, 50).base_tokens == 250

    def test_upper_bound_is_exclusive(self):
        assert resolve_slab(SLABS, 49.999).base_tokens == 100

    def test_no_match_beyond_last_slab(self):
        assert resolve_slab(SLABS, 300) is None

    def test_first_declared_wins_on_overlap(self):
        overlapping = (DistanceSlab(0, 100, 10, 0, 0), DistanceSlab(50, 150, 99, 0, 0))
        assert resolve_slab(overlapping, 75).base_tokens == 10


class TestStageTokens:
    def setup_method(self):
        self.settings = RewardSettings(
            confirmation_pct=20, pickup_pct=30, delivery_pct=50, slabs=SLABS
        )

    def test_confirmation_share(self):
        # floor(100 * 20 / 100)
        assert compute_stage_tokens(self.settings, 10, RewardStage.CONFIRMATION) == 20

    def test_shares_of_one_slab(self):
        tokens = [
            compute_stage_tokens(self.settings, 120, stage)
            for stage in (RewardStage.CONFIRMATION, RewardStage.PICKUP, RewardStage.DELIVERY)
        ]
        assert tokens == [50, 75, 125]

    def test_clawback_mirrors_confirmation(self):
        assert compute_stage_tokens(
            self.settings, 120, RewardStage.CONFIRMATION_CLAWBACK
        ) == compute_stage_tokens(self.settings, 120, RewardStage.CONFIRMATION)

    def test_result_is_floored(self):
        settings = RewardSettings(
            confirmation_pct=33, pickup_pct=0, delivery_pct=0, slabs=SLABS
        )
        assert compute_stage_tokens(settings, 120, RewardStage.CONFIRMATION) == 82  # 82.5
        assert compute_stage_tokens(settings, 10, RewardStage.PICKUP) == 0

    def test_no_slab_means_no_tokens(self):
        assert compute_stage_tokens(self.settings, 5000, RewardStage.DELIVERY) == 0

    def test_percentages_need_not_sum_to_100(self):
        settings = RewardSettings(
            confirmation_pct=100, pickup_pct=100, delivery_pct=100, slabs=SLABS
        )
        assert compute_stage_tokens(settings, 10, RewardStage.PICKUP) == 100


class TestDistance:
    def test_meters_to_km(self):
        assert distance_km_from_meters(120_000) == 120.0

    def test_missing_distance_is_zero(self):
        assert distance_km_from_meters(None) == 0.0


class TestTimeGate:
    accepted = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_too_soon_carries_minutes(self):
        with pytest.raises(MilestoneTooSoon) as exc:
            enforce_min_elapsed(
                self.accepted, self.accepted + timedelta(minutes=10), 15, "Pickup"
            )
        assert exc.value.required_minutes == 15
        assert exc.value.actual_minutes == 10.0
        assert exc.value.extra == {"required_minutes": 15, "actual_minutes": 10.0}

    def test_exact_threshold_passes(self):
        actual = enforce_min_elapsed(
            self.accepted, self.accepted + timedelta(minutes=15), 15, "Pickup"
        )
        assert actual == 15.0

    def test_naive_timestamps_are_utc(self):
        naive = self.accepted.replace(tzinfo=None)
        assert enforce_min_elapsed(
            naive, self.accepted + timedelta(minutes=30), 30, "Delivery"
        ) == 30.0


class TestValidateSlabs:
    def test_well_formed(self):
        assert validate_slabs(SLABS) == []

    def test_overlap_reported(self):
        problems = validate_slabs(
            [DistanceSlab(0, 60, 1, 0, 0), DistanceSlab(50, 100, 1, 0, 0)]
        )
        assert any("overlap" in p for p in problems)

    def test_inverted_range_and_negatives(self):
        problems = validate_slabs([DistanceSlab(10, 5, -1, -2, 0)])
        assert len(problems) == 3
