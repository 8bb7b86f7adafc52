"""Level threshold generation and lookup."""

import pytest

from dojo.errors import ValidationError
from dojo.gamification.level_thresholds import (
    MAX_THRESHOLD_POINTS,
    generate_thresholds,
    level_for,
    level_progress,
    round_half_up,
    validate_thresholds,
)


class TestGenerateThresholds:
    def test_default_curve_first_levels(self):
        table = generate_thresholds(50, 8)
        assert table[:5] == [(1, 0), (2, 50), (3, 110), (4, 180), (5, 240)]

    def test_deterministic(self):
        assert generate_thresholds(50, 8) == generate_thresholds(50, 8)

    def test_covers_every_level_up_to_max(self):
        table = generate_thresholds(50, 8)
        assert len(table) == 99
        assert table[-1][0] == 99

    def test_monotonic_and_rounded(self):
        table = generate_thresholds(50, 8)
        validate_thresholds(table)
        assert all(pts % 10 == 0 for _, pts in table)

    def test_rounding_unit_five(self):
        table = generate_thresholds(50, 8, max_level=3, rounding_unit=5)
        # 54 -> 55, 112.32 -> 110
        assert table == [(1, 0), (2, 55), (3, 110)]

    def test_zero_jump_is_flat(self):
        assert generate_thresholds(0, 8, max_level=4) == [(1, 0), (2, 0), (3, 0), (4, 0)]

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(2.4999) == 2
        assert round_half_up(0.5) == 1


class TestLevelFor:
    TABLE = [(1, 0), (2, 50), (3, 110), (4, 180)]

    def test_zero_points_is_level_one(self):
        assert level_for(0, generate_thresholds(50, 8)) == 1

    @pytest.mark.parametrize(
        ("points", "expected"),
        [(49, 1), (50, 2), (109, 2), (110, 3), (10_000, 4)],
    )
    def test_boundaries(self, points, expected):
        assert level_for(points, self.TABLE) == expected

    def test_negative_points_and_empty_table(self):
        assert level_for(-20, self.TABLE) == 1
        assert level_for(500, []) == 1

    def test_unsorted_input(self):
        assert level_for(120, list(reversed(self.TABLE))) == 3


class TestLevelProgress:
    TABLE = [(1, 0), (2, 50), (3, 110)]

    def test_mid_level(self):
        info = level_progress(70, self.TABLE)
        assert info["level"] == 2
        assert info["points_into_level"] == 20
        assert info["points_for_level"] == 60
        assert info["next_level"] == 3
        assert info["is_max_level"] is False

    def test_max_level(self):
        info = level_progress(500, self.TABLE)
        assert info["level"] == 3
        assert info["is_max_level"] is True
        assert info["points_for_level"] == 0


class TestValidateThresholds:
    def test_rejects_decreasing_table(self):
        with pytest.raises(ValidationError):
            validate_thresholds([(1, 0), (2, 100), (3, 90)])

    def test_rejects_nonzero_first_level(self):
        with pytest.raises(ValidationError):
            validate_thresholds([(1, 10), (2, 100)])

    def test_rejects_minimum_beyond_bigint(self):
        with pytest.raises(ValidationError) as exc:
            validate_thresholds(generate_thresholds(50, 100))
        assert exc.value.details["min_lifetime_points"] > MAX_THRESHOLD_POINTS

    def test_accepts_minimum_at_bigint_ceiling(self):
        validate_thresholds([(1, 0), (2, MAX_THRESHOLD_POINTS)])
