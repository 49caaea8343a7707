"""
Tests for urban_flood.filters
=============================
"""

import numpy as np
import pytest

from urban_flood.exceptions import ConfigurationError
from urban_flood.filters import focal_mean, focal_median_fill, focal_mode


# ---------------------------------------------------------------------------
# Majority filter
# ---------------------------------------------------------------------------

class TestFocalMode:
    def test_removes_isolated_pixel(self) -> None:
        data = np.zeros((5, 5), dtype=int)
        data[2, 2] = 1
        assert not focal_mode(data).any()

    def test_keeps_large_region(self) -> None:
        data = np.zeros((6, 6), dtype=int)
        data[:, 3:] = 1
        smoothed = focal_mode(data)
        assert np.array_equal(smoothed.data, data)

    def test_keeps_input_mask(self) -> None:
        data = np.ma.array(np.ones((4, 4), dtype=int), mask=False)
        data[0, 0] = np.ma.masked
        smoothed = focal_mode(data)
        assert smoothed.mask[0, 0]
        assert smoothed.mask.sum() == 1

    def test_tie_goes_to_smallest_class(self) -> None:
        # Corner window sees two 1s and two 2s
        data = np.array([[1, 2], [2, 1]])
        smoothed = focal_mode(data)
        assert smoothed[0, 0] == 1

    def test_negative_radius_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            focal_mode(np.zeros((3, 3), dtype=int), radius=-1)


# ---------------------------------------------------------------------------
# Mean filter
# ---------------------------------------------------------------------------

class TestFocalMean:
    def test_constant_stays_constant(self) -> None:
        smoothed = focal_mean(np.full((5, 5), 0.4))
        assert np.allclose(smoothed, 0.4)

    def test_averages_valid_neighbours_only(self) -> None:
        data = np.ma.array(np.array([[1.0, 100.0], [3.0, 5.0]]), mask=[[False, True], [False, False]])
        smoothed = focal_mean(data)
        assert smoothed.mask[0, 1]
        assert smoothed[0, 0] == pytest.approx(3.0)
        assert smoothed[1, 1] == pytest.approx(3.0)

    def test_nan_is_treated_as_missing(self) -> None:
        data = np.array([[2.0, np.nan, 4.0]])
        smoothed = focal_mean(data)
        assert smoothed.mask.tolist() == [[False, True, False]]
        assert smoothed[0, 0] == pytest.approx(2.0)

    def test_zero_radius_is_identity(self) -> None:
        data = np.arange(9, dtype=float).reshape(3, 3)
        assert np.allclose(focal_mean(data, radius=0), data)


# ---------------------------------------------------------------------------
# Median gap fill
# ---------------------------------------------------------------------------

class TestFocalMedianFill:
    def test_fills_with_local_median(self) -> None:
        data = np.ma.array(
            np.array([[1.0, 2.0, 3.0], [4.0, 0.0, 6.0], [7.0, 8.0, 100.0]]),
            mask=[[False, False, False], [False, True, False], [False, False, False]],
        )
        filled, counts = focal_median_fill(data, radius=1)

        assert filled[1, 1] == pytest.approx(5.0)
        assert counts == {"filled": 1, "fallback": 0}
        assert not np.ma.getmaskarray(filled).any()

    def test_median_uses_original_values_only(self) -> None:
        data = np.array([[np.nan, np.nan, 10.0, 20.0]])
        filled, counts = focal_median_fill(data, radius=1)

        assert counts["filled"] == 1
        assert counts["fallback"] == 1
        assert filled[0, 1] == pytest.approx(10.0)

    def test_no_missing_cells_is_noop(self) -> None:
        data = np.arange(12, dtype=float).reshape(3, 4)
        filled, counts = focal_median_fill(data, radius=2)
        assert np.array_equal(filled.data, data)
        assert counts == {"filled": 0, "fallback": 0}

    def test_fill_is_idempotent(self) -> None:
        rng = np.random.default_rng(0)
        data = np.ma.masked_where(rng.random((20, 20)) < 0.2, rng.normal(10, 2, (20, 20)))
        once, _ = focal_median_fill(data, radius=2)
        twice, counts = focal_median_fill(once, radius=2)
        assert np.array_equal(once.data, twice.data)
        assert counts["filled"] == 0

    def test_global_median_fallback(self) -> None:
        data = np.full((1, 7), np.nan)
        data[0, 5:] = [4.0, 8.0]
        filled, counts = focal_median_fill(data, radius=1, fallback="global_median")

        assert counts["fallback"] == 4
        assert filled[0, 0] == pytest.approx(6.0)
        assert filled[0, 4] == pytest.approx(4.0)

    def test_keep_fallback_writes_sentinel(self, caplog) -> None:
        data = np.full((1, 7), np.nan)
        data[0, 6] = 2.0
        filled, counts = focal_median_fill(data, radius=1, fallback="keep", sentinel=1000.0)

        assert counts["fallback"] == 5
        assert filled[0, 0] == 1000.0
        assert filled[0, 5] == pytest.approx(2.0)
        assert "fallback 'keep'" in caplog.text

    def test_unknown_fallback_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            focal_median_fill(np.zeros((2, 2)), radius=1, fallback="nearest")
