"""
Tests for urban_flood.postprocessing
====================================
"""

import numpy as np
import pytest

from urban_flood.classifiers import ClassifiedRaster, binary_layer
from urban_flood.exceptions import ConfigurationError
from urban_flood.postprocessing import HotspotExtractor, coverage_report, urban_mask
from urban_flood.raster import RasterLayer

from conftest import make_grid


def _classified(flood: np.ndarray, method: str = "rf") -> ClassifiedRaster:
    grid = make_grid(flood.shape[1], flood.shape[0])
    return ClassifiedRaster(method, binary_layer(method, flood, np.zeros(flood.shape, dtype=bool), grid))


def _two_blobs() -> np.ndarray:
    """20 px (2000 m²) blob and 50 px (5000 m²) blob on a 10 m grid."""
    flood = np.zeros((20, 20), dtype=np.uint8)
    flood[1:5, 1:6] = 1
    flood[10:15, 5:15] = 1
    return flood


# ---------------------------------------------------------------------------
# Hotspot extraction
# ---------------------------------------------------------------------------

class TestHotspotExtractor:
    def test_minimum_area_filter(self) -> None:
        result = HotspotExtractor(connectivity=4, min_area_m2=3000).extract(_classified(_two_blobs()))

        assert len(result.hotspots) == 1
        hotspot = result.hotspots[0]
        assert hotspot.pixel_count == 50
        assert hotspot.area_m2 == pytest.approx(5000.0)
        assert hotspot.source_method == "rf"
        assert not hotspot.truncated

        assert int(result.raster.data.sum()) == 50
        assert not result.raster.data[1:5, 1:6].any()
        assert result.raster.method == "rf_hotspots"

    def test_every_hotspot_meets_minimum_area(self) -> None:
        rng = np.random.default_rng(0)
        flood = (rng.random((60, 60)) < 0.55).astype(np.uint8)
        result = HotspotExtractor(min_area_m2=1500).extract(_classified(flood))

        assert all(h.area_m2 >= 1500 for h in result.hotspots)
        assert result.total_area_m2 == pytest.approx(sum(h.area_m2 for h in result.hotspots))

    def test_connectivity(self) -> None:
        flood = np.zeros((4, 4), dtype=np.uint8)
        flood[0, 0] = flood[1, 1] = flood[2, 2] = 1

        four = HotspotExtractor(connectivity=4, min_area_m2=0).extract(_classified(flood))
        eight = HotspotExtractor(connectivity=8, min_area_m2=0).extract(_classified(flood))

        assert len(four.hotspots) == 3
        assert len(eight.hotspots) == 1
        assert eight.hotspots[0].pixel_count == 3
        assert eight.hotspots[0].connectivity == 8

    def test_component_size_cap(self) -> None:
        result = HotspotExtractor(max_component_size=30, min_area_m2=3000).extract(_classified(_two_blobs()))

        hotspot = result.hotspots[0]
        assert hotspot.truncated
        assert hotspot.pixel_count == 30
        assert hotspot.area_m2 == pytest.approx(3000.0)
        assert result.flags["component_size_capped"] == 1

    def test_cap_can_drop_component_below_minimum(self) -> None:
        result = HotspotExtractor(max_component_size=25, min_area_m2=3000).extract(_classified(_two_blobs()))
        assert result.hotspots == []

    def test_urban_mask_restricts_hotspots(self) -> None:
        urban = np.ones((20, 20), dtype=bool)
        urban[10:15, 5:15] = False
        result = HotspotExtractor(min_area_m2=0).extract(_classified(_two_blobs()), urban)

        assert len(result.hotspots) == 1
        assert result.hotspots[0].pixel_count == 20

    def test_urban_mask_shape_checked(self) -> None:
        with pytest.raises(ConfigurationError):
            HotspotExtractor().extract(_classified(_two_blobs()), np.ones((5, 5), dtype=bool))

    def test_to_frame_columns(self) -> None:
        frame = HotspotExtractor(min_area_m2=0).extract(_classified(_two_blobs())).to_frame()
        assert list(frame.columns) == ["label", "pixel_count", "area_m2", "source_method",
                                       "threshold_m", "connectivity", "truncated"]
        assert sorted(frame["pixel_count"]) == [20, 50]

    def test_hand_threshold_travels_with_hotspots(self) -> None:
        grid = make_grid(20, 20)
        layer = binary_layer("hand_4", _two_blobs(), np.zeros((20, 20), dtype=bool), grid)
        classified = ClassifiedRaster("hand_4", layer, {"threshold_m": 4.0})

        result = HotspotExtractor(min_area_m2=0).extract(classified)

        assert {h.threshold_m for h in result.hotspots} == {4.0}
        assert result.to_frame()["threshold_m"].tolist() == [4.0, 4.0]
        assert result.raster.parameters["threshold_m"] == 4.0
        assert HotspotExtractor(min_area_m2=0).extract(_classified(_two_blobs())).hotspots[0].threshold_m is None

    def test_extract_all_runs_methods_independently(self) -> None:
        classified = {"hand_3": _classified(_two_blobs(), "hand_3"),
                      "rf": _classified(np.zeros((20, 20), dtype=np.uint8), "rf")}
        results = HotspotExtractor(min_area_m2=3000).extract_all(classified)

        assert len(results["hand_3"].hotspots) == 1
        assert results["rf"].hotspots == []

    @pytest.mark.parametrize("kwargs", [{"connectivity": 6}, {"max_component_size": 0}, {"min_area_m2": -1}])
    def test_invalid_options_raise(self, kwargs) -> None:
        with pytest.raises(ConfigurationError):
            HotspotExtractor(**kwargs)


# ---------------------------------------------------------------------------
# Urban mask and coverage
# ---------------------------------------------------------------------------

class TestCoverage:
    def test_urban_mask(self) -> None:
        landcover = RasterLayer("landcover", np.ma.array(np.array([[24, 3], [24, 33]])), make_grid(2, 2))
        assert urban_mask(landcover).tolist() == [[True, False], [True, False]]

    def test_coverage_report(self) -> None:
        risk = np.zeros((20, 20), dtype=bool)
        risk[10:15, 5:15] = True
        risk[18:20, 18:20] = True
        report = coverage_report({"rf": _classified(_two_blobs())}, risk)

        row = report.iloc[0]
        assert row["method"] == "rf"
        assert row["risk_area_m2"] == pytest.approx(5400.0)
        assert row["flood_area_m2"] == pytest.approx(5000.0)
        assert row["coverage_pct"] == pytest.approx(100 * 5000 / 5400)

    def test_coverage_restricted_to_urban(self) -> None:
        risk = np.zeros((20, 20), dtype=bool)
        risk[10:15, 5:15] = True
        urban = np.zeros((20, 20), dtype=bool)
        report = coverage_report({"rf": _classified(_two_blobs())}, risk, urban)
        assert np.isnan(report.iloc[0]["coverage_pct"])
