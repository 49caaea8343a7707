"""
Tests for urban_flood.classifiers
=================================
"""

import numpy as np
import pandas as pd
import pytest

from urban_flood.classifiers import (
    ClassifiedRaster, ClusterClassifier, HandThresholdClassifier,
    binary_layer, select_flood_cluster, xmeans_bic
)
from urban_flood.exceptions import ClusterMappingError, ConfigurationError, InsufficientTrainingDataError
from urban_flood.raster import RasterLayer

from conftest import make_grid, make_stack


def _cluster_layer(ids, mask=None) -> RasterLayer:
    ids = np.asarray(ids)
    grid = make_grid(ids.shape[1], ids.shape[0])
    data = np.ma.array(ids, mask=np.zeros(ids.shape, dtype=bool) if mask is None else mask)
    return RasterLayer("cluster_id", data, grid, -1)


def _blobs(centers, n: int = 200, seed: int = 0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    points = np.vstack([rng.normal(c, 0.5, (n, 2)) for c in centers])
    return pd.DataFrame(points, columns=["elevation", "hand"])


# ---------------------------------------------------------------------------
# ClassifiedRaster
# ---------------------------------------------------------------------------

class TestClassifiedRaster:
    def test_rejects_non_binary_values(self) -> None:
        grid = make_grid(2, 2)
        layer = RasterLayer("rf", np.ma.array(np.array([[0, 1], [2, 1]], dtype=np.uint8)), grid, 255)
        with pytest.raises(ConfigurationError):
            ClassifiedRaster("rf", layer)

    def test_masked_cells_are_ignored(self) -> None:
        grid = make_grid(2, 1)
        layer = binary_layer("rf", [[1, 0]], [[False, True]], grid)
        raster = ClassifiedRaster("rf", layer)
        assert raster.flood_pixels == 1
        assert raster.layer.nodata == 255


# ---------------------------------------------------------------------------
# HAND threshold
# ---------------------------------------------------------------------------

class TestHandThreshold:
    def test_threshold_is_inclusive(self) -> None:
        grid = make_grid(6, 1)
        stack = make_stack(grid, hand=[[-1.0, 0.0, 2.9, 3.0, 3.1, np.nan]])

        result = HandThresholdClassifier(3).classify(stack)

        assert result.method == "hand_3"
        assert result.data[0, :5].tolist() == [0, 1, 1, 1, 0]
        assert result.data.mask[0, 5]
        assert result.parameters == {"threshold_m": 3.0}

    def test_higher_threshold_floods_more(self, demo_stack) -> None:
        counts = [HandThresholdClassifier(h).classify(demo_stack).flood_pixels for h in (3, 4, 5)]
        assert counts[0] <= counts[1] <= counts[2]
        assert counts[0] > 0

    def test_fractional_threshold_name(self) -> None:
        assert HandThresholdClassifier(2.5).method == "hand_2.5"

    def test_negative_threshold_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            HandThresholdClassifier(-1)


# ---------------------------------------------------------------------------
# Cluster selection
# ---------------------------------------------------------------------------

class TestSelectFloodCluster:
    def test_mode_of_window(self) -> None:
        ids = np.zeros((10, 10), dtype=int)
        ids[3:8, 3:8] = 1
        layer = _cluster_layer(ids)
        assert select_flood_cluster(layer, layer.grid.xy(5, 5)) == 1
        assert select_flood_cluster(layer, layer.grid.xy(1, 1)) == 0

    def test_outside_grid_raises(self) -> None:
        layer = _cluster_layer(np.zeros((5, 5), dtype=int))
        left, bottom, right, top = layer.grid.bounds
        with pytest.raises(ClusterMappingError, match="outside"):
            select_flood_cluster(layer, (right + 5.0, top - 5.0))

    def test_nodata_raises(self) -> None:
        mask = np.zeros((5, 5), dtype=bool)
        mask[2, 2] = True
        layer = _cluster_layer(np.zeros((5, 5), dtype=int), mask)
        with pytest.raises(ClusterMappingError, match="nodata"):
            select_flood_cluster(layer, layer.grid.xy(2, 2))

    def test_tie_raises(self) -> None:
        ids = np.array([[0, 0, 0], [1, 1, 1], [2, 2, 2]])
        layer = _cluster_layer(ids)
        with pytest.raises(ClusterMappingError, match="ambiguous"):
            select_flood_cluster(layer, layer.grid.xy(1, 1))

    def test_low_support_raises(self) -> None:
        layer = _cluster_layer(np.zeros((5, 5), dtype=int))
        with pytest.raises(ClusterMappingError, match="min_support_px"):
            select_flood_cluster(layer, layer.grid.xy(0, 0), min_support=5)

    def test_missing_reference_raises(self) -> None:
        with pytest.raises(ClusterMappingError):
            select_flood_cluster(_cluster_layer(np.zeros((3, 3), dtype=int)), None)


# ---------------------------------------------------------------------------
# Cluster classifier
# ---------------------------------------------------------------------------

class TestClusterClassifier:
    def test_bic_prefers_true_cluster_count(self) -> None:
        samples = _blobs([(0, 0), (8, 0), (0, 8)])
        clusterer = ClusterClassifier(["elevation", "hand"], k_min=2, k_max=6).fit(samples)

        assert clusterer.n_clusters == 3
        assert set(clusterer.bic_scores) == {2, 3, 4, 5, 6}

    def test_xmeans_bic_penalises_overfitting(self) -> None:
        X = np.random.default_rng(1).normal(0, 1, (300, 2))
        one = xmeans_bic(X, np.zeros(300, dtype=int), X.mean(axis=0, keepdims=True))
        split = (X[:, 0] > 0).astype(int)
        centers = np.vstack([X[split == 0].mean(axis=0), X[split == 1].mean(axis=0)])
        assert one > xmeans_bic(X, split, centers)

    def test_classify_names_cluster_at_reference(self) -> None:
        grid = make_grid(20, 20)
        rng = np.random.default_rng(0)
        level = np.where(np.arange(20) < 10, 0.0, 10.0)[np.newaxis, :].repeat(20, axis=0)
        stack = make_stack(
            grid,
            elevation=level + rng.normal(0, 0.1, grid.shape),
            hand=level / 2 + rng.normal(0, 0.1, grid.shape),
        )
        samples = pd.DataFrame({
            "elevation": stack["elevation"].data.ravel(),
            "hand": stack["hand"].data.ravel(),
        })
        clusterer = ClusterClassifier(["elevation", "hand"], k_min=2, k_max=2).fit(samples)

        result = clusterer.classify(stack, grid.xy(10, 15))

        assert result.method == "cluster"
        assert result.flood_pixels == 200
        assert result.data[:, 10:].all()
        assert result.parameters["k"] == 2
        assert "clusters" in result.auxiliary

    def test_classify_before_fit_raises(self) -> None:
        stack = make_stack(make_grid(3, 3), hand=np.ones((3, 3)))
        with pytest.raises(ConfigurationError):
            ClusterClassifier(["hand"]).predict_raster(stack)

    def test_too_few_samples_raise(self) -> None:
        with pytest.raises(InsufficientTrainingDataError):
            ClusterClassifier(["hand"], k_min=2).fit(pd.DataFrame({"hand": [1.0, 2.0]}))

    def test_missing_band_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            ClusterClassifier(["slope"]).fit(pd.DataFrame({"hand": np.arange(10.0)}))

    def test_invalid_k_range_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            ClusterClassifier(["hand"], k_min=5, k_max=3)
