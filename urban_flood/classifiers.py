"""
Rule-Based and Unsupervised Flood Classifiers
=============================================

Binary flood / no-flood rasters from the feature stack:
- HandThresholdClassifier: 0 <= HAND <= h, no training
- ClusterClassifier: k-means with X-means BIC selection of k, smoothed by
  a majority filter; the flood cluster is named from a reference point
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans
from sklearn.preprocessing import StandardScaler

from .exceptions import ClusterMappingError, ConfigurationError, InsufficientTrainingDataError
from .filters import focal_mode
from .raster import FeatureStack, GridSpec, RasterLayer
from .utils import get_logger, timer

logger = get_logger(__name__)


@dataclass
class ClassifiedRaster:
    """
    Binary classification produced by one method.

    Attributes
    ----------
    method : str
        Producing method, e.g. ``"hand_3"``, ``"cluster"``, ``"rf"``
    layer : RasterLayer
        Values in {0, 1}; masked cells are nodata
    parameters : dict
        Threshold / model parameterization
    auxiliary : dict
        Intermediate rasters kept for reporting (e.g. cluster ids)
    """

    method: str
    layer: RasterLayer
    parameters: Dict = field(default_factory=dict)
    auxiliary: Dict[str, RasterLayer] = field(default_factory=dict)

    def __post_init__(self):
        values = np.unique(self.layer.data.compressed())
        if not set(values.tolist()) <= {0, 1}:
            raise ConfigurationError(
                f"ClassifiedRaster '{self.method}' must hold 0/1 values, got {values[:10].tolist()}"
            )

    @property
    def data(self) -> np.ma.MaskedArray:
        return self.layer.data

    @property
    def grid(self) -> GridSpec:
        return self.layer.grid

    @property
    def flood_pixels(self) -> int:
        return int(np.ma.sum(self.layer.data == 1))


def binary_layer(name: str, flood: np.ndarray, mask: np.ndarray, grid: GridSpec, **metadata) -> RasterLayer:
    data = np.ma.array(np.asarray(flood, dtype=np.uint8), mask=np.asarray(mask, dtype=bool))
    return RasterLayer(name, data, grid, 255, dict(metadata))


# =============================================================================
# HAND THRESHOLD
# =============================================================================

class HandThresholdClassifier:
    """
    Flood-prone where 0 <= HAND <= ``threshold_m``.

    Example
    -------
    >>> hand3 = HandThresholdClassifier(3).classify(stack)
    """

    def __init__(self, threshold_m: float, band: str = "hand"):
        if threshold_m < 0:
            raise ConfigurationError(f"HAND threshold must be >= 0, got {threshold_m}")
        self.threshold_m = float(threshold_m)
        self.band = band

    @property
    def method(self) -> str:
        return f"hand_{self.threshold_m:g}"

    def classify(self, stack: FeatureStack) -> ClassifiedRaster:
        hand = stack[self.band].data
        values = hand.filled(np.nan)
        with np.errstate(invalid="ignore"):
            flood = (values >= 0) & (values <= self.threshold_m)

        layer = binary_layer(self.method, flood, np.ma.getmaskarray(hand), stack.grid,
                             threshold_m=self.threshold_m)
        result = ClassifiedRaster(self.method, layer, {"threshold_m": self.threshold_m})
        logger.info(f"  {self.method}: {result.flood_pixels} flood px")
        return result


# =============================================================================
# CLUSTERING
# =============================================================================

def xmeans_bic(X: np.ndarray, labels: np.ndarray, centers: np.ndarray) -> float:
    """
    Bayesian information criterion of a k-means partition (Pelleg & Moore).

    Uses a spherical Gaussian with one pooled variance per partition.
    Higher is better.
    """
    n, dims = X.shape
    k = centers.shape[0]
    if n <= k:
        return -np.inf

    sq_dist = ((X - centers[labels]) ** 2).sum()
    variance = max(sq_dist / (dims * (n - k)), 1e-12)

    sizes = np.bincount(labels, minlength=k)
    sizes = sizes[sizes > 0]
    log_likelihood = (
        float((sizes * np.log(sizes)).sum())
        - n * np.log(n)
        - n * dims / 2.0 * np.log(2 * np.pi * variance)
        - dims * (n - k) / 2.0
    )

    n_params = (k - 1) + dims * k + 1
    return float(log_likelihood - n_params / 2.0 * np.log(n))


def select_flood_cluster(
    clusters: RasterLayer,
    reference_xy: Tuple[float, float],
    min_support: int = 5,
    radius: int = 1
) -> int:
    """
    Name the flood cluster from a reference point.

    The cluster id is the most frequent id in the (2r+1)² window centred
    on the reference pixel. The mapping fails when the point falls outside
    the grid or on nodata, when the most frequent id appears in fewer than
    ``min_support`` cells, or when two ids tie.

    Parameters
    ----------
    clusters : RasterLayer
        Cluster id raster
    reference_xy : tuple
        (x, y) of a location known to be flood-prone, in the grid CRS
    min_support : int
        Minimum count of the winning id inside the window
    radius : int
        Window radius in pixels

    Returns
    -------
    int
        Flood cluster id
    """
    if reference_xy is None:
        raise ClusterMappingError("No reference point configured for the flood cluster")

    row, col = clusters.grid.rowcol(*reference_xy)
    if not clusters.grid.contains(row, col):
        raise ClusterMappingError(f"Reference point {reference_xy} lies outside the grid")
    if not clusters.valid[row, col]:
        raise ClusterMappingError(f"Reference point {reference_xy} falls on nodata")

    window = clusters.data[
        max(row - radius, 0):row + radius + 1,
        max(col - radius, 0):col + radius + 1
    ].compressed().astype(int)
    ids, counts = np.unique(window, return_counts=True)
    order = np.argsort(counts)[::-1]
    best, support = int(ids[order[0]]), int(counts[order[0]])

    if len(ids) > 1 and counts[order[1]] == support:
        raise ClusterMappingError(
            f"Reference point {reference_xy} is ambiguous: clusters "
            f"{int(ids[order[0]])} and {int(ids[order[1]])} both have {support} px"
        )
    if support < min_support:
        raise ClusterMappingError(
            f"Cluster {best} at reference point has {support} px, min_support_px={min_support}"
        )

    logger.info(f"  Flood cluster: {best} (support {support} px)")
    return best


class ClusterClassifier:
    """
    k-means clustering with the number of clusters chosen by X-means BIC.

    Attributes
    ----------
    bands : list
        Covariates used for clustering
    k_min, k_max : int
        Range of cluster counts searched
    bic_scores : dict
        BIC per candidate k after ``fit``

    Example
    -------
    >>> clusterer = ClusterClassifier(["elevation", "distance", "slope", "hand"])
    >>> clusterer.fit(refined_table)
    >>> flood = clusterer.classify(stack, reference_xy=(x, y))
    """

    def __init__(
        self,
        bands: Sequence[str],
        k_min: int = 2,
        k_max: int = 10,
        random_state: int = 42,
        smoothing_radius: int = 1,
        min_support_px: int = 5
    ):
        if not 2 <= k_min <= k_max:
            raise ConfigurationError(f"Need 2 <= k_min <= k_max, got k_min={k_min}, k_max={k_max}")

        self.bands = list(bands)
        self.k_min = k_min
        self.k_max = k_max
        self.random_state = random_state
        self.smoothing_radius = smoothing_radius
        self.min_support_px = min_support_px

        self.scaler = StandardScaler()
        self.model: Optional[KMeans] = None
        self.bic_scores: Dict[int, float] = {}

    @property
    def n_clusters(self) -> int:
        if self.model is None:
            raise ConfigurationError("ClusterClassifier is not fitted")
        return int(self.model.n_clusters)

    @timer
    def fit(self, samples: pd.DataFrame) -> "ClusterClassifier":
        """Fit k-means for every k in [k_min, k_max] and keep the best BIC."""
        missing = [b for b in self.bands if b not in samples.columns]
        if missing:
            raise ConfigurationError(f"Clustering bands missing from samples: {missing}")

        X = samples[self.bands].dropna().to_numpy(dtype=float)
        if len(X) <= self.k_min:
            raise InsufficientTrainingDataError(
                f"Clustering needs more than k_min={self.k_min} samples, got {len(X)}"
            )
        X = self.scaler.fit_transform(X)

        self.bic_scores = {}
        best_model: Optional[KMeans] = None
        best_bic = -np.inf
        for k in range(self.k_min, min(self.k_max, len(X) - 1) + 1):
            model = KMeans(n_clusters=k, n_init=10, random_state=self.random_state)
            model.fit(X)
            bic = xmeans_bic(X, model.labels_, model.cluster_centers_)
            self.bic_scores[k] = bic
            logger.debug(f"  k={k}: BIC={bic:.1f}")
            if bic > best_bic:
                best_bic, best_model = bic, model

        self.model = best_model
        logger.info(f"  Selected k={self.n_clusters} (BIC={best_bic:.1f})")
        return self

    def predict_raster(self, stack: FeatureStack) -> RasterLayer:
        """Cluster id of every valid pixel, smoothed by the majority filter."""
        if self.model is None:
            raise ConfigurationError("ClusterClassifier is not fitted")

        valid = stack.valid_mask(self.bands)
        features = stack.array(self.bands)[:, valid].T

        ids = np.zeros(stack.grid.shape, dtype=np.int32)
        if features.size:
            ids[valid] = self.model.predict(self.scaler.transform(features))

        clusters = np.ma.array(ids, mask=~valid)
        if self.smoothing_radius > 0:
            clusters = focal_mode(clusters, self.smoothing_radius)
        return RasterLayer("cluster_id", clusters, stack.grid, -1, {"k": self.n_clusters})

    @timer
    def classify(self, stack: FeatureStack, reference_xy: Tuple[float, float]) -> ClassifiedRaster:
        """Binary raster of the cluster named by ``reference_xy``."""
        clusters = self.predict_raster(stack)
        flood_id = select_flood_cluster(clusters, reference_xy, self.min_support_px)

        flood = clusters.data.filled(-1) == flood_id
        layer = binary_layer("cluster", flood, ~clusters.valid, stack.grid,
                             flood_cluster=flood_id, k=self.n_clusters)
        result = ClassifiedRaster("cluster", layer, {
            "k": self.n_clusters,
            "flood_cluster": flood_id,
            "bic": {int(k): float(v) for k, v in self.bic_scores.items()},
        })
        result.auxiliary["clusters"] = clusters
        logger.info(f"  cluster: {result.flood_pixels} flood px")
        return result
