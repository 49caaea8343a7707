"""
Importance-Weighted Susceptibility Index
========================================

Builds a continuous [0, 1] flood susceptibility surface:

    S = sum_i w_i * c_i(norm_i)

where ``norm_i`` is the min-max normalized covariate (bounds taken from the
reference buffer around known risk zones), ``c_i`` is ``1 - norm`` for
covariates where higher values mean lower susceptibility and ``norm`` for
the others (TWI), and ``w_i`` are the random forest importances normalized
to sum to one. The weighted sum is smoothed with a 3x3 mean filter.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError
from .filters import focal_mean
from .raster import FeatureStack, RasterLayer
from .utils import (
    DEFAULT_PERCENTILES, calculate_statistics, get_logger, minmax_bounds,
    normalize_array, timer
)

logger = get_logger(__name__)

DEFAULT_DIRECTIONS = {
    "distance": -1,
    "elevation": -1,
    "slope": -1,
    "soil_hydraulic_conductivity": -1,
    "hand": -1,
    "twi": 1,
}


# =============================================================================
# FEATURE WEIGHTS
# =============================================================================

class FeatureWeights(Mapping):
    """
    Read-only mapping covariate -> non-negative weight summing to 1.

    Example
    -------
    >>> weights = FeatureWeights.from_importances({"hand": 3.0, "twi": 1.0})
    >>> weights["hand"]
    0.75
    """

    def __init__(self, weights: Mapping[str, float]):
        self._weights = dict(weights)

    @classmethod
    def from_importances(cls, importances: Mapping[str, float]) -> "FeatureWeights":
        """Normalize raw importance scores to sum to 1."""
        if not importances:
            raise ConfigurationError("Feature importances are empty")

        values = {name: float(v) for name, v in importances.items()}
        for name, value in values.items():
            if not np.isfinite(value) or value < 0:
                raise ConfigurationError(f"Importance of '{name}' must be finite and >= 0, got {value}")

        total = sum(values.values())
        if total <= 0:
            raise ConfigurationError("Feature importances sum to zero")
        return cls({name: value / total for name, value in values.items()})

    def __getitem__(self, name: str) -> float:
        return self._weights[name]

    def __iter__(self):
        return iter(self._weights)

    def __len__(self) -> int:
        return len(self._weights)

    def to_frame(self) -> pd.DataFrame:
        return (
            pd.DataFrame({"feature": list(self._weights), "weight": list(self._weights.values())})
            .sort_values("weight", ascending=False)
            .reset_index(drop=True)
        )

    def __repr__(self) -> str:
        items = ", ".join(f"{k}={v:.3f}" for k, v in self._weights.items())
        return f"FeatureWeights({items})"


# =============================================================================
# SUSCEPTIBILITY SURFACE
# =============================================================================

@dataclass(frozen=True)
class SusceptibilitySurface:
    """
    Continuous susceptibility raster in [0, 1].

    The surface is never modified; thresholding returns new layers.
    """

    layer: RasterLayer
    weights: FeatureWeights
    bounds: Dict[str, tuple]
    flags: Dict = field(default_factory=dict)

    @property
    def data(self) -> np.ma.MaskedArray:
        return self.layer.data

    def describe(self, percentiles: Iterable[float] = DEFAULT_PERCENTILES) -> Dict[str, float]:
        """Descriptive statistics of the surface."""
        return calculate_statistics(self.layer.data, percentiles)

    def histogram(self, bins: int = 50):
        values = self.layer.data.compressed()
        return np.histogram(values, bins=bins, range=(0.0, 1.0))

    def threshold(self, level: float) -> RasterLayer:
        """Binary layer: 1 where the surface is >= ``level``."""
        binary = (self.layer.data.filled(-1.0) >= level).astype(np.uint8)
        data = np.ma.array(binary, mask=np.ma.getmaskarray(self.layer.data).copy())
        return RasterLayer(f"susceptibility_ge_{level:g}", data, self.layer.grid, 255,
                           {"level": float(level)})

    def threshold_slices(self, levels: Sequence[int]) -> List[RasterLayer]:
        """Binary slices at integer percent levels, e.g. 99 down to 75."""
        return [self.threshold(level / 100.0) for level in levels]

    def validate(
        self,
        risk_mask: np.ndarray,
        levels: Sequence[int] = (),
        region: Optional[np.ndarray] = None
    ) -> Dict:
        """
        Compare the surface inside and outside known risk zones.

        Parameters
        ----------
        risk_mask : np.ndarray
            True inside risk polygons
        levels : sequence of int
            Percent levels for the risk-zone hit rate
        region : np.ndarray, optional
            Restrict the comparison to these cells

        Returns
        -------
        dict
            mean inside / outside, their difference and the share of
            risk-zone cells at or above each level
        """
        valid = ~np.ma.getmaskarray(self.layer.data)
        if region is not None:
            valid &= np.asarray(region, dtype=bool)
        inside = valid & np.asarray(risk_mask, dtype=bool)
        outside = valid & ~np.asarray(risk_mask, dtype=bool)
        values = self.layer.data.data

        mean_in = float(values[inside].mean()) if inside.any() else float("nan")
        mean_out = float(values[outside].mean()) if outside.any() else float("nan")
        report = {
            "risk_pixels": int(inside.sum()),
            "other_pixels": int(outside.sum()),
            "mean_inside": mean_in,
            "mean_outside": mean_out,
            "mean_difference": mean_in - mean_out,
            "hit_rate": {},
        }
        for level in levels:
            hits = values[inside] >= level / 100.0
            report["hit_rate"][int(level)] = float(hits.mean()) if hits.size else float("nan")
        return report


class SusceptibilityIndexer:
    """
    Weighted combination of normalized covariates.

    Attributes
    ----------
    weights : FeatureWeights
        Importance weights
    directions : dict
        +1 if higher covariate means higher susceptibility, -1 otherwise
    smoothing_radius : int
        Mean-filter radius in pixels

    Example
    -------
    >>> indexer = SusceptibilityIndexer(model.feature_weights())
    >>> surface = indexer.compute(stack, reference_mask=buffer_mask, analysis_mask=urban)
    >>> surface.describe()["mean"]
    """

    def __init__(
        self,
        weights: FeatureWeights,
        directions: Optional[Mapping[str, int]] = None,
        smoothing_radius: int = 1
    ):
        directions = dict(DEFAULT_DIRECTIONS if directions is None else directions)
        missing = [name for name in weights if name not in directions]
        if missing:
            raise ConfigurationError(f"No contribution direction configured for: {missing}")
        for name, direction in directions.items():
            if direction not in (-1, 1):
                raise ConfigurationError(f"Direction of '{name}' must be -1 or 1, got {direction}")

        self.weights = weights
        self.directions = directions
        self.smoothing_radius = smoothing_radius

    @staticmethod
    def analysis_mask(
        stack: FeatureStack,
        reference_mask: np.ndarray,
        urban_class: Optional[int] = 24,
        elevation_band: str = "elevation",
        landcover_band: str = "landcover"
    ) -> np.ndarray:
        """
        Cells eligible for the index: urban land cover with elevation not
        above the highest elevation found in the reference region.
        """
        elevation = stack[elevation_band].data
        _, max_elevation = minmax_bounds(elevation, reference_mask)
        if not np.isfinite(max_elevation):
            raise ConfigurationError("Reference region holds no valid elevation")

        mask = stack[elevation_band].valid & (elevation.filled(np.inf) <= max_elevation)
        if urban_class is not None:
            mask &= stack[landcover_band].data.filled(-1) == urban_class
        return mask

    @timer
    def compute(
        self,
        stack: FeatureStack,
        reference_mask: np.ndarray,
        analysis_mask: Optional[np.ndarray] = None
    ) -> SusceptibilitySurface:
        """
        Compute the susceptibility surface.

        Parameters
        ----------
        stack : FeatureStack
            Covariates named by the weights
        reference_mask : np.ndarray
            Region used for min-max bounds (risk polygons plus buffer)
        analysis_mask : np.ndarray, optional
            Cells to compute; also narrows the bounds region

        Returns
        -------
        SusceptibilitySurface
        """
        names = list(self.weights)
        region = np.asarray(reference_mask, dtype=bool)
        if analysis_mask is not None:
            region = region & np.asarray(analysis_mask, dtype=bool)
        if not region.any():
            raise ConfigurationError("Susceptibility reference region is empty")

        valid = stack.valid_mask(names)
        if analysis_mask is not None:
            valid &= np.asarray(analysis_mask, dtype=bool)

        total = np.zeros(stack.grid.shape, dtype=float)
        bounds: Dict[str, tuple] = {}
        flags: Dict = {}

        for name in names:
            band = stack[name].data.astype(float)
            bounds[name] = minmax_bounds(band, region)
            normalized = normalize_array(band, bounds[name], clip=True)

            if normalized is None:
                flags.setdefault("non_normalizable", []).append(name)
                logger.warning(
                    f"Band '{name}' is non-normalizable in the reference region "
                    f"(bounds={bounds[name]}); contribution set to 0"
                )
                continue

            contribution = normalized if self.directions[name] > 0 else 1.0 - normalized
            total += self.weights[name] * np.ma.filled(contribution, 0.0)

        surface = np.ma.array(total, mask=~valid)
        if self.smoothing_radius > 0:
            surface = focal_mean(surface, self.smoothing_radius)
        surface = np.ma.clip(surface, 0.0, 1.0)

        layer = RasterLayer("susceptibility", surface, stack.grid, -9999,
                            {"weights": dict(self.weights), "flags": flags})
        logger.info(f"  Susceptibility over {int(valid.sum())} px")
        return SusceptibilitySurface(layer, self.weights, bounds, flags)

    def value_at(self, values: Mapping[str, float], bounds: Mapping[str, tuple]) -> float:
        """Unsmoothed index of one feature vector with the given bounds."""
        total = 0.0
        for name in self.weights:
            low, high = bounds[name]
            if not high > low:
                continue
            norm = min(max((values[name] - low) / (high - low), 0.0), 1.0)
            total += self.weights[name] * (norm if self.directions[name] > 0 else 1.0 - norm)
        return total
