"""
Hotspot Extraction and Post-Processing
======================================

Turns binary flood rasters into hotspots:
- Intersection with the urban land-cover mask
- Connected components (4- or 8-neighbourhood) with a size cap
- Minimum-area filter using the true pixel area
- Coverage of known risk zones per method
"""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, Optional

import numpy as np
import pandas as pd
from scipy import ndimage

from .classifiers import ClassifiedRaster, binary_layer
from .exceptions import ConfigurationError
from .raster import RasterLayer
from .utils import get_logger, timer

logger = get_logger(__name__)

CONNECTIVITY = {4: 1, 8: 2}


def urban_mask(landcover: RasterLayer, urban_class: int = 24) -> np.ndarray:
    """True where land cover equals ``urban_class``."""
    return landcover.data.filled(-1) == urban_class


@dataclass(frozen=True)
class Hotspot:
    """
    Connected flood region retained by the area filter.

    ``pixel_count`` is capped at the maximum component size; ``truncated``
    tells whether the cap was hit. ``threshold_m`` is the HAND threshold of
    the source classification (None for the cluster and forest methods).
    """

    label: int
    pixel_count: int
    area_m2: float
    source_method: str
    connectivity: int
    truncated: bool = False
    threshold_m: Optional[float] = None


@dataclass
class HotspotResult:
    """Filtered raster, component labels and per-hotspot metadata."""

    method: str
    raster: ClassifiedRaster
    labels: np.ndarray
    hotspots: List[Hotspot]
    flags: Dict = field(default_factory=dict)

    @property
    def total_area_m2(self) -> float:
        return float(sum(h.area_m2 for h in self.hotspots))

    def to_frame(self) -> pd.DataFrame:
        columns = ["label", "pixel_count", "area_m2", "source_method", "threshold_m",
                   "connectivity", "truncated"]
        return pd.DataFrame([asdict(h) for h in self.hotspots], columns=columns)


class HotspotExtractor:
    """
    Connected-component hotspot filter.

    Attributes
    ----------
    connectivity : int
        4 ("plus" kernel) or 8
    max_component_size : int
        Cap on the pixel count of a component
    min_area_m2 : float
        Minimum hotspot area

    Example
    -------
    >>> extractor = HotspotExtractor(connectivity=4, min_area_m2=3000)
    >>> result = extractor.extract(rf_raster, urban)
    >>> result.to_frame()
    """

    def __init__(
        self,
        connectivity: int = 4,
        max_component_size: int = 1024,
        min_area_m2: float = 3000
    ):
        if connectivity not in CONNECTIVITY:
            raise ConfigurationError(f"connectivity must be 4 or 8, got {connectivity}")
        if max_component_size < 1:
            raise ConfigurationError(f"max_component_size must be >= 1, got {max_component_size}")
        if min_area_m2 < 0:
            raise ConfigurationError(f"min_area_m2 must be >= 0, got {min_area_m2}")

        self.connectivity = connectivity
        self.max_component_size = int(max_component_size)
        self.min_area_m2 = float(min_area_m2)
        self.structure = ndimage.generate_binary_structure(2, CONNECTIVITY[connectivity])

    @timer
    def extract(
        self,
        classified: ClassifiedRaster,
        urban: Optional[np.ndarray] = None
    ) -> HotspotResult:
        """
        Extract hotspots from a binary raster.

        Parameters
        ----------
        classified : ClassifiedRaster
            Binary flood raster
        urban : np.ndarray, optional
            Urban mask; only cells true in both layers are considered

        Returns
        -------
        HotspotResult
        """
        flood = classified.data.filled(0) == 1
        if urban is not None:
            if urban.shape != flood.shape:
                raise ConfigurationError(
                    f"Urban mask shape {urban.shape} does not match '{classified.method}' "
                    f"raster {flood.shape}"
                )
            flood &= np.asarray(urban, dtype=bool)

        labels, n_components = ndimage.label(flood, structure=self.structure)
        pixel_area = classified.grid.pixel_area()
        threshold_m = classified.parameters.get("threshold_m")
        if threshold_m is not None:
            threshold_m = float(threshold_m)

        hotspots: List[Hotspot] = []
        keep = np.zeros(n_components + 1, dtype=bool)
        n_capped = 0

        if n_components:
            index = np.arange(1, n_components + 1)
            counts = np.bincount(labels.ravel(), minlength=n_components + 1)[1:]
            areas = np.asarray(ndimage.sum(pixel_area, labels, index), dtype=float)

            for label, count, area in zip(index, counts, areas):
                truncated = count > self.max_component_size
                if truncated:
                    n_capped += 1
                    area = area * self.max_component_size / count
                    count = self.max_component_size
                if area >= self.min_area_m2:
                    keep[label] = True
                    hotspots.append(Hotspot(
                        label=int(label),
                        pixel_count=int(count),
                        area_m2=float(area),
                        source_method=classified.method,
                        connectivity=self.connectivity,
                        truncated=bool(truncated),
                        threshold_m=threshold_m,
                    ))

        kept = keep[labels]
        layer = binary_layer(f"{classified.method}_hotspots", kept,
                             np.ma.getmaskarray(classified.data), classified.grid,
                             min_area_m2=self.min_area_m2, connectivity=self.connectivity)
        raster = ClassifiedRaster(f"{classified.method}_hotspots", layer, {
            "source_method": classified.method,
            **classified.parameters,
            "connectivity": self.connectivity,
            "max_component_size": self.max_component_size,
            "min_area_m2": self.min_area_m2,
        })

        flags = {}
        if n_capped:
            flags["component_size_capped"] = n_capped
            raster.layer.flag("component_size_capped", n_capped)

        logger.info(f"  {classified.method}: {n_components} components, "
                    f"{len(hotspots)} hotspots >= {self.min_area_m2:g} m²")
        return HotspotResult(classified.method, raster, np.where(kept, labels, 0), hotspots, flags)

    def extract_all(
        self,
        classified: Mapping[str, ClassifiedRaster],
        urban: Optional[np.ndarray] = None
    ) -> Dict[str, HotspotResult]:
        """Run ``extract`` independently for every method."""
        return {method: self.extract(raster, urban) for method, raster in classified.items()}


def coverage_report(
    classified: Mapping[str, ClassifiedRaster],
    risk_mask: np.ndarray,
    urban: Optional[np.ndarray] = None
) -> pd.DataFrame:
    """
    Share of the (urban) risk-zone area classified as flood by each method.

    Returns
    -------
    pd.DataFrame
        method, risk_area_m2, flood_area_m2, coverage_pct
    """
    rows = []
    for method, raster in classified.items():
        zone = np.asarray(risk_mask, dtype=bool)
        if urban is not None:
            zone = zone & np.asarray(urban, dtype=bool)
        pixel_area = raster.grid.pixel_area()
        flood = raster.data.filled(0) == 1

        risk_area = float(pixel_area[zone].sum())
        flood_area = float(pixel_area[zone & flood].sum())
        rows.append({
            "method": method,
            "risk_area_m2": risk_area,
            "flood_area_m2": flood_area,
            "coverage_pct": 100.0 * flood_area / risk_area if risk_area > 0 else float("nan"),
        })
    return pd.DataFrame(rows, columns=["method", "risk_area_m2", "flood_area_m2", "coverage_pct"])
