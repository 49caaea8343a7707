"""
Raster Data Model for Urban Flood Susceptibility Mapping
=========================================================

Grid definition, single-band layers and the co-registered feature stack:
- GridSpec: CRS, affine transform and shape of a pixel grid
- RasterLayer: named masked band on a GridSpec
- FeatureStack: ordered bands sharing one grid
"""

import math
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from pyproj import Geod
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds
from rasterio.transform import rowcol as transform_rowcol, xy as transform_xy

from .exceptions import ConfigurationError, GridAlignmentError
from .utils import get_logger

logger = get_logger(__name__)


# =============================================================================
# GRID
# =============================================================================

@dataclass(frozen=True)
class GridSpec:
    """
    Pixel grid: coordinate reference system, affine transform and shape.

    Two layers are co-registered when their GridSpecs are equal: same CRS,
    bit-identical transform (origin and resolution) and same shape.
    """

    crs: CRS
    transform: Affine
    width: int
    height: int

    def __post_init__(self):
        if not isinstance(self.crs, CRS):
            object.__setattr__(self, "crs", CRS.from_user_input(self.crs))
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(
                f"Grid must have a positive shape, got {self.height}x{self.width}"
            )

    @classmethod
    def from_bounds(
        cls,
        bounds: Tuple[float, float, float, float],
        resolution: float,
        crs: Union[str, CRS]
    ) -> "GridSpec":
        """
        Build a north-up grid covering ``bounds``.

        The bounds are snapped outward to whole multiples of ``resolution``
        so that grids built from overlapping extents share pixel edges.

        Parameters
        ----------
        bounds : tuple
            (minx, miny, maxx, maxy) in ``crs`` units
        resolution : float
            Pixel size
        crs : str or CRS
            Coordinate reference system

        Returns
        -------
        GridSpec
        """
        if resolution <= 0:
            raise ConfigurationError(f"target_resolution must be positive, got {resolution}")

        minx, miny, maxx, maxy = bounds
        if not (maxx > minx and maxy > miny):
            raise ConfigurationError(f"Empty study extent: {bounds}")

        minx = math.floor(minx / resolution) * resolution
        miny = math.floor(miny / resolution) * resolution
        maxx = math.ceil(maxx / resolution) * resolution
        maxy = math.ceil(maxy / resolution) * resolution

        width = int(round((maxx - minx) / resolution))
        height = int(round((maxy - miny) / resolution))
        transform = Affine(resolution, 0.0, minx, 0.0, -resolution, maxy)

        return cls(CRS.from_user_input(crs), transform, width, height)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.height, self.width

    @property
    def resolution(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(minx, miny, maxx, maxy) of the grid."""
        return array_bounds(self.height, self.width, self.transform)

    def is_aligned_with(self, other: "GridSpec") -> bool:
        return (
            self.crs == other.crs
            and tuple(self.transform) == tuple(other.transform)
            and self.shape == other.shape
        )

    def xy(self, row: int, col: int) -> Tuple[float, float]:
        """Coordinates of a pixel centre."""
        x, y = transform_xy(self.transform, row, col, offset="center")
        return float(x), float(y)

    def rowcol(self, x: float, y: float) -> Tuple[int, int]:
        """Row and column of the pixel containing (x, y)."""
        row, col = transform_rowcol(self.transform, x, y)
        return int(row), int(col)

    def contains(self, row: int, col: int) -> bool:
        return 0 <= row < self.height and 0 <= col < self.width

    def pixel_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """Arrays of x and y pixel-centre coordinates, each shaped like the grid."""
        cols, rows = np.meshgrid(np.arange(self.width) + 0.5, np.arange(self.height) + 0.5)
        a, b, c, d, e, f = tuple(self.transform)[:6]
        xs = a * cols + b * rows + c
        ys = d * cols + e * rows + f
        return xs, ys

    def pixel_area(self) -> np.ndarray:
        """
        True area of every pixel in square meters.

        Projected grids have a constant cell area. Geographic grids get a
        geodesic area per row, computed on the WGS84 ellipsoid.

        Returns
        -------
        np.ndarray
            Array shaped like the grid
        """
        if not self.crs.is_geographic:
            area = abs(self.transform.a * self.transform.e - self.transform.b * self.transform.d)
            return np.full(self.shape, area, dtype=float)

        geod = Geod(ellps="WGS84")
        row_area = np.empty(self.height, dtype=float)
        for row in range(self.height):
            x0, y0 = transform_xy(self.transform, row, 0, offset="ul")
            x1, y1 = transform_xy(self.transform, row + 1, 1, offset="ul")
            area, _ = geod.polygon_area_perimeter([x0, x1, x1, x0], [y0, y0, y1, y1])
            row_area[row] = abs(area)
        return np.repeat(row_area[:, np.newaxis], self.width, axis=1)


# =============================================================================
# RASTER LAYER
# =============================================================================

@dataclass
class RasterLayer:
    """
    Named single-band raster on a grid.

    Attributes
    ----------
    name : str
        Band name
    data : np.ma.MaskedArray
        Values; masked cells are nodata
    grid : GridSpec
        Pixel grid of ``data``
    nodata : float
        Value written for masked cells on export
    metadata : dict
        Free-form metadata; approximation flags live under ``"flags"``
    """

    name: str
    data: np.ma.MaskedArray
    grid: GridSpec
    nodata: float = -9999
    metadata: Dict = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.data, np.ma.MaskedArray):
            self.data = np.ma.masked_invalid(np.asarray(self.data))
        if self.data.shape != self.grid.shape:
            raise GridAlignmentError(
                f"Layer '{self.name}' has shape {self.data.shape}, "
                f"grid expects {self.grid.shape}"
            )
        # Expand nomask so callers can index the mask directly
        self.data.mask = np.ma.getmaskarray(self.data)

    @property
    def flags(self) -> Dict:
        return self.metadata.setdefault("flags", {})

    @property
    def valid(self) -> np.ndarray:
        return ~np.ma.getmaskarray(self.data)

    def flag(self, key: str, value) -> None:
        """Record an approximation condition and log it."""
        self.flags[key] = value
        logger.warning(f"Layer '{self.name}': {key} = {value}")

    def filled(self, value: Optional[float] = None) -> np.ndarray:
        return self.data.filled(self.nodata if value is None else value)

    def with_data(self, data: np.ndarray, name: Optional[str] = None, **metadata) -> "RasterLayer":
        """New layer on the same grid carrying ``data``."""
        merged = dict(self.metadata)
        if "flags" in merged:
            merged["flags"] = dict(merged["flags"])
        merged.update(metadata)
        return RasterLayer(name or self.name, data, self.grid, self.nodata, merged)


# =============================================================================
# FEATURE STACK
# =============================================================================

class FeatureStack:
    """
    Ordered, co-registered collection of bands.

    Bands are only ever appended. Once frozen (for instance after export)
    the stack rejects further changes.

    Example
    -------
    >>> stack = FeatureStack(grid)
    >>> stack.add_band(elevation)
    >>> X = stack.array(["elevation", "slope"])
    """

    def __init__(self, grid: GridSpec):
        self.grid = grid
        self._bands: "OrderedDict[str, RasterLayer]" = OrderedDict()
        self._frozen = False

    def add_band(self, layer: RasterLayer) -> "FeatureStack":
        """
        Append a band.

        Raises
        ------
        GridAlignmentError
            If the stack is frozen or ``layer`` is not on the stack grid
        ConfigurationError
            If a band with the same name already exists
        """
        if self._frozen:
            raise GridAlignmentError(f"FeatureStack is frozen; cannot append band '{layer.name}'")
        if not self.grid.is_aligned_with(layer.grid):
            raise GridAlignmentError(
                f"Band '{layer.name}' is not co-registered with the stack grid "
                f"(crs={layer.grid.crs}, transform={tuple(layer.grid.transform)[:6]}, "
                f"shape={layer.grid.shape})"
            )
        if layer.name in self._bands:
            raise ConfigurationError(f"Band '{layer.name}' already exists in the stack")

        self._bands[layer.name] = layer
        logger.debug(f"Stack band added: {layer.name}")
        return self

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def band_names(self) -> List[str]:
        return list(self._bands.keys())

    def __getitem__(self, name: str) -> RasterLayer:
        try:
            return self._bands[name]
        except KeyError:
            raise ConfigurationError(
                f"Band '{name}' not found in stack (available: {self.band_names})"
            ) from None

    def __contains__(self, name: str) -> bool:
        return name in self._bands

    def __iter__(self) -> Iterator[RasterLayer]:
        return iter(self._bands.values())

    def __len__(self) -> int:
        return len(self._bands)

    def _resolve(self, names: Optional[Sequence[str]]) -> List[str]:
        names = self.band_names if names is None else list(names)
        for name in names:
            self[name]
        return names

    def array(self, names: Optional[Sequence[str]] = None) -> np.ndarray:
        """Float array (bands, rows, cols) with NaN in masked cells."""
        names = self._resolve(names)
        return np.stack([self._bands[n].data.astype(float).filled(np.nan) for n in names])

    def valid_mask(self, names: Optional[Sequence[str]] = None) -> np.ndarray:
        """True where every requested band holds a value."""
        names = self._resolve(names)
        valid = np.ones(self.grid.shape, dtype=bool)
        for name in names:
            valid &= self._bands[name].valid
        return valid

    def flags(self) -> Dict[str, Dict]:
        """Approximation flags of every band that raised one."""
        return {name: dict(layer.flags) for name, layer in self._bands.items() if layer.flags}

    def __repr__(self) -> str:
        return f"FeatureStack(shape={self.grid.shape}, bands={self.band_names}, frozen={self._frozen})"
