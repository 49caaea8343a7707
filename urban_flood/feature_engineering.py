"""
Covariate Construction for Urban Flood Susceptibility Mapping
==============================================================

Builds the co-registered feature stack used by every classifier:
- Elevation (sentinel nodata masked, resampled to the target grid)
- Slope (degrees)
- Soil hydraulic conductivity (gap-filled, then resampled)
- Distance to drainage (bounded Euclidean distance)
- HAND, TWI and land cover (external inputs aligned to the grid)
- Binary class band from known risk polygons
"""

import math
from typing import Dict, Optional, Tuple

import numpy as np
from scipy import ndimage
from shapely.geometry.base import BaseGeometry

from .exceptions import ConfigurationError
from .filters import focal_median_fill, unfillable_cells
from .preprocessing import RasterStore, VectorStore, as_geometry_list
from .raster import FeatureStack, GridSpec, RasterLayer
from .utils import calculate_statistics, get_logger, timer

logger = get_logger(__name__)

# Order of bands in the exported stack
STACK_ORDER = [
    "distance",
    "elevation",
    "slope",
    "soil_hydraulic_conductivity",
    "hand",
    "twi",
    "landcover",
    "classes",
]

METERS_PER_DEGREE = 111320.0


class CovariateBuilder:
    """
    Derives covariates and assembles them on one grid.

    Attributes
    ----------
    grid : GridSpec
        Target grid (CRS, 10 m resolution by default)
    study_area : shapely geometry
        Study geometry in the grid CRS
    search_radius_m : float
        Distance-to-drainage cutoff; farther cells are clamped to it
    gapfill_radius_px : int
        Gap-fill window radius in target-grid pixels

    Example
    -------
    >>> builder = CovariateBuilder.from_config(config, study_area)
    >>> stack = builder.build_stack(elevation=dem, conductivity=ksat, hand=hand,
    ...                             twi=twi, landcover=lc, drainage=rivers,
    ...                             risk_zones=sectors)
    """

    def __init__(
        self,
        grid: GridSpec,
        study_area: BaseGeometry,
        store: Optional[RasterStore] = None,
        vectors: Optional[VectorStore] = None,
        search_radius_m: float = 2500,
        drainage_buffer_m: Optional[float] = None,
        gapfill_radius_px: int = 45,
        gapfill_fallback: str = "global_median",
        gapfill_sentinel: float = 1000.0,
        ksat_scale: float = 0.0001,
        elevation_nodata: float = -9999,
        risk_buffer_m: float = 200
    ):
        if study_area is None or study_area.is_empty:
            raise ConfigurationError("CovariateBuilder requires a non-empty study geometry")
        if search_radius_m <= 0:
            raise ConfigurationError(f"search_radius_m must be positive, got {search_radius_m}")

        self.grid = grid
        self.study_area = study_area
        self.store = store or RasterStore()
        self.vectors = vectors or VectorStore(str(grid.crs))
        self.search_radius_m = float(search_radius_m)
        self.drainage_buffer_m = drainage_buffer_m
        self.gapfill_radius_px = int(gapfill_radius_px)
        self.gapfill_fallback = gapfill_fallback
        self.gapfill_sentinel = gapfill_sentinel
        self.ksat_scale = ksat_scale
        self.elevation_nodata = elevation_nodata
        self.risk_buffer_m = float(risk_buffer_m)

        self.cell_size = grid.resolution[0]

        logger.info("CovariateBuilder initialized")
        logger.info(f"  Grid: {grid.width}x{grid.height} @ {self.cell_size:g}m, {grid.crs}")

    @classmethod
    def from_config(cls, config: Dict, study_area: BaseGeometry, store: Optional[RasterStore] = None):
        """Build the target grid from the study bounds and the processing options."""
        processing = config["processing"]
        grid = GridSpec.from_bounds(
            study_area.bounds, processing["target_resolution"], processing["target_crs"]
        )
        return cls(
            grid,
            study_area,
            store=store or RasterStore(nodata=processing["nodata_value"]),
            vectors=VectorStore(processing["target_crs"]),
            search_radius_m=processing["search_radius_m"],
            drainage_buffer_m=processing["drainage_buffer_m"],
            gapfill_radius_px=processing["gapfill_radius_px"],
            gapfill_fallback=processing["gapfill_fallback"],
            gapfill_sentinel=processing["gapfill_sentinel"],
            ksat_scale=processing["ksat_scale"],
            elevation_nodata=processing["elevation_nodata"],
            risk_buffer_m=config["labels"]["buffer_m"],
        )

    # =========================================================================
    # HELPER METHODS
    # =========================================================================

    def _align(self, layer: RasterLayer, name: str, resampling: str) -> RasterLayer:
        """Check overlap, resample onto the grid and clip to the study area."""
        self.store.check_overlap(layer, self.study_area, self.grid.crs)
        aligned = self.store.reproject_to_grid(layer, self.grid, resampling=resampling, name=name)
        return self.store.clip_to_geometry(aligned, self.study_area)

    def _native_cell_size_m(self, layer: RasterLayer) -> float:
        res = layer.grid.resolution[0]
        if layer.grid.crs.is_geographic:
            lat = 0.5 * (layer.grid.bounds[1] + layer.grid.bounds[3])
            return res * METERS_PER_DEGREE * max(math.cos(math.radians(lat)), 1e-6)
        return res

    def _get_gradient(self, dem: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Compute gradient (dz/dx and dz/dy) with 3x3 Sobel kernels."""
        kernel_x = np.array([[-1, 0, 1],
                             [-2, 0, 2],
                             [-1, 0, 1]]) / (8 * self.cell_size)

        kernel_y = np.array([[-1, -2, -1],
                             [0,  0,  0],
                             [1,  2,  1]]) / (8 * self.cell_size)

        dz_dx = ndimage.convolve(dem, kernel_x, mode='reflect')
        dz_dy = ndimage.convolve(dem, kernel_y, mode='reflect')
        return dz_dx, dz_dy

    # =========================================================================
    # TERRAIN
    # =========================================================================

    @timer
    def prepare_elevation(self, elevation: RasterLayer) -> RasterLayer:
        """
        Mask the elevation sentinel and align the DEM to the grid.

        Parameters
        ----------
        elevation : RasterLayer
            DEM at any native resolution / CRS

        Returns
        -------
        RasterLayer
            Band ``elevation``
        """
        sentinel = np.isclose(elevation.data.filled(self.elevation_nodata), self.elevation_nodata)
        masked = elevation.with_data(np.ma.array(elevation.data, mask=sentinel))
        layer = self._align(masked, "elevation", "bilinear")

        stats = calculate_statistics(layer.data)
        if stats["count"] == 0:
            raise ConfigurationError("Layer 'elevation' has no valid cells inside the study area")
        logger.info(f"  Elevation: {stats['min']:.1f} - {stats['max']:.1f} m")
        return layer

    @timer
    def compute_slope(self, elevation: RasterLayer) -> RasterLayer:
        """
        Compute slope in degrees.

        Slope = arctan(sqrt(dz/dx² + dz/dy²))

        Cells whose 3x3 window touches nodata are masked.
        """
        dem = elevation.data.astype(float).filled(np.nan)
        dz_dx, dz_dy = self._get_gradient(dem)

        slope_deg = np.degrees(np.arctan(np.sqrt(dz_dx**2 + dz_dy**2)))
        slope = np.ma.masked_invalid(slope_deg)
        slope = np.ma.array(slope, mask=np.ma.getmaskarray(slope) | ~elevation.valid)

        stats = calculate_statistics(slope)
        if stats["count"]:
            logger.info(f"  Slope: {stats['min']:.1f}° - {stats['max']:.1f}°, mean {stats['mean']:.1f}°")
        return RasterLayer("slope", slope, self.grid, self.store.nodata)

    # =========================================================================
    # HYDRAULIC CONDUCTIVITY
    # =========================================================================

    @timer
    def fill_conductivity(self, conductivity: RasterLayer) -> RasterLayer:
        """
        Gap-fill Ksat at its native grid, then resample bilinearly.

        Values are scaled by ``ksat_scale``. Missing cells take the median
        of valid cells within ``gapfill_radius_px`` target pixels, converted
        to native pixels so the window keeps its ground size.

        Returns
        -------
        RasterLayer
            Band ``soil_hydraulic_conductivity``
        """
        self.store.check_overlap(conductivity, self.study_area, self.grid.crs)

        scaled = conductivity.data.astype(float) * self.ksat_scale
        native_m = self._native_cell_size_m(conductivity)
        radius = max(1, int(round(self.gapfill_radius_px * self.cell_size / native_m)))
        logger.info(f"  Gap-fill radius: {radius} native px (~{radius * native_m:.0f} m)")

        orphans = unfillable_cells(scaled, radius)
        filled, counts = focal_median_fill(
            scaled, radius, fallback=self.gapfill_fallback, sentinel=self.gapfill_sentinel
        )
        keep_sentinel = self.gapfill_fallback == "keep"
        if keep_sentinel:
            # Sentinel cells stay out of the bilinear kernel
            filled = np.ma.array(filled, mask=orphans)
        native = conductivity.with_data(filled, name="soil_hydraulic_conductivity")

        layer = self.store.reproject_to_grid(native, self.grid, "bilinear")
        footprint = self._native_footprint(conductivity, orphans) if counts["fallback"] else None
        if keep_sentinel and footprint is not None:
            data = layer.data.copy()
            data[footprint] = self.gapfill_sentinel
            layer = layer.with_data(data)
        layer = self.store.clip_to_geometry(layer, self.study_area)

        logger.info(f"  Filled {counts['filled']} missing Ksat cells")
        if footprint is not None:
            key = "gapfill_sentinel_remaining" if keep_sentinel else "gapfill_fallback"
            layer.flag(key, int((footprint & layer.valid).sum()))
        return layer

    def _native_footprint(self, source: RasterLayer, cells: np.ndarray) -> np.ndarray:
        """Target pixels whose nearest native cell is in ``cells``."""
        marker = source.with_data(np.ma.array(cells.astype(float), mask=False), name="gapfill_cells")
        nearest = self.store.reproject_to_grid(marker, self.grid, "nearest")
        return nearest.data.filled(0.0) > 0.5

    # =========================================================================
    # DISTANCE TO DRAINAGE
    # =========================================================================

    def drainage_target(self, drainage, streams=None) -> np.ndarray:
        """
        Rasterize drainage lines (clipped to the study area) and extra
        streams, buffered by ``drainage_buffer_m`` (one pixel by default).
        """
        parts = []
        if drainage is not None and len(as_geometry_list(drainage)):
            clipped = self.vectors.union(drainage).intersection(self.study_area)
            if not clipped.is_empty:
                parts.append(clipped)
        if streams is not None and len(as_geometry_list(streams)):
            parts.append(self.vectors.union(streams))

        if not parts:
            raise ConfigurationError(
                "Layer 'drainage': no drainage or stream geometry intersects the study area"
            )

        buffer_m = self.drainage_buffer_m if self.drainage_buffer_m is not None else self.cell_size
        target = self.vectors.buffer_union(parts, buffer_m)
        return self.store.rasterize(target, self.grid, all_touched=True).astype(bool)

    @timer
    def compute_distance(
        self,
        drainage=None,
        streams=None,
        target: Optional[np.ndarray] = None
    ) -> RasterLayer:
        """
        Euclidean distance to the nearest drainage cell, in meters.

        Distances beyond ``search_radius_m`` are clamped to it; the number
        of clamped cells is recorded in the layer flags.

        Parameters
        ----------
        drainage : geometries, optional
            Drainage lines
        streams : geometries, optional
            Additional stream lines
        target : np.ndarray, optional
            Precomputed boolean drainage raster on the grid

        Returns
        -------
        RasterLayer
            Band ``distance``
        """
        if target is None:
            target = self.drainage_target(drainage, streams)
        target = np.asarray(target, dtype=bool)
        if target.shape != self.grid.shape:
            raise ConfigurationError(
                f"Layer 'drainage' shape {target.shape} does not match grid {self.grid.shape}"
            )
        if not target.any():
            raise ConfigurationError("Layer 'drainage' has no drainage cells on the grid")

        res_x, res_y = self.grid.resolution
        distance = ndimage.distance_transform_edt(~target, sampling=(res_y, res_x))

        beyond = distance > self.search_radius_m
        distance = np.minimum(distance, self.search_radius_m)

        layer = RasterLayer("distance", np.ma.array(distance, mask=False), self.grid, self.store.nodata)
        layer = self.store.clip_to_geometry(layer, self.study_area)
        if beyond.any():
            layer.flag("distance_clamped", int(beyond.sum()))

        stats = calculate_statistics(layer.data)
        if stats["count"]:
            logger.info(f"  Distance: {stats['min']:.0f} - {stats['max']:.0f} m")
        return layer

    def distance_from_raster(self, distance: RasterLayer) -> RasterLayer:
        """Align a precomputed distance raster and clamp it at the search radius."""
        layer = self._align(distance, "distance", "bilinear")
        beyond = layer.data > self.search_radius_m
        layer = layer.with_data(np.ma.minimum(layer.data, self.search_radius_m))
        if np.ma.any(beyond):
            layer.flag("distance_clamped", int(np.ma.sum(beyond)))
        return layer

    # =========================================================================
    # EXTERNAL INPUTS
    # =========================================================================

    def prepare_continuous(self, layer: RasterLayer, name: str) -> RasterLayer:
        """Align a continuous input (HAND, TWI) with bilinear resampling."""
        return self._align(layer, name, "bilinear")

    def prepare_landcover(self, landcover: RasterLayer) -> RasterLayer:
        """Align a categorical land-cover raster with nearest neighbour."""
        layer = self._align(landcover, "landcover", "nearest")
        return layer.with_data(np.ma.round(layer.data).astype(np.int32))

    # =========================================================================
    # CLASS BAND
    # =========================================================================

    @timer
    def build_class_band(self, risk_zones) -> RasterLayer:
        """
        Binary class band from known risk polygons.

        1 inside the polygons, 0 within ``risk_buffer_m`` around them,
        masked everywhere else (excluded from sampling).

        Returns
        -------
        RasterLayer
            Band ``classes``
        """
        zones = self.vectors.union(risk_zones)
        if not zones.intersects(self.study_area):
            raise ConfigurationError("Layer 'risk_zones' does not intersect the study geometry")

        buffered = zones.buffer(self.risk_buffer_m)
        inside = self.store.rasterize(zones, self.grid).astype(bool)
        in_buffer = self.store.rasterize(buffered, self.grid).astype(bool)

        classes = np.ma.array(inside.astype(np.int32), mask=~(in_buffer | inside))
        layer = RasterLayer("classes", classes, self.grid, self.store.nodata)
        layer = self.store.clip_to_geometry(layer, self.study_area)

        n_pos = int(np.ma.sum(layer.data == 1))
        n_unl = int(np.ma.sum(layer.data == 0))
        if n_pos == 0:
            raise ConfigurationError("Layer 'risk_zones' covers no pixel of the grid")
        logger.info(f"  Class band: {n_pos} positive px, {n_unl} buffer px "
                    f"(buffer {self.risk_buffer_m:g} m)")
        return layer

    def reference_mask(self, risk_zones) -> np.ndarray:
        """Cells inside the risk polygons or their buffer."""
        buffered = self.vectors.union(risk_zones).buffer(self.risk_buffer_m)
        return self.store.rasterize(buffered, self.grid).astype(bool)

    # =========================================================================
    # STACK
    # =========================================================================

    @timer
    def build_stack(
        self,
        elevation: RasterLayer,
        conductivity: RasterLayer,
        hand: RasterLayer,
        twi: RasterLayer,
        landcover: RasterLayer,
        risk_zones,
        drainage=None,
        streams=None,
        distance: Optional[RasterLayer] = None
    ) -> FeatureStack:
        """
        Build every covariate and append them in stack order.

        Parameters
        ----------
        elevation, conductivity, hand, twi, landcover : RasterLayer
            Source layers at native resolution / CRS
        risk_zones : geometries
            Known flood risk polygons (already filtered)
        drainage, streams : geometries, optional
            Drainage lines and additional streams
        distance : RasterLayer, optional
            Precomputed distance raster used instead of ``drainage``

        Returns
        -------
        FeatureStack
        """
        logger.info("=" * 60)
        logger.info("BUILDING FEATURE STACK")
        logger.info("=" * 60)

        elevation_layer = self.prepare_elevation(elevation)
        bands = {
            "elevation": elevation_layer,
            "slope": self.compute_slope(elevation_layer),
            "soil_hydraulic_conductivity": self.fill_conductivity(conductivity),
            "hand": self.prepare_continuous(hand, "hand"),
            "twi": self.prepare_continuous(twi, "twi"),
            "landcover": self.prepare_landcover(landcover),
            "classes": self.build_class_band(risk_zones),
        }
        if distance is not None:
            bands["distance"] = self.distance_from_raster(distance)
        else:
            bands["distance"] = self.compute_distance(drainage, streams)

        stack = FeatureStack(self.grid)
        for name in STACK_ORDER:
            stack.add_band(bands[name])

        logger.info(f"  Stack bands: {stack.band_names}")
        return stack
