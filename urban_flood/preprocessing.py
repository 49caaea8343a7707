"""
Raster and Vector Stores for Urban Flood Susceptibility Mapping
================================================================

Handles reading, writing and alignment of geospatial datasets:
- GeoTIFF read / write (single band and multi-band stacks)
- CRS reprojection and resampling onto a target grid
- Clipping to the study geometry and rasterization of vectors
- Zonal statistics
- Vector loading, attribute filters and geometric set operations
"""

from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import geopandas as gpd
import rasterio
from rasterio.errors import RasterioError
from rasterio.features import geometry_mask, rasterize as rio_rasterize
from rasterio.warp import reproject, transform_bounds, Resampling
from shapely.geometry import box, mapping
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from .exceptions import ConfigurationError, RasterIOError
from .raster import FeatureStack, GridSpec, RasterLayer
from .utils import get_logger, timer

logger = get_logger(__name__)

RESAMPLING_METHODS = {
    "nearest": Resampling.nearest,
    "bilinear": Resampling.bilinear,
    "cubic": Resampling.cubic,
    "average": Resampling.average,
    "mode": Resampling.mode,
}


def as_geometry_list(geometry) -> list:
    """Normalize a geometry, GeoSeries/GeoDataFrame or iterable into a list."""
    if geometry is None:
        return []
    if isinstance(geometry, BaseGeometry):
        return [] if geometry.is_empty else [geometry]
    if isinstance(geometry, (gpd.GeoDataFrame, gpd.GeoSeries)):
        geometry = geometry.geometry if isinstance(geometry, gpd.GeoDataFrame) else geometry
        return [g for g in geometry if g is not None and not g.is_empty]
    return [g for g in geometry if g is not None and not g.is_empty]


class RasterStore:
    """
    Grid-aligned raster I/O and raster operations.

    Attributes
    ----------
    nodata : float
        NoData value for outputs
    compress : str
        GeoTIFF compression

    Example
    -------
    >>> store = RasterStore(nodata=-9999)
    >>> dem = store.load("anadem.tif", name="elevation")
    >>> dem_10m = store.reproject_to_grid(dem, grid, resampling="bilinear")
    """

    def __init__(self, nodata: float = -9999, compress: str = "lzw"):
        self.nodata = nodata
        self.compress = compress

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    def load(
        self,
        path: Union[str, Path],
        name: Optional[str] = None,
        band: int = 1,
        nodata: Optional[float] = None
    ) -> RasterLayer:
        """
        Read one band of a raster file.

        Parameters
        ----------
        path : str or Path
            Raster path
        name : str, optional
            Layer name (defaults to the file stem)
        band : int
            1-based band index
        nodata : float, optional
            Sentinel to mask in addition to the file's own nodata

        Returns
        -------
        RasterLayer
        """
        path = Path(path)
        name = name or path.stem

        try:
            with rasterio.open(path) as src:
                if src.crs is None:
                    raise ConfigurationError(f"Raster '{name}' ({path}) has no CRS")
                data = src.read(band, masked=True).astype(float)
                grid = GridSpec(src.crs, src.transform, src.width, src.height)
                file_nodata = src.nodata
        except RasterioError as e:
            raise RasterIOError(f"Could not read raster '{name}' from {path}: {e}") from e

        if nodata is not None:
            data = np.ma.masked_where(np.isclose(data.filled(nodata), nodata), data)

        layer_nodata = file_nodata if file_nodata is not None else self.nodata
        logger.info(f"Loaded {name}: {grid.width}x{grid.height}, "
                    f"res={grid.resolution[0]:g}, crs={grid.crs}")
        return RasterLayer(name, data, grid, layer_nodata, {"source": str(path)})

    def write(
        self,
        layer: RasterLayer,
        destination: Union[str, Path],
        dtype: str = "float32"
    ) -> Path:
        """
        Write a layer as a single-band GeoTIFF.

        Parameters
        ----------
        layer : RasterLayer
            Layer to write
        destination : str or Path
            Output path
        dtype : str
            Output data type

        Returns
        -------
        Path
            Path to written raster
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        profile = self._profile(layer.grid, 1, dtype, nodata=layer.nodata)
        try:
            with rasterio.open(destination, "w", **profile) as dst:
                dst.write(layer.data.filled(layer.nodata).astype(dtype), 1)
                dst.set_band_description(1, layer.name)
                dst.update_tags(**self._tags(layer.metadata))
        except RasterioError as e:
            raise RasterIOError(f"Could not write raster '{layer.name}' to {destination}: {e}") from e

        logger.info(f"  Saved: {destination.name}")
        return destination

    @timer
    def write_stack(
        self,
        stack: FeatureStack,
        destination: Union[str, Path],
        dtype: str = "float32"
    ) -> Path:
        """Write every band of ``stack`` to one GeoTIFF and freeze the stack."""
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        profile = self._profile(stack.grid, len(stack), dtype)
        try:
            with rasterio.open(destination, "w", **profile) as dst:
                for index, layer in enumerate(stack, start=1):
                    dst.write(layer.data.filled(self.nodata).astype(dtype), index)
                    dst.set_band_description(index, layer.name)
        except RasterioError as e:
            raise RasterIOError(f"Could not write stack to {destination}: {e}") from e

        stack.freeze()
        logger.info(f"  Saved stack ({len(stack)} bands): {destination.name}")
        return destination

    def _profile(self, grid: GridSpec, count: int, dtype: str, nodata: Optional[float] = None) -> Dict:
        return {
            "driver": "GTiff",
            "width": grid.width,
            "height": grid.height,
            "count": count,
            "dtype": dtype,
            "crs": grid.crs,
            "transform": grid.transform,
            "nodata": self.nodata if nodata is None else nodata,
            "compress": self.compress,
        }

    @staticmethod
    def _tags(metadata: Dict) -> Dict[str, str]:
        return {str(k): str(v) for k, v in metadata.items()}

    # =========================================================================
    # GRID OPERATIONS
    # =========================================================================

    def reproject_to_grid(
        self,
        layer: RasterLayer,
        grid: GridSpec,
        resampling: str = "bilinear",
        name: Optional[str] = None
    ) -> RasterLayer:
        """
        Resample a layer onto ``grid``.

        Parameters
        ----------
        layer : RasterLayer
            Source layer in any CRS / resolution
        grid : GridSpec
            Target grid
        resampling : str
            'nearest', 'bilinear', 'cubic', 'average' or 'mode'
        name : str, optional
            Name of the output layer

        Returns
        -------
        RasterLayer
            Layer co-registered with ``grid``
        """
        if resampling not in RESAMPLING_METHODS:
            raise ConfigurationError(
                f"Unknown resampling '{resampling}' for layer '{layer.name}' "
                f"(choose from {list(RESAMPLING_METHODS)})"
            )
        name = name or layer.name

        if layer.grid.is_aligned_with(grid):
            return RasterLayer(name, layer.data.copy(), grid, self.nodata, dict(layer.metadata))

        source = layer.data.astype(float).filled(self.nodata)
        destination = np.full(grid.shape, self.nodata, dtype=float)

        reproject(
            source=source,
            destination=destination,
            src_transform=layer.grid.transform,
            src_crs=layer.grid.crs,
            dst_transform=grid.transform,
            dst_crs=grid.crs,
            resampling=RESAMPLING_METHODS[resampling],
            src_nodata=self.nodata,
            dst_nodata=self.nodata
        )

        data = np.ma.masked_where(np.isclose(destination, self.nodata), destination)
        logger.debug(f"Reprojected {layer.name} -> {name} ({resampling})")
        return RasterLayer(name, data, grid, self.nodata, dict(layer.metadata))

    def footprint(self, layer: RasterLayer, crs) -> BaseGeometry:
        """Bounding box of ``layer`` expressed in ``crs``."""
        bounds = layer.grid.bounds
        if layer.grid.crs != crs:
            bounds = transform_bounds(layer.grid.crs, crs, *bounds)
        return box(*bounds)

    def check_overlap(self, layer: RasterLayer, geometry: BaseGeometry, crs) -> None:
        """Raise ConfigurationError if ``layer`` does not cover any of ``geometry``."""
        if not self.footprint(layer, crs).intersects(geometry):
            raise ConfigurationError(
                f"Layer '{layer.name}' extent {layer.grid.bounds} does not intersect "
                f"the study geometry"
            )

    def clip_to_geometry(self, layer: RasterLayer, geometry) -> RasterLayer:
        """Mask every cell of ``layer`` whose centre lies outside ``geometry``."""
        geoms = as_geometry_list(geometry)
        if not geoms:
            raise ConfigurationError(f"Cannot clip layer '{layer.name}' to an empty geometry")

        outside = geometry_mask(
            [mapping(g) for g in geoms],
            out_shape=layer.grid.shape,
            transform=layer.grid.transform
        )
        data = np.ma.array(layer.data, mask=np.ma.getmaskarray(layer.data) | outside)
        return layer.with_data(data)

    def rasterize(
        self,
        geometries,
        grid: GridSpec,
        burn: int = 1,
        fill: int = 0,
        all_touched: bool = False
    ) -> np.ndarray:
        """
        Burn geometries into a uint8 array on ``grid``.

        Parameters
        ----------
        geometries : geometry, GeoSeries, GeoDataFrame or iterable
            Shapes to burn
        grid : GridSpec
            Target grid
        burn : int
            Value for covered cells
        fill : int
            Value for the rest
        all_touched : bool
            Burn every cell touched by a shape, not only cells whose
            centre is inside

        Returns
        -------
        np.ndarray
        """
        geoms = as_geometry_list(geometries)
        if not geoms:
            return np.full(grid.shape, fill, dtype=np.uint8)

        return rio_rasterize(
            ((mapping(g), burn) for g in geoms),
            out_shape=grid.shape,
            transform=grid.transform,
            fill=fill,
            all_touched=all_touched,
            dtype="uint8"
        )

    # =========================================================================
    # ZONAL STATISTICS
    # =========================================================================

    def zonal_statistics(self, layer: RasterLayer, zone_mask: np.ndarray) -> Dict[str, float]:
        """
        Reduce the valid cells of ``layer`` inside ``zone_mask``.

        Returns
        -------
        dict
            count, sum, mean, min, max (NaN when the zone has no valid cell)
        """
        zone = np.asarray(zone_mask, dtype=bool) & layer.valid
        values = layer.data.data[zone].astype(float)

        if values.size == 0:
            return {"count": 0, "sum": 0.0, "mean": float("nan"),
                    "min": float("nan"), "max": float("nan")}

        return {
            "count": int(values.size),
            "sum": float(values.sum()),
            "mean": float(values.mean()),
            "min": float(values.min()),
            "max": float(values.max()),
        }


class VectorStore:
    """
    Vector loading and geometric operations in the target CRS.

    Example
    -------
    >>> vectors = VectorStore("EPSG:31983")
    >>> sectors = vectors.load("risk_sectors.gpkg")
    >>> floods = vectors.filter_equals(sectors, "tipolo_g1", "Inundação")
    """

    def __init__(self, target_crs: str):
        self.target_crs = target_crs

    def load(self, path: Union[str, Path], layer: Optional[str] = None) -> gpd.GeoDataFrame:
        """
        Read a vector file and reproject it to the target CRS.

        Rows with empty or missing geometry are dropped.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Vector file not found: {path}")

        gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
        return self.prepare(gdf, name=path.name)

    def prepare(self, gdf: gpd.GeoDataFrame, name: str = "vector") -> gpd.GeoDataFrame:
        """Reproject an in-memory GeoDataFrame and drop empty geometries."""
        if gdf.crs is None:
            raise ConfigurationError(f"Vector '{name}' has no CRS")

        gdf = gdf[gdf.geometry.notna() & ~gdf.geometry.is_empty]
        if str(gdf.crs) != str(self.target_crs):
            gdf = gdf.to_crs(self.target_crs)

        logger.info(f"Vector {name}: {len(gdf)} features")
        return gdf

    def filter_equals(self, gdf: gpd.GeoDataFrame, column: str, value) -> gpd.GeoDataFrame:
        """Rows whose ``column`` equals ``value``."""
        if column not in gdf.columns:
            raise ConfigurationError(
                f"Attribute '{column}' not found (available: {list(gdf.columns)})"
            )
        selected = gdf[gdf[column] == value]
        if selected.empty:
            raise ConfigurationError(f"No features with {column} == {value!r}")

        logger.info(f"  Filter {column} == {value!r}: {len(selected)}/{len(gdf)} features")
        return selected

    @staticmethod
    def union(geometries) -> BaseGeometry:
        geoms = as_geometry_list(geometries)
        if not geoms:
            raise ConfigurationError("Cannot union an empty set of geometries")
        return unary_union(geoms)

    def buffer_union(self, geometries, distance: float) -> BaseGeometry:
        """Buffer every geometry by ``distance`` and dissolve them."""
        geoms = as_geometry_list(geometries)
        if not geoms:
            raise ConfigurationError(f"Cannot buffer an empty set of geometries by {distance}")
        return unary_union([g.buffer(distance) for g in geoms])

    @staticmethod
    def intersection(a, b, what: str = "intersection") -> BaseGeometry:
        """Intersection of two geometry sets; raises if the result is empty."""
        result = VectorStore.union(a).intersection(VectorStore.union(b))
        if result.is_empty:
            raise ConfigurationError(f"Empty {what}: geometries do not overlap")
        return result
