"""
Synthetic Study Area
====================

Reproducible inputs for demos and tests:
- DEM with a river valley and a circular hill
- River line (drainage) and HAND / TWI consistent with it
- Ksat on a coarser native grid with gaps
- Land cover with an urban block (class 24)
- Risk sectors (two flood polygons and one landslide decoy)
"""

import json
from pathlib import Path
from typing import Dict, Tuple, Union

import numpy as np
import geopandas as gpd
from rasterio.transform import Affine
from shapely.geometry import LineString, box

from .preprocessing import RasterStore
from .raster import GridSpec, RasterLayer
from .utils import ensure_dir, get_logger

logger = get_logger(__name__)

# Sample counts that fit the synthetic class band
DEMO_OVERRIDES = {
    "sampling": {"class_points": {0: 3000, 1: 250}},
    "model": {"params": {"n_estimators": 50}},
    "clustering": {"k_max": 6},
}


def _grid(left: float, top: float, resolution: float, width: int, height: int, crs: str) -> GridSpec:
    return GridSpec(crs, Affine(resolution, 0.0, left, 0.0, -resolution, top), width, height)


def make_study_area(
    size: int = 100,
    resolution: float = 10.0,
    origin: Tuple[float, float] = (240000.0, 9676000.0),
    crs: str = "EPSG:31983",
    seed: int = 42
) -> Dict:
    """
    Build a synthetic study area.

    The river runs north-south through column ``0.3 * size``. Elevation
    rises 3 cm per metre away from the river, and a 20 m circular hill sits
    in the south-east. The urban block straddles the river and holds both
    flood sectors.

    Parameters
    ----------
    size : int
        Grid width and height in pixels
    resolution : float
        Pixel size in metres
    origin : tuple
        (left, top) corner of the grid
    crs : str
        Projected CRS of every layer
    seed : int
        Seed of the noise generator

    Returns
    -------
    dict
        ``study_area``, ``elevation``, ``conductivity``, ``hand``, ``twi``,
        ``landcover``, ``risk_zones``, ``drainage`` and ``reference_point``
    """
    rng = np.random.default_rng(seed)
    left, top = origin
    extent = size * resolution
    grid = _grid(left, top, resolution, size, size, crs)

    xs, ys = grid.pixel_centers()
    river_x = left + (int(0.3 * size) + 0.5) * resolution
    distance = np.abs(xs - river_x)

    # Terrain
    bed = 40.0 + 0.01 * (ys - (top - extent))
    hill_row, hill_col, hill_radius = 0.7 * size, 0.75 * size, 0.15 * size
    rows, cols = np.indices((size, size))
    hill_dist = np.hypot(rows - hill_row, cols - hill_col) / hill_radius
    hill = 20.0 * np.clip(1.0 - hill_dist ** 2, 0.0, 1.0)

    elevation = bed + 0.03 * distance + hill + rng.normal(0.0, 0.05, (size, size))
    hand = np.clip(elevation - bed, 0.0, None)
    twi = 5.0 + 9.0 * np.exp(-distance / 150.0) - 0.15 * hill + rng.normal(0.0, 0.3, (size, size))

    elevation[:2, -2:] = -9999.0

    # Ksat on a 30 m grid padded by one native cell
    native_res = 3 * resolution
    native_size = int(np.ceil(extent / native_res)) + 2
    ksat_grid = _grid(left - native_res, top + native_res, native_res, native_size, native_size, crs)
    kx, _ = ksat_grid.pixel_centers()
    ksat = 8000.0 + 12000.0 * np.minimum(np.abs(kx - river_x) / 600.0, 1.0)
    ksat += rng.normal(0.0, 500.0, ksat.shape)
    gaps = np.zeros(ksat.shape, dtype=bool)
    gaps[10:15, 20:26] = True
    gaps |= rng.random(ksat.shape) < 0.03

    # Land cover
    landcover = np.full((size, size), 3, dtype=np.int32)
    u0, u1 = int(0.15 * size), int(0.85 * size)
    landcover[u0:u1, int(0.05 * size):int(0.7 * size)] = 24
    landcover[distance < resolution] = 33

    # Vectors
    risk_zones = gpd.GeoDataFrame(
        {
            "tipolo_g1": ["Inundação", "Inundação", "Deslizamento"],
            "sector": ["A", "B", "C"],
        },
        geometry=[
            box(river_x + 20, top - 400, river_x + 140, top - 280),
            box(river_x - 130, top - 700, river_x - 20, top - 580),
            box(left + 0.7 * extent, top - 0.78 * extent, left + 0.8 * extent, top - 0.68 * extent),
        ],
        crs=crs,
    )
    drainage = gpd.GeoDataFrame(
        {"name": ["river"]},
        geometry=[LineString([(river_x, top), (river_x, top - extent)])],
        crs=crs,
    )

    logger.info(f"Synthetic study area: {size}x{size} @ {resolution:g}m, river at x={river_x:.0f}")
    return {
        "study_area": box(left, top - extent, left + extent, top),
        "elevation": RasterLayer("elevation", np.ma.array(elevation, mask=False), grid),
        "conductivity": RasterLayer("conductivity", np.ma.array(ksat, mask=gaps), ksat_grid),
        "hand": RasterLayer("hand", np.ma.array(hand, mask=False), grid),
        "twi": RasterLayer("twi", np.ma.array(twi, mask=False), grid),
        "landcover": RasterLayer("landcover", np.ma.array(landcover, mask=False), grid),
        "risk_zones": risk_zones,
        "drainage": drainage,
        "reference_point": (river_x + 80, top - 340),
    }


def write_study_area(inputs: Dict, directory: Union[str, Path]) -> Path:
    """
    Write synthetic inputs to disk and return the path of an inputs JSON
    usable with ``main.py --inputs``.
    """
    directory = ensure_dir(directory)
    store = RasterStore()
    manifest = {}

    for name in ("elevation", "conductivity", "hand", "twi", "landcover"):
        manifest[name] = str(store.write(inputs[name], directory / f"{name}.tif"))

    for name in ("risk_zones", "drainage"):
        path = directory / f"{name}.gpkg"
        inputs[name].to_file(path, driver="GPKG")
        manifest[name] = str(path)

    study = gpd.GeoDataFrame(geometry=[inputs["study_area"]], crs=inputs["risk_zones"].crs)
    study_path = directory / "study_area.gpkg"
    study.to_file(study_path, driver="GPKG")
    manifest["study_area"] = str(study_path)
    manifest["reference_point"] = list(inputs["reference_point"])

    manifest_path = directory / "inputs.json"
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2)
    return manifest_path
