"""
Shared fixtures for the urban flood test-suite
===============================================
"""

import numpy as np
import pytest
from rasterio.transform import Affine

from urban_flood.config import build_config
from urban_flood.feature_engineering import CovariateBuilder
from urban_flood.raster import FeatureStack, GridSpec, RasterLayer
from urban_flood.synthetic import DEMO_OVERRIDES, make_study_area

CRS = "EPSG:31983"
ORIGIN = (240000.0, 9676000.0)


def make_grid(width: int = 10, height: int = 10, resolution: float = 10.0, crs: str = CRS) -> GridSpec:
    """North-up grid anchored at the synthetic study-area origin."""
    left, top = ORIGIN
    return GridSpec(crs, Affine(resolution, 0.0, left, 0.0, -resolution, top), width, height)


def make_stack(grid: GridSpec, **bands) -> FeatureStack:
    """Stack with one band per keyword, masking NaN cells."""
    stack = FeatureStack(grid)
    for name, values in bands.items():
        stack.add_band(RasterLayer(name, np.ma.masked_invalid(np.asarray(values, dtype=float)), grid))
    return stack


@pytest.fixture
def grid() -> GridSpec:
    return make_grid(100, 100)


@pytest.fixture
def demo_config() -> dict:
    return build_config(DEMO_OVERRIDES)


@pytest.fixture
def study():
    return make_study_area(seed=42)


@pytest.fixture
def flood_zones(study):
    zones = study["risk_zones"]
    return zones[zones["tipolo_g1"] == "Inundação"]


@pytest.fixture(scope="session")
def demo_stack() -> FeatureStack:
    """Full covariate stack of the synthetic study area (read-only)."""
    study = make_study_area(seed=42)
    zones = study["risk_zones"]
    builder = CovariateBuilder.from_config(build_config(DEMO_OVERRIDES), study["study_area"])
    return builder.build_stack(
        elevation=study["elevation"],
        conductivity=study["conductivity"],
        hand=study["hand"],
        twi=study["twi"],
        landcover=study["landcover"],
        risk_zones=zones[zones["tipolo_g1"] == "Inundação"],
        drainage=study["drainage"],
    )
