"""
Stratified Label Sampling
=========================

Draws seeded, per-class random samples of pixels from the class band of a
feature stack, dumps every pixel of a region for separability analysis and
exchanges sample tables with out-of-process tools.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import geopandas as gpd

from .exceptions import ConfigurationError, SchemaError
from .raster import FeatureStack
from .utils import get_logger, timer

logger = get_logger(__name__)

COORDINATE_COLUMNS = ["x", "y"]


class LabelSampler:
    """
    Stratified random sampling of labeled pixels.

    Attributes
    ----------
    class_points : dict
        Requested sample count per class value
    feature_names : list
        Covariate bands copied into every sample
    class_band : str
        Name of the label band in the stack
    random_state : int
        Seed of the sampler

    Example
    -------
    >>> sampler = LabelSampler({0: 39000, 1: 4000}, FEATURE_BANDS, random_state=42)
    >>> samples = sampler.sample(stack)
    """

    def __init__(
        self,
        class_points: Dict[int, int],
        feature_names: Sequence[str],
        class_band: str = "classes",
        random_state: int = 42
    ):
        if not class_points:
            raise ConfigurationError("class_points must request at least one class")
        for value, count in class_points.items():
            if count < 0:
                raise ConfigurationError(f"class_points[{value}] must be >= 0, got {count}")

        self.class_points = {int(k): int(v) for k, v in class_points.items()}
        self.feature_names = list(feature_names)
        self.class_band = class_band
        self.random_state = random_state
        self.flags: Dict = {}

    @timer
    def sample(self, stack: FeatureStack) -> gpd.GeoDataFrame:
        """
        Draw the stratified sample.

        Only pixels with a class value and valid values in every feature
        band are eligible. When a class has fewer eligible pixels than
        requested, all of them are returned and a warning is recorded.

        Parameters
        ----------
        stack : FeatureStack
            Stack holding the feature bands and the class band

        Returns
        -------
        gpd.GeoDataFrame
            One row per sample: features, class band, x, y, geometry
        """
        rng = np.random.default_rng(self.random_state)

        classes = stack[self.class_band].data
        eligible = stack.valid_mask(self.feature_names) & ~np.ma.getmaskarray(classes)
        labels = classes.filled(-1)

        self.flags = {}
        picked_rows: List[np.ndarray] = []
        picked_cols: List[np.ndarray] = []

        for value, requested in sorted(self.class_points.items()):
            rows, cols = np.nonzero(eligible & (labels == value))
            available = rows.size

            if requested > available:
                logger.warning(
                    f"Class {value}: requested {requested} samples, only {available} "
                    f"pixels available; returning {available}"
                )
                self.flags[f"class_{value}_short"] = {"requested": requested, "available": available}
            n = min(requested, available)

            index = np.sort(rng.choice(available, size=n, replace=False)) if n else np.array([], dtype=int)
            picked_rows.append(rows[index])
            picked_cols.append(cols[index])
            logger.info(f"  Class {value}: {n} samples from {available} px")

        rows = np.concatenate(picked_rows)
        cols = np.concatenate(picked_cols)
        return self.to_table(stack, rows, cols)

    def to_table(self, stack: FeatureStack, rows: np.ndarray, cols: np.ndarray) -> gpd.GeoDataFrame:
        """Assemble sampled pixels into a GeoDataFrame."""
        values = stack.array(self.feature_names)[:, rows, cols]
        data = {name: values[i] for i, name in enumerate(self.feature_names)}
        data[self.class_band] = stack[self.class_band].data.data[rows, cols].astype(int)

        return _points_frame(stack, rows, cols, data)


def _points_frame(stack: FeatureStack, rows: np.ndarray, cols: np.ndarray, data: Dict) -> gpd.GeoDataFrame:
    a, b, c, d, e, f = tuple(stack.grid.transform)[:6]
    data["x"] = a * (cols + 0.5) + b * (rows + 0.5) + c
    data["y"] = d * (cols + 0.5) + e * (rows + 0.5) + f

    df = pd.DataFrame(data)
    return gpd.GeoDataFrame(
        df,
        geometry=gpd.points_from_xy(df["x"], df["y"]),
        crs=stack.grid.crs
    )


@timer
def region_table(
    stack: FeatureStack,
    region: np.ndarray,
    feature_names: Sequence[str],
    bands: Optional[Dict[str, np.ma.MaskedArray]] = None
) -> gpd.GeoDataFrame:
    """
    Every pixel of ``region`` with valid covariates, as a point table.

    Parameters
    ----------
    stack : FeatureStack
        Frozen covariate stack
    region : np.ndarray
        Boolean mask on the stack grid
    feature_names : sequence of str
        Covariate columns, in order
    bands : dict, optional
        Extra integer rasters keyed by column name; masked cells are
        written as 0

    Returns
    -------
    gpd.GeoDataFrame
        Covariates, the extra bands, pixel-centre ``x`` / ``y`` and point
        geometry, in row-major pixel order
    """
    region = np.asarray(region, dtype=bool)
    if region.shape != stack.grid.shape:
        raise ConfigurationError(
            f"Region mask shape {region.shape} does not match grid {stack.grid.shape}"
        )
    rows, cols = np.nonzero(region & stack.valid_mask(feature_names))

    values = stack.array(feature_names)[:, rows, cols]
    data = {name: values[i] for i, name in enumerate(feature_names)}
    for name, band in (bands or {}).items():
        data[name] = np.ma.filled(band, 0)[rows, cols].astype(int)

    logger.info(f"  Region table: {len(rows)} px of {int(region.sum())} in region")
    return _points_frame(stack, rows, cols, data)


# =============================================================================
# TABLE EXPORT / IMPORT
# =============================================================================

def write_table(df: pd.DataFrame, path: Union[str, Path]) -> Path:
    """
    Write a sample table as CSV (geometry dropped) or GeoPackage.

    The format follows the file suffix: ``.csv`` or ``.gpkg``.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() == ".gpkg":
        if not isinstance(df, gpd.GeoDataFrame):
            raise SchemaError(f"GeoPackage export of {path.name} needs a geometry column")
        df.to_file(path, driver="GPKG")
    elif path.suffix.lower() == ".csv":
        pd.DataFrame(df.drop(columns="geometry", errors="ignore")).to_csv(path, index=False)
    else:
        raise ConfigurationError(f"Unsupported table format '{path.suffix}' for {path.name}")

    logger.info(f"  Saved table: {path.name} ({len(df)} rows)")
    return path


def validate_table(
    df: pd.DataFrame,
    feature_names: Sequence[str],
    label_column: str,
    crs: Optional[str] = None,
    source: str = "sample table"
) -> gpd.GeoDataFrame:
    """
    Check the columns and labels of a sample table and attach point geometry.

    Parameters
    ----------
    df : pd.DataFrame
        Table with covariates, ``label_column`` and x / y (or a geometry)
    feature_names : sequence of str
        Covariate columns that must be present
    label_column : str
        Label column that must be present with values in {0, 1}
    crs : str, optional
        CRS of the x / y columns when ``df`` has no geometry
    source : str
        Table name used in error messages

    Returns
    -------
    gpd.GeoDataFrame
        Copy of ``df`` with an integer label column
    """
    df = df.copy()
    if isinstance(df, gpd.GeoDataFrame) and "x" not in df.columns and df.geometry.name in df.columns:
        df["x"] = df.geometry.x
        df["y"] = df.geometry.y

    required = list(feature_names) + [label_column] + COORDINATE_COLUMNS
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise SchemaError(f"{source} is missing columns: {missing}")

    labels = set(pd.unique(df[label_column].dropna()))
    if not labels <= {0, 1}:
        raise SchemaError(f"Column '{label_column}' in {source} must hold 0/1, got {sorted(labels)}")
    if df[required].isna().any().any():
        raise SchemaError(f"{source} has missing values in {required}")

    df[label_column] = df[label_column].astype(int)
    if not isinstance(df, gpd.GeoDataFrame):
        df = gpd.GeoDataFrame(df, geometry=gpd.points_from_xy(df["x"], df["y"]), crs=crs)
    return df


def read_table(
    path: Union[str, Path],
    feature_names: Sequence[str],
    label_column: str,
    crs: Optional[str] = None
) -> gpd.GeoDataFrame:
    """
    Read a sample table back and validate it with ``validate_table``.

    Parameters
    ----------
    path : str or Path
        CSV or GeoPackage file
    feature_names : sequence of str
        Covariate columns that must be present
    label_column : str
        Label column that must be present with values in {0, 1}
    crs : str, optional
        CRS of the x / y columns when reading CSV

    Returns
    -------
    gpd.GeoDataFrame
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Sample table not found: {path}")

    if path.suffix.lower() == ".gpkg":
        df = gpd.read_file(path)
    else:
        df = pd.read_csv(path)

    df = validate_table(df, feature_names, label_column, crs=crs, source=f"Sample table {path.name}")
    logger.info(f"Loaded table {path.name}: {len(df)} rows")
    return df
