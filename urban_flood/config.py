"""
Configuration Parameters for Urban Flood Susceptibility Mapping
================================================================

Default values for every stage of the pipeline. Components never read
these dictionaries themselves: the pipeline copies them through
``build_config`` and passes the values into each constructor.
"""

import copy
import json
from pathlib import Path
from typing import Dict, Optional, Union

from .exceptions import ConfigurationError


# =============================================================================
# PROJECT PATHS
# =============================================================================

OUTPUT_DIR = Path("outputs")

OUTPUT_LAYOUT = {
    "rasters": "rasters",
    "tables": "tables",
    "figures": "figures",
    "models": "models",
}

# =============================================================================
# STUDY AREA CONFIGURATION - PARAGOMINAS (PA)
# =============================================================================

STUDY_AREA = {
    "name": "Paragominas urban area",
    "country": "Brasil",
    "epsg": 31983,  # SIRGAS 2000 / UTM zone 23S
    "epsg_name": "SIRGAS 2000 / UTM zone 23S",
    # Known flood-prone location used to name the flood cluster (x, y in target CRS)
    "reference_point": None,
}

# =============================================================================
# PROCESSING PARAMETERS
# =============================================================================

PROCESSING = {
    "target_resolution": 10,  # meters
    "target_crs": f"EPSG:{STUDY_AREA['epsg']}",
    "nodata_value": -9999,
    "elevation_nodata": -9999,
    "search_radius_m": 2500,  # distance-to-drainage cutoff
    "drainage_buffer_m": None,  # None = one pixel
    "gapfill_radius_px": 45,  # ~450 m at 10 m
    "gapfill_sentinel": 1000.0,
    "gapfill_fallback": "global_median",  # or "keep"
    "ksat_scale": 0.0001,
}

# =============================================================================
# LABELS (RISK SECTORS AND LAND COVER)
# =============================================================================

LABELS = {
    "risk_attribute": "tipolo_g1",
    "risk_value": "Inundação",
    "buffer_m": 200,
    "urban_class": 24,  # MapBiomas "Urban Area"
    "class_band": "classes",
}

# =============================================================================
# COVARIATES
# =============================================================================

COVARIATES = {
    "distance": {"name": "Distance to drainage", "unit": "m", "direction": -1},
    "elevation": {"name": "Elevation", "unit": "m", "direction": -1},
    "slope": {"name": "Slope", "unit": "degrees", "direction": -1},
    "soil_hydraulic_conductivity": {"name": "Ksat", "unit": "cm/d", "direction": -1},
    "hand": {"name": "Height Above Nearest Drainage", "unit": "m", "direction": -1},
    "twi": {"name": "Topographic Wetness Index", "unit": "dimensionless", "direction": 1},
}

FEATURE_BANDS = list(COVARIATES.keys())

# =============================================================================
# SAMPLING CONFIGURATION
# =============================================================================

SAMPLING = {
    "class_points": {0: 39000, 1: 4000},
    "random_state": 42,
}

# =============================================================================
# POSITIVE-UNLABELED LEARNING
# =============================================================================

PU_LEARNING = {
    "spy_fraction": 0.15,
    "threshold_policy": "mean_std",  # "mean_std", "percentile" or "minimum"
    "threshold_k": 1.0,
    "threshold_percentile": 5.0,
    "oversample": True,
    "smote_k_neighbors": 5,
    "min_positive_samples": 2,
    "random_state": 42,
    "label_column": "new_class",
}

# =============================================================================
# RANDOM FOREST MODEL CONFIGURATION
# =============================================================================

MODEL_CONFIG = {
    "algorithm": "RandomForest",
    "params": {
        "n_estimators": 100,
        "random_state": 42,
        "n_jobs": -1,
    },
    "test_size": 0.2,
    "min_samples_per_class": 2,
    "cv_folds": 0,  # 0 disables cross-validation
}

# =============================================================================
# UNSUPERVISED CLUSTERING
# =============================================================================

CLUSTERING = {
    "bands": ["elevation", "distance", "slope", "hand"],
    "k_min": 2,
    "k_max": 10,
    "random_state": 42,
    "min_support_px": 5,
}

# =============================================================================
# HAND THRESHOLD SLICING
# =============================================================================

HAND = {
    "band": "hand",
    "thresholds_m": [3, 4, 5],
}

# =============================================================================
# POST-PROCESSING
# =============================================================================

SMOOTHING = {
    "kernel_radius": 1,  # 3x3 window
}

HOTSPOTS = {
    "connectivity": 4,
    "max_component_size": 1024,
    "min_area_m2": 3000,
}

# =============================================================================
# SUSCEPTIBILITY INDEX
# =============================================================================

SUSCEPTIBILITY = {
    "directions": {name: spec["direction"] for name, spec in COVARIATES.items()},
    "slice_levels": list(range(99, 74, -1)),
    "restrict_to_urban": True,
}

# =============================================================================
# SEPARABILITY EXPORT
# =============================================================================

SEPARABILITY = {
    "enabled": True,
    "buffer_m": 1700,  # around the flood risk sectors
}

# =============================================================================
# VISUALIZATION SETTINGS
# =============================================================================

VISUALIZATION = {
    "enabled": True,
    "figure_dpi": 150,
    "figure_format": "png",
    "colormap": ["#22dd0e", "#f9fe31", "#d70c0c"],
    "animation_fps": 1,
}

# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

LOGGING = {
    "level": "INFO",
    "file": None,
}


DEFAULTS = {
    "study_area": STUDY_AREA,
    "processing": PROCESSING,
    "labels": LABELS,
    "sampling": SAMPLING,
    "pu_learning": PU_LEARNING,
    "model": MODEL_CONFIG,
    "clustering": CLUSTERING,
    "hand": HAND,
    "smoothing": SMOOTHING,
    "hotspots": HOTSPOTS,
    "susceptibility": SUSCEPTIBILITY,
    "separability": SEPARABILITY,
    "visualization": VISUALIZATION,
    "logging": LOGGING,
}


def _deep_merge(base: Dict, overrides: Dict, path: str = "") -> Dict:
    for key, value in overrides.items():
        if key not in base:
            raise ConfigurationError(f"Unknown configuration option: {path}{key}")
        if isinstance(base[key], dict) and isinstance(value, dict) and key != "class_points":
            _deep_merge(base[key], value, path=f"{path}{key}.")
        else:
            base[key] = value
    return base


def build_config(overrides: Optional[Dict] = None, base: Optional[Dict] = None) -> Dict:
    """
    Return a fresh copy of the defaults with ``overrides`` merged in.

    Parameters
    ----------
    overrides : dict, optional
        Nested dictionary using the same section names as ``DEFAULTS``
    base : dict, optional
        Configuration to start from instead of ``DEFAULTS``

    Returns
    -------
    dict
        Independent configuration dictionary
    """
    config = copy.deepcopy(DEFAULTS if base is None else base)
    if overrides:
        _deep_merge(config, copy.deepcopy(overrides))

    # JSON object keys are strings; class values are integers
    points = config["sampling"]["class_points"]
    config["sampling"]["class_points"] = {int(k): int(v) for k, v in points.items()}
    return config


def load_config(path: Optional[Union[str, Path]] = None, base: Optional[Dict] = None) -> Dict:
    """Load JSON overrides from ``path`` and merge them into the defaults (or ``base``)."""
    if path is None:
        return build_config(base=base)

    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    with open(path, encoding="utf-8") as f:
        overrides = json.load(f)
    return build_config(overrides, base=base)


def print_config(config: Dict):
    """Print configuration summary."""
    processing = config["processing"]
    print("=" * 60)
    print("URBAN FLOOD SUSCEPTIBILITY - CONFIGURATION")
    print("=" * 60)
    print(f"\n  Study Area: {config['study_area']['name']}")
    print(f"  CRS: {processing['target_crs']}, Resolution: {processing['target_resolution']}m")
    print(f"\n  PU spy fraction: {config['pu_learning']['spy_fraction']}"
          f" ({config['pu_learning']['threshold_policy']})")
    print(f"  RF trees: {config['model']['params']['n_estimators']}")
    print(f"  HAND thresholds: {config['hand']['thresholds_m']} m")
    print(f"  Min hotspot area: {config['hotspots']['min_area_m2']} m²")
    print("=" * 60)
