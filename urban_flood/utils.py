"""
Utility Functions for Urban Flood Susceptibility Mapping
========================================================

Contains helper functions for:
- Logging setup
- Timer decorators
- Array normalization
- Descriptive statistics
- File operations
"""

import sys
import json
import time
import logging
import functools
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union
from datetime import datetime

import numpy as np
from scipy import stats as sp_stats


LOGGER_NAME = "UrbanFlood"

DEFAULT_PERCENTILES = (0, 25, 50, 75, 90, 95, 99, 100)


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(
    log_file: Optional[Path] = None,
    level: str = "INFO",
    format_string: Optional[str] = None
) -> logging.Logger:
    """
    Setup logging configuration.

    Parameters
    ----------
    log_file : Path, optional
        Path to log file. If None, logs to console only.
    level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    format_string : str, optional
        Custom format string for log messages

    Returns
    -------
    logging.Logger
        Configured logger instance
    """
    if format_string is None:
        format_string = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child of the project logger for a module."""
    short_name = name.rsplit(".", 1)[-1]
    return logging.getLogger(f"{LOGGER_NAME}.{short_name}")


logger = get_logger(__name__)


# =============================================================================
# TIMER DECORATOR
# =============================================================================

def timer(func):
    """
    Decorator to measure and log function execution time.

    Usage
    -----
    @timer
    def my_function():
        pass
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        logger.info(f"Starting: {func.__qualname__}")

        result = func(*args, **kwargs)

        elapsed_time = time.time() - start_time
        logger.info(f"Completed: {func.__qualname__} in {format_duration(elapsed_time)}")
        return result

    return wrapper


# =============================================================================
# FILE UTILITIES
# =============================================================================

def ensure_dir(path: Union[str, Path]) -> Path:
    """
    Ensure directory exists, create if necessary.

    Parameters
    ----------
    path : str or Path
        Directory path

    Returns
    -------
    Path
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _json_default(value):
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def save_json(data: Dict, path: Union[str, Path]) -> Path:
    """Write ``data`` as indented JSON, converting numpy scalars and arrays."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=_json_default)
    return path


# =============================================================================
# DATA UTILITIES
# =============================================================================

def minmax_bounds(array: np.ndarray, mask: Optional[np.ndarray] = None) -> Tuple[float, float]:
    """
    Minimum and maximum of the valid cells of ``array``.

    Parameters
    ----------
    array : np.ndarray
        Input array (masked arrays honour their mask)
    mask : np.ndarray, optional
        Boolean region; only True cells are considered

    Returns
    -------
    tuple
        (min, max); (nan, nan) when no valid cell exists
    """
    data = _valid_values(array, mask)
    if data.size == 0:
        return float("nan"), float("nan")
    return float(data.min()), float(data.max())


def normalize_array(
    array: np.ndarray,
    bounds: Optional[Tuple[float, float]] = None,
    clip: bool = True
) -> Optional[np.ndarray]:
    """
    Min-max normalize an array to [0, 1].

    Parameters
    ----------
    array : np.ndarray
        Input array
    bounds : tuple, optional
        (min, max) to normalize with. Computed from ``array`` if omitted.
    clip : bool
        Clip values that fall outside ``bounds`` into [0, 1]

    Returns
    -------
    np.ndarray or None
        Normalized array (masked if input was masked), or None when the
        band is constant (max == min) and cannot be normalized
    """
    if isinstance(array, np.ma.MaskedArray):
        mask = np.ma.getmaskarray(array)
        data = array.filled(np.nan).astype(float)
    else:
        mask = None
        data = np.asarray(array, dtype=float)

    if bounds is None:
        bounds = minmax_bounds(data)
    min_val, max_val = bounds

    if not np.isfinite(min_val) or not np.isfinite(max_val) or max_val - min_val <= 0:
        return None

    normalized = (data - min_val) / (max_val - min_val)
    if clip:
        normalized = np.clip(normalized, 0.0, 1.0)

    if mask is not None:
        normalized = np.ma.array(normalized, mask=mask | np.isnan(normalized))

    return normalized


def calculate_statistics(
    array: np.ndarray,
    percentiles: Iterable[float] = DEFAULT_PERCENTILES
) -> Dict[str, float]:
    """
    Calculate descriptive statistics for array.

    Parameters
    ----------
    array : np.ndarray
        Input array; NaN and masked cells are ignored
    percentiles : iterable of float
        Percentiles to report as ``p<q>`` keys

    Returns
    -------
    dict
        count, min, max, mean, median, std, variance, skewness,
        kurtosis (excess) and requested percentiles
    """
    data = _valid_values(array)

    if data.size == 0:
        return {"count": 0}

    result = {
        "count": int(data.size),
        "min": float(np.min(data)),
        "max": float(np.max(data)),
        "mean": float(np.mean(data)),
        "median": float(np.median(data)),
        "std": float(np.std(data)),
        "variance": float(np.var(data)),
        "skewness": float(sp_stats.skew(data)) if data.size > 2 else 0.0,
        "kurtosis": float(sp_stats.kurtosis(data)) if data.size > 3 else 0.0,
    }
    for q in percentiles:
        result[f"p{int(q)}"] = float(np.percentile(data, q))

    return result


def _valid_values(array: np.ndarray, mask: Optional[np.ndarray] = None) -> np.ndarray:
    """Flatten array to its finite, unmasked values inside ``mask``."""
    if isinstance(array, np.ma.MaskedArray):
        valid = ~np.ma.getmaskarray(array)
        data = array.data.astype(float)
    else:
        data = np.asarray(array, dtype=float)
        valid = np.ones(data.shape, dtype=bool)

    valid &= np.isfinite(data)
    if mask is not None:
        valid &= np.asarray(mask, dtype=bool)
    return data[valid]


# =============================================================================
# TIMESTAMP UTILITIES
# =============================================================================

def get_timestamp() -> str:
    """Get current timestamp string."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.2f} seconds"
    elif seconds < 3600:
        return f"{seconds/60:.2f} minutes"
    else:
        return f"{seconds/3600:.2f} hours"
