"""
Focal (Neighborhood) Filters
============================

Square-kernel moving-window operations on masked rasters:
- focal_mode: majority filter for class rasters
- focal_mean: mean over valid neighbours for continuous rasters
- focal_median_fill: fill missing cells with the local median
- unfillable_cells: missing cells without a valid neighbour in the window
"""

from typing import Dict, Tuple

import numpy as np
from scipy import ndimage

from .exceptions import ConfigurationError
from .utils import get_logger

logger = get_logger(__name__)

FILL_FALLBACKS = ("global_median", "keep")


def _square_kernel(radius: int) -> np.ndarray:
    if radius < 0:
        raise ConfigurationError(f"Kernel radius must be >= 0, got {radius}")
    size = 2 * int(radius) + 1
    return np.ones((size, size))


def focal_mode(data: np.ndarray, radius: int = 1) -> np.ma.MaskedArray:
    """
    Majority (mode) filter over a square window.

    Masked cells count as class 0 inside the window, cells beyond the
    grid edge are not counted. Ties resolve to the smallest class value.
    The input mask is kept on the output.

    Parameters
    ----------
    data : np.ndarray
        Integer class raster (masked arrays honour their mask)
    radius : int
        Kernel radius in pixels (1 = 3x3)

    Returns
    -------
    np.ma.MaskedArray
        Smoothed class raster
    """
    kernel = _square_kernel(radius)
    mask = np.ma.getmaskarray(data)
    values = np.ma.filled(np.ma.asarray(data), 0).astype(np.int64)

    classes = np.unique(values)
    counts = np.stack([
        ndimage.convolve((values == c).astype(float), kernel, mode="constant", cval=0.0)
        for c in classes
    ])
    smoothed = classes[np.argmax(counts, axis=0)]

    return np.ma.array(smoothed, mask=mask.copy())


def focal_mean(data: np.ndarray, radius: int = 1) -> np.ma.MaskedArray:
    """
    Mean of the valid cells in a square window.

    Parameters
    ----------
    data : np.ndarray
        Continuous raster (masked arrays honour their mask)
    radius : int
        Kernel radius in pixels (1 = 3x3)

    Returns
    -------
    np.ma.MaskedArray
        Smoothed raster with the input mask
    """
    kernel = _square_kernel(radius)
    data = np.ma.masked_invalid(np.ma.asarray(data, dtype=float))
    valid = (~np.ma.getmaskarray(data)).astype(float)
    values = data.filled(0.0)

    total = ndimage.convolve(values * valid, kernel, mode="constant", cval=0.0)
    weight = ndimage.convolve(valid, kernel, mode="constant", cval=0.0)

    with np.errstate(invalid="ignore", divide="ignore"):
        mean = np.where(weight > 0, total / np.where(weight > 0, weight, 1.0), np.nan)

    return np.ma.array(mean, mask=np.ma.getmaskarray(data).copy())


def _valid_count(missing: np.ndarray, radius: int) -> np.ndarray:
    return ndimage.convolve(
        (~missing).astype(float), _square_kernel(radius), mode="constant", cval=0.0
    )


def unfillable_cells(data: np.ndarray, radius: int) -> np.ndarray:
    """Missing cells whose whole (2r+1)x(2r+1) window is missing too."""
    missing = np.ma.getmaskarray(np.ma.masked_invalid(np.ma.asarray(data, dtype=float)))
    if not missing.any():
        return missing
    return missing & (_valid_count(missing, int(radius)) == 0)


def focal_median_fill(
    data: np.ndarray,
    radius: int,
    fallback: str = "global_median",
    sentinel: float = 1000.0
) -> Tuple[np.ma.MaskedArray, Dict[str, int]]:
    """
    Replace missing cells with the median of the valid cells around them.

    Medians are taken from the original valid values only, so the result
    does not depend on the order in which gaps are visited. Cells whose
    whole window is missing take the ``fallback``: ``"global_median"``
    uses the median of every valid cell, ``"keep"`` writes ``sentinel``
    as a value. Running the fill on an already filled raster is a no-op.

    Parameters
    ----------
    data : np.ndarray
        Raster with missing cells masked (or NaN)
    radius : int
        Window radius in pixels
    fallback : str
        Terminal fallback for windows without valid cells
    sentinel : float
        Marker value written when ``fallback == "keep"``

    Returns
    -------
    tuple
        (filled raster without mask, counts ``{"filled", "fallback"}``)
    """
    if fallback not in FILL_FALLBACKS:
        raise ConfigurationError(
            f"gapfill_fallback must be one of {FILL_FALLBACKS}, got '{fallback}'"
        )
    radius = int(radius)
    _square_kernel(radius)

    data = np.ma.masked_invalid(np.ma.asarray(data, dtype=float))
    missing = np.ma.getmaskarray(data)
    original = data.filled(np.nan)
    filled = original.copy()
    counts = {"filled": 0, "fallback": 0}

    if not missing.any():
        return np.ma.array(filled, mask=False), counts

    valid_count = _valid_count(missing, radius)
    height, width = original.shape
    rows, cols = np.nonzero(missing & (valid_count > 0))
    for row, col in zip(rows, cols):
        window = original[
            max(row - radius, 0):min(row + radius + 1, height),
            max(col - radius, 0):min(col + radius + 1, width)
        ]
        filled[row, col] = np.nanmedian(window)
    counts["filled"] = int(rows.size)

    orphan = missing & (valid_count == 0)
    counts["fallback"] = int(orphan.sum())
    if counts["fallback"]:
        if fallback == "global_median" and (~missing).any():
            filled[orphan] = float(np.median(original[~missing]))
        else:
            filled[orphan] = sentinel
        logger.warning(
            f"Gap fill: {counts['fallback']} cells had no valid neighbour within "
            f"{radius} px; fallback '{fallback}' applied"
        )

    return np.ma.array(filled, mask=False), counts
