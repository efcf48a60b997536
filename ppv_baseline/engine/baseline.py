"""Scan-row baseline estimate, growth back to cube shape and subtraction."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Tuple

import numpy as np

from ppv_baseline.engine.cube_api import Cube, ScanRowProfile
from ppv_baseline.engine.kernels import ArrayKernel, get_kernel
from ppv_baseline.engine.orientation import Orientation

__all__ = [
    "receptor_exclusion_mask",
    "collapse_scan_rows",
    "grow_profile",
    "subtract_baseline",
]

logger = logging.getLogger(__name__)


def receptor_exclusion_mask(cube: Cube, bad_receptors: Iterable[str]) -> Optional[np.ndarray]:
    """Mask (``0``/NaN, shaped ``(nx, ny, 1)``) of spectra from bad receptors.

    Uses the per-pixel receptor map in ``cube.meta["receptors"]``; returns
    ``None`` when there is no map or nothing to exclude.
    """

    bad = {str(name).upper() for name in bad_receptors}
    receptor_map = cube.meta.get("receptors")
    if not bad or receptor_map is None:
        return None
    names = np.asarray(receptor_map)
    if names.shape != cube.spatial_shape:
        logger.warning(
            "Receptor map shape %s does not match cube %s; bad receptors not excluded",
            names.shape,
            cube.spatial_shape,
        )
        return None
    upper = np.char.upper(names.astype(str))
    excluded = np.isin(upper, sorted(bad))
    if not np.any(excluded):
        return None
    logger.info("Excluding %d spectra from bad receptors %s", int(np.count_nonzero(excluded)), sorted(bad))
    return np.where(excluded, np.nan, 0.0)[:, :, np.newaxis]


def collapse_scan_rows(
    masked: Cube | np.ndarray,
    orientation: Orientation,
    *,
    kernel: ArrayKernel | None = None,
) -> ScanRowProfile:
    """Median of the unmasked spectra within each scan row.

    Collapses the scan direction of the (rotated, masked) data, leaving one
    spectrum per row position along the non-scan axis.
    Positions with no unmasked spectrum at all stay NaN for the gap fill.
    """

    kernel = kernel or get_kernel()
    data = masked.data if isinstance(masked, Cube) else np.asarray(masked, dtype=float)
    axis = orientation.collapse_axis
    profile = kernel.collapse(data, axis=axis, estimator="median")
    counts = kernel.count_good(data, axis=axis)
    empty = int(np.count_nonzero(np.all(counts == 0, axis=-1)))
    if empty:
        logger.debug("%d scan-row positions have no unmasked spectra", empty)
    return ScanRowProfile(
        data=np.asarray(profile, dtype=float),
        scan_axis=orientation.scan_axis,
        collapse_axis=axis,
        n_contributing=counts,
    )


def grow_profile(profile: ScanRowProfile, rotated_shape: Tuple[int, int, int] | Tuple[int, int], *,
                 kernel: ArrayKernel | None = None) -> np.ndarray:
    """Replicate every row profile along its scan row."""

    kernel = kernel or get_kernel()
    size = int(rotated_shape[profile.collapse_axis])
    grown = kernel.grow(profile.data, axis=profile.collapse_axis, size=size)
    expected = (int(rotated_shape[0]), int(rotated_shape[1]), profile.nchan)
    if grown.shape != expected:
        raise ValueError(f"Grown baseline {grown.shape} does not match rotated cube {expected}")
    return grown


def subtract_baseline(cube: Cube, baseline: Cube | np.ndarray, *, kernel: ArrayKernel | None = None) -> Cube:
    kernel = kernel or get_kernel()
    values = baseline.data if isinstance(baseline, Cube) else np.asarray(baseline, dtype=float)
    if values.shape != cube.shape:
        raise ValueError(f"Baseline shape {values.shape} does not match cube {cube.shape}")
    corrected = kernel.combine(cube.data, values, "sub")
    return cube.with_data(corrected, variance=cube.variance, name=f"{cube.name}_swcorr")
