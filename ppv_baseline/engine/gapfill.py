"""Fill masked gaps in a scan-row profile."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Mapping, Optional

import numpy as np

from ppv_baseline.engine.cube_api import GapBounds, ScanRowProfile
from ppv_baseline.engine.kernels import ArrayKernel, get_kernel
from ppv_baseline.engine.recipe_model import InterpolateConfig

__all__ = [
    "find_gap_bounds",
    "interpolation_size",
    "fill_gaps",
    "linear_fill",
    "fill_profile",
    "freeze_gap_cache",
]

logger = logging.getLogger(__name__)


def find_gap_bounds(profile: ScanRowProfile | np.ndarray) -> GapBounds:
    """Widest contiguous run of channels that are bad at any row position.

    Positions without a single good channel are ignored; they are
    filled from neighbouring positions instead.
    """

    data = profile.data if isinstance(profile, ScanRowProfile) else np.asarray(profile, dtype=float)
    good = np.isfinite(data)
    live = good.any(axis=1)
    if not np.any(live):
        return GapBounds()
    bad_channels = (~good[live]).any(axis=0)
    best = GapBounds()
    start = None
    for channel, is_bad in enumerate(np.append(bad_channels, False)):
        if is_bad and start is None:
            start = channel
        elif not is_bad and start is not None:
            candidate = GapBounds(start, channel - 1)
            if candidate.width > best.width:
                best = candidate
            start = None
    return best


def interpolation_size(bounds: GapBounds, *, floor: int = 5, fraction: float = 0.25) -> int:
    if bounds.empty:
        return int(floor)
    return max(int(bounds.width * float(fraction)), int(floor))


def _nan_safe(values: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if np.all(np.isfinite(arr)):
        return arr
    x = np.arange(arr.size)
    mask = np.isfinite(arr)
    if not np.any(mask):
        return np.full_like(arr, np.nan)
    arr = arr.copy()
    arr[~mask] = np.interp(x[~mask], x[mask], arr[mask])
    return arr


def linear_fill(profile: ScanRowProfile) -> ScanRowProfile:
    """Linear interpolation along the spectral axis, then across positions."""

    data = np.vstack([_nan_safe(row) for row in profile.data]) if profile.n_positions else profile.data.copy()
    empty = ~np.isfinite(data).any(axis=1)
    if np.all(empty):
        return profile.with_data(np.zeros_like(profile.data))
    if np.any(empty):
        data = np.column_stack([_nan_safe(column) for column in data.T])
    return profile.with_data(data)


def fill_gaps(profile: ScanRowProfile, size: float, *, niter: int = 10,
              kernel: ArrayKernel | None = None) -> ScanRowProfile:
    """Relaxation fill; the returned profile contains no bad values."""

    kernel = kernel or get_kernel()
    if not np.any(np.isfinite(profile.data)):
        logger.warning("Scan-row profile has no unmasked data; using a zero baseline")
        return profile.with_data(np.zeros_like(profile.data))
    filled = kernel.fill_bad(profile.data, size, niter=niter)
    return profile.with_data(filled)


def fill_profile(profile: ScanRowProfile, cfg: InterpolateConfig, *,
                 bounds: Optional[GapBounds] = None,
                 kernel: ArrayKernel | None = None) -> tuple[ScanRowProfile, GapBounds, int]:
    """Find the gap, size the fill and apply it according to ``cfg``.

    ``bounds`` from an earlier pass are reused when given.
    """

    if bounds is None:
        bounds = find_gap_bounds(profile)
    if cfg.width is not None:
        size = int(cfg.width)
    else:
        size = interpolation_size(bounds, floor=cfg.min_width, fraction=cfg.fraction)
    if not cfg.enabled:
        return linear_fill(profile), bounds, size
    logger.debug("Gap %s (width %d); relaxation size %d", (bounds.lower, bounds.upper), bounds.width, size)
    return fill_gaps(profile, size, niter=cfg.iterations, kernel=kernel), bounds, size


def freeze_gap_cache(cache: Mapping[str, GapBounds]) -> Mapping[str, GapBounds]:
    return MappingProxyType(dict(cache))
