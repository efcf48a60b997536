"""Detect ringing: long episodes of coherent high-frequency ripple.

A single-spectrum outlier test misses these because every spectrum in the
episode is only mildly affected. Smoothing along time first lets the
coherent ripple build up while the noise averages down.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict

import numpy as np

from ppv_baseline.engine.errors import InsufficientDataError
from ppv_baseline.engine.kernels import ArrayKernel, get_kernel
from ppv_baseline.engine.recipe_model import InterferenceConfig

__all__ = ["RingingResult", "detect_ringing", "ringing_threshold"]

logger = logging.getLogger(__name__)

CLUMP_FLOOR_SIGMA = 2.0


@dataclass
class RingingResult:
    mask: np.ndarray
    profile: np.ndarray
    episodes: list = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)


def ringing_threshold(baseline: float, sigma: float, cfg: InterferenceConfig) -> float:
    noise_floor = baseline + cfg.ringing_peak_sigma * sigma
    if cfg.ringing_min_peak is None:
        return noise_floor
    return max(float(cfg.ringing_min_peak), noise_floor)


def detect_ringing(spectra: np.ndarray, cfg: InterferenceConfig, *,
                   kernel: ArrayKernel | None = None) -> RingingResult:
    """Return the time indices belonging to ringing episodes.

    ``spectra`` is ``(n_spectra, nchan)`` for one receptor, already
    trimmed at the band edges. Raises :class:`InsufficientDataError` when
    fewer than ``ringing_min_spectra`` spectra hold data.
    """

    kernel = kernel or get_kernel()
    arr = np.asarray(spectra, dtype=float)
    n_valid = int(np.count_nonzero(np.isfinite(arr).any(axis=1))) if arr.size else 0
    if n_valid < cfg.ringing_min_spectra:
        raise InsufficientDataError("ringing detection", n_valid, cfg.ringing_min_spectra)

    smoothed = kernel.box_smooth(arr, cfg.ringing_smooth, axis=0)
    edges = kernel.laplacian(smoothed, axis=1, step=cfg.ringing_step) ** 2
    scale = float(np.nanmedian(edges))
    if np.isfinite(scale) and scale > 0:
        edges = edges / scale
    profile = kernel.collapse(edges, axis=1, estimator="mean")

    stats = kernel.clipped_stats(profile, clip=cfg.edge_clip)
    peak_floor = ringing_threshold(stats.median, stats.std, cfg)
    catalog = kernel.find_clumps(
        profile,
        threshold=stats.median + CLUMP_FLOOR_SIGMA * stats.std,
        min_peak=peak_floor,
    )
    mask = catalog.mask.copy()
    episodes = [(clump.slices[0].start, clump.slices[0].stop, clump.peak) for clump in catalog.clumps]
    if episodes:
        logger.info("Ringing: %d episode(s), %d spectra above peak floor %.3g",
                    len(episodes), int(np.count_nonzero(mask)), peak_floor)
    return RingingResult(
        mask=mask,
        profile=profile,
        episodes=episodes,
        stats={
            "ringing_median": stats.median,
            "ringing_sigma": stats.std,
            "ringing_peak_floor": peak_floor,
            "ringing_episodes": len(episodes),
        },
    )
