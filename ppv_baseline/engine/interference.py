"""Flag individual spectra corrupted by high-frequency interference.

Per receptor: concatenate the subscans, score every spectrum by the mean
squared discrete Laplacian across the band, remove steps and the slowly
varying background from that score, and reject spectra whose residual
stands out from the sigma-clipped noise.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Tuple
import warnings

import numpy as np
from scipy.signal import find_peaks

from ppv_baseline.engine.cube_api import ReceptorProfile, ReceptorSeries, RejectMask
from ppv_baseline.engine.errors import (
    BackgroundFitError,
    InsufficientDataError,
    StepCorrectionRejected,
)
from ppv_baseline.engine.kernels import ArrayKernel, get_kernel
from ppv_baseline.engine.recipe_model import InterferenceConfig
from ppv_baseline.engine.ringing import detect_ringing

__all__ = [
    "trim_edges",
    "edginess_map",
    "receptor_profile",
    "correct_steps",
    "subtract_background",
    "reject_outliers",
    "flag_receptor",
    "apply_reject_mask",
]

logger = logging.getLogger(__name__)

STEP_WINDOW = 25
STEP_SIGMA = 6.0
MAX_STEP_FRACTION = 0.05


def trim_edges(spectra: np.ndarray, fraction: float) -> np.ndarray:
    arr = np.asarray(spectra, dtype=float)
    nchan = arr.shape[1] if arr.ndim == 2 else 0
    cut = int(nchan * float(fraction))
    if cut <= 0 or 2 * cut >= nchan:
        return arr.copy()
    return arr[:, cut:nchan - cut].copy()


def edginess_map(spectra: np.ndarray, *, step: int = 1, kernel: ArrayKernel | None = None) -> np.ndarray:
    """Squared discrete Laplacian along the spectral axis, median normalised."""

    kernel = kernel or get_kernel()
    edges = kernel.laplacian(spectra, axis=1, step=step) ** 2
    scale = float(np.nanmedian(edges)) if np.any(np.isfinite(edges)) else np.nan
    if np.isfinite(scale) and scale > 0:
        edges = edges / scale
    return edges


def receptor_profile(series: ReceptorSeries, *, edge_trim: float = 0.05, step: int = 1,
                     kernel: ArrayKernel | None = None) -> ReceptorProfile:
    kernel = kernel or get_kernel()
    spectra = trim_edges(series.concatenated(), edge_trim)
    values = kernel.collapse(edginess_map(spectra, step=step, kernel=kernel), axis=1, estimator="mean")
    return ReceptorProfile(receptor=series.receptor, values=np.asarray(values, dtype=float))


def _rolling_median(values: np.ndarray, window: int) -> Tuple[np.ndarray, np.ndarray]:
    n = values.size
    padded = np.concatenate([np.full(window, np.nan), values, np.full(window, np.nan)])
    windows = np.lib.stride_tricks.sliding_window_view(padded, window)
    # windows[k] covers padded[k:k + window]; left of i ends at i - 1, right starts at i
    left = np.nanmedian(windows[:n], axis=1)
    right = np.nanmedian(windows[window:window + n], axis=1)
    return left, right


def correct_steps(values: np.ndarray, *, window: int = STEP_WINDOW, nsigma: float = STEP_SIGMA,
                  max_fraction: float = MAX_STEP_FRACTION) -> Tuple[np.ndarray, int]:
    """Remove abrupt level shifts from an edginess profile.

    A step is a jump between the medians of the ``window`` samples either
    side of an index that exceeds ``nsigma`` robust sigma. Returns the
    corrected profile and the number of steps removed. Raises
    :class:`StepCorrectionRejected` when the profile is too short or the
    detector finds implausibly many steps.
    """

    arr = np.asarray(values, dtype=float)
    good = np.isfinite(arr)
    if int(np.count_nonzero(good)) < 2 * window:
        raise StepCorrectionRejected(
            f"{int(np.count_nonzero(good))} good samples, at least {2 * window} needed"
        )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        left, right = _rolling_median(arr, window)
    jump = right - left
    diffs = np.diff(arr[good])
    mad = float(np.median(np.abs(diffs - np.median(diffs)))) if diffs.size else 0.0
    sigma = 1.4826 * mad / np.sqrt(2.0)
    if not np.isfinite(sigma) or sigma <= 0:
        raise StepCorrectionRejected("profile noise is zero or undefined")
    jump = np.where(np.isfinite(jump), jump, 0.0)
    jump[:window] = 0.0
    jump[-window:] = 0.0
    peaks, _ = find_peaks(np.abs(jump), height=nsigma * sigma, distance=window)
    if peaks.size > max(1, int(arr.size * max_fraction / window) + 1):
        raise StepCorrectionRejected(f"{peaks.size} steps found; profile too irregular to correct")
    corrected = arr.copy()
    for index in peaks:
        step_at = _refine_step(arr, int(index), window)
        size = right[step_at] - left[step_at]
        corrected[step_at:] -= size if np.isfinite(size) else jump[index]
    return corrected, int(peaks.size)


def _refine_step(arr: np.ndarray, index: int, window: int) -> int:
    # the median jump plateaus around a step; the mean jump peaks on it
    lo = max(window, index - window // 2)
    hi = min(arr.size - window, index + window // 2 + 1)
    best, best_score = index, -np.inf
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        for i in range(lo, hi):
            score = abs(np.nanmean(arr[i:i + window]) - np.nanmean(arr[i - window:i]))
            if np.isfinite(score) and score > best_score:
                best, best_score = i, score
    return best


def subtract_background(values: np.ndarray, width: int, *,
                        kernel: ArrayKernel | None = None) -> Tuple[np.ndarray, bool]:
    """Residual after removing a running-median background.

    Returns ``(residual, fitted)``; ``fitted`` is False when the
    background could not be estimated and the raw profile came back.
    """

    kernel = kernel or get_kernel()
    arr = np.asarray(values, dtype=float)
    try:
        background = kernel.median_smooth(arr, width, min_good=max(1, int(width) // 4))
    except BackgroundFitError as exc:
        logger.warning("Background fit failed (%s); using the unsmoothed profile", exc)
        return arr.copy(), False
    return arr - background, True


def reject_outliers(residual: np.ndarray, edge_clip: Iterable[float], thresh_clip: float, *,
                    kernel: ArrayKernel | None = None) -> Tuple[np.ndarray, Dict[str, Any]]:
    kernel = kernel or get_kernel()
    arr = np.asarray(residual, dtype=float)
    stats = kernel.clipped_stats(arr, clip=tuple(edge_clip))
    if stats.std <= 0:
        return np.zeros(arr.shape, dtype=bool), {"sigma": 0.0, "median": stats.median}
    with np.errstate(invalid="ignore"):
        rejected = (arr - stats.median) > float(thresh_clip) * stats.std
    return rejected, {"sigma": stats.std, "median": stats.median, "n_used": stats.n_used}


def flag_receptor(series: ReceptorSeries, cfg: InterferenceConfig, *, bad: bool = False,
                  kernel: ArrayKernel | None = None) -> RejectMask:
    kernel = kernel or get_kernel()
    n_spectra = series.n_spectra
    receptor = series.receptor
    if bad:
        logger.info("Receptor %s is marked bad; blanking all %d spectra", receptor, n_spectra)
        return RejectMask(receptor=receptor, mask=np.ones(n_spectra, dtype=bool), skipped="bad receptor")

    spectra = trim_edges(series.concatenated(), cfg.edge_trim)
    n_valid = int(np.count_nonzero(np.isfinite(spectra).any(axis=1))) if spectra.size else 0
    if n_valid < cfg.min_spectra:
        logger.warning(
            "Receptor %s: %d spectra with data, %d required; interference flagging skipped",
            receptor, n_valid, cfg.min_spectra,
        )
        return RejectMask(
            receptor=receptor,
            mask=np.zeros(n_spectra, dtype=bool),
            skipped="insufficient data",
            stats={"n_valid": n_valid},
        )

    profile = receptor_profile(series, edge_trim=cfg.edge_trim, kernel=kernel)
    try:
        corrected, nsteps = correct_steps(profile.values)
        profile = ReceptorProfile(receptor, corrected, step_corrected=True)
    except StepCorrectionRejected as exc:
        logger.debug("Receptor %s: step correction rejected (%s)", receptor, exc)
        nsteps = 0
    residual, fitted = subtract_background(profile.values, cfg.background_width, kernel=kernel)
    profile.background_subtracted = fitted

    rejected, clip_stats = reject_outliers(residual, cfg.edge_clip, cfg.thresh_clip, kernel=kernel)
    rejected = kernel.dilate(rejected, cfg.dilate)
    stats: Dict[str, Any] = {
        "n_valid": n_valid,
        "steps_corrected": nsteps,
        "background_fitted": fitted,
        "n_edge_rejected": int(np.count_nonzero(rejected)),
        **clip_stats,
    }

    ringing_mask: Optional[np.ndarray] = None
    if cfg.ringing_applies_to(receptor):
        try:
            ringing = detect_ringing(spectra, cfg, kernel=kernel)
        except InsufficientDataError as exc:
            logger.warning("Receptor %s: ringing detection skipped (%s)", receptor, exc)
        else:
            ringing_mask = ringing.mask
            rejected = rejected | ringing_mask
            stats.update(ringing.stats)

    if np.any(rejected):
        logger.info("Receptor %s: rejected %d of %d spectra", receptor, int(np.count_nonzero(rejected)), n_spectra)
    return RejectMask(receptor=receptor, mask=rejected, ringing=ringing_mask, stats=stats)


def apply_reject_mask(series: ReceptorSeries, reject: RejectMask) -> ReceptorSeries:
    """Blank rejected spectra in every subscan; other values are untouched."""

    mask = np.asarray(reject.mask, dtype=bool)
    if mask.shape != (series.n_spectra,):
        raise ValueError(f"Reject mask length {mask.shape} does not match {series.n_spectra} spectra")
    blocks = []
    offset = 0
    for block in series.subscans:
        arr = np.array(block, dtype=float, copy=True)
        count = arr.shape[0]
        arr[mask[offset:offset + count]] = np.nan
        blocks.append(arr)
        offset += count
    meta = dict(series.meta)
    meta["n_rejected"] = int(np.count_nonzero(mask))
    return ReceptorSeries(receptor=series.receptor, subscans=blocks, meta=meta)
