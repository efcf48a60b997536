"""Emission masks: keep baseline-only voxels, blank everything with emission.

A mask holds ``0.0`` where a voxel is kept and NaN where it is excluded,
so adding it to a cube blanks the emission and leaves the rest untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional, Tuple

import numpy as np

from ppv_baseline.engine.cube_api import Cube, EmissionExtents
from ppv_baseline.engine.errors import DegenerateMaskError, InsufficientDataError
from ppv_baseline.engine.kernels import ArrayKernel, get_kernel
from ppv_baseline.engine.recipe_model import ReductionConfig, VolumetricConfig

__all__ = [
    "MaskResult",
    "apply_mask",
    "build_emission_mask",
    "build_spatial_mask",
    "build_velocity_mask",
    "build_volumetric_mask",
    "compute_moment_map",
    "emission_threshold",
    "resolve_mask_strategy",
]

logger = logging.getLogger(__name__)


@dataclass
class MaskResult:
    mask: Optional[np.ndarray]
    strategy: str
    degenerate: bool = False
    n_emission: int = 0
    threshold: Optional[float] = None
    fallback: Optional[str] = None
    n_clumps: int = 0

    @property
    def usable(self) -> bool:
        # a degenerate mask still carries its fallback mask, if any
        return self.mask is not None

    def masked_fraction(self, cube_shape: Tuple[int, int, int]) -> float:
        if self.mask is None:
            return 0.0
        full = np.broadcast_to(self.mask, cube_shape)
        return float(np.count_nonzero(np.isnan(full))) / float(max(1, full.size))


def compute_moment_map(cube: Cube, extents: EmissionExtents | None = None, *,
                       kernel: ArrayKernel | None = None) -> np.ndarray:
    """Integrated intensity over ``extents`` (all channels if empty)."""

    kernel = kernel or get_kernel()
    data = cube.data
    if extents:
        channels = extents.contains(cube.spectral)
        if np.any(channels):
            data = data[:, :, channels]
    spacing = np.abs(np.diff(cube.spectral))
    width = float(np.median(spacing)) if spacing.size else 1.0
    return kernel.collapse(data, axis=2, estimator="sum") * width


def emission_threshold(moment_map: np.ndarray, *, nsigma: float = 3.0,
                       kernel: ArrayKernel | None = None) -> float:
    kernel = kernel or get_kernel()
    stats = kernel.clipped_stats(moment_map, clip=(3.0, 3.0, 3.0))
    return stats.median + nsigma * stats.std


def build_spatial_mask(moment_map: np.ndarray, cube_shape: Tuple[int, int, int],
                       threshold: float) -> np.ndarray:
    """Blank whole spectra whose moment-map value exceeds ``threshold``.

    Returns an ``(nx, ny, 1)`` mask that broadcasts over channels. Raises
    :class:`DegenerateMaskError` if every pixel is classed as emission.
    """

    moments = np.asarray(moment_map, dtype=float)
    if moments.shape != tuple(cube_shape[:2]):
        raise ValueError(f"Moment map shape {moments.shape} does not match cube {tuple(cube_shape[:2])}")
    with np.errstate(invalid="ignore"):
        emission = moments > float(threshold)
    if np.all(emission):
        raise DegenerateMaskError(
            f"Spatial mask at threshold {threshold:.4g} classes every pixel as emission"
        )
    return np.where(emission, np.nan, 0.0)[:, :, np.newaxis]


def build_velocity_mask(cube: Cube, extents: EmissionExtents) -> np.ndarray:
    channels = extents.contains(cube.spectral)
    if channels.size and np.all(channels):
        raise DegenerateMaskError("Velocity ranges cover every channel")
    plane = np.where(channels, np.nan, 0.0)
    return np.broadcast_to(plane, cube.shape).copy()


def build_volumetric_mask(cube: Cube, cfg: VolumetricConfig, *,
                          kernel: ArrayKernel | None = None) -> Tuple[np.ndarray, int]:
    """Detect 3-D emission clumps on a smoothed copy of the cube.

    Returns the full-shape mask and the number of clumps kept.
    """

    kernel = kernel or get_kernel()
    smoothed = kernel.gaussian_smooth(cube.data, cfg.smooth_sigma) if cfg.smooth_sigma > 0 else cube.data
    stats = kernel.clipped_stats(smoothed, clip=(3.0, 3.0, 3.0))
    if stats.std <= 0:
        raise InsufficientDataError("volumetric mask", stats.n_used, 2)
    catalog = kernel.find_clumps(
        smoothed,
        threshold=stats.median + cfg.threshold_sigma * stats.std,
        min_peak=stats.median + cfg.peak_sigma * stats.std,
        min_pixels=cfg.min_pixels,
    )
    emission = kernel.dilate(catalog.mask, cfg.dilate_channels, axis=2)
    emission &= np.isfinite(cube.data)
    finite = np.isfinite(cube.data)
    if np.any(finite) and np.all(emission[finite]):
        raise DegenerateMaskError("Volumetric mask classes every voxel as emission")
    logger.debug("Volumetric mask: %d clumps, %d voxels", len(catalog), int(np.count_nonzero(emission)))
    return np.where(emission, np.nan, 0.0), len(catalog)


def apply_mask(cube: Cube, mask: Optional[np.ndarray], *, kernel: ArrayKernel | None = None) -> Cube:
    if mask is None:
        return cube.copy()
    kernel = kernel or get_kernel()
    return cube.with_data(kernel.combine(cube.data, mask, "add"), name=f"{cube.name}_masked")


def _velocity_fallback(cube: Cube, config: ReductionConfig) -> MaskResult:
    extents = config.mask.velocity_ranges
    if not extents:
        return MaskResult(mask=None, strategy="none")
    try:
        mask = build_velocity_mask(cube, extents)
    except DegenerateMaskError as exc:
        logger.warning("%s; continuing without an emission mask", exc)
        return MaskResult(mask=None, strategy="velocity-ranges", degenerate=True, fallback="none")
    return MaskResult(
        mask=mask,
        strategy="velocity-ranges",
        n_emission=int(np.count_nonzero(np.isnan(mask))),
    )


def build_emission_mask(cube: Cube, config: ReductionConfig, moment_map: np.ndarray | None = None, *,
                        kernel: ArrayKernel | None = None) -> MaskResult:
    """Build the mask for the configured strategy.

    A degenerate spatial mask falls back to the velocity ranges when any
    are configured and to no mask otherwise; the result reports the
    fallback so the caller can keep it for the remaining tiles.
    """

    kernel = kernel or get_kernel()
    strategy = config.mask.strategy
    if strategy == "none":
        return MaskResult(mask=None, strategy="none")

    if strategy == "velocity-ranges":
        return _velocity_fallback(cube, config)

    if strategy == "volumetric":
        try:
            mask, nclumps = build_volumetric_mask(cube, config.mask.volumetric, kernel=kernel)
        except (DegenerateMaskError, InsufficientDataError) as exc:
            logger.warning("Volumetric mask unusable (%s); falling back", exc)
            result = _velocity_fallback(cube, config)
            result.degenerate = True
            result.fallback = result.strategy
            result.strategy = "volumetric"
            return result
        return MaskResult(
            mask=mask,
            strategy="volumetric",
            n_emission=int(np.count_nonzero(np.isnan(mask))),
            n_clumps=nclumps,
        )

    if moment_map is None:
        moment_map = compute_moment_map(cube, config.mask.velocity_ranges, kernel=kernel)
    threshold = config.mask.emission_threshold
    if threshold is None:
        threshold = emission_threshold(moment_map, kernel=kernel)
    try:
        mask = build_spatial_mask(moment_map, cube.shape, threshold)
    except DegenerateMaskError as exc:
        fallback = _velocity_fallback(cube, config)
        logger.warning("%s; falling back to %s", exc, fallback.strategy)
        return MaskResult(
            mask=fallback.mask,
            strategy="spatial-image",
            degenerate=True,
            n_emission=fallback.n_emission,
            threshold=float(threshold),
            fallback=fallback.strategy,
        )
    return MaskResult(
        mask=mask,
        strategy="spatial-image",
        n_emission=int(np.count_nonzero(np.isnan(mask))),
        threshold=float(threshold),
    )


def resolve_mask_strategy(cube: Cube, config: ReductionConfig, moment_map: np.ndarray | None = None, *,
                          kernel: ArrayKernel | None = None) -> ReductionConfig:
    """Check a spatial-image mask once per observation before tiles run.

    Returns ``config`` unchanged when the mask is usable; otherwise a copy
    whose strategy is the fallback, so every later tile uses it.
    """

    if config.mask.strategy != "spatial-image":
        return config
    result = build_emission_mask(cube, config, moment_map, kernel=kernel)
    if not result.degenerate:
        return config
    fallback = result.fallback or "none"
    logger.warning("Emission mask is degenerate; using '%s' for the rest of the run", fallback)
    return config.with_mask_strategy(fallback)
