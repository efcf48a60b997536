"""Multi-scale box smoothing that keeps ripple and drift but drops noise."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Iterable, List, Tuple

import numpy as np

from ppv_baseline.engine.cube_api import ScanRowProfile
from ppv_baseline.engine.kernels import ArrayKernel, get_kernel

__all__ = ["RippleLayers", "normalise_widths", "separate_ripple"]

logger = logging.getLogger(__name__)


@dataclass
class RippleLayers:
    baseline: np.ndarray
    layers: List[np.ndarray] = field(default_factory=list)
    residual: np.ndarray | None = None
    widths: Tuple[int, ...] = ()

    def rms(self) -> float:
        if self.residual is None or self.residual.size == 0:
            return 0.0
        return float(np.sqrt(np.nanmean(self.residual ** 2)))


def normalise_widths(widths: Iterable[int]) -> Tuple[int, ...]:
    """Odd widths of at least 3, finest first, without repeats."""

    cleaned = set()
    for width in widths:
        value = max(3, int(width))
        if value % 2 == 0:
            value += 1
        cleaned.add(value)
    if not cleaned:
        raise ValueError("At least one smoothing width is required")
    return tuple(sorted(cleaned))


def separate_ripple(profile: ScanRowProfile | np.ndarray, widths: Iterable[int], *,
                    kernel: ArrayKernel | None = None) -> RippleLayers:
    """Cascade box smoothing along the spectral axis.

    Each width smooths the current residual; the smoothed layer is added
    to the running baseline and removed from the residual. What remains
    after the coarsest width is noise finer than the smallest window.
    """

    kernel = kernel or get_kernel()
    data = profile.data if isinstance(profile, ScanRowProfile) else np.asarray(profile, dtype=float)
    if not np.all(np.isfinite(data)):
        raise ValueError("Ripple separation needs a gap-filled profile")
    scales = normalise_widths(widths)
    residual = np.array(data, dtype=float, copy=True)
    total = np.zeros_like(residual)
    layers: List[np.ndarray] = []
    for width in scales:
        layer = kernel.box_smooth(residual, width, axis=-1)
        layers.append(layer)
        total = total + layer
        residual = residual - layer
    logger.debug("Ripple separation over widths %s; residual rms %.4g", scales,
                 float(np.sqrt(np.mean(residual ** 2))) if residual.size else 0.0)
    return RippleLayers(baseline=data - residual, layers=layers, residual=residual, widths=scales)
