"""One standing-wave estimation and subtraction pass over a cube tile.

mask -> rotate -> collapse scan rows -> fill gaps -> separate ripple ->
grow -> de-rotate -> subtract from the unmasked cube.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, Optional

import numpy as np

from ppv_baseline.engine.baseline import (
    collapse_scan_rows,
    grow_profile,
    receptor_exclusion_mask,
    subtract_baseline,
)
from ppv_baseline.engine.cube_api import Cube, GapBounds
from ppv_baseline.engine.gapfill import fill_profile
from ppv_baseline.engine.kernels import ArrayKernel, get_kernel
from ppv_baseline.engine.masking import MaskResult, apply_mask
from ppv_baseline.engine.orientation import Orientation, restore_cube, rotate_cube
from ppv_baseline.engine.recipe_model import ReductionConfig
from ppv_baseline.engine.ripple import separate_ripple

__all__ = ["IntermediateScope", "StandingWavePass", "remove_standing_wave"]

logger = logging.getLogger(__name__)


class IntermediateScope:
    """Holds per-tile intermediates and releases them on exit.

    With ``keep=True`` the held arrays survive the ``with`` block, tagged
    by scope and name, and :meth:`snapshots` returns them.
    """

    def __init__(self, tag: str, keep: bool = False):
        self.tag = tag
        self.keep = bool(keep)
        self._items: Dict[str, Any] = {}
        self.released = False

    def __enter__(self):
        self.released = False
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.keep:
            self._items.clear()
            self.released = True
        return False

    def hold(self, name: str, value: Any) -> Any:
        if self.released:
            raise RuntimeError(f"Intermediate scope '{self.tag}' has already been released")
        self._items[f"{self.tag}/{name}"] = value
        return value

    def __len__(self) -> int:
        return len(self._items)

    def snapshots(self) -> Dict[str, Any]:
        return dict(self._items) if self.keep else {}


@dataclass
class StandingWavePass:
    corrected: Cube
    baseline: Cube
    gap_bounds: GapBounds
    interp_size: int
    stats: Dict[str, Any] = field(default_factory=dict)


def remove_standing_wave(
    source: Cube,
    config: ReductionConfig,
    mask: MaskResult,
    orientation: Orientation,
    *,
    target: Optional[Cube] = None,
    gap_bounds: Optional[GapBounds] = None,
    scope: Optional[IntermediateScope] = None,
    kernel: ArrayKernel | None = None,
) -> StandingWavePass:
    """Estimate the standing wave from ``source`` and subtract it from ``target``.

    ``target`` defaults to ``source``. Neither cube is modified.
    """

    kernel = kernel or get_kernel()
    target = source if target is None else target
    if target.shape != source.shape:
        raise ValueError(f"Target cube {target.shape} does not match source {source.shape}")
    scope = scope if scope is not None else IntermediateScope("pass")
    hold = scope.hold

    masked = apply_mask(source, mask.mask, kernel=kernel)
    exclusion = receptor_exclusion_mask(source, config.bad_receptors)
    if exclusion is not None:
        masked = apply_mask(masked, exclusion, kernel=kernel)
    hold("masked", masked)

    rotated = hold("rotated", rotate_cube(masked, orientation, kernel=kernel))
    profile = hold("profile", collapse_scan_rows(rotated, orientation, kernel=kernel))
    filled, bounds, size = fill_profile(profile, config.interpolate, bounds=gap_bounds, kernel=kernel)
    hold("filled", filled)

    layers = separate_ripple(filled, config.smoothing_widths, kernel=kernel)
    grown = hold("grown", grow_profile(filled.with_data(layers.baseline), rotated.shape, kernel=kernel))
    baseline = restore_cube(grown, orientation, source.spatial_slice(), kernel=kernel, pad_mode="edge")
    baseline.name = f"{source.name}_baseline"
    corrected = subtract_baseline(target, baseline, kernel=kernel)

    stats = {
        "mask_strategy": mask.strategy,
        "masked_fraction": mask.masked_fraction(source.shape),
        "rotation_deg": orientation.angle,
        "scan_axis": orientation.scan_axis,
        "gap_lower": bounds.lower,
        "gap_upper": bounds.upper,
        "interp_size": size,
        "baseline_rms": float(np.sqrt(np.mean(layers.baseline ** 2))) if layers.baseline.size else 0.0,
        "noise_rms": layers.rms(),
    }
    logger.debug("Standing-wave pass on %s: %s", source.name, stats)
    return StandingWavePass(corrected=corrected, baseline=baseline, gap_bounds=bounds, interp_size=size, stats=stats)
