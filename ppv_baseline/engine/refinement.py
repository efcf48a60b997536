"""Two-pass standing-wave removal with a volumetric emission mask."""

from __future__ import annotations

from enum import Enum
import logging
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from ppv_baseline.engine.cube_api import Cube, GapBounds, TileResult
from ppv_baseline.engine.errors import DegenerateMaskError, InsufficientDataError
from ppv_baseline.engine.kernels import ArrayKernel, get_kernel
from ppv_baseline.engine.masking import MaskResult, build_emission_mask, build_volumetric_mask
from ppv_baseline.engine.orientation import compute_orientation, resolve_position_angles
from ppv_baseline.engine.recipe_model import ReductionConfig
from ppv_baseline.engine.standing_wave import IntermediateScope, StandingWavePass, remove_standing_wave

__all__ = ["RefinementState", "RefinementController"]

logger = logging.getLogger(__name__)

RebuildHook = Callable[[Cube], Cube]


class RefinementState(Enum):
    INITIAL = "initial"
    REFINED = "refined"
    DONE = "done"


class RefinementController:
    """Runs pass 1 and, when worthwhile, a refined pass 2 on one tile.

    ``rebuild`` stands in for the external step that regenerates the
    corrected cube (for example by regridding the corrected time series);
    its output is the mask source when ``refine.source`` is ``corrected``.
    """

    def __init__(self, config: ReductionConfig, *, rebuild: Optional[RebuildHook] = None,
                 kernel: ArrayKernel | None = None):
        self.config = config
        self.rebuild = rebuild
        self.kernel = kernel or get_kernel()
        self.state = RefinementState.INITIAL
        self.history: List[RefinementState] = [RefinementState.INITIAL]

    def _advance(self, state: RefinementState) -> None:
        self.state = state
        self.history.append(state)

    def should_refine(self, first_mask: MaskResult) -> bool:
        if not self.config.refine.enabled:
            return False
        return first_mask.usable or self.config.mask.strategy == "volumetric"

    def run(self, tile: Cube, moment_map: np.ndarray | None = None,
            gap_bounds: Optional[GapBounds] = None) -> TileResult:
        if self.state is not RefinementState.INITIAL:
            self.state = RefinementState.INITIAL
            self.history = [RefinementState.INITIAL]
        config = self.config
        kernel = self.kernel
        scan_pa, map_pa = resolve_position_angles(tile, config.orientation)
        orientation = compute_orientation(
            tile.spatial_shape, scan_pa, map_pa, tolerance=config.orientation.tolerance, kernel=kernel
        )
        snapshots: Dict[str, Any] = {}
        pass_stats: List[Dict[str, Any]] = []

        with IntermediateScope(f"{tile.name}/pass1", keep=config.keep_intermediates) as scope:
            first_mask = build_emission_mask(tile, config, moment_map, kernel=kernel)
            scope.hold("mask", first_mask.mask)
            first = remove_standing_wave(
                tile, config, first_mask, orientation, gap_bounds=gap_bounds, scope=scope, kernel=kernel
            )
        snapshots.update(scope.snapshots())
        pass_stats.append(first.stats)
        result: StandingWavePass = first
        passes = 1

        if self.should_refine(first_mask):
            refined = self._second_pass(tile, first, orientation, gap_bounds, snapshots)
            if refined is not None:
                result = refined
                passes = 2
                pass_stats.append(refined.stats)
                self._advance(RefinementState.REFINED)
        elif config.refine.enabled:
            logger.info("Skipping refinement of %s: no usable emission mask", tile.name)

        self._advance(RefinementState.DONE)
        qc = dict(result.stats)
        qc.update({
            "tile": tile.name,
            "passes": passes,
            "state_path": [state.value for state in self.history],
            "degenerate_mask": first_mask.degenerate,
            "mask_fallback": first_mask.fallback,
            "pass_stats": pass_stats,
        })
        return TileResult(
            corrected=result.corrected,
            baseline=result.baseline if config.keep_intermediates else None,
            passes=passes,
            gap_bounds=result.gap_bounds,
            qc=qc,
            snapshots=snapshots,
        )

    def _second_pass(self, tile: Cube, first: StandingWavePass, orientation, gap_bounds: Optional[GapBounds],
                     snapshots: Dict[str, Any]) -> Optional[StandingWavePass]:
        config = self.config
        if config.refine.source == "corrected":
            source = self.rebuild(first.corrected) if self.rebuild is not None else first.corrected
            if source.shape != tile.shape:
                logger.warning("Rebuilt cube %s does not match tile %s; keeping pass 1", source.shape, tile.shape)
                return None
        else:
            source = tile

        with IntermediateScope(f"{tile.name}/pass2", keep=config.keep_intermediates) as scope:
            try:
                mask, nclumps = build_volumetric_mask(source, config.mask.volumetric, kernel=self.kernel)
            except (DegenerateMaskError, InsufficientDataError) as exc:
                logger.warning("Refinement mask for %s unusable (%s); keeping pass 1", tile.name, exc)
                return None
            scope.hold("mask", mask)
            mask_result = MaskResult(
                mask=mask,
                strategy="volumetric",
                n_emission=int(np.count_nonzero(np.isnan(mask))),
                n_clumps=nclumps,
            )
            bounds = gap_bounds if gap_bounds is not None else (None if first.gap_bounds.empty else first.gap_bounds)
            second = remove_standing_wave(
                tile, config, mask_result, orientation, gap_bounds=bounds, scope=scope, kernel=self.kernel
            )
        snapshots.update(scope.snapshots())
        logger.info("Refined %s with %d emission clumps", tile.name, nclumps)
        return second
