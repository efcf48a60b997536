"""Observation-level orchestration of tiles and receptors.

Tiles and receptors are independent, so they run either sequentially or
in a process pool. Everything a worker receives is an immutable snapshot:
the resolved :class:`ReductionConfig`, the bad-receptor ``frozenset`` and
the gap-bounds mapping proxy.
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
import logging
import multiprocessing
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from ppv_baseline.engine import qc as qc_engine
from ppv_baseline.engine.audit import log_step, start_audit
from ppv_baseline.engine.cube_api import BatchResult, Cube, GapBounds, ReceptorSeries, RejectMask, TileResult
from ppv_baseline.engine.gapfill import freeze_gap_cache
from ppv_baseline.engine.interference import apply_reject_mask, flag_receptor
from ppv_baseline.engine.masking import resolve_mask_strategy
from ppv_baseline.engine.recipe_model import InterferenceConfig, ReductionConfig
from ppv_baseline.engine.refinement import RebuildHook, RefinementController

__all__ = [
    "TileTaskResult",
    "ReceptorTaskResult",
    "reduce_tiles",
    "flag_receptors",
    "run_observation",
]

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], None]
ProgressCallback = Callable[[str, int, int], None]


@dataclass(frozen=True)
class TileTaskResult:
    name: str
    result: Optional[TileResult]
    error: str | None = None


@dataclass(frozen=True)
class ReceptorTaskResult:
    receptor: str
    mask: Optional[RejectMask]
    series: Optional[ReceptorSeries]
    error: str | None = None


def _reduce_tile_task(
    name: str,
    tile: Cube,
    config: ReductionConfig,
    moment_map: np.ndarray | None,
    gap_bounds: GapBounds | None,
    rebuild: RebuildHook | None,
) -> TileTaskResult:
    try:
        controller = RefinementController(config, rebuild=rebuild)
        return TileTaskResult(name=name, result=controller.run(tile, moment_map, gap_bounds))
    except Exception as exc:
        error_text = f"{type(exc).__name__}: {exc}"
        return TileTaskResult(name=name, result=None, error=error_text)


def _flag_receptor_task(series: ReceptorSeries, config: InterferenceConfig, bad: bool) -> ReceptorTaskResult:
    try:
        mask = flag_receptor(series, config, bad=bad)
        return ReceptorTaskResult(receptor=series.receptor, mask=mask, series=apply_reject_mask(series, mask))
    except Exception as exc:
        error_text = f"{type(exc).__name__}: {exc}"
        return ReceptorTaskResult(receptor=series.receptor, mask=None, series=None, error=error_text)


def _run_tasks(
    func: Callable[..., Any],
    jobs: Dict[str, tuple],
    *,
    parallel: bool,
    workers: int,
    on_error: Callable[[str, str], Any],
    cancel_check: Optional[CancelCheck] = None,
    progress: Optional[ProgressCallback] = None,
    stage: str = "tiles",
) -> Dict[str, Any]:
    results: Dict[str, Any] = {}
    total = len(jobs)
    if parallel and total > 1 and workers > 1:
        ctx = multiprocessing.get_context("spawn")
        with ProcessPoolExecutor(mp_context=ctx, max_workers=workers) as executor:
            future_map = {executor.submit(func, *args): key for key, args in jobs.items()}
            try:
                for future in as_completed(future_map):
                    key = future_map[future]
                    try:
                        results[key] = future.result()
                    except Exception as exc:
                        error_text = f"{type(exc).__name__}: {exc}"
                        logger.exception("%s task for %s failed: %s", stage, key, error_text)
                        results[key] = on_error(key, error_text)
                    if progress is not None:
                        progress(stage, len(results), total)
                    if cancel_check is not None:
                        cancel_check()
            except BaseException:
                for future in future_map:
                    future.cancel()
                raise
        return results

    for key, args in jobs.items():
        if cancel_check is not None:
            cancel_check()
        results[key] = func(*args)
        if progress is not None:
            progress(stage, len(results), total)
    return results


def reduce_tiles(
    tiles: Mapping[str, Cube],
    config: ReductionConfig,
    *,
    moment_maps: Optional[Mapping[str, np.ndarray]] = None,
    gap_cache: Optional[Mapping[str, GapBounds]] = None,
    rebuild: RebuildHook | None = None,
    cancel_check: Optional[CancelCheck] = None,
    progress: Optional[ProgressCallback] = None,
) -> tuple[Dict[str, TileTaskResult], ReductionConfig]:
    """Remove the standing wave from every tile.

    Returns the per-tile results and the configuration actually used,
    which differs from ``config`` when a degenerate emission mask forced a
    fallback strategy.
    """

    moment_maps = moment_maps or {}
    gap_cache = freeze_gap_cache(gap_cache or {})
    for name, tile in tiles.items():
        if config.mask.strategy != "spatial-image":
            break
        resolved = resolve_mask_strategy(tile, config, moment_maps.get(name))
        if resolved is not config:
            logger.warning("Tile %s forced mask strategy '%s' for the whole run", name, resolved.mask.strategy)
            config = resolved
            break

    jobs = {
        name: (name, tile, config, moment_maps.get(name), gap_cache.get(name), rebuild)
        for name, tile in tiles.items()
    }
    results = _run_tasks(
        _reduce_tile_task,
        jobs,
        parallel=config.parallel.enabled,
        workers=config.parallel.workers,
        on_error=lambda key, text: TileTaskResult(name=key, result=None, error=text),
        cancel_check=cancel_check,
        progress=progress,
        stage="tiles",
    )
    for name in tiles:
        task = results.get(name)
        if task is None:
            logger.error("Tile task returned no result for %s", name)
            results[name] = TileTaskResult(name=name, result=None, error="no result")
        elif task.error:
            logger.error("Standing-wave removal failed for tile %s: %s", name, task.error)
    return {name: results[name] for name in tiles}, config


def flag_receptors(
    series: Sequence[ReceptorSeries],
    config: ReductionConfig,
    *,
    cancel_check: Optional[CancelCheck] = None,
    progress: Optional[ProgressCallback] = None,
) -> Dict[str, ReceptorTaskResult]:
    bad = config.bad_receptors
    jobs = {
        item.receptor: (item, config.interference, item.receptor.upper() in bad)
        for item in series
    }
    results = _run_tasks(
        _flag_receptor_task,
        jobs,
        parallel=config.parallel.enabled,
        workers=config.parallel.workers,
        on_error=lambda key, text: ReceptorTaskResult(receptor=key, mask=None, series=None, error=text),
        cancel_check=cancel_check,
        progress=progress,
        stage="receptors",
    )
    for receptor, task in results.items():
        if task.error:
            logger.error("Interference flagging failed for receptor %s: %s", receptor, task.error)
    return {item.receptor: results[item.receptor] for item in series}


def run_observation(
    tiles: Mapping[str, Cube],
    config: ReductionConfig,
    *,
    series: Sequence[ReceptorSeries] = (),
    moment_maps: Optional[Mapping[str, np.ndarray]] = None,
    gap_cache: Optional[Mapping[str, GapBounds]] = None,
    rebuild: RebuildHook | None = None,
    cancel_check: Optional[CancelCheck] = None,
    progress: Optional[ProgressCallback] = None,
    audit: Optional[List[str]] = None,
) -> BatchResult:
    """Flag receptors, then correct every tile, collecting QC and audit."""

    audit = audit if audit is not None else start_audit()
    qc_rows: List[Dict[str, Any]] = []
    errors: Dict[str, str] = {}
    reject_masks: Dict[str, RejectMask] = {}
    flagged: Dict[str, ReceptorSeries] = {}

    if series and config.interference.enabled:
        log_step(audit, f"Interference flagging: {len(series)} receptors")
        receptor_results = flag_receptors(series, config, cancel_check=cancel_check, progress=progress)
        for item in series:
            task = receptor_results[item.receptor]
            qc_rows.append(qc_engine.receptor_row(task.mask, item.receptor, item.n_spectra, task.error))
            if task.error:
                errors[f"receptor:{item.receptor}"] = task.error
                continue
            reject_masks[item.receptor] = task.mask
            flagged[item.receptor] = task.series
            log_step(audit, f"Receptor {item.receptor}: {task.mask.n_rejected} spectra rejected")
    elif series:
        log_step(audit, "Interference flagging disabled")

    tile_results: Dict[str, TileResult] = {}
    if tiles:
        log_step(audit, f"Standing-wave removal: {len(tiles)} tiles, mask '{config.mask.strategy}'")
        tasks, used_config = reduce_tiles(
            tiles,
            config,
            moment_maps=moment_maps,
            gap_cache=gap_cache,
            rebuild=rebuild,
            cancel_check=cancel_check,
            progress=progress,
        )
        if used_config.mask.strategy != config.mask.strategy:
            log_step(audit, f"Mask strategy overridden to '{used_config.mask.strategy}' (degenerate mask)")
        for name, task in tasks.items():
            qc_rows.append(qc_engine.tile_row(name, tiles[name], task.result, task.error))
            if task.result is None:
                errors[f"tile:{name}"] = task.error or "unknown error"
                log_step(audit, f"Tile {name} failed: {task.error}")
                continue
            tile_results[name] = task.result
            log_step(audit, f"Tile {name}: {task.result.passes} pass(es)")

    summary = qc_engine.summarise(qc_rows)
    log_step(audit, f"Finished: {summary}")
    return BatchResult(
        tiles=tile_results,
        reject_masks=reject_masks,
        flagged_series=flagged,
        qc_table=qc_rows,
        audit=audit,
        errors=errors,
    )
