"""NPZ storage for per-receptor, per-subscan time series.

Each subscan is stored as ``<receptor>:<index>`` holding an
``(n_spectra, nchan)`` array; reject masks are stored as
``mask:<receptor>``.
"""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Mapping

import numpy as np

from ppv_baseline.engine.cube_api import ReceptorSeries, RejectMask

__all__ = ["load_series", "save_series", "save_reject_masks", "load_reject_masks"]

logger = logging.getLogger(__name__)

_SEP = ":"
_MASK_PREFIX = "mask"


def _npz_path(path: str | os.PathLike[str]) -> Path:
    out_path = Path(path)
    return out_path if out_path.suffix == ".npz" else out_path.with_name(out_path.name + ".npz")


def load_series(path: str | os.PathLike[str]) -> List[ReceptorSeries]:
    blocks: Dict[str, Dict[int, np.ndarray]] = defaultdict(dict)
    with np.load(Path(path), allow_pickle=False) as payload:
        for key in payload.files:
            receptor, sep, index = key.rpartition(_SEP)
            if not sep or receptor == _MASK_PREFIX:
                continue
            try:
                blocks[receptor][int(index)] = np.asarray(payload[key], dtype=float)
            except ValueError:
                logger.warning("Skipping unrecognised array '%s' in %s", key, path)
    series = [
        ReceptorSeries(receptor=receptor, subscans=[chunks[i] for i in sorted(chunks)])
        for receptor, chunks in sorted(blocks.items())
    ]
    logger.info("Loaded %d receptor time series from %s", len(series), path)
    return series


def save_series(series: List[ReceptorSeries], path: str | os.PathLike[str]) -> Path:
    arrays = {
        f"{item.receptor}{_SEP}{index:03d}": np.asarray(block, dtype=float)
        for item in series
        for index, block in enumerate(item.subscans)
    }
    out_path = _npz_path(path)
    np.savez_compressed(out_path, **arrays)
    return out_path


def save_reject_masks(masks: Mapping[str, RejectMask], path: str | os.PathLike[str]) -> Path:
    arrays = {f"{_MASK_PREFIX}{_SEP}{name}": np.asarray(mask.mask, dtype=bool) for name, mask in masks.items()}
    out_path = _npz_path(path)
    np.savez_compressed(out_path, **arrays)
    return out_path


def load_reject_masks(path: str | os.PathLike[str]) -> Dict[str, np.ndarray]:
    with np.load(Path(path), allow_pickle=False) as payload:
        return {
            key.split(_SEP, 1)[1]: np.asarray(payload[key], dtype=bool)
            for key in payload.files
            if key.startswith(_MASK_PREFIX + _SEP)
        }
