"""Quality-control rows for reduced tiles and flagged receptors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import warnings

import numpy as np

from ppv_baseline.engine.cube_api import Cube, RejectMask, TileResult

QC_COLUMNS = (
    "kind",
    "name",
    "status",
    "passes",
    "mask_strategy",
    "masked_fraction",
    "gap_lower",
    "gap_upper",
    "interp_size",
    "ripple_rms_before",
    "ripple_rms_after",
    "n_spectra",
    "n_rejected",
    "error",
)


@dataclass
class RippleResult:
    rms: float
    used_rows: int


def row_ripple(cube: Cube, *, scan_axis: int = 1, channels: Optional[np.ndarray] = None) -> RippleResult:
    """RMS of the row-median spectra about their own median level.

    The median along ``scan_axis`` isolates structure shared by every
    spectrum of a scan row, which is what a standing wave leaves behind.
    """

    data = cube.data if channels is None else cube.data[:, :, channels]
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        rows = np.nanmedian(data, axis=scan_axis)
        level = np.nanmedian(rows, axis=1, keepdims=True)
    deviations = rows - level
    finite = np.isfinite(deviations)
    if not np.any(finite):
        return RippleResult(rms=float("nan"), used_rows=0)
    used = int(np.count_nonzero(finite.any(axis=1)))
    return RippleResult(rms=float(np.sqrt(np.mean(deviations[finite] ** 2))), used_rows=used)


def _empty_row(kind: str, name: str) -> Dict[str, Any]:
    row: Dict[str, Any] = {column: None for column in QC_COLUMNS}
    row.update({"kind": kind, "name": name})
    return row


def tile_row(name: str, original: Cube, result: Optional[TileResult], error: Optional[str] = None) -> Dict[str, Any]:
    row = _empty_row("tile", name)
    scan_axis = int(result.qc.get("scan_axis", 1)) if result is not None else 1
    row["ripple_rms_before"] = row_ripple(original, scan_axis=scan_axis).rms
    if result is None:
        row.update({"status": "failed", "error": error})
        return row
    qc = result.qc
    row.update({
        "status": "ok",
        "passes": result.passes,
        "mask_strategy": qc.get("mask_strategy"),
        "masked_fraction": qc.get("masked_fraction"),
        "gap_lower": result.gap_bounds.lower,
        "gap_upper": result.gap_bounds.upper,
        "interp_size": qc.get("interp_size"),
        "ripple_rms_after": row_ripple(result.corrected, scan_axis=scan_axis).rms,
    })
    if qc.get("degenerate_mask"):
        row["status"] = f"ok (mask fallback: {qc.get('mask_fallback') or 'none'})"
    return row


def receptor_row(mask: Optional[RejectMask], receptor: str, n_spectra: int, error: Optional[str] = None) -> Dict[str, Any]:
    row = _empty_row("receptor", receptor)
    row["n_spectra"] = int(n_spectra)
    if mask is None:
        row.update({"status": "failed", "error": error})
        return row
    row["n_rejected"] = mask.n_rejected
    row["status"] = f"skipped ({mask.skipped})" if mask.skipped else "ok"
    return row


def summarise(rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    rows = list(rows)
    tiles = [row for row in rows if row["kind"] == "tile"]
    receptors = [row for row in rows if row["kind"] == "receptor"]
    failed: List[str] = [row["name"] for row in rows if row["status"] == "failed"]
    return {
        "tiles": len(tiles),
        "receptors": len(receptors),
        "failed": failed,
        "rejected_spectra": int(sum(row["n_rejected"] or 0 for row in receptors)),
    }
