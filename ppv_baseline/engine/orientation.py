"""Align the scan direction of a cube with a pixel axis and undo it afterwards."""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
from typing import Optional, Tuple
import warnings

import numpy as np
from astropy.wcs import WCS, FITSFixedWarning

from ppv_baseline.engine.cube_api import Cube, CubeMetadata, reattach_metadata
from ppv_baseline.engine.kernels import ArrayKernel, get_kernel
from ppv_baseline.engine.recipe_model import OrientationConfig

__all__ = [
    "Orientation",
    "compute_orientation",
    "resolve_position_angles",
    "rotate_cube",
    "restore_cube",
]

logger = logging.getLogger(__name__)

_MAP_KEYS = ("map_pa", "map_position_angle")
_SCAN_KEYS = ("scan_pa", "scan_position_angle")


@dataclass(frozen=True)
class Orientation:
    """Geometry of one forward/inverse rotation pair.

    ``angle`` is the residual rotation in ``[-45, 45]`` applied to the
    spatial axes; ``scan_axis`` is the pixel axis (0 or 1) that the scan
    direction lies along afterwards. Every spectrum of one scan row shares
    its index on the other axis, so the row estimate collapses
    ``scan_axis`` and the profile is indexed by ``row_axis``. The full and
    trimmed extents are kept so :func:`restore_cube` lands exactly on the
    original bounds.
    """

    net_angle: float
    angle: float
    scan_axis: int
    original_shape: Tuple[int, int]
    full_shape: Tuple[int, int]
    trim_lower: Tuple[int, int]
    trim_upper: Tuple[int, int]
    identity: bool

    @property
    def collapse_axis(self) -> int:
        return self.scan_axis

    @property
    def row_axis(self) -> int:
        return 1 - self.scan_axis

    @property
    def inverse_angle(self) -> float:
        return -self.angle

    @property
    def rotated_shape(self) -> Tuple[int, int]:
        return (
            self.trim_upper[0] - self.trim_lower[0],
            self.trim_upper[1] - self.trim_lower[1],
        )

    @property
    def center_in(self) -> Tuple[float, float]:
        return ((self.original_shape[0] - 1) / 2.0, (self.original_shape[1] - 1) / 2.0)

    @property
    def center_full(self) -> Tuple[float, float]:
        return ((self.full_shape[0] - 1) / 2.0, (self.full_shape[1] - 1) / 2.0)


def _reduce_angle(net: float) -> Tuple[float, int]:
    residual = ((net + 45.0) % 90.0) - 45.0
    quarter_turns = int(round((net - residual) / 90.0))
    scan_axis = 1 if quarter_turns % 2 == 0 else 0
    return residual, scan_axis


def compute_orientation(
    spatial_shape: Tuple[int, int],
    scan_pa: float,
    map_pa: float,
    *,
    tolerance: float = 0.01,
    kernel: ArrayKernel | None = None,
) -> Orientation:
    """Geometry that puts the scan direction on a pixel axis.

    A scan position angle equal to the map position angle means scanning
    along the map latitude axis, pixel axis 1 of ``data[x, y, chan]``; a
    net quarter turn moves the scan onto axis 0.
    """

    kernel = kernel or get_kernel()
    net = float(scan_pa) - float(map_pa)
    residual, scan_axis = _reduce_angle(net)
    shape = (int(spatial_shape[0]), int(spatial_shape[1]))
    if abs(residual) < float(tolerance):
        logger.debug("Net rotation %.4f deg below tolerance; orientation is identity", residual)
        return Orientation(
            net_angle=net,
            angle=0.0,
            scan_axis=scan_axis,
            original_shape=shape,
            full_shape=shape,
            trim_lower=(0, 0),
            trim_upper=shape,
            identity=True,
        )

    full_shape = kernel.rotated_extent(shape, residual)
    footprint = kernel.rotate(np.ones(shape, dtype=float), residual, output_shape=full_shape)
    covered = np.isfinite(footprint)
    rows = np.flatnonzero(covered.any(axis=1))
    cols = np.flatnonzero(covered.any(axis=0))
    if rows.size == 0 or cols.size == 0:
        lower, upper = (0, 0), full_shape
    else:
        lower = (int(rows[0]), int(cols[0]))
        upper = (int(rows[-1]) + 1, int(cols[-1]) + 1)
    logger.info(
        "Rotating by %.3f deg (net %.3f deg); scan along pixel axis %d", residual, net, scan_axis
    )
    return Orientation(
        net_angle=net,
        angle=residual,
        scan_axis=scan_axis,
        original_shape=shape,
        full_shape=tuple(full_shape),
        trim_lower=lower,
        trim_upper=upper,
        identity=False,
    )


def _wcs_map_angle(cube: Cube) -> Optional[float]:
    if cube.header is None:
        return None
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", FITSFixedWarning)
            celestial = WCS(cube.header).celestial
        if celestial.naxis != 2:
            return None
        pc = celestial.wcs.get_pc()
        cdelt = celestial.wcs.get_cdelt()
    except (ValueError, KeyError, AttributeError, MemoryError) as exc:
        logger.warning("Could not read map rotation from WCS: %s", exc)
        return None
    matrix = pc * cdelt[:, None]
    # latitude axis direction in pixel space gives the map position angle
    angle = math.degrees(math.atan2(-matrix[0, 1], matrix[1, 1]))
    if not math.isfinite(angle):
        return None
    return angle


def _lookup(cube: Cube, keys: Tuple[str, ...], card: str) -> Optional[float]:
    for key in keys:
        value = cube.meta.get(key)
        if value is not None:
            try:
                return float(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric %s=%r in cube metadata", key, value)
    if cube.header is not None and card in cube.header:
        try:
            return float(cube.header[card])
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric %s header card", card)
    return None


def resolve_position_angles(cube: Cube, config: OrientationConfig) -> Tuple[float, float]:
    """Return ``(scan_pa, map_pa)`` filling ``auto`` values from the cube."""

    map_pa = config.map_position_angle
    if map_pa is None:
        map_pa = _lookup(cube, _MAP_KEYS, "MAP_PA")
    if map_pa is None:
        map_pa = _wcs_map_angle(cube)
    scan_pa = config.scan_position_angle
    if scan_pa is None:
        scan_pa = _lookup(cube, _SCAN_KEYS, "SCAN_PA")
    if scan_pa is None:
        # without a recorded scan angle assume the scan follows the map grid
        scan_pa = map_pa
    if map_pa is None:
        map_pa = 0.0
        scan_pa = 0.0 if scan_pa is None else scan_pa
    return float(scan_pa), float(map_pa)


def _forward(data: np.ndarray, orientation: Orientation, kernel: ArrayKernel) -> np.ndarray:
    rotated = kernel.rotate(data, orientation.angle, output_shape=orientation.full_shape)
    (x0, y0), (x1, y1) = orientation.trim_lower, orientation.trim_upper
    return rotated[x0:x1, y0:y1, ...].copy()


def rotate_cube(cube: Cube, orientation: Orientation, *, kernel: ArrayKernel | None = None) -> Cube:
    """Rotate the spatial axes and trim to the minimal bounding box.

    The rotated cube carries the original's spectral coordinates, header
    and meta; its spatial plane is the rotated slice of the original.
    """

    if orientation.identity:
        return cube.copy()
    kernel = kernel or get_kernel()
    carrier = cube.spatial_slice()
    rotated = _forward(cube.data, orientation, kernel)
    rotated_plane = _forward(carrier.plane, orientation, kernel)
    return reattach_metadata(rotated, replace(carrier, plane=rotated_plane), name=f"{cube.name}_rot")


def restore_cube(
    data: np.ndarray | Cube,
    orientation: Orientation,
    carrier: CubeMetadata,
    *,
    kernel: ArrayKernel | None = None,
    pad_mode: str = "nan",
) -> Cube:
    """Apply the inverse rotation and restore the original spatial bounds.

    ``pad_mode="edge"`` extends the trimmed array by its edge values
    before rotating back, which keeps a finite baseline finite on every
    original pixel.
    """

    arr = np.asarray(data.data if isinstance(data, Cube) else data, dtype=float)
    if orientation.identity:
        return reattach_metadata(arr, carrier)
    if arr.shape[:2] != orientation.rotated_shape:
        raise ValueError(
            f"Rotated array {arr.shape[:2]} does not match orientation {orientation.rotated_shape}"
        )
    kernel = kernel or get_kernel()
    (x0, y0), (x1, y1) = orientation.trim_lower, orientation.trim_upper
    fx, fy = orientation.full_shape
    pad = [(x0, fx - x1), (y0, fy - y1)] + [(0, 0)] * (arr.ndim - 2)
    if pad_mode == "edge":
        full = np.pad(arr, pad, mode="edge")
    else:
        full = np.pad(arr, pad, mode="constant", constant_values=np.nan)
    restored = kernel.rotate(
        full,
        orientation.inverse_angle,
        center_in=orientation.center_full,
        center_out=orientation.center_in,
        output_shape=orientation.original_shape,
    )
    return reattach_metadata(restored, carrier)
