"""Array compute kernels used by the reduction stages.

All numerical primitives go through :class:`ArrayKernel` so the backend can
be swapped. The default :class:`ScipyKernel` is built on NumPy,
``scipy.ndimage`` and ``astropy.stats``.

Post-condition shared by every kernel call: results are bare ``ndarray``
objects. Coordinate metadata is never carried through a kernel, so callers
that change array shape (``rotate``, ``collapse``, ``grow``) must reattach
it with :func:`ppv_baseline.engine.cube_api.reattach_metadata`.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
from typing import Dict, Iterator, List, Sequence, Tuple, Type
import warnings

import numpy as np
from astropy.stats import sigma_clip
from scipy import ndimage
from scipy.ndimage import gaussian_filter, gaussian_filter1d, uniform_filter1d

from ppv_baseline.engine.errors import (
    BackgroundFitError,
    InsufficientDataError,
    KernelError,
)

__all__ = [
    "ArrayKernel",
    "ScipyKernel",
    "Clump",
    "ClumpCatalog",
    "ClippedStats",
    "get_kernel",
    "register_kernel",
]

logger = logging.getLogger(__name__)

ESTIMATORS = ("mean", "median", "sum", "max", "sigma")


@dataclass(frozen=True)
class ClippedStats:
    mean: float
    median: float
    std: float
    n_used: int
    n_total: int


@dataclass(frozen=True)
class Clump:
    label: int
    peak: float
    peak_index: Tuple[int, ...]
    npix: int
    slices: Tuple[slice, ...]


@dataclass
class ClumpCatalog:
    labels: np.ndarray
    clumps: List[Clump]

    def __len__(self) -> int:
        return len(self.clumps)

    @property
    def mask(self) -> np.ndarray:
        return self.labels > 0


@contextmanager
def _guard(operation: str) -> Iterator[None]:
    try:
        yield
    except (KernelError, InsufficientDataError):
        raise
    except (ValueError, IndexError, FloatingPointError, MemoryError, TypeError) as exc:
        raise KernelError(operation, f"{type(exc).__name__}: {exc}") from exc


def _odd_width(width: int) -> int:
    width = max(1, int(width))
    if width % 2 == 0:
        width += 1
    return width


class ArrayKernel:
    """Narrow interface to the n-dimensional array primitives."""

    id: str = "base"

    def threshold(self, data: np.ndarray, *, above: float | None = None, below: float | None = None,
                  value: float = np.nan) -> np.ndarray:
        raise NotImplementedError

    def combine(self, left: np.ndarray, right: np.ndarray, op: str = "add") -> np.ndarray:
        raise NotImplementedError

    def collapse(self, data: np.ndarray, axis: int, estimator: str = "median") -> np.ndarray:
        raise NotImplementedError

    def count_good(self, data: np.ndarray, axis: int) -> np.ndarray:
        raise NotImplementedError

    def grow(self, data: np.ndarray, axis: int, size: int) -> np.ndarray:
        raise NotImplementedError

    def box_smooth(self, data: np.ndarray, width: int, axis: int = -1, *, strict: bool = False) -> np.ndarray:
        raise NotImplementedError

    def median_smooth(self, data: np.ndarray, width: int, *, min_good: int = 1) -> np.ndarray:
        raise NotImplementedError

    def gaussian_smooth(self, data: np.ndarray, sigma: float | Sequence[float]) -> np.ndarray:
        raise NotImplementedError

    def fill_bad(self, data: np.ndarray, size: float, niter: int = 10) -> np.ndarray:
        raise NotImplementedError

    def rotate(self, data: np.ndarray, angle: float, *, center_in: Sequence[float] | None = None,
               center_out: Sequence[float] | None = None,
               output_shape: Sequence[int] | None = None) -> np.ndarray:
        raise NotImplementedError

    def rotated_extent(self, shape: Sequence[int], angle: float) -> Tuple[int, int]:
        raise NotImplementedError

    def find_clumps(self, data: np.ndarray, threshold: float, min_peak: float, *,
                    min_pixels: int = 1) -> ClumpCatalog:
        raise NotImplementedError

    def clipped_stats(self, data: np.ndarray, clip: Sequence[float] = (3.0,)) -> ClippedStats:
        raise NotImplementedError

    def laplacian(self, data: np.ndarray, axis: int = -1, step: int = 1) -> np.ndarray:
        raise NotImplementedError

    def dilate(self, mask: np.ndarray, width: int, axis: int = -1) -> np.ndarray:
        raise NotImplementedError


class ScipyKernel(ArrayKernel):
    id = "scipy"

    def threshold(self, data, *, above=None, below=None, value=np.nan):
        with _guard("threshold"):
            arr = np.asarray(data, dtype=float)
            out = arr.copy()
            with np.errstate(invalid="ignore"):
                if above is not None:
                    out[arr > float(above)] = value
                if below is not None:
                    out[arr < float(below)] = value
            return out

    def combine(self, left, right, op="add"):
        ops = {
            "add": np.add,
            "sub": np.subtract,
            "mul": np.multiply,
            "div": np.divide,
        }
        func = ops.get(op)
        if func is None:
            raise KernelError("combine", f"unsupported operation '{op}'")
        with _guard("combine"), np.errstate(divide="ignore", invalid="ignore"):
            result = func(np.asarray(left, dtype=float), np.asarray(right, dtype=float))
            return np.asarray(result, dtype=float)

    def collapse(self, data, axis, estimator="median"):
        estimator = (estimator or "").lower()
        if estimator not in ESTIMATORS:
            raise KernelError("collapse", f"unsupported estimator '{estimator}'")
        with _guard("collapse"), warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            arr = np.asarray(data, dtype=float)
            if estimator == "mean":
                return np.nanmean(arr, axis=axis)
            if estimator == "median":
                return np.nanmedian(arr, axis=axis)
            if estimator == "max":
                return np.nanmax(arr, axis=axis)
            if estimator == "sigma":
                return np.nanstd(arr, axis=axis)
            total = np.nansum(arr, axis=axis)
            empty = ~np.any(np.isfinite(arr), axis=axis)
            total[empty] = np.nan
            return total

    def count_good(self, data, axis):
        return np.count_nonzero(np.isfinite(np.asarray(data, dtype=float)), axis=axis)

    def grow(self, data, axis, size):
        with _guard("grow"):
            arr = np.expand_dims(np.asarray(data, dtype=float), axis)
            return np.repeat(arr, int(size), axis=axis)

    def box_smooth(self, data, width, axis=-1, *, strict=False):
        width = _odd_width(width)
        with _guard("box_smooth"):
            arr = np.asarray(data, dtype=float)
            good = np.isfinite(arr)
            if width == 1:
                return arr.copy()
            if np.all(good):
                return uniform_filter1d(arr, size=width, axis=axis, mode="nearest")
            filled = np.where(good, arr, 0.0)
            total = uniform_filter1d(filled, size=width, axis=axis, mode="nearest")
            weight = uniform_filter1d(good.astype(float), size=width, axis=axis, mode="nearest")
            with np.errstate(divide="ignore", invalid="ignore"):
                out = total / weight
            out[weight <= 1e-12] = np.nan
        if strict and not np.all(np.isfinite(out)):
            raise BackgroundFitError("box_smooth", f"window of {width} has no good data")
        return out

    def median_smooth(self, data, width, *, min_good=1):
        width = _odd_width(width)
        arr = np.asarray(data, dtype=float)
        if arr.ndim != 1:
            raise KernelError("median_smooth", "only 1-D profiles are supported")
        if arr.size == 0:
            raise BackgroundFitError("median_smooth", "empty profile")
        half = width // 2
        padded = np.pad(arr, (half, half), mode="edge")
        windows = np.lib.stride_tricks.sliding_window_view(padded, width)
        counts = np.count_nonzero(np.isfinite(windows), axis=1)
        if np.any(counts < max(1, int(min_good))):
            raise BackgroundFitError(
                "median_smooth",
                f"{int(np.count_nonzero(counts < min_good))} windows with fewer than {min_good} good values",
            )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            return np.nanmedian(windows, axis=1)

    def gaussian_smooth(self, data, sigma):
        with _guard("gaussian_smooth"):
            arr = np.asarray(data, dtype=float)
            good = np.isfinite(arr)
            filled = np.where(good, arr, 0.0)
            total = gaussian_filter(filled, sigma=sigma, mode="nearest")
            weight = gaussian_filter(good.astype(float), sigma=sigma, mode="nearest")
            with np.errstate(divide="ignore", invalid="ignore"):
                out = total / weight
            out[weight <= 1e-6] = np.nan
            return out

    def fill_bad(self, data, size, niter=10):
        """Replace NaNs by iterative relaxation along the last axis.

        Good samples act as fixed boundary values. Each iteration smooths
        the working array with a Gaussian whose width shrinks
        geometrically from ``size`` to one pixel and resets the good
        samples, which converges towards the solution of Laplace's
        equation across every gap. Rows with no good samples at all are
        then interpolated from neighbouring rows along axis 0.
        """

        arr = np.asarray(data, dtype=float)
        bad = ~np.isfinite(arr)
        if not np.any(bad):
            return arr.copy()
        if np.all(bad):
            raise KernelError("fill_bad", "array contains no good values")
        with _guard("fill_bad"):
            work2d = arr.reshape(-1, arr.shape[-1]).copy()
            bad2d = bad.reshape(work2d.shape)
            empty_rows = np.all(bad2d, axis=1)
            x = np.arange(work2d.shape[1])
            for row in np.flatnonzero(~empty_rows):
                row_bad = bad2d[row]
                if np.any(row_bad):
                    work2d[row, row_bad] = np.interp(x[row_bad], x[~row_bad], work2d[row, ~row_bad])

            niter = max(1, int(niter))
            scales = np.geomspace(max(float(size), 1.0), 1.0, num=niter)
            live = ~empty_rows
            for scale in scales:
                smoothed = gaussian_filter1d(work2d[live], sigma=float(scale), axis=-1, mode="nearest")
                block = work2d[live]
                block_bad = bad2d[live]
                block[block_bad] = smoothed[block_bad]
                work2d[live] = block

            if np.any(empty_rows):
                rows = np.arange(work2d.shape[0])
                good_rows = rows[live]
                for channel in range(work2d.shape[1]):
                    work2d[empty_rows, channel] = np.interp(
                        rows[empty_rows], good_rows, work2d[good_rows, channel]
                    )
            return work2d.reshape(arr.shape)

    def rotated_extent(self, shape, angle):
        nx, ny = int(shape[0]), int(shape[1])
        theta = np.deg2rad(float(angle))
        cos_t, sin_t = abs(np.cos(theta)), abs(np.sin(theta))
        width = (nx - 1) * cos_t + (ny - 1) * sin_t
        height = (nx - 1) * sin_t + (ny - 1) * cos_t
        return int(np.ceil(width - 1e-9)) + 1, int(np.ceil(height - 1e-9)) + 1

    def rotate(self, data, angle, *, center_in=None, center_out=None, output_shape=None):
        """Rotate the two leading axes by ``angle`` degrees (counter-clockwise).

        Output pixel ``q`` samples input position ``R^-1 (q - c_out) + c_in``
        with bilinear interpolation; NaNs are excluded by normalising with
        the interpolated validity weight. Trailing axes pass through.
        """

        arr = np.asarray(data, dtype=float)
        if arr.ndim < 2:
            raise KernelError("rotate", "need at least two axes")
        in_shape = arr.shape
        if output_shape is None:
            output_shape = self.rotated_extent(in_shape, angle)
        out_spatial = (int(output_shape[0]), int(output_shape[1]))
        if center_in is None:
            center_in = ((in_shape[0] - 1) / 2.0, (in_shape[1] - 1) / 2.0)
        if center_out is None:
            center_out = ((out_spatial[0] - 1) / 2.0, (out_spatial[1] - 1) / 2.0)

        theta = np.deg2rad(float(angle))
        cos_t, sin_t = np.cos(theta), np.sin(theta)
        inverse = np.array([[cos_t, sin_t], [-sin_t, cos_t]])
        ndim = arr.ndim
        matrix = np.eye(ndim)
        matrix[:2, :2] = inverse
        offset = np.zeros(ndim)
        offset[:2] = np.asarray(center_in, dtype=float) - inverse @ np.asarray(center_out, dtype=float)
        full_shape = out_spatial + tuple(in_shape[2:])

        with _guard("rotate"):
            good = np.isfinite(arr)
            filled = np.where(good, arr, 0.0)
            rotated = ndimage.affine_transform(
                filled, matrix, offset=offset, output_shape=full_shape, order=1,
                mode="grid-constant", cval=0.0, prefilter=False,
            )
            weight = ndimage.affine_transform(
                good.astype(float), matrix, offset=offset, output_shape=full_shape, order=1,
                mode="grid-constant", cval=0.0, prefilter=False,
            )
            with np.errstate(divide="ignore", invalid="ignore"):
                out = rotated / weight
            out[weight < 0.5] = np.nan
            return out

    def find_clumps(self, data, threshold, min_peak, *, min_pixels=1):
        arr = np.asarray(data, dtype=float)
        with _guard("find_clumps"):
            with np.errstate(invalid="ignore"):
                above = np.isfinite(arr) & (arr > float(threshold))
            structure = ndimage.generate_binary_structure(arr.ndim, arr.ndim)
            labels, count = ndimage.label(above, structure=structure)
            clumps: List[Clump] = []
            final = np.zeros_like(labels)
            if count == 0:
                return ClumpCatalog(labels=final, clumps=clumps)
            index = np.arange(1, count + 1)
            peaks = ndimage.maximum(np.where(above, arr, -np.inf), labels, index)
            positions = ndimage.maximum_position(np.where(above, arr, -np.inf), labels, index)
            sizes = ndimage.sum(above, labels, index)
            objects = ndimage.find_objects(labels)
            next_label = 1
            for lab, peak, pos, npix, slc in zip(index, peaks, positions, sizes, objects):
                if peak < float(min_peak) or int(npix) < int(min_pixels):
                    continue
                final[labels == lab] = next_label
                clumps.append(
                    Clump(
                        label=next_label,
                        peak=float(peak),
                        peak_index=tuple(int(p) for p in pos),
                        npix=int(npix),
                        slices=tuple(slc),
                    )
                )
                next_label += 1
            return ClumpCatalog(labels=final, clumps=clumps)

    def clipped_stats(self, data, clip=(3.0,)):
        arr = np.asarray(data, dtype=float).ravel()
        finite = arr[np.isfinite(arr)]
        if finite.size == 0:
            raise InsufficientDataError("clipped_stats", 0, 1)
        clipped = np.ma.masked_invalid(finite)
        with _guard("clipped_stats"), warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            for level in clip or ():
                clipped = sigma_clip(
                    clipped, sigma=float(level), maxiters=1, cenfunc="median", stdfunc="std", masked=True
                )
            kept = np.asarray(clipped.compressed(), dtype=float)
        if kept.size == 0:
            kept = finite
        return ClippedStats(
            mean=float(np.mean(kept)),
            median=float(np.median(kept)),
            std=float(np.std(kept)),
            n_used=int(kept.size),
            n_total=int(finite.size),
        )

    def laplacian(self, data, axis=-1, step=1):
        step = max(1, int(step))
        arr = np.asarray(data, dtype=float)
        moved = np.moveaxis(arr, axis, -1)
        out = np.full(moved.shape, np.nan)
        if moved.shape[-1] > 2 * step:
            out[..., step:-step] = moved[..., : -2 * step] - 2.0 * moved[..., step:-step] + moved[..., 2 * step:]
        return np.moveaxis(out, -1, axis)

    def dilate(self, mask, width, axis=-1):
        width = int(width)
        arr = np.asarray(mask, dtype=bool)
        if width <= 0 or not np.any(arr):
            return arr.copy()
        shape = [1] * arr.ndim
        shape[axis] = 2 * width + 1
        structure = np.ones(shape, dtype=bool)
        return ndimage.binary_dilation(arr, structure=structure)


_REGISTRY: Dict[str, Type[ArrayKernel]] = {"scipy": ScipyKernel}
_INSTANCES: Dict[str, ArrayKernel] = {}


def register_kernel(kernel_cls: Type[ArrayKernel]) -> None:
    _REGISTRY[kernel_cls.id] = kernel_cls
    _INSTANCES.pop(kernel_cls.id, None)


def get_kernel(name: str | None = None) -> ArrayKernel:
    key = (name or "scipy").strip().lower()
    if key not in _REGISTRY:
        raise KernelError("get_kernel", f"no kernel backend named '{name}'")
    if key not in _INSTANCES:
        _INSTANCES[key] = _REGISTRY[key]()
        logger.debug("Initialised array kernel backend %s", key)
    return _INSTANCES[key]
