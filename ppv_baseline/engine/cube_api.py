"""Data model shared by the reduction stages.

Cubes are stored with the two spatial axes first and the spectral axis
last, ``data[x, y, channel]``. Bad values are NaN throughout. Every stage
returns new arrays; nothing here is modified in place once handed on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from astropy.io.fits import Header

SPATIAL_AXES: Tuple[int, int] = (0, 1)
SPECTRAL_AXIS: int = 2


@dataclass
class Cube:
    data: np.ndarray                # (nx, ny, nchan), NaN marks bad voxels
    spectral: Optional[np.ndarray] = None  # spectral coordinate of each channel
    header: Optional["Header"] = None
    variance: Optional[np.ndarray] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    name: str = "cube"

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data, dtype=float)
        if self.data.ndim != 3:
            raise ValueError(f"Cube data must be 3-dimensional, got shape {self.data.shape}")
        if self.spectral is None:
            self.spectral = np.arange(self.data.shape[SPECTRAL_AXIS], dtype=float)
        else:
            self.spectral = np.asarray(self.spectral, dtype=float)
        if self.spectral.shape != (self.data.shape[SPECTRAL_AXIS],):
            raise ValueError("Spectral coordinate length must match the spectral axis")
        if self.variance is not None:
            self.variance = np.asarray(self.variance, dtype=float)
            if self.variance.shape != self.data.shape:
                raise ValueError("Variance must be congruent with the data array")

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(self.data.shape)  # type: ignore[return-value]

    @property
    def spatial_shape(self) -> Tuple[int, int]:
        return (self.data.shape[0], self.data.shape[1])

    @property
    def nchan(self) -> int:
        return int(self.data.shape[SPECTRAL_AXIS])

    def with_data(self, data: np.ndarray, *, variance: Optional[np.ndarray] = None, name: str | None = None) -> "Cube":
        """Return a new cube with ``data`` and this cube's metadata."""

        return Cube(
            data=np.asarray(data, dtype=float).copy(),
            spectral=self.spectral.copy(),
            header=self.header.copy() if self.header is not None else None,
            variance=None if variance is None else np.asarray(variance, dtype=float).copy(),
            meta=dict(self.meta),
            name=name or self.name,
        )

    def spatial_slice(self) -> "CubeMetadata":
        """Coordinate metadata of a single spatial plane of this cube."""

        return CubeMetadata(
            plane=self.data[:, :, 0].copy(),
            spectral=self.spectral.copy(),
            header=self.header.copy() if self.header is not None else None,
            meta=dict(self.meta),
            name=self.name,
        )

    def copy(self) -> "Cube":
        return self.with_data(self.data, variance=self.variance)


@dataclass(frozen=True)
class CubeMetadata:
    plane: np.ndarray
    spectral: np.ndarray
    header: Optional["Header"]
    meta: Dict[str, Any]
    name: str


def reattach_metadata(data: np.ndarray, carrier: CubeMetadata, *, name: str | None = None) -> Cube:
    """Build a cube from a bare kernel result using ``carrier``'s metadata.

    Shape-changing kernel calls return plain arrays; this is the only way
    their results regain coordinates. The spatial shape must match the
    carrier's plane.
    """

    arr = np.asarray(data, dtype=float)
    if arr.shape[:2] != carrier.plane.shape:
        raise ValueError(
            f"Cannot reattach metadata for plane {carrier.plane.shape} to array {arr.shape}"
        )
    return Cube(
        data=arr.copy(),
        spectral=carrier.spectral.copy(),
        header=carrier.header.copy() if carrier.header is not None else None,
        meta=dict(carrier.meta),
        name=name or carrier.name,
    )


@dataclass(frozen=True)
class EmissionExtents:
    ranges: Tuple[Tuple[float, float], ...] = ()

    @classmethod
    def from_pairs(cls, pairs: Iterable[Sequence[float]]) -> "EmissionExtents":
        cleaned: List[Tuple[float, float]] = []
        for pair in pairs:
            lo, hi = float(pair[0]), float(pair[1])
            if lo > hi:
                lo, hi = hi, lo
            cleaned.append((lo, hi))
        cleaned.sort()
        return cls(tuple(cleaned))

    def __bool__(self) -> bool:
        return bool(self.ranges)

    def __len__(self) -> int:
        return len(self.ranges)

    def contains(self, coords: np.ndarray) -> np.ndarray:
        coords = np.asarray(coords, dtype=float)
        hit = np.zeros(coords.shape, dtype=bool)
        for lo, hi in self.ranges:
            hit |= (coords >= lo) & (coords <= hi)
        return hit


@dataclass(frozen=True)
class GapBounds:
    lower: int = -1
    upper: int = -1

    @property
    def empty(self) -> bool:
        return self.lower < 0 or self.upper < self.lower

    @property
    def width(self) -> int:
        return 0 if self.empty else self.upper - self.lower + 1


@dataclass
class ScanRowProfile:
    data: np.ndarray        # (n_positions, nchan)
    scan_axis: int
    collapse_axis: int
    n_contributing: np.ndarray | None = None

    @property
    def n_positions(self) -> int:
        return int(self.data.shape[0])

    @property
    def nchan(self) -> int:
        return int(self.data.shape[1])

    def with_data(self, data: np.ndarray) -> "ScanRowProfile":
        return ScanRowProfile(
            data=np.asarray(data, dtype=float).copy(),
            scan_axis=self.scan_axis,
            collapse_axis=self.collapse_axis,
            n_contributing=self.n_contributing,
        )


@dataclass
class ReceptorSeries:
    receptor: str
    subscans: List[np.ndarray]      # each (n_spectra, nchan)
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_spectra(self) -> int:
        return int(sum(np.asarray(block).shape[0] for block in self.subscans))

    @property
    def nchan(self) -> int:
        if not self.subscans:
            return 0
        return int(np.asarray(self.subscans[0]).shape[1])

    def concatenated(self) -> np.ndarray:
        if not self.subscans:
            return np.zeros((0, 0), dtype=float)
        return np.concatenate([np.asarray(block, dtype=float) for block in self.subscans], axis=0)


@dataclass
class ReceptorProfile:
    receptor: str
    values: np.ndarray
    step_corrected: bool = False
    background_subtracted: bool = False


@dataclass
class RejectMask:
    receptor: str
    mask: np.ndarray                # True = blank this spectrum
    ringing: np.ndarray | None = None
    skipped: str | None = None
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_rejected(self) -> int:
        return int(np.count_nonzero(self.mask))


@dataclass
class TileResult:
    corrected: Cube
    baseline: Cube | None
    passes: int
    gap_bounds: GapBounds
    qc: Dict[str, Any] = field(default_factory=dict)
    snapshots: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchResult:
    tiles: Dict[str, TileResult]
    reject_masks: Dict[str, RejectMask]
    flagged_series: Dict[str, ReceptorSeries]
    qc_table: List[Dict[str, Any]]
    audit: List[str]
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def gap_cache(self) -> Mapping[str, GapBounds]:
        return MappingProxyType({name: tile.gap_bounds for name, tile in self.tiles.items()})
