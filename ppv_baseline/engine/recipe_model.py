"""Recipe parameters and the immutable configuration resolved from them."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import yaml

from ppv_baseline.engine.cube_api import EmissionExtents
from ppv_baseline.engine.errors import ConfigurationError

__all__ = [
    "Recipe",
    "ReductionConfig",
    "MaskConfig",
    "VolumetricConfig",
    "InterpolateConfig",
    "RefineConfig",
    "OrientationConfig",
    "InterferenceConfig",
    "ParallelConfig",
    "MASK_STRATEGIES",
    "load_recipe",
    "parse_velocity_ranges",
    "default_parallel_workers",
]

logger = logging.getLogger(__name__)

MASK_STRATEGIES: Tuple[str, ...] = ("spatial-image", "velocity-ranges", "volumetric", "none")
REFINE_SOURCES: Tuple[str, ...] = ("original", "corrected")

_STRATEGY_ALIASES = {
    "spatial-image": "spatial-image",
    "spatial": "spatial-image",
    "image": "spatial-image",
    "velocity-ranges": "velocity-ranges",
    "velocity": "velocity-ranges",
    "ranges": "velocity-ranges",
    "volumetric": "volumetric",
    "clumps": "volumetric",
    "none": "none",
    "off": "none",
}

DEFAULT_SMOOTHING_WIDTHS: Tuple[int, ...] = (5, 25, 101)
DEFAULT_EDGE_CLIP: Tuple[float, ...] = (2.0, 2.0, 2.5, 3.0)


def default_parallel_workers() -> int:
    return max(1, min(4, os.cpu_count() or 1))


@dataclass(frozen=True)
class VolumetricConfig:
    smooth_sigma: float = 1.0
    threshold_sigma: float = 3.0
    peak_sigma: float = 5.0
    min_pixels: int = 3
    dilate_channels: int = 2


@dataclass(frozen=True)
class MaskConfig:
    strategy: str = "none"
    emission_threshold: Optional[float] = None
    velocity_ranges: EmissionExtents = EmissionExtents()
    volumetric: VolumetricConfig = VolumetricConfig()


@dataclass(frozen=True)
class InterpolateConfig:
    enabled: bool = True
    width: Optional[int] = None
    iterations: int = 10
    min_width: int = 5
    fraction: float = 0.25


@dataclass(frozen=True)
class RefineConfig:
    enabled: bool = False
    source: str = "original"


@dataclass(frozen=True)
class OrientationConfig:
    map_position_angle: Optional[float] = None     # None means read from the cube
    scan_position_angle: Optional[float] = None
    tolerance: float = 0.01


@dataclass(frozen=True)
class InterferenceConfig:
    enabled: bool = True
    edge_clip: Tuple[float, ...] = DEFAULT_EDGE_CLIP
    thresh_clip: float = 4.0
    dilate: int = 1
    edge_trim: float = 0.05
    background_width: int = 25
    min_spectra: int = 50
    ringing: bool = False
    ringing_all_receptors: bool = False
    ringing_receptors: Tuple[str, ...] = ("H07",)
    ringing_min_spectra: int = 400
    ringing_smooth: int = 15
    ringing_step: int = 2
    ringing_min_peak: Optional[float] = None
    ringing_peak_sigma: float = 5.0

    def ringing_applies_to(self, receptor: str) -> bool:
        if not self.ringing:
            return False
        if self.ringing_all_receptors:
            return True
        return receptor.upper() in {name.upper() for name in self.ringing_receptors}


@dataclass(frozen=True)
class ParallelConfig:
    enabled: bool = False
    workers: int = field(default_factory=default_parallel_workers)


@dataclass(frozen=True)
class ReductionConfig:
    """Validated, immutable snapshot of a recipe shared by every worker."""

    mask: MaskConfig = MaskConfig()
    smoothing_widths: Tuple[int, ...] = DEFAULT_SMOOTHING_WIDTHS
    interpolate: InterpolateConfig = InterpolateConfig()
    refine: RefineConfig = RefineConfig()
    orientation: OrientationConfig = OrientationConfig()
    interference: InterferenceConfig = InterferenceConfig()
    bad_receptors: frozenset = frozenset()
    parallel: ParallelConfig = ParallelConfig()
    keep_intermediates: bool = False

    def with_mask_strategy(self, strategy: str) -> "ReductionConfig":
        return replace(self, mask=replace(self.mask, strategy=strategy))


def parse_velocity_ranges(value: Any) -> EmissionExtents:
    """Accept ``"lo:hi,lo:hi"`` strings or sequences of pairs / ``"lo:hi"`` items."""

    if value is None:
        return EmissionExtents()
    if isinstance(value, EmissionExtents):
        return value
    if isinstance(value, str):
        items: List[Any] = [chunk for chunk in value.split(",") if chunk.strip()]
    elif isinstance(value, Sequence):
        items = list(value)
    else:
        raise ConfigurationError([f"Velocity ranges must be a string or a list, got {type(value).__name__}"])

    pairs: List[Tuple[float, float]] = []
    errs: List[str] = []
    for item in items:
        if isinstance(item, str):
            parts = item.strip().split(":")
        elif isinstance(item, (Sequence, tuple)) and not isinstance(item, (bytes, bytearray)):
            parts = list(item)
        else:
            errs.append(f"Velocity range {item!r} is not a lower:upper pair")
            continue
        if len(parts) != 2:
            errs.append(f"Velocity range {item!r} is not a lower:upper pair")
            continue
        try:
            pairs.append((float(parts[0]), float(parts[1])))
        except (TypeError, ValueError):
            errs.append(f"Velocity range {item!r} has non-numeric bounds")
    if errs:
        raise ConfigurationError(errs)
    return EmissionExtents.from_pairs(pairs)


def _section(params: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = params.get(key)
    return dict(value) if isinstance(value, Mapping) else {}


def _is_auto(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip().lower() in {"", "auto"})


def _check_number(errs: List[str], value: Any, label: str, *, minimum: float | None = None,
                  exclusive: bool = False) -> None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        errs.append(f"{label} must be numeric")
        return
    if minimum is None:
        return
    if exclusive and number <= minimum:
        errs.append(f"{label} must be greater than {minimum:g}")
    elif not exclusive and number < minimum:
        errs.append(f"{label} must be at least {minimum:g}")


def _normalise_strategy(value: Any) -> str | None:
    if value is None:
        return None
    return _STRATEGY_ALIASES.get(str(value).strip().lower().replace("_", "-"))


@dataclass
class Recipe:
    module: str = "ppv-baseline"
    params: Dict[str, Any] = field(default_factory=dict)
    version: str = "0.1.0"

    def validate(self) -> list[str]:
        errs: List[str] = []
        params = self.params if isinstance(self.params, Mapping) else {}

        mask_cfg = _section(params, "mask")
        strategy = mask_cfg.get("strategy")
        if not _is_auto(strategy) and _normalise_strategy(strategy) is None:
            errs.append(
                f"Unknown mask strategy '{strategy}' (expected one of {', '.join(MASK_STRATEGIES)})"
            )
        threshold = mask_cfg.get("emission_threshold")
        if not _is_auto(threshold):
            _check_number(errs, threshold, "Emission threshold")
        try:
            extents = parse_velocity_ranges(mask_cfg.get("velocity_ranges"))
        except ConfigurationError as exc:
            errs.extend(exc.errors)
            extents = EmissionExtents()
        if _normalise_strategy(strategy) == "velocity-ranges" and not extents:
            errs.append("Velocity-range masking requires at least one velocity range")
        vol_cfg = mask_cfg.get("volumetric", {})
        if vol_cfg is not None and not isinstance(vol_cfg, Mapping):
            errs.append("Volumetric mask options must be a mapping")
        elif vol_cfg:
            for key, label in (
                ("smooth_sigma", "Volumetric smoothing sigma"),
                ("threshold_sigma", "Volumetric threshold"),
                ("peak_sigma", "Volumetric peak threshold"),
            ):
                if key in vol_cfg:
                    _check_number(errs, vol_cfg[key], label, minimum=0.0, exclusive=key != "smooth_sigma")
            for key, label in (("min_pixels", "Volumetric minimum clump size"), ("dilate_channels", "Volumetric dilation")):
                if key in vol_cfg:
                    _check_number(errs, vol_cfg[key], label, minimum=0.0)

        smoothing = _section(params, "smoothing")
        widths = smoothing.get("widths", list(DEFAULT_SMOOTHING_WIDTHS))
        if not isinstance(widths, Sequence) or isinstance(widths, str) or not widths:
            errs.append("Smoothing widths must be a non-empty list of channel counts")
        else:
            for width in widths:
                try:
                    if int(width) < 1:
                        errs.append("Smoothing widths must be positive")
                        break
                except (TypeError, ValueError):
                    errs.append(f"Smoothing width {width!r} must be an integer")
                    break

        interp = _section(params, "interpolate")
        width = interp.get("width")
        if not _is_auto(width):
            _check_number(errs, width, "Interpolation width", minimum=1.0)
        if "iterations" in interp:
            _check_number(errs, interp["iterations"], "Interpolation iterations", minimum=1.0)
        if "min_width" in interp:
            _check_number(errs, interp["min_width"], "Interpolation minimum width", minimum=1.0)
        if "fraction" in interp:
            _check_number(errs, interp["fraction"], "Interpolation fraction", minimum=0.0, exclusive=True)

        refine = _section(params, "refine")
        source = str(refine.get("source", "original")).strip().lower()
        if source not in REFINE_SOURCES:
            errs.append(f"Refinement source must be one of {', '.join(REFINE_SOURCES)}")

        orient = _section(params, "orientation")
        for key, label in (("map_position_angle", "Map position angle"), ("scan_position_angle", "Scan position angle")):
            value = orient.get(key)
            if not _is_auto(value):
                _check_number(errs, value, label)
        if "tolerance" in orient:
            _check_number(errs, orient["tolerance"], "Rotation tolerance", minimum=0.0)

        interference = _section(params, "interference")
        edge_clip = interference.get("edge_clip", list(DEFAULT_EDGE_CLIP))
        if isinstance(edge_clip, (int, float)):
            edge_clip = [edge_clip]
        if not isinstance(edge_clip, Sequence) or isinstance(edge_clip, str) or not edge_clip:
            errs.append("Edge clip levels must be a non-empty list")
        else:
            try:
                levels = [float(level) for level in edge_clip]
            except (TypeError, ValueError):
                errs.append("Edge clip levels must be numeric")
            else:
                if any(level <= 0 for level in levels):
                    errs.append("Edge clip levels must be positive")
                if any(b < a for a, b in zip(levels, levels[1:])):
                    errs.append("Edge clip levels must be non-decreasing")
        if "thresh_clip" in interference:
            _check_number(errs, interference["thresh_clip"], "Rejection threshold", minimum=0.0, exclusive=True)
        dilate = interference.get("dilate", 1)
        try:
            if int(dilate) not in (0, 1, 2):
                errs.append("Interference dilation must be 0, 1 or 2")
        except (TypeError, ValueError):
            errs.append("Interference dilation must be an integer")
        edge_trim = interference.get("edge_trim", 0.05)
        try:
            if not 0.0 <= float(edge_trim) < 0.5:
                errs.append("Spectral edge trim must be in [0, 0.5)")
        except (TypeError, ValueError):
            errs.append("Spectral edge trim must be numeric")
        for key, label in (
            ("background_width", "Background width"),
            ("min_spectra", "Minimum spectra"),
            ("ringing_min_spectra", "Ringing minimum spectra"),
            ("ringing_smooth", "Ringing smoothing width"),
            ("ringing_step", "Ringing edge step"),
        ):
            if key in interference:
                _check_number(errs, interference[key], label, minimum=1.0)
        if interference.get("ringing_min_peak") is not None:
            _check_number(errs, interference["ringing_min_peak"], "Ringing minimum peak")
        if "ringing_peak_sigma" in interference:
            _check_number(errs, interference["ringing_peak_sigma"], "Ringing peak sigma", minimum=0.0, exclusive=True)
        receptors = interference.get("ringing_receptors", ["H07"])
        if isinstance(receptors, str) or not isinstance(receptors, Sequence):
            errs.append("Ringing receptors must be a list of receptor names")

        bad = params.get("bad_receptors", [])
        if isinstance(bad, str) or not isinstance(bad, (Sequence, set, frozenset)):
            errs.append("Bad receptors must be a list of receptor names")

        parallel = _section(params, "parallel")
        if parallel.get("workers") is not None:
            _check_number(errs, parallel["workers"], "Parallel workers", minimum=1.0)
        return errs

    def resolve(self) -> ReductionConfig:
        """Validate and freeze the recipe; raises :class:`ConfigurationError`."""

        errs = self.validate()
        if errs:
            raise ConfigurationError(errs)
        params = self.params if isinstance(self.params, Mapping) else {}

        mask_cfg = _section(params, "mask")
        extents = parse_velocity_ranges(mask_cfg.get("velocity_ranges"))
        strategy = _normalise_strategy(mask_cfg.get("strategy"))
        if strategy is None:
            strategy = "velocity-ranges" if extents else "none"
        threshold = mask_cfg.get("emission_threshold")
        vol = mask_cfg.get("volumetric") or {}
        volumetric = VolumetricConfig(
            smooth_sigma=float(vol.get("smooth_sigma", 1.0)),
            threshold_sigma=float(vol.get("threshold_sigma", 3.0)),
            peak_sigma=float(vol.get("peak_sigma", 5.0)),
            min_pixels=int(vol.get("min_pixels", 3)),
            dilate_channels=int(vol.get("dilate_channels", 2)),
        )
        mask = MaskConfig(
            strategy=strategy,
            emission_threshold=None if _is_auto(threshold) else float(threshold),
            velocity_ranges=extents,
            volumetric=volumetric,
        )

        smoothing = _section(params, "smoothing")
        widths = tuple(int(w) for w in smoothing.get("widths", DEFAULT_SMOOTHING_WIDTHS))

        interp = _section(params, "interpolate")
        interp_width = interp.get("width")
        interpolate = InterpolateConfig(
            enabled=bool(interp.get("enabled", True)),
            width=None if _is_auto(interp_width) else int(interp_width),
            iterations=int(interp.get("iterations", 10)),
            min_width=int(interp.get("min_width", 5)),
            fraction=float(interp.get("fraction", 0.25)),
        )

        refine_cfg = _section(params, "refine")
        refine = RefineConfig(
            enabled=bool(refine_cfg.get("enabled", False)),
            source=str(refine_cfg.get("source", "original")).strip().lower(),
        )

        orient = _section(params, "orientation")
        map_pa = orient.get("map_position_angle")
        scan_pa = orient.get("scan_position_angle")
        orientation = OrientationConfig(
            map_position_angle=None if _is_auto(map_pa) else float(map_pa),
            scan_position_angle=None if _is_auto(scan_pa) else float(scan_pa),
            tolerance=float(orient.get("tolerance", 0.01)),
        )

        icfg = _section(params, "interference")
        edge_clip = icfg.get("edge_clip", DEFAULT_EDGE_CLIP)
        if isinstance(edge_clip, (int, float)):
            edge_clip = [edge_clip]
        min_peak = icfg.get("ringing_min_peak")
        interference = InterferenceConfig(
            enabled=bool(icfg.get("enabled", True)),
            edge_clip=tuple(float(level) for level in edge_clip),
            thresh_clip=float(icfg.get("thresh_clip", 4.0)),
            dilate=int(icfg.get("dilate", 1)),
            edge_trim=float(icfg.get("edge_trim", 0.05)),
            background_width=int(icfg.get("background_width", 25)),
            min_spectra=int(icfg.get("min_spectra", 50)),
            ringing=bool(icfg.get("ringing", False)),
            ringing_all_receptors=bool(icfg.get("ringing_all_receptors", False)),
            ringing_receptors=tuple(str(name) for name in icfg.get("ringing_receptors", ("H07",))),
            ringing_min_spectra=int(icfg.get("ringing_min_spectra", 400)),
            ringing_smooth=int(icfg.get("ringing_smooth", 15)),
            ringing_step=int(icfg.get("ringing_step", 2)),
            ringing_min_peak=None if min_peak is None else float(min_peak),
            ringing_peak_sigma=float(icfg.get("ringing_peak_sigma", 5.0)),
        )

        pcfg = _section(params, "parallel")
        workers = pcfg.get("workers")
        parallel = ParallelConfig(
            enabled=bool(pcfg.get("enabled", False)),
            workers=int(workers) if workers is not None else default_parallel_workers(),
        )

        return ReductionConfig(
            mask=mask,
            smoothing_widths=widths,
            interpolate=interpolate,
            refine=refine,
            orientation=orientation,
            interference=interference,
            bad_receptors=frozenset(str(name).upper() for name in params.get("bad_receptors", []) or []),
            parallel=parallel,
            keep_intermediates=bool(params.get("keep_intermediates", False)),
        )

    def with_overrides(self, overrides: Iterable[str]) -> "Recipe":
        """Return a copy with ``section.key=value`` overrides applied.

        Values are parsed as YAML scalars so ``true``, ``12`` and
        ``[5, 25]`` keep their types.
        """

        params = copy.deepcopy(self.params)
        errs: List[str] = []
        for item in overrides:
            key, sep, raw = str(item).partition("=")
            key = key.strip()
            if not sep or not key:
                errs.append(f"Override '{item}' is not of the form key=value")
                continue
            text = raw.strip()
            if ":" in text and not text.startswith(("[", "{", "'", '"')):
                # YAML 1.1 would read "28:42" as a base-60 integer
                value = text
            else:
                try:
                    value = yaml.safe_load(text) if text else None
                except yaml.YAMLError:
                    value = text
            target = params
            parts = key.split(".")
            for part in parts[:-1]:
                node = target.get(part)
                if not isinstance(node, dict):
                    node = {}
                    target[part] = node
                target = node
            target[parts[-1]] = value
            logger.debug("Recipe override %s=%r", key, value)
        if errs:
            raise ConfigurationError(errs)
        return Recipe(module=self.module, params=params, version=self.version)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Recipe":
        if "params" in payload and isinstance(payload.get("params"), Mapping):
            return cls(
                module=str(payload.get("module", "ppv-baseline")),
                params=copy.deepcopy(dict(payload["params"])),
                version=str(payload.get("version", "0.1.0")),
            )
        return cls(params=copy.deepcopy(dict(payload)))

    def to_mapping(self) -> Dict[str, Any]:
        return {"module": self.module, "version": self.version, "params": copy.deepcopy(self.params)}


def load_recipe(path: str | os.PathLike[str]) -> Recipe:
    preset_path = Path(path)
    try:
        with preset_path.open("r", encoding="utf-8") as handle:
            content = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError([f"Could not read recipe {preset_path}: {exc}"]) from exc
    if not isinstance(content, Mapping):
        raise ConfigurationError([f"Recipe {preset_path} must contain a mapping"])
    logger.info("Loaded recipe %s", preset_path)
    return Recipe.from_mapping(content)
