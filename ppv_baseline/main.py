"""Command-line entry point: ``ppv-baseline reduce`` and ``ppv-baseline flag``."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import List, Optional

from ppv_baseline.engine.errors import ConfigurationError, ReductionCancelled
from ppv_baseline.engine.logging_setup import configure_logging
from ppv_baseline.engine.recipe_model import Recipe, load_recipe
from ppv_baseline.engine.run_controller import BatchRunner
from ppv_baseline.io.fits_cube import read_cube, read_moment_map, write_cube
from ppv_baseline.io.timeseries import load_series, save_reject_masks, save_series

logger = logging.getLogger("ppv_baseline.main")

PRESET_DIR = Path(__file__).resolve().parent / "config" / "presets"


def _load_recipe(args: argparse.Namespace) -> Recipe:
    source = args.recipe
    if source is None:
        recipe = load_recipe(PRESET_DIR / "default.yaml")
    else:
        path = Path(source)
        if not path.exists():
            path = PRESET_DIR / f"{source}.yaml"
        recipe = load_recipe(path)
    if args.overrides:
        recipe = recipe.with_overrides(args.overrides)
    return recipe


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--recipe", help="Preset name or YAML recipe path (default: bundled 'default')")
    p.add_argument("--set", dest="overrides", action="append", default=[], metavar="KEY=VALUE",
                   help="Override a recipe parameter, e.g. --set mask.strategy=volumetric")
    p.add_argument("--output-dir", default=".", help="Directory for reduced products")
    p.add_argument("--overwrite", action="store_true", help="Replace existing output files")
    p.add_argument("--qc-json", help="Write QC rows and the audit trail to this JSON file")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ppv-baseline", description="Standing-wave and baseline correction for PPV cubes")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR (default INFO)")
    p.add_argument("--log-json", default=None, help="Also write JSON-lines logs to this file")
    p.add_argument("--no-color", action="store_true", help="Disable coloured console output")
    sub = p.add_subparsers(dest="command", required=True)

    reduce_p = sub.add_parser("reduce", help="Remove the standing wave from one or more cube tiles")
    reduce_p.add_argument("cubes", nargs="+", help="FITS cube tiles")
    reduce_p.add_argument("--moment-map", action="append", default=[],
                          help="FITS moment map, one per cube in the same order")
    reduce_p.add_argument("--series", help="NPZ receptor time series to flag before reduction")
    _add_common(reduce_p)

    flag_p = sub.add_parser("flag", help="Flag interference-corrupted spectra in receptor time series")
    flag_p.add_argument("series", help="NPZ receptor time series")
    _add_common(flag_p)

    sub.add_parser("presets", help="List the bundled recipe presets")
    return p


def _write_qc(path: Optional[str], result) -> None:
    if not path:
        return
    payload = {"qc": result.qc_table, "audit": result.audit, "errors": result.errors}
    Path(path).write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")


def _cmd_reduce(args: argparse.Namespace) -> int:
    recipe = _load_recipe(args)
    if args.moment_map and len(args.moment_map) != len(args.cubes):
        raise ConfigurationError(["Give one --moment-map per cube or none at all"])
    tiles = {}
    moment_maps = {}
    for index, path in enumerate(args.cubes):
        cube = read_cube(path)
        name = cube.name if cube.name not in tiles else f"{cube.name}_{index}"
        cube.name = name
        tiles[name] = cube
        if args.moment_map:
            moment_maps[name] = read_moment_map(args.moment_map[index])
    series = load_series(args.series) if args.series else []

    runner = BatchRunner(tiles, recipe, series=series, moment_maps=moment_maps)
    result = runner.run()

    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    for name, tile in result.tiles.items():
        write_cube(tile.corrected, out_dir / f"{name}_swcorr.fits", overwrite=args.overwrite,
                   history=f"ppv-baseline: standing wave removed in {tile.passes} pass(es)")
    if result.flagged_series:
        save_series(list(result.flagged_series.values()), out_dir / "flagged_series.npz")
        save_reject_masks(result.reject_masks, out_dir / "reject_masks.npz")
    _write_qc(args.qc_json, result)
    for key, error in result.errors.items():
        logger.error("%s: %s", key, error)
    return 1 if result.errors else 0


def _cmd_flag(args: argparse.Namespace) -> int:
    recipe = _load_recipe(args)
    series = load_series(args.series)
    result = BatchRunner({}, recipe, series=series).run()
    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    save_series(list(result.flagged_series.values()), out_dir / "flagged_series.npz")
    save_reject_masks(result.reject_masks, out_dir / "reject_masks.npz")
    _write_qc(args.qc_json, result)
    for receptor, mask in result.reject_masks.items():
        print(f"{receptor}: {mask.n_rejected} rejected" + (f" ({mask.skipped})" if mask.skipped else ""))
    return 1 if result.errors else 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, json_file=args.log_json, use_color=not args.no_color)
    try:
        if args.command == "presets":
            for preset in sorted(PRESET_DIR.glob("*.yaml")):
                print(preset.stem)
            return 0
        if args.command == "reduce":
            return _cmd_reduce(args)
        return _cmd_flag(args)
    except ConfigurationError as exc:
        for err in exc.errors:
            logger.error("Recipe error: %s", err)
        return 2
    except ReductionCancelled:
        logger.warning("Cancelled")
        return 130


if __name__ == "__main__":
    sys.exit(main())
