import json
import logging

import numpy as np
import pytest

from ppv_baseline.engine.logging_setup import ROOT_LOGGER
from ppv_baseline.io.fits_cube import read_cube, write_cube
from ppv_baseline.io.timeseries import load_reject_masks, save_series
from ppv_baseline.main import build_parser, main
from ppv_baseline.tests.reduction_test_utils import noisy_series, rippled_cube


@pytest.fixture(autouse=True)
def _restore_package_logger():
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def test_presets_are_listed(capsys):
    assert main(["presets"]) == 0

    listed = capsys.readouterr().out.split()
    assert "default" in listed
    assert "harp_ringing" in listed


def test_reduce_writes_corrected_cube_and_qc(tmp_path):
    cube_path = write_cube(rippled_cube(name="tile"), tmp_path / "tile.fits")
    out_dir = tmp_path / "out"
    qc_path = tmp_path / "qc.json"

    code = main([
        "--no-color", "reduce", str(cube_path),
        "--set", "mask.velocity_ranges=28:42",
        "--set", "smoothing.widths=[5]",
        "--output-dir", str(out_dir),
        "--qc-json", str(qc_path),
    ])

    assert code == 0
    corrected = read_cube(out_dir / "tile_swcorr.fits")
    assert np.all(np.abs(corrected.data[..., :10]) < 0.2)
    payload = json.loads(qc_path.read_text(encoding="utf-8"))
    assert payload["errors"] == {}
    assert payload["qc"][0]["name"] == "tile"
    assert payload["qc"][0]["passes"] == 1


def test_reduce_with_invalid_recipe_returns_config_error(tmp_path):
    cube_path = write_cube(rippled_cube(), tmp_path / "tile.fits")

    code = main(["reduce", str(cube_path), "--set", "mask.strategy=velocity-ranges",
                 "--output-dir", str(tmp_path)])

    assert code == 2
    assert not (tmp_path / "tile_swcorr.fits").exists()


def test_moment_maps_must_match_cubes(tmp_path):
    cube_path = write_cube(rippled_cube(), tmp_path / "tile.fits")

    code = main(["reduce", str(cube_path), "--moment-map", "a.fits", "--moment-map", "b.fits"])

    assert code == 2


def test_flag_writes_masks(tmp_path, capsys):
    series_path = save_series([noisy_series("H01"), noisy_series("H02", seed=4)], tmp_path / "series.npz")
    out_dir = tmp_path / "flagged"

    code = main(["flag", str(series_path), "--set", "bad_receptors=[H02]", "--output-dir", str(out_dir)])

    assert code == 0
    masks = load_reject_masks(out_dir / "reject_masks.npz")
    assert set(masks) == {"H01", "H02"}
    assert masks["H02"].all()
    assert "H02: 200 rejected (bad receptor)" in capsys.readouterr().out


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
