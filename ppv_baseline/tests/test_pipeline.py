import numpy as np
import pytest

from ppv_baseline.engine import pipeline
from ppv_baseline.engine.cube_api import GapBounds
from ppv_baseline.engine.errors import KernelError
from ppv_baseline.engine.pipeline import flag_receptors, reduce_tiles, run_observation
from ppv_baseline.engine.refinement import RefinementController
from ppv_baseline.tests.reduction_test_utils import config_for, noisy_series, rippled_cube


def _tiles(*names):
    return {name: rippled_cube(name=name) for name in names}


def _config(**params):
    base = {"mask": {"velocity_ranges": [[28, 42]]}, "smoothing": {"widths": [5]}}
    base.update(params)
    return config_for(**base)


class _FailingController(RefinementController):
    def run(self, tile, moment_map=None, gap_bounds=None):
        if tile.name == "bad":
            raise KernelError("fill_bad", "array contains no good values")
        return super().run(tile, moment_map, gap_bounds)


def test_every_tile_is_corrected():
    result = run_observation(_tiles("a", "b"), _config())

    assert set(result.tiles) == {"a", "b"}
    assert result.errors == {}
    for tile in result.tiles.values():
        assert np.all(np.abs(tile.corrected.data[..., :10]) < 0.2)
    assert [row["name"] for row in result.qc_table] == ["a", "b"]
    assert all(row["status"] == "ok" for row in result.qc_table)
    assert all(row["ripple_rms_after"] < row["ripple_rms_before"] for row in result.qc_table)
    assert result.gap_cache["a"] == GapBounds(28, 42)


def test_failing_tile_is_recorded_and_others_continue(monkeypatch):
    monkeypatch.setattr(pipeline, "RefinementController", _FailingController)

    result = run_observation(_tiles("a", "bad", "c"), _config())

    assert set(result.tiles) == {"a", "c"}
    assert "tile:bad" in result.errors
    assert "KernelError" in result.errors["tile:bad"]
    statuses = {row["name"]: row["status"] for row in result.qc_table}
    assert statuses == {"a": "ok", "bad": "failed", "c": "ok"}
    assert any("Tile bad failed" in line for line in result.audit)


def test_degenerate_mask_switches_strategy_for_whole_run():
    config = _config(mask={"strategy": "spatial-image", "emission_threshold": -1e9,
                           "velocity_ranges": [[28, 42]]})

    results, used = reduce_tiles(_tiles("a", "b"), config)

    assert used.mask.strategy == "velocity-ranges"
    assert config.mask.strategy == "spatial-image"
    assert all(task.error is None for task in results.values())
    assert results["a"].result.qc["mask_strategy"] == "velocity-ranges"


def test_cached_gap_bounds_are_used():
    cache = {"a": GapBounds(20, 50)}

    results, _ = reduce_tiles(_tiles("a", "b"), _config(), gap_cache=cache)

    assert results["a"].result.gap_bounds == GapBounds(20, 50)
    assert results["a"].result.qc["interp_size"] == 7
    assert results["b"].result.gap_bounds == GapBounds(28, 42)


def test_receptors_are_flagged_before_tiles():
    config = _config(bad_receptors=["H02"])
    series = [noisy_series("H01"), noisy_series("H02", seed=2)]

    result = run_observation(_tiles("a"), config, series=series)

    assert set(result.reject_masks) == {"H01", "H02"}
    assert result.reject_masks["H02"].mask.all()
    assert np.all(np.isnan(result.flagged_series["H02"].subscans[0]))
    kinds = [row["kind"] for row in result.qc_table]
    assert kinds == ["receptor", "receptor", "tile"]


def test_interference_can_be_disabled():
    config = _config(interference={"enabled": False})

    result = run_observation({}, config, series=[noisy_series()])

    assert result.reject_masks == {}
    assert "Interference flagging disabled" in result.audit


def test_flag_receptors_reports_progress():
    seen = []

    flag_receptors([noisy_series("H01"), noisy_series("H03")], _config(),
                   progress=lambda stage, done, total: seen.append((stage, done, total)))

    assert seen == [("receptors", 1, 2), ("receptors", 2, 2)]


def test_cancel_check_stops_between_tiles():
    calls = []

    class _Stop(Exception):
        pass

    def _check():
        calls.append(len(calls))
        if len(calls) > 1:
            raise _Stop()

    with pytest.raises(_Stop):
        reduce_tiles(_tiles("a", "b", "c"), _config(), cancel_check=_check)

    assert len(calls) == 2
