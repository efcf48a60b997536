import numpy as np

from ppv_baseline.engine import refinement
from ppv_baseline.engine.cube_api import Cube
from ppv_baseline.engine.errors import DegenerateMaskError
from ppv_baseline.engine.masking import MaskResult
from ppv_baseline.engine.refinement import RefinementController, RefinementState
from ppv_baseline.tests.reduction_test_utils import config_for, gaussian_line, rippled_cube


def _clumpy_cube() -> Cube:
    rng = np.random.default_rng(21)
    data = rng.normal(0.0, 0.05, size=(4, 4, 64))
    data[1, 1, :] += gaussian_line(64, 32.0, 2.0, 5.0)
    return Cube(data=data, name="clumpy")


def _volumetric_config(**extra):
    params = {"mask": {"strategy": "volumetric"}, "smoothing": {"widths": [5, 25]},
              "refine": {"enabled": True}}
    params.update(extra)
    return config_for(**params)


def test_single_pass_without_refinement():
    cube = rippled_cube()
    config = config_for(mask={"velocity_ranges": [[28, 42]]}, smoothing={"widths": [5]})
    controller = RefinementController(config)

    result = controller.run(cube)

    assert result.passes == 1
    assert controller.state is RefinementState.DONE
    assert result.qc["state_path"] == ["initial", "done"]
    assert result.baseline is None
    assert result.snapshots == {}
    assert np.all(np.abs(result.corrected.data[..., :10]) < 0.2)


def test_refinement_runs_second_volumetric_pass():
    controller = RefinementController(_volumetric_config())

    result = controller.run(_clumpy_cube())

    assert result.passes == 2
    assert controller.history == [RefinementState.INITIAL, RefinementState.REFINED, RefinementState.DONE]
    assert result.qc["state_path"] == ["initial", "refined", "done"]
    assert len(result.qc["pass_stats"]) == 2
    assert np.all(np.isfinite(result.corrected.data))


def test_refinement_skipped_without_a_usable_first_mask():
    config = config_for(refine={"enabled": True}, smoothing={"widths": [5]})
    controller = RefinementController(config)

    result = controller.run(rippled_cube())

    assert config.mask.strategy == "none"
    assert result.passes == 1
    assert result.qc["state_path"] == ["initial", "done"]


def test_refinement_follows_a_velocity_fallback_mask(monkeypatch):
    def _line_mask(cube, cfg, kernel=None):
        mask = np.zeros(cube.shape)
        mask[1, 1, 28:43] = np.nan
        return mask, 1

    monkeypatch.setattr(refinement, "build_volumetric_mask", _line_mask)
    config = config_for(mask={"strategy": "spatial-image", "emission_threshold": -1e9,
                              "velocity_ranges": [[28, 42]]},
                        smoothing={"widths": [5]}, refine={"enabled": True})
    controller = RefinementController(config)

    result = controller.run(rippled_cube())

    assert result.qc["degenerate_mask"]
    assert result.qc["mask_fallback"] == "velocity-ranges"
    assert result.passes == 2
    assert result.qc["state_path"] == ["initial", "refined", "done"]
    assert result.qc["mask_strategy"] == "volumetric"


def test_degenerate_second_mask_keeps_first_pass(monkeypatch):
    def _degenerate(*args, **kwargs):
        raise DegenerateMaskError("every voxel is emission")

    monkeypatch.setattr(refinement, "build_volumetric_mask", _degenerate)
    controller = RefinementController(_volumetric_config())

    result = controller.run(_clumpy_cube())

    assert result.passes == 1
    assert result.qc["state_path"] == ["initial", "done"]


def test_rebuild_hook_supplies_refinement_source():
    seen = []

    def _rebuild(cube):
        seen.append(cube.name)
        return cube

    config = _volumetric_config(refine={"enabled": True, "source": "corrected"})
    controller = RefinementController(config, rebuild=_rebuild)

    result = controller.run(_clumpy_cube())

    assert seen == ["clumpy_swcorr"]
    assert result.passes == 2


def test_intermediates_are_kept_on_request():
    config = config_for(mask={"velocity_ranges": [[28, 42]]}, smoothing={"widths": [5]},
                        keep_intermediates=True)

    result = RefinementController(config).run(rippled_cube())

    assert "tile/pass1/profile" in result.snapshots
    assert "tile/pass1/mask" in result.snapshots
    assert result.baseline is not None
    assert result.baseline.shape == (3, 3, 64)


def test_controller_can_be_reused():
    controller = RefinementController(_volumetric_config())
    controller.run(_clumpy_cube())

    result = controller.run(_clumpy_cube())

    assert result.qc["state_path"] == ["initial", "refined", "done"]


def test_gap_bounds_are_reused_in_second_pass():
    controller = RefinementController(_volumetric_config())

    result = controller.run(_clumpy_cube())
    first, second = result.qc["pass_stats"]

    if first["gap_lower"] >= 0:
        assert (second["gap_lower"], second["gap_upper"]) == (first["gap_lower"], first["gap_upper"])
    assert result.gap_bounds.lower == second["gap_lower"]


def test_should_refine_needs_usable_mask_or_volumetric_strategy():
    usable = MaskResult(mask=np.zeros((2, 2, 1)), strategy="spatial-image")
    degenerate = MaskResult(mask=None, strategy="spatial-image", degenerate=True)

    assert RefinementController(_volumetric_config()).should_refine(degenerate)
    spatial = config_for(mask={"strategy": "spatial-image"}, refine={"enabled": True})
    assert RefinementController(spatial).should_refine(usable)
    assert not RefinementController(spatial).should_refine(degenerate)
    disabled = config_for(mask={"strategy": "spatial-image"})
    assert not RefinementController(disabled).should_refine(usable)
