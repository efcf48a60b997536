import pytest

from ppv_baseline.engine.errors import ConfigurationError, ReductionCancelled
from ppv_baseline.engine.recipe_model import Recipe
from ppv_baseline.engine.run_controller import BatchRunner, run_batch
from ppv_baseline.tests.reduction_test_utils import rippled_cube

RECIPE = {
    "module": "ppv-baseline",
    "params": {
        "mask": {"velocity_ranges": [[28, 42]]},
        "smoothing": {"widths": [5]},
        "orientation": {"map_position_angle": 0, "scan_position_angle": 0},
    },
}


def _tiles(count=3):
    return {f"t{i}": rippled_cube(name=f"t{i}") for i in range(count)}


def test_runner_reports_progress_and_messages():
    progress = []
    messages = []
    runner = BatchRunner(_tiles(2), RECIPE, on_progress=progress.append, on_message=messages.append)

    result = runner.run()

    assert set(result.tiles) == {"t0", "t1"}
    assert progress[0] == 10
    assert progress[-1] == 100
    assert progress == sorted(progress)
    assert "tiles: 2/2" in messages
    assert result.audit[-1] == "Batch complete"
    assert runner.result is result


def test_runner_accepts_recipe_objects():
    result = run_batch(_tiles(1), Recipe.from_mapping(RECIPE))

    assert list(result.tiles) == ["t0"]


def test_invalid_recipe_raises_before_running():
    bad = {"params": {"mask": {"strategy": "velocity-ranges"}}}

    with pytest.raises(ConfigurationError):
        BatchRunner(_tiles(1), bad).run()
    with pytest.raises(TypeError):
        BatchRunner(_tiles(1), 42).run()


def test_cancel_before_run_raises():
    runner = BatchRunner(_tiles(), RECIPE)

    assert runner.cancel()
    assert runner.cancelled
    assert not runner.cancel()
    with pytest.raises(ReductionCancelled):
        runner.run()


def test_cancel_between_tiles():
    messages = []
    runners = []

    def _on_message(message):
        messages.append(message)
        if message == "tiles: 1/3":
            runners[0].cancel()

    runner = BatchRunner(_tiles(), RECIPE, on_message=_on_message)
    runners.append(runner)

    with pytest.raises(ReductionCancelled):
        runner.run()

    assert "tiles: 1/3" in messages
    assert "tiles: 2/3" not in messages
    assert runner.result is None


def test_background_run_records_cancellation():
    runner = BatchRunner(_tiles(1), RECIPE)
    runner.cancel()

    runner.start()
    result = runner.wait(timeout=30)

    assert result is None
    assert isinstance(runner.error, ReductionCancelled)
