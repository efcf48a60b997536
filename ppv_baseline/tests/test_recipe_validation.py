from dataclasses import FrozenInstanceError

import pytest

from ppv_baseline.engine.errors import ConfigurationError
from ppv_baseline.engine.recipe_model import Recipe, load_recipe, parse_velocity_ranges


def test_unknown_mask_strategy_is_reported():
    recipe = Recipe(params={"mask": {"strategy": "wavelets"}})

    errors = recipe.validate()

    assert any("Unknown mask strategy" in err for err in errors)


def test_velocity_strategy_requires_ranges():
    recipe = Recipe(params={"mask": {"strategy": "velocity-ranges"}})

    assert "Velocity-range masking requires at least one velocity range" in recipe.validate()

    with pytest.raises(ConfigurationError) as excinfo:
        recipe.resolve()
    assert "Velocity-range masking requires at least one velocity range" in excinfo.value.errors


def test_auto_strategy_follows_presence_of_ranges():
    assert Recipe(params={}).resolve().mask.strategy == "none"

    config = Recipe(params={"mask": {"velocity_ranges": "-10:5, 20:30"}}).resolve()

    assert config.mask.strategy == "velocity-ranges"
    assert config.mask.velocity_ranges.ranges == ((-10.0, 5.0), (20.0, 30.0))


def test_strategy_aliases_are_normalised():
    config = Recipe(params={"mask": {"strategy": "Spatial_Image"}}).resolve()

    assert config.mask.strategy == "spatial-image"


def test_edge_clip_must_be_non_decreasing():
    recipe = Recipe(params={"interference": {"edge_clip": [3.0, 2.0]}})

    assert "Edge clip levels must be non-decreasing" in recipe.validate()


def test_interference_dilation_is_limited():
    recipe = Recipe(params={"interference": {"dilate": 3}})

    assert "Interference dilation must be 0, 1 or 2" in recipe.validate()


def test_refine_source_and_edge_trim_are_checked():
    recipe = Recipe(params={"refine": {"source": "rebuilt"}, "interference": {"edge_trim": 0.5}})

    errors = recipe.validate()

    assert "Refinement source must be one of original, corrected" in errors
    assert "Spectral edge trim must be in [0, 0.5)" in errors


def test_numeric_fields_reject_text():
    recipe = Recipe(params={
        "mask": {"emission_threshold": "high"},
        "orientation": {"map_position_angle": "north"},
        "smoothing": {"widths": []},
    })

    errors = recipe.validate()

    assert "Emission threshold must be numeric" in errors
    assert "Map position angle must be numeric" in errors
    assert "Smoothing widths must be a non-empty list of channel counts" in errors


def test_resolved_config_is_immutable_and_normalised():
    config = Recipe(params={
        "bad_receptors": ["h07", "H14"],
        "interference": {"edge_clip": 3, "ringing_receptors": ["h07"]},
        "smoothing": {"widths": [5, 25]},
    }).resolve()

    assert config.bad_receptors == frozenset({"H07", "H14"})
    assert config.interference.edge_clip == (3.0,)
    assert config.smoothing_widths == (5, 25)
    with pytest.raises(FrozenInstanceError):
        config.keep_intermediates = True  # type: ignore[misc]


def test_overrides_keep_types_and_ranges():
    recipe = Recipe(params={"mask": {"strategy": "none"}}).with_overrides([
        "mask.velocity_ranges=28:42",
        "mask.strategy=velocity-ranges",
        "smoothing.widths=[5, 25]",
        "refine.enabled=true",
        "parallel.workers=2",
    ])

    assert recipe.params["mask"]["velocity_ranges"] == "28:42"
    assert recipe.params["smoothing"]["widths"] == [5, 25]
    assert recipe.params["refine"]["enabled"] is True
    assert recipe.params["parallel"]["workers"] == 2
    config = recipe.resolve()
    assert config.mask.velocity_ranges.ranges == ((28.0, 42.0),)


def test_malformed_override_raises():
    with pytest.raises(ConfigurationError):
        Recipe().with_overrides(["smoothing.widths"])


def test_parse_velocity_ranges_orders_and_rejects():
    extents = parse_velocity_ranges([[40, 30], "5:10"])

    assert extents.ranges == ((5.0, 10.0), (30.0, 40.0))
    with pytest.raises(ConfigurationError):
        parse_velocity_ranges(["1:2:3"])
    with pytest.raises(ConfigurationError):
        parse_velocity_ranges("a:b")


def test_load_recipe_wraps_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_recipe(tmp_path / "missing.yaml")


def test_recipe_mapping_round_trip(tmp_path):
    recipe = Recipe(params={"mask": {"strategy": "volumetric"}})
    path = tmp_path / "recipe.yaml"
    path.write_text(
        "module: ppv-baseline\nversion: 0.1.0\nparams:\n  mask:\n    strategy: volumetric\n",
        encoding="utf-8",
    )

    loaded = load_recipe(path)

    assert loaded.to_mapping() == recipe.to_mapping()
