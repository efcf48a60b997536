import numpy as np
import pytest

from ppv_baseline.engine.cube_api import ReceptorSeries
from ppv_baseline.engine.errors import InsufficientDataError
from ppv_baseline.engine.interference import flag_receptor
from ppv_baseline.engine.recipe_model import InterferenceConfig
from ppv_baseline.engine.ringing import detect_ringing, ringing_threshold


def _ringing_spectra(n_spectra=600, nchan=128, start=200, stop=300, seed=17):
    rng = np.random.default_rng(seed)
    spectra = rng.normal(0.0, 1.0, size=(n_spectra, nchan))
    spectra[start:stop] += np.cos(2.0 * np.pi * np.arange(nchan) / 6.0)
    return spectra


def test_ringing_episode_is_flagged():
    config = InterferenceConfig(ringing=True)

    result = detect_ringing(_ringing_spectra(), config)

    assert result.mask[210:290].all()
    assert not result.mask[:150].any()
    assert not result.mask[350:].any()
    assert result.stats["ringing_episodes"] == 1
    assert len(result.episodes) == 1


def test_ringing_needs_enough_spectra():
    config = InterferenceConfig(ringing=True, ringing_min_spectra=400)

    with pytest.raises(InsufficientDataError) as excinfo:
        detect_ringing(_ringing_spectra(n_spectra=300, start=100, stop=150), config)

    assert excinfo.value.required == 400
    assert excinfo.value.available == 300


def test_peak_threshold_never_drops_below_noise_floor():
    assert ringing_threshold(1.0, 0.5, InterferenceConfig()) == pytest.approx(3.5)
    assert ringing_threshold(1.0, 0.5, InterferenceConfig(ringing_min_peak=10.0)) == pytest.approx(10.0)
    assert ringing_threshold(1.0, 0.5, InterferenceConfig(ringing_min_peak=2.0)) == pytest.approx(3.5)


def test_ringing_applies_to_configured_receptors():
    config = InterferenceConfig(ringing=True, ringing_receptors=("H07",))

    assert config.ringing_applies_to("h07")
    assert not config.ringing_applies_to("H01")
    assert InterferenceConfig(ringing=True, ringing_all_receptors=True).ringing_applies_to("H01")
    assert not InterferenceConfig(ringing=False).ringing_applies_to("H07")


def test_flagging_merges_ringing_mask_for_ringing_receptor():
    spectra = _ringing_spectra()
    series = ReceptorSeries(receptor="H07", subscans=[spectra[:300], spectra[300:]])
    config = InterferenceConfig(ringing=True, thresh_clip=6.0)

    result = flag_receptor(series, config)

    assert result.ringing is not None
    assert result.mask[210:290].all()
    assert result.stats["ringing_episodes"] == 1


def test_ringing_skipped_quietly_for_short_series():
    spectra = _ringing_spectra(n_spectra=200, start=80, stop=120)
    series = ReceptorSeries(receptor="H07", subscans=[spectra])

    result = flag_receptor(series, InterferenceConfig(ringing=True))

    assert result.ringing is None
    assert result.skipped is None
