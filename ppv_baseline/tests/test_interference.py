import numpy as np
import pytest

from ppv_baseline.engine.cube_api import ReceptorSeries, RejectMask
from ppv_baseline.engine import interference
from ppv_baseline.engine.errors import StepCorrectionRejected
from ppv_baseline.engine.interference import (
    apply_reject_mask,
    correct_steps,
    edginess_map,
    flag_receptor,
    receptor_profile,
    reject_outliers,
    subtract_background,
    trim_edges,
)
from ppv_baseline.engine.recipe_model import InterferenceConfig
from ppv_baseline.tests.reduction_test_utils import noisy_series


def _spiky_series() -> ReceptorSeries:
    series = noisy_series()
    spectra = series.concatenated()
    spectra[100] += 5.0 * np.where(np.arange(spectra.shape[1]) % 2 == 0, 1.0, -1.0)
    return ReceptorSeries(receptor=series.receptor, subscans=[spectra[:100], spectra[100:]])


def test_trim_edges_drops_band_edges():
    spectra = np.arange(40, dtype=float).reshape(2, 20)

    trimmed = trim_edges(spectra, 0.1)

    assert trimmed.shape == (2, 16)
    assert trimmed[0, 0] == 2.0
    assert trim_edges(spectra, 0.0).shape == (2, 20)


def test_edginess_is_median_normalised():
    spectra = np.random.default_rng(8).normal(size=(50, 64))

    edges = edginess_map(spectra)

    assert np.nanmedian(edges) == pytest.approx(1.0)
    assert np.all(np.isnan(edges[:, [0, -1]]))


def test_oscillating_spectrum_is_rejected_alone():
    config = InterferenceConfig(thresh_clip=6.0, dilate=0)

    result = flag_receptor(_spiky_series(), config)

    assert result.mask.shape == (200,)
    assert np.flatnonzero(result.mask).tolist() == [100]
    assert result.skipped is None
    assert result.stats["n_valid"] == 200


def test_dilation_widens_the_rejection():
    config = InterferenceConfig(thresh_clip=6.0, dilate=1)

    result = flag_receptor(_spiky_series(), config)

    assert np.flatnonzero(result.mask).tolist() == [99, 100, 101]


def test_too_few_spectra_skips_flagging():
    series = noisy_series(n_spectra=40, split=20)

    result = flag_receptor(series, InterferenceConfig(min_spectra=50))

    assert result.skipped == "insufficient data"
    assert not result.mask.any()
    assert result.mask.shape == (40,)


def test_bad_receptor_is_blanked():
    result = flag_receptor(noisy_series(), InterferenceConfig(), bad=True)

    assert result.mask.all()
    assert result.n_rejected == 200
    assert result.skipped == "bad receptor"


def test_reject_mask_is_split_across_subscans():
    series = noisy_series()
    mask = np.zeros(200, dtype=bool)
    mask[[99, 100, 101]] = True

    flagged = apply_reject_mask(series, RejectMask(receptor="H01", mask=mask))

    assert np.all(np.isnan(flagged.subscans[0][99]))
    assert np.all(np.isnan(flagged.subscans[1][:2]))
    assert np.array_equal(flagged.subscans[0][:99], series.subscans[0][:99])
    assert np.array_equal(flagged.subscans[1][2:], series.subscans[1][2:])
    assert flagged.meta["n_rejected"] == 3
    assert not np.isnan(series.subscans[0][99]).any()
    with pytest.raises(ValueError):
        apply_reject_mask(series, RejectMask(receptor="H01", mask=np.zeros(5, dtype=bool)))


def test_step_is_removed_from_profile():
    rng = np.random.default_rng(12)
    profile = 1.0 + rng.normal(0.0, 0.1, 300)
    profile[150:] += 5.0

    corrected, nsteps = correct_steps(profile)

    assert nsteps == 1
    assert np.mean(corrected[200:]) == pytest.approx(np.mean(corrected[:100]), abs=0.1)


def test_step_correction_rejects_short_profile():
    with pytest.raises(StepCorrectionRejected):
        correct_steps(np.ones(30))


def test_background_subtraction_reports_failure():
    values = np.full(60, np.nan)
    values[:5] = 1.0

    residual, fitted = subtract_background(values, 11)

    assert not fitted
    assert np.array_equal(residual, values, equal_nan=True)

    residual, fitted = subtract_background(np.linspace(0.0, 1.0, 60), 11)
    assert fitted
    assert np.allclose(residual[10:-10], 0.0, atol=1e-12)


def test_only_positive_outliers_are_rejected():
    residual = np.random.default_rng(13).normal(0.0, 1.0, 500)
    residual[10] = 20.0
    residual[20] = -20.0

    rejected, stats = reject_outliers(residual, (2.0, 2.5, 3.0), 6.0)

    assert rejected[10]
    assert not rejected[20]
    assert stats["sigma"] == pytest.approx(1.0, abs=0.2)


def test_receptor_profile_has_one_value_per_spectrum():
    profile = receptor_profile(_spiky_series())

    assert profile.values.shape == (200,)
    assert int(np.argmax(profile.values)) == 100


def test_flagging_scores_the_trimmed_receptor_profile(monkeypatch):
    seen = []

    def _recording_profile(series, **kwargs):
        seen.append((series.receptor, kwargs.get("edge_trim")))
        return receptor_profile(series, **kwargs)

    monkeypatch.setattr(interference, "receptor_profile", _recording_profile)

    result = flag_receptor(_spiky_series(), InterferenceConfig(edge_trim=0.1))

    assert seen == [("H01", 0.1)]
    assert result.mask[100]
