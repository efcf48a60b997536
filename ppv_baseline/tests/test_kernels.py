import numpy as np
import pytest

from ppv_baseline.engine.errors import BackgroundFitError, InsufficientDataError, KernelError
from ppv_baseline.engine.kernels import ScipyKernel, get_kernel


def test_get_kernel_returns_shared_scipy_backend():
    kernel = get_kernel()

    assert isinstance(kernel, ScipyKernel)
    assert get_kernel("SciPy") is kernel
    with pytest.raises(KernelError):
        get_kernel("cuda")


def test_laplacian_of_quadratic_is_constant():
    kernel = get_kernel()
    x = np.arange(20, dtype=float)
    data = np.vstack([x ** 2, 3.0 * x ** 2])

    lap = kernel.laplacian(data, axis=1)
    wide = kernel.laplacian(data, axis=1, step=2)

    assert np.allclose(lap[:, 1:-1], [[2.0], [6.0]])
    assert np.all(np.isnan(lap[:, [0, -1]]))
    assert np.allclose(wide[0, 2:-2], 8.0)
    assert np.all(np.isnan(wide[:, :2]))


def test_box_smooth_ignores_nan_and_keeps_constants():
    kernel = get_kernel()
    data = np.full(30, 4.0)
    data[10:13] = np.nan

    smoothed = kernel.box_smooth(data, 6)

    assert np.allclose(smoothed, 4.0)


def test_box_smooth_strict_rejects_empty_windows():
    kernel = get_kernel()
    data = np.ones(40)
    data[10:30] = np.nan

    loose = kernel.box_smooth(data, 5)

    assert np.isnan(loose[20])
    with pytest.raises(BackgroundFitError):
        kernel.box_smooth(data, 5, strict=True)


def test_median_smooth_requires_good_samples():
    kernel = get_kernel()
    data = np.arange(50, dtype=float)

    assert np.allclose(kernel.median_smooth(data, 5)[2:-2], data[2:-2])

    data[20:30] = np.nan
    with pytest.raises(BackgroundFitError):
        kernel.median_smooth(data, 5, min_good=2)


def test_collapse_sum_of_empty_column_is_nan():
    kernel = get_kernel()
    data = np.array([[1.0, np.nan], [2.0, np.nan]])

    total = kernel.collapse(data, axis=0, estimator="sum")

    assert total[0] == pytest.approx(3.0)
    assert np.isnan(total[1])
    with pytest.raises(KernelError):
        kernel.collapse(data, axis=0, estimator="mode")


def test_fill_bad_keeps_good_values_and_fills_every_gap():
    kernel = get_kernel()
    data = np.full((4, 60), 3.0)
    data[1, 20:40] = np.nan
    data[2, :] = np.nan
    data[3, 55:] = np.nan

    filled = kernel.fill_bad(data, size=5, niter=10)

    assert np.all(np.isfinite(filled))
    assert np.allclose(filled, 3.0)
    assert np.array_equal(filled[0], data[0])


def test_fill_bad_interpolates_empty_rows_between_neighbours():
    kernel = get_kernel()
    data = np.vstack([np.ones(10), np.full(10, np.nan), np.full(10, 3.0)])

    filled = kernel.fill_bad(data, size=3)

    assert np.allclose(filled[1], 2.0)
    with pytest.raises(KernelError):
        kernel.fill_bad(np.full((2, 3), np.nan), size=3)


def test_rotate_by_zero_is_identity():
    kernel = get_kernel()
    data = np.random.default_rng(3).normal(size=(7, 5, 2))

    rotated = kernel.rotate(data, 0.0, output_shape=(7, 5))

    assert np.allclose(rotated, data)


def test_rotate_keeps_constant_values_inside_footprint():
    kernel = get_kernel()
    data = np.full((9, 7), 2.0)

    rotated = kernel.rotate(data, 30.0)

    assert rotated.shape == kernel.rotated_extent(data.shape, 30.0)
    centre = tuple(n // 2 for n in rotated.shape)
    assert np.isfinite(rotated[centre])
    finite = rotated[np.isfinite(rotated)]
    assert np.allclose(finite, 2.0)
    assert kernel.rotated_extent((3, 4), 90.0) == (4, 3)


def test_clipped_stats_reject_outliers():
    kernel = get_kernel()
    rng = np.random.default_rng(5)
    data = np.concatenate([rng.normal(0.0, 1.0, 2000), np.full(20, 100.0), [np.nan]])

    stats = kernel.clipped_stats(data, clip=(3.0, 3.0))

    assert stats.n_total == 2020
    assert stats.n_used <= 2000
    assert stats.median == pytest.approx(0.0, abs=0.1)
    assert stats.std == pytest.approx(1.0, abs=0.1)
    with pytest.raises(InsufficientDataError):
        kernel.clipped_stats(np.full(5, np.nan))


def test_find_clumps_applies_peak_and_size_limits():
    kernel = get_kernel()
    data = np.zeros(100)
    data[10:15] = [1.0, 2.0, 5.0, 2.0, 1.0]
    data[50:55] = [1.0, 1.5, 2.0, 1.5, 1.0]
    data[80] = 10.0

    catalog = kernel.find_clumps(data, threshold=0.5, min_peak=3.0, min_pixels=2)

    assert len(catalog) == 1
    clump = catalog.clumps[0]
    assert clump.peak == pytest.approx(5.0)
    assert clump.peak_index == (12,)
    assert clump.npix == 5
    assert np.array_equal(np.flatnonzero(catalog.mask), np.arange(10, 15))


def test_dilate_along_one_axis():
    kernel = get_kernel()
    mask = np.zeros((3, 9), dtype=bool)
    mask[1, 4] = True

    grown = kernel.dilate(mask, 2, axis=1)

    assert np.array_equal(np.flatnonzero(grown[1]), np.arange(2, 7))
    assert not grown[0].any() and not grown[2].any()
    assert np.array_equal(kernel.dilate(mask, 0, axis=1), mask)
