import numpy as np
import pytest

from forest_alerts.change import CANDIDATE_BAND, classify_change, summarize_alerts
from forest_alerts.config import ThresholdConfig
from forest_alerts.errors import GridMismatchError
from forest_alerts.postprocessing import filter_by_size
from forest_alerts.raster import GeoBox, Raster


def _ndvi(values, valid=None, grid=None):
    values = np.atleast_2d(np.asarray(values, dtype=np.float64))
    grid = grid or GeoBox.from_shape(values.shape)
    if valid is None:
        valid = np.ones(values.shape, bool)
    return Raster({'ndvi': values}, np.atleast_2d(valid), grid)


CONFIG = ThresholdConfig(forest_threshold=0.7, bare_threshold=0.4)


def test_forest_to_bare_is_flagged():
    base = _ndvi([0.85, 0.85, 0.5, 0.7])
    curr = _ndvi([0.10, 0.50, 0.1, 0.1])
    out = classify_change(base, curr, CONFIG)
    np.testing.assert_array_equal(out.band(CANDIDATE_BAND), [[True, False, False, False]])


def test_thresholds_are_strict():
    base = _ndvi([0.7, 0.71])
    curr = _ndvi([0.1, 0.4])
    out = classify_change(base, curr, CONFIG)
    assert not out.band(CANDIDATE_BAND).any()


def test_invalid_pixel_never_flagged():
    grid = GeoBox.from_shape((1, 3))
    base = _ndvi([0.9, 0.9, 0.9], valid=[True, False, True], grid=grid)
    curr = _ndvi([0.1, 0.1, 0.1], valid=[True, True, False], grid=grid)
    out = classify_change(base, curr, CONFIG)
    np.testing.assert_array_equal(out.band(CANDIDATE_BAND), [[True, False, False]])
    np.testing.assert_array_equal(out.valid, [[True, False, False]])


def test_min_drop_narrows_candidates():
    base = _ndvi([0.80, 0.95])
    curr = _ndvi([0.35, 0.35])
    plain = classify_change(base, curr, CONFIG).band(CANDIDATE_BAND)
    strict = classify_change(base, curr, CONFIG.replace(min_drop=0.5)).band(CANDIDATE_BAND)
    np.testing.assert_array_equal(plain, [[True, True]])
    np.testing.assert_array_equal(strict, [[False, True]])


@pytest.mark.parametrize('field,values', [
    ('forest_threshold', [0.5, 0.6, 0.7, 0.8, 0.9]),
    ('bare_threshold', [0.5, 0.4, 0.3, 0.2, 0.1]),
])
def test_stricter_thresholds_never_add_candidates(field, values):
    rng = np.random.default_rng(7)
    base = _ndvi(rng.uniform(-0.2, 1.0, (20, 20)))
    curr = _ndvi(rng.uniform(-0.2, 1.0, (20, 20)))

    previous = None
    for value in values:
        flagged = classify_change(base, curr, CONFIG.replace(**{field: value})).band(CANDIDATE_BAND)
        if previous is not None:
            assert not (flagged & ~previous).any()
        previous = flagged


def test_grids_must_match():
    with pytest.raises(GridMismatchError):
        classify_change(_ndvi([0.9, 0.9]), _ndvi([0.1, 0.1, 0.1]), CONFIG)


def test_summarize_alerts_counts():
    grid = GeoBox.from_shape((10, 10), resolution=10.0)
    candidate = np.zeros((10, 10), bool)
    candidate[0:3, 0:3] = True      # 9 px patch
    candidate[6:8, 6:8] = True      # 4 px patch
    candidate[9, 0] = True          # single pixel
    valid = np.ones((10, 10), bool)
    valid[9, 9] = False
    candidates = Raster({CANDIDATE_BAND: candidate}, valid, grid)

    alerts = filter_by_size(candidates, connectivity=8, min_size=4)
    stats = summarize_alerts(alerts, candidates)

    assert stats['total_pixels'] == 100
    assert stats['valid_pixels'] == 99
    assert stats['candidate_pixels'] == 14
    assert stats['alert_pixels'] == 13
    assert stats['suppressed_pixels'] == 1
    assert stats['n_patches'] == 2
    assert stats['largest_patch_pixels'] == 9
    assert stats['alert_area_ha'] == pytest.approx(13 * 100 / 10000)
    assert stats['alert_pct'] == pytest.approx(100 * 13 / 99)
