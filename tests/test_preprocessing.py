from datetime import date

import numpy as np
import pytest

from forest_alerts.errors import MissingBandError
from forest_alerts.preprocessing import (
    CIRRUS_BIT,
    CLOUD_BIT,
    add_ndvi,
    mask_clouds,
    normalized_difference,
    prepare_scene,
    qa_clear,
)
from forest_alerts.raster import GeoBox, Raster


def test_qa_clear_flags_cloud_and_cirrus_only():
    qa = np.array([0, CLOUD_BIT, CIRRUS_BIT, CLOUD_BIT | CIRRUS_BIT, 1, 1 << 9])
    np.testing.assert_array_equal(qa_clear(qa), [True, False, False, False, True, True])


def test_mask_clouds_scales_and_drops_qa(geobox, make_scene):
    qa = np.zeros(geobox.shape, dtype=np.uint16)
    qa[0, 0] = CLOUD_BIT
    qa[0, 1] = CIRRUS_BIT
    qa[0, 2] = 1 << 3
    masked = mask_clouds(make_scene(0.5, date(2020, 1, 1), qa=qa))

    assert 'qa60' not in masked.bands
    assert masked.band('b04').dtype == np.float32
    assert masked.band('b04')[5, 5] == pytest.approx(0.05)
    assert not masked.valid[0, 0]
    assert not masked.valid[0, 1]
    assert masked.valid[0, 2]
    assert masked.valid.sum() == masked.valid.size - 2


def test_mask_clouds_keeps_prior_invalid_pixels(geobox):
    valid = np.ones(geobox.shape, dtype=bool)
    valid[3, 3] = False
    raster = Raster({'qa60': np.zeros(geobox.shape, np.uint16), 'b04': np.ones(geobox.shape)}, valid, geobox)
    assert not mask_clouds(raster).valid[3, 3]


def test_mask_clouds_without_qa_band_raises(geobox):
    raster = Raster({'b04': np.ones(geobox.shape)}, np.ones(geobox.shape, bool), geobox)
    with pytest.raises(MissingBandError) as info:
        mask_clouds(raster)
    assert isinstance(info.value, KeyError)
    assert info.value.band == 'qa60'


def test_ndvi_range_and_values():
    rng = np.random.default_rng(0)
    grid = GeoBox.from_shape((16, 16))
    red = rng.uniform(0, 1, grid.shape)
    nir = rng.uniform(0, 1, grid.shape)
    raster = Raster({'b04': red, 'b08': nir}, np.ones(grid.shape, bool), grid)

    ndvi = add_ndvi(raster).band('ndvi')
    assert ndvi.min() >= -1.0 and ndvi.max() <= 1.0
    np.testing.assert_allclose(ndvi, (nir - red) / (nir + red), rtol=1e-5)


def test_zero_denominator_is_invalid_not_nan():
    grid = GeoBox.from_shape((1, 3))
    raster = Raster(
        {'b04': np.array([[0.0, 0.1, 0.2]]), 'b08': np.array([[0.0, 0.3, 0.2]])},
        np.ones(grid.shape, bool),
        grid,
    )
    out = normalized_difference(raster, 'b08', 'b04', 'ndvi')
    np.testing.assert_array_equal(out.valid, [[False, True, True]])
    assert np.isfinite(out.band('ndvi')).all()
    assert out.band('ndvi')[0, 1] == pytest.approx(0.5)
    assert out.band('ndvi')[0, 2] == pytest.approx(0.0)


def test_prepare_scene_recovers_ndvi(make_scene):
    prepared = prepare_scene(make_scene(0.85, date(2020, 6, 1)))
    assert prepared.has_bands('b02', 'b03', 'b04', 'b08', 'ndvi')
    np.testing.assert_allclose(prepared.band('ndvi'), 0.85, atol=1e-3)
