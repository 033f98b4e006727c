from datetime import date

import numpy as np
import pytest

from forest_alerts.errors import GridMismatchError, MissingBandError
from forest_alerts.raster import GeoBox, Raster, Scene, SceneCollection, ensure_same_grid


@pytest.mark.filterwarnings('error::PendingDeprecationWarning')
def test_geobox_from_bounds_snaps_to_resolution():
    grid = GeoBox.from_bounds((0.0, 0.0, 95.0, 40.0), 10.0, 'EPSG:32722')
    assert grid.shape == (4, 10)
    assert grid.bounds == pytest.approx((0.0, 0.0, 100.0, 40.0))
    assert grid.pixel_area == pytest.approx(100.0)


def test_geobox_coords_are_pixel_centres():
    grid = GeoBox.from_shape((2, 3), resolution=10.0)
    x, y = grid.coords()
    np.testing.assert_allclose(x, [5.0, 15.0, 25.0])
    np.testing.assert_allclose(y, [15.0, 5.0])


def test_raster_rejects_mismatched_band():
    grid = GeoBox.from_shape((3, 3))
    with pytest.raises(GridMismatchError):
        Raster({'b04': np.zeros((3, 4))}, np.ones((3, 3), bool), grid)
    with pytest.raises(GridMismatchError):
        Raster({}, np.ones((2, 3), bool), grid)


def test_raster_is_read_only():
    grid = GeoBox.from_shape((2, 2))
    source = np.zeros((2, 2))
    raster = Raster({'b04': source}, np.ones((2, 2), bool), grid)
    with pytest.raises(ValueError):
        raster.band('b04')[0, 0] = 1.0


def test_missing_band():
    grid = GeoBox.from_shape((2, 2))
    raster = Raster({'b04': np.zeros((2, 2))}, np.ones((2, 2), bool), grid)
    with pytest.raises(MissingBandError, match='b08'):
        raster.band('b08')


def test_with_band_narrows_validity():
    grid = GeoBox.from_shape((1, 2))
    raster = Raster({'a': np.ones((1, 2))}, np.array([[True, True]]), grid)
    out = raster.with_band('b', np.zeros((1, 2)), valid=np.array([[True, False]]))
    assert out.band_names == ('a', 'b')
    np.testing.assert_array_equal(out.valid, [[True, False]])
    assert raster.band_names == ('a',)


def test_to_xarray_keeps_grid_and_validity():
    grid = GeoBox.from_shape((3, 4), resolution=20.0, crs='EPSG:32722', origin=(1000.0, 2000.0))
    valid = np.ones((3, 4), bool)
    valid[1, 2] = False
    raster = Raster({'ndvi': np.arange(12, dtype=np.float32).reshape(3, 4)}, valid, grid)

    ds = raster.to_xarray()
    assert np.isnan(ds['ndvi'].values[1, 2])
    assert ds['ndvi'].values[0, 0] == 0.0
    assert ds.attrs['crs'] == 'EPSG:32722'
    np.testing.assert_allclose(ds['x'].values, [1010.0, 1030.0, 1050.0, 1070.0])
    np.testing.assert_allclose(ds['y'].values, [2050.0, 2030.0, 2010.0])
    np.testing.assert_array_equal(ds['valid'].values, valid)


def test_scene_collection_sorted_and_windowed():
    grid = GeoBox.from_shape((1, 1))
    empty = Raster({}, np.ones((1, 1), bool), grid)
    scenes = [Scene(str(d), date(2020, d, 1), 0.0, empty) for d in (3, 1, 2)]
    collection = SceneCollection(scenes, grid)

    assert collection.dates == (date(2020, 1, 1), date(2020, 2, 1), date(2020, 3, 1))
    window = collection.within(date(2020, 2, 1), date(2020, 3, 1))
    assert window.dates == (date(2020, 2, 1),)
    assert window.geobox is grid


def test_ensure_same_grid():
    a = Raster({}, np.ones((2, 2), bool), GeoBox.from_shape((2, 2)))
    b = Raster({}, np.ones((2, 2), bool), GeoBox.from_shape((2, 2), origin=(5.0, 0.0)))
    assert ensure_same_grid(a, a) == a.geobox
    with pytest.raises(GridMismatchError):
        ensure_same_grid(a, b)
