"""Shared synthetic-scene fixtures. Nothing here touches the network."""

from datetime import date

import matplotlib
import numpy as np
import pytest
import rasterio

from forest_alerts.raster import GeoBox, Raster, Scene

matplotlib.use("Agg")


RED_REFLECTANCE = 0.05


def scene_bands(ndvi, shape, red=RED_REFLECTANCE, qa=None):
    """Raw Sentinel-2 digital numbers whose NDVI is ``ndvi``."""
    ndvi = np.broadcast_to(np.asarray(ndvi, dtype=np.float64), shape)
    nir = red * (1 + ndvi) / (1 - ndvi)

    def dn(refl):
        return np.round(np.broadcast_to(refl, shape) * 10000).astype(np.uint16)

    return {
        'b02': dn(0.03),
        'b03': dn(0.06),
        'b04': dn(red),
        'b08': dn(nir),
        'qa60': np.zeros(shape, dtype=np.uint16) if qa is None else np.asarray(qa, dtype=np.uint16),
    }


@pytest.fixture
def geobox():
    return GeoBox.from_shape((40, 40), resolution=10.0, crs="EPSG:32722", origin=(500000.0, 7200000.0))


@pytest.fixture
def make_scene(geobox):
    """Factory: make_scene(ndvi, when, ...) -> Scene on the shared grid."""
    counter = {'n': 0}

    def _make(ndvi, when, cloud_cover=5.0, qa=None, drop=(), valid=None, grid=None):
        grid = grid or geobox
        counter['n'] += 1
        bands = scene_bands(ndvi, grid.shape, qa=qa)
        for name in drop:
            bands.pop(name)
        if valid is None:
            valid = np.ones(grid.shape, dtype=bool)
        raster = Raster(bands, valid, grid)
        return Scene(f"S2_{when.isoformat()}_{counter['n']}", when, cloud_cover, raster)

    return _make


@pytest.fixture
def forest_ndvi():
    """Background 0.3 with a 20x20 forest block at 0.85."""
    ndvi = np.full((40, 40), 0.3)
    ndvi[10:30, 10:30] = 0.85
    return ndvi


@pytest.fixture
def cleared_ndvi(forest_ndvi):
    """The forest block with a 10x10 clearing at 0.10."""
    ndvi = forest_ndvi.copy()
    ndvi[15:25, 15:25] = 0.10
    return ndvi


@pytest.fixture
def clearing_scenes(make_scene, forest_ndvi, cleared_ndvi):
    baseline = [make_scene(forest_ndvi, date(2020, m, 5)) for m in (6, 7, 8)]
    current = [make_scene(cleared_ndvi, date(2021, m, 5)) for m in (6, 7)]
    return baseline + current


@pytest.fixture
def write_scene():
    """Factory: write_scene(path, geobox, ndvi, cloud=None) writes a 5-band GeoTIFF."""

    def _write(path, grid, ndvi, cloud=None):
        bands = scene_bands(ndvi, grid.shape)
        rows, cols = grid.shape
        with rasterio.open(
            path, 'w', driver='GTiff', height=rows, width=cols, count=len(bands),
            dtype='uint16', crs=grid.crs, transform=grid.transform,
        ) as dst:
            for i, (name, values) in enumerate(bands.items(), start=1):
                dst.write(values, i)
                dst.set_band_description(i, name.upper())
            if cloud is not None:
                dst.update_tags(CLOUDY_PIXEL_PERCENTAGE=str(cloud))
        return path

    return _write
