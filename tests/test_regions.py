import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Polygon, box

from forest_alerts.errors import InvalidConfigError, RegionNotFoundError
from forest_alerts.raster import GeoBox
from forest_alerts.regions import (
    Region,
    RegionCatalog,
    areas_within,
    boundary_for,
    footprint_intersects,
    load_protected_areas,
    region_mask,
)


@pytest.fixture
def catalog():
    parent = Region('Parana', box(0, 0, 300, 100), crs='EPSG:32722')
    subs = [
        Region('Curitiba', box(0, 0, 100, 100), crs='EPSG:32722', parent='Parana'),
        Region('Londrina', box(100, 0, 200, 100), crs='EPSG:32722', parent='Parana'),
        Region('Maringa', box(200, 0, 300, 100), crs='EPSG:32722', parent='Parana'),
    ]
    return RegionCatalog(parent, subs)


def test_names_are_sorted(catalog):
    assert catalog.names() == ['Curitiba', 'Londrina', 'Maringa']
    assert len(catalog) == 3
    assert 'Londrina' in catalog


def test_boundary_for_known_region(catalog):
    region = boundary_for(catalog, 'Londrina')
    assert region.bounds == (100.0, 0.0, 200.0, 100.0)
    assert region.parent == 'Parana'


def test_boundary_for_unknown_region(catalog):
    with pytest.raises(RegionNotFoundError) as info:
        boundary_for(catalog, 'Atlantis')
    assert isinstance(info.value, LookupError)
    assert info.value.name == 'Atlantis'
    assert 'Parana' in str(info.value)


def test_lookup_is_exact(catalog):
    with pytest.raises(RegionNotFoundError):
        boundary_for(catalog, 'curitiba')


def test_duplicate_names_are_merged():
    parent = Region('P', box(0, 0, 2, 1))
    catalog = RegionCatalog(parent, [
        Region('A', box(0, 0, 1, 1)),
        Region('A', box(1, 0, 2, 1)),
    ])
    assert len(catalog) == 1
    assert catalog.get('A').geometry.area == pytest.approx(2.0)


def test_region_mask_uses_pixel_centres():
    grid = GeoBox.from_shape((10, 30), resolution=10.0, crs='EPSG:32722')
    region = Region('Londrina', box(100, 0, 200, 100), crs='EPSG:32722')
    mask = region_mask(region, grid)

    assert mask.shape == (10, 30)
    assert mask[:, 10:20].all()
    assert not mask[:, :10].any()
    assert not mask[:, 20:].any()


def test_region_mask_reprojects_lon_lat_boundary():
    grid = GeoBox.from_bounds((500000.0, 7200000.0, 501000.0, 7201000.0), 10.0, 'EPSG:32722')
    lonlat = Region.from_bbox('everything', (-60.0, -40.0, -40.0, -10.0))
    assert region_mask(lonlat, grid).all()
    assert footprint_intersects(lonlat, grid)


def test_footprint_outside_region():
    grid = GeoBox.from_shape((10, 10), resolution=10.0, crs='EPSG:32722', origin=(1000.0, 1000.0))
    region = Region('far', box(0, 0, 50, 50), crs='EPSG:32722')
    assert not footprint_intersects(region, grid)
    assert not region_mask(region, grid).any()


def test_to_crs_round_trip_keeps_name():
    region = Region.from_bbox('r', (-51.0, -25.0, -50.9, -24.9))
    utm = region.to_crs('EPSG:32722')
    assert utm.name == 'r'
    assert utm.crs == 'EPSG:32722'
    assert utm.bounds[0] > 100000


def test_from_geodataframe_filters_and_repairs(tmp_path):
    bowtie = Polygon([(0, 0), (1, 1), (1, 0), (0, 1)])
    gdf = gpd.GeoDataFrame(
        {
            'ADM2_NAME': ['Curitiba', 'Londrina', 'Asuncion'],
            'ADM1_NAME': ['Parana', 'Parana', 'Central'],
        },
        geometry=[box(0, 0, 1, 1), bowtie, box(5, 5, 6, 6)],
        crs='EPSG:4326',
    )
    path = tmp_path / 'gaul.geojson'
    gdf.to_file(path, driver='GeoJSON')

    catalog = RegionCatalog.from_file(str(path), parent_name='Parana')
    assert catalog.names() == ['Curitiba', 'Londrina']
    assert catalog.parent.name == 'Parana'
    assert catalog.get('Londrina').geometry.is_valid
    assert catalog.parent.geometry.covers(catalog.get('Curitiba').geometry)


def test_unreadable_boundary_file_is_a_config_error(tmp_path):
    with pytest.raises(InvalidConfigError):
        RegionCatalog.from_file(str(tmp_path / 'missing.gpkg'))


def test_areas_within_reprojects_region():
    areas = gpd.GeoDataFrame(
        {'NAME': ['Guaricana', 'Iguacu']},
        geometry=[box(-49.0, -25.6, -48.9, -25.5), box(-54.5, -25.7, -54.0, -25.2)],
        crs='EPSG:4326',
    )
    region = Region('Curitiba', box(-49.4, -25.7, -48.8, -25.3)).to_crs('EPSG:32722')

    kept = areas_within(areas, region)
    assert list(kept['NAME']) == ['Guaricana']
    assert kept.crs == areas.crs


def test_load_protected_areas(tmp_path):
    areas = gpd.GeoDataFrame(
        {'NAME': ['inside', 'outside']},
        geometry=[box(10, 10, 20, 20), box(500, 500, 600, 600)],
        crs='EPSG:32722',
    )
    path = tmp_path / 'wdpa.gpkg'
    areas.to_file(path, driver='GPKG')
    region = Region('r', box(0, 0, 100, 100), crs='EPSG:32722')

    assert len(load_protected_areas(str(path))) == 2
    assert list(load_protected_areas(str(path), region)['NAME']) == ['inside']
