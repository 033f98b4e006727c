"""
Named region boundaries and sub-region lookup.

This module handles:
- Region polygons and their reprojection into raster grids
- Catalogs of named sub-regions nested in a parent region
- Loading catalogs from administrative boundary files
- Rasterizing a boundary onto a pixel grid for clipping
- Protected-area overlays filtered to an analysed region
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np
from pyproj import CRS, Transformer
from rasterio import features
from shapely import ops
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry
from shapely.validation import make_valid

from .errors import InvalidConfigError, RegionNotFoundError
from .raster import GeoBox

logger = logging.getLogger(__name__)


DEFAULT_CRS = "EPSG:4326"


def same_crs(a: Optional[str], b: Optional[str]) -> bool:
    """Compare CRS identifiers; an undefined CRS matches anything."""
    if a is None or b is None:
        return True
    return CRS.from_user_input(a) == CRS.from_user_input(b)


def reproject_geometry(geometry: BaseGeometry, src_crs: str, dst_crs: str) -> BaseGeometry:
    """Transform a shapely geometry between coordinate reference systems."""
    if same_crs(src_crs, dst_crs):
        return geometry
    transformer = Transformer.from_crs(src_crs, dst_crs, always_xy=True)
    return ops.transform(transformer.transform, geometry)


@dataclass(frozen=True)
class Region:
    """A named boundary polygon."""

    name: str
    geometry: BaseGeometry
    crs: str = DEFAULT_CRS
    parent: Optional[str] = None

    @classmethod
    def from_bbox(
        cls,
        name: str,
        bbox: Tuple[float, float, float, float],
        crs: str = DEFAULT_CRS,
        parent: Optional[str] = None,
    ) -> "Region":
        return cls(name, box(*bbox), crs, parent)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return tuple(self.geometry.bounds)

    def to_crs(self, crs: str) -> "Region":
        if same_crs(self.crs, crs):
            return self
        return Region(self.name, reproject_geometry(self.geometry, self.crs, crs), crs, self.parent)


def read_vector(path: str):
    """Read a vector file with geopandas; unreadable files are config errors."""
    import geopandas as gpd

    try:
        return gpd.read_file(path)
    except (OSError, RuntimeError, ValueError) as e:
        raise InvalidConfigError(f"Cannot read vector file {path}: {e}") from e


class RegionCatalog:
    """
    Named sub-regions nested inside a parent region.

    Parameters
    ----------
    parent : Region
        Enclosing region (e.g. a state)
    regions : iterable of Region
        Sub-regions (e.g. municipalities). Repeated names are merged into
        one boundary.
    """

    def __init__(self, parent: Region, regions: Iterable[Region]):
        self.parent = parent
        self._regions: Dict[str, Region] = {}
        for region in regions:
            existing = self._regions.get(region.name)
            if existing is not None:
                logger.warning("Merging duplicate boundaries for region '%s'", region.name)
                merged = existing.geometry.union(region.to_crs(existing.crs).geometry)
                region = Region(existing.name, merged, existing.crs, existing.parent)
            self._regions[region.name] = region

    def __contains__(self, name: str) -> bool:
        return name in self._regions

    def __len__(self) -> int:
        return len(self._regions)

    def __iter__(self) -> Iterator[Region]:
        return iter(self._regions[n] for n in self.names())

    def names(self) -> List[str]:
        return sorted(self._regions)

    def get(self, name: str) -> Optional[Region]:
        return self._regions.get(name)

    @classmethod
    def from_geodataframe(
        cls,
        gdf,
        name_field: str,
        parent_name: str,
        crs: Optional[str] = None,
    ) -> "RegionCatalog":
        """
        Build a catalog from a GeoDataFrame of sub-region polygons.

        Invalid geometries are repaired; the parent boundary is the union of
        all sub-regions.
        """
        if crs is None:
            crs = gdf.crs.to_string() if gdf.crs is not None else DEFAULT_CRS

        regions = []
        for name, geom in zip(gdf[name_field], gdf.geometry):
            if geom is None or geom.is_empty:
                continue
            if not geom.is_valid:
                geom = make_valid(geom)
            regions.append(Region(str(name), geom, crs, parent_name))

        if regions:
            parent_geom = ops.unary_union([r.geometry for r in regions])
        else:
            parent_geom = box(0, 0, 0, 0)
        return cls(Region(parent_name, parent_geom, crs), regions)

    @classmethod
    def from_file(
        cls,
        path: str,
        name_field: str = "ADM2_NAME",
        parent_field: Optional[str] = "ADM1_NAME",
        parent_name: Optional[str] = None,
    ) -> "RegionCatalog":
        """
        Load sub-region boundaries from a shapefile, GeoPackage or GeoJSON.

        Parameters
        ----------
        path : str
            Vector file readable by geopandas
        name_field : str
            Column holding sub-region names (GAUL level 2 by default)
        parent_field : str, optional
            Column holding the parent name, used with ``parent_name``
        parent_name : str, optional
            Keep only rows whose ``parent_field`` equals this value
        """
        gdf = read_vector(path)
        if name_field not in gdf.columns:
            raise KeyError(f"Column '{name_field}' not found in {path}")

        if parent_name is not None and parent_field is not None:
            gdf = gdf[gdf[parent_field] == parent_name]
        label = parent_name or path
        logger.info("Loaded %d boundaries from %s", len(gdf), path)
        return cls.from_geodataframe(gdf, name_field, label)


def boundary_for(catalog: RegionCatalog, name: str) -> Region:
    """
    Resolve a sub-region by exact name.

    Raises
    ------
    RegionNotFoundError
        If ``name`` is not in the catalog
    """
    region = catalog.get(name)
    if region is None:
        raise RegionNotFoundError(name, catalog.parent.name)
    return region


def region_mask(region: Region, geobox: GeoBox, all_touched: bool = False) -> np.ndarray:
    """
    Rasterize a region onto a grid.

    Returns
    -------
    np.ndarray
        Boolean mask, True for pixels whose centre lies inside the boundary
    """
    geom = reproject_geometry(region.geometry, region.crs, geobox.crs or region.crs)
    if geom.is_empty:
        return np.zeros(geobox.shape, dtype=bool)
    return features.geometry_mask(
        [geom],
        out_shape=geobox.shape,
        transform=geobox.transform,
        all_touched=all_touched,
        invert=True,
    )


def footprint_intersects(region: Region, geobox: GeoBox) -> bool:
    """True if the grid footprint overlaps the region boundary."""
    geom = reproject_geometry(region.geometry, region.crs, geobox.crs or region.crs)
    return geom.intersects(box(*geobox.bounds))


def areas_within(areas, region: Region):
    """
    Rows of a GeoDataFrame whose geometry intersects the region boundary.

    The region is reprojected into the frame's CRS; a frame without a CRS
    is assumed to share the region's.
    """
    if areas.crs is not None:
        region = region.to_crs(areas.crs.to_string())
    return areas[areas.intersects(region.geometry)]


def load_protected_areas(path: str, region: Optional[Region] = None):
    """
    Load protected-area polygons, e.g. a WDPA extract.

    Parameters
    ----------
    path : str
        Vector file readable by geopandas
    region : Region, optional
        Keep only areas intersecting this boundary

    Returns
    -------
    gpd.GeoDataFrame
        Protected areas, in the file's CRS
    """
    areas = read_vector(path)
    if region is not None:
        areas = areas_within(areas, region)
    logger.info("Loaded %d protected areas from %s", len(areas), path)
    return areas
