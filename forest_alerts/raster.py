"""
In-memory raster types shared by every pipeline stage.

This module handles:
- Grid geometry (GeoBox: shape, affine transform, CRS)
- Multi-band rasters with an explicit per-pixel validity grid
- Scenes and date-ordered scene collections
- Composite and alert outputs with their provenance
"""

import math
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Iterator, Mapping, Optional, Tuple

import numpy as np
import xarray as xr
from rasterio.transform import Affine, from_bounds

from .errors import EmptySceneCollectionError, GridMismatchError, MissingBandError

if TYPE_CHECKING:
    from .regions import Region


def _frozen(arr: np.ndarray) -> np.ndarray:
    view = np.asarray(arr).view()
    view.setflags(write=False)
    return view


@dataclass(frozen=True)
class GeoBox:
    """Pixel grid: shape (rows, cols), affine transform and CRS."""

    shape: Tuple[int, int]
    transform: Affine
    crs: Optional[str] = None

    @classmethod
    def from_bounds(
        cls,
        bounds: Tuple[float, float, float, float],
        resolution: float,
        crs: Optional[str] = None,
    ) -> "GeoBox":
        """
        Build a north-up grid covering bounds at a square resolution.

        Parameters
        ----------
        bounds : tuple
            (xmin, ymin, xmax, ymax) in CRS units
        resolution : float
            Pixel size in CRS units
        crs : str, optional
            CRS identifier, e.g. 'EPSG:32722'
        """
        xmin, ymin, xmax, ymax = bounds
        width = max(1, int(math.ceil((xmax - xmin) / resolution)))
        height = max(1, int(math.ceil((ymax - ymin) / resolution)))
        # Snap the far edges so pixels stay square
        xmax = xmin + width * resolution
        ymin = ymax - height * resolution
        transform = from_bounds(xmin, ymin, xmax, ymax, width, height)
        return cls((height, width), transform, crs)

    @classmethod
    def from_shape(
        cls,
        shape: Tuple[int, int],
        resolution: float = 10.0,
        crs: Optional[str] = None,
        origin: Tuple[float, float] = (0.0, 0.0),
    ) -> "GeoBox":
        """Grid of the given shape whose lower-left corner sits at origin."""
        rows, cols = shape
        x0, y0 = origin
        transform = Affine(resolution, 0.0, x0, 0.0, -resolution, y0 + rows * resolution)
        return cls((int(rows), int(cols)), transform, crs)

    @property
    def resolution(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def pixel_area(self) -> float:
        """Area of one pixel in squared CRS units."""
        return abs(self.transform.a * self.transform.e)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        rows, cols = self.shape
        x0, y0 = self.transform @ (0, 0)
        x1, y1 = self.transform @ (cols, rows)
        return min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1)

    def coords(self) -> Tuple[np.ndarray, np.ndarray]:
        """Pixel-centre coordinates (x of each column, y of each row)."""
        rows, cols = self.shape
        t = self.transform
        x = t.c + t.a * (np.arange(cols) + 0.5)
        y = t.f + t.e * (np.arange(rows) + 0.5)
        return x, y


@dataclass(frozen=True, eq=False)
class Raster:
    """
    Named 2-D bands on a shared grid with a per-pixel validity mask.

    Band arrays and the validity grid are stored as read-only views. Values
    at invalid pixels are meaningless and must not enter any aggregate.
    """

    bands: Mapping[str, np.ndarray]
    valid: np.ndarray
    geobox: GeoBox

    def __post_init__(self):
        shape = tuple(self.geobox.shape)
        valid = np.asarray(self.valid)
        if valid.shape != shape:
            raise GridMismatchError(
                f"Validity grid shape {valid.shape} does not match grid {shape}"
            )
        bands = {}
        for name, values in self.bands.items():
            values = np.asarray(values)
            if values.shape != shape:
                raise GridMismatchError(
                    f"Band '{name}' shape {values.shape} does not match grid {shape}"
                )
            bands[name] = _frozen(values)
        object.__setattr__(self, "bands", bands)
        object.__setattr__(self, "valid", _frozen(valid.astype(bool, copy=False)))

    @classmethod
    def empty(cls, geobox: GeoBox, band_names=(), dtype=np.float32) -> "Raster":
        """All-invalid raster with zero-filled bands."""
        bands = {name: np.zeros(geobox.shape, dtype=dtype) for name in band_names}
        return cls(bands, np.zeros(geobox.shape, dtype=bool), geobox)

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self.geobox.shape)

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(self.bands)

    def has_bands(self, *names: str) -> bool:
        return all(name in self.bands for name in names)

    def band(self, name: str) -> np.ndarray:
        try:
            return self.bands[name]
        except KeyError:
            raise MissingBandError(name, self.band_names) from None

    def masked(self, name: str) -> np.ndarray:
        """Band as float64 with NaN at invalid pixels."""
        return np.where(self.valid, self.band(name), np.nan)

    def with_band(self, name: str, values: np.ndarray, valid: Optional[np.ndarray] = None) -> "Raster":
        """Copy with band ``name`` added or replaced; ``valid`` is ANDed in."""
        bands = dict(self.bands)
        bands[name] = values
        new_valid = self.valid if valid is None else (self.valid & valid)
        return Raster(bands, new_valid, self.geobox)

    def to_xarray(self) -> xr.Dataset:
        """
        Export as an xarray Dataset.

        Float bands carry NaN at invalid pixels, the validity grid is kept as
        the boolean variable ``valid`` and the CRS goes into ``attrs``.
        """
        x, y = self.geobox.coords()
        data_vars = {}
        for name, values in self.bands.items():
            if np.issubdtype(values.dtype, np.floating):
                values = np.where(self.valid, values, np.nan)
            data_vars[name] = (("y", "x"), np.asarray(values))
        data_vars["valid"] = (("y", "x"), np.asarray(self.valid))
        ds = xr.Dataset(data_vars, coords={"y": y, "x": x})
        ds.attrs["crs"] = self.geobox.crs
        ds.attrs["transform"] = tuple(self.geobox.transform)[:6]
        return ds


@dataclass(frozen=True, eq=False)
class Scene:
    """One acquisition: raw bands, capture date and scene-level cloud cover."""

    scene_id: str
    date: date
    cloud_cover: float
    raster: Raster


@dataclass(frozen=True, eq=False)
class SceneCollection:
    """
    Date-ordered scenes for one region, plus the query that produced them.

    The ``geobox`` is the target grid of the query; it is kept even when no
    scene matched so that downstream stages can shape a no-data result.
    """

    scenes: Tuple[Scene, ...]
    geobox: GeoBox
    region: Optional["Region"] = None
    start: Optional[date] = None
    end: Optional[date] = None
    max_cloud_pct: Optional[float] = None

    def __post_init__(self):
        ordered = tuple(sorted(self.scenes, key=lambda s: (s.date, s.scene_id)))
        object.__setattr__(self, "scenes", ordered)

    def __len__(self) -> int:
        return len(self.scenes)

    def __iter__(self) -> Iterator[Scene]:
        return iter(self.scenes)

    @property
    def dates(self) -> Tuple[date, ...]:
        return tuple(s.date for s in self.scenes)

    def within(self, start: date, end: date) -> "SceneCollection":
        """Scenes captured in [start, end)."""
        kept = tuple(s for s in self.scenes if start <= s.date < end)
        return SceneCollection(kept, self.geobox, self.region, start, end, self.max_cloud_pct)


@dataclass(frozen=True, eq=False)
class CompositeImage:
    """A reduced scene stack over one date window."""

    raster: Raster
    start: date
    end: date
    region: Optional[str]
    reducer: str
    n_scenes: int
    observations: np.ndarray = field(repr=False)

    @property
    def geobox(self) -> GeoBox:
        return self.raster.geobox

    @property
    def valid(self) -> np.ndarray:
        return self.raster.valid

    @property
    def is_empty(self) -> bool:
        return not bool(self.raster.valid.any())

    def band(self, name: str) -> np.ndarray:
        return self.raster.band(name)

    def raise_if_empty(self) -> "CompositeImage":
        if self.is_empty:
            raise EmptySceneCollectionError(
                f"No valid observations for {self.region or 'region'} "
                f"between {self.start} and {self.end}"
            )
        return self


@dataclass(frozen=True, eq=False)
class AlertMask:
    """
    Confirmed alert pixels and the size of the patch each one belongs to.

    ``patch_size`` is 0 wherever the alert is false.
    """

    raster: Raster
    patch_size: np.ndarray
    connectivity: int
    min_size: int
    method: str = "exact"

    def __post_init__(self):
        if np.asarray(self.patch_size).shape != self.raster.shape:
            raise GridMismatchError("patch_size grid does not match the alert raster")
        object.__setattr__(self, "patch_size", _frozen(self.patch_size))

    @property
    def values(self) -> np.ndarray:
        return self.raster.band("alert")

    @property
    def geobox(self) -> GeoBox:
        return self.raster.geobox

    @property
    def n_pixels(self) -> int:
        return int(self.values.sum())


def ensure_same_grid(*rasters: Raster) -> GeoBox:
    """Return the shared grid, raising GridMismatchError if rasters differ."""
    first = rasters[0].geobox
    for other in rasters[1:]:
        g = other.geobox
        if tuple(g.shape) != tuple(first.shape) or not g.transform.almost_equals(first.transform):
            raise GridMismatchError(f"Grid {g.shape} does not match {first.shape}")
    return first
