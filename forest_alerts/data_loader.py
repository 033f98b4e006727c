"""
Scene sources: where raw acquisitions come from.

This module handles:
- The SceneSource interface (region, date window, cloud-cover filter)
- In-memory, local GeoTIFF and STAC API implementations
- Bounded-concurrency scene loading with cancellation
- Caching and retry wrappers applied at the source boundary
"""

import glob
import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pystac_client
import rasterio
from pyproj import Transformer
from pyproj.aoi import AreaOfInterest
from pyproj.database import query_utm_crs_info
from pystac_client.exceptions import APIError
from rasterio.enums import Resampling
from rasterio.errors import RasterioIOError
from rasterio.vrt import WarpedVRT
from tqdm import tqdm

from .errors import AnalysisCancelledError, InvalidConfigError, SourceUnavailableError
from .raster import GeoBox, Raster, Scene, SceneCollection
from .regions import Region, footprint_intersects

logger = logging.getLogger(__name__)


DEFAULT_FILE_BANDS = ('b02', 'b03', 'b04', 'b08', 'qa60')

DEFAULT_ASSET_MAP = {
    'b02': 'B02',
    'b03': 'B03',
    'b04': 'B04',
    'b08': 'B08',
    'qa60': 'QA60',
}

CLOUD_TAG = 'CLOUDY_PIXEL_PERCENTAGE'

DATE_RE_ISO = re.compile(r"(\d{4})-(\d{2})-(\d{2})")   # yyyy-mm-dd
DATE_RE_COMPACT = re.compile(r"(\d{4})(\d{2})(\d{2})")  # yyyymmdd
DATE_RE_DMY = re.compile(r"(\d{2})_(\d{2})_(\d{4})")    # dd_mm_yyyy


class CancelToken:
    """Cooperative cancellation flag shared between a caller and a run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "Analysis") -> None:
        if self._event.is_set():
            raise AnalysisCancelledError(f"{what} cancelled")


def _check(cancel_token: Optional[CancelToken], what: str) -> None:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled(what)


def extract_date(name: str) -> Optional[date]:
    """Parse an acquisition date from a file name, or None."""
    base = os.path.basename(name)
    m = DATE_RE_ISO.search(base)
    if m:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = DATE_RE_DMY.search(base)
    if m:
        return date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
    m = DATE_RE_COMPACT.search(base)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return None
    return None


def connect_stac_catalog(catalog_url: str):
    """
    Connect to a STAC API.

    Parameters
    ----------
    catalog_url : str
        STAC API endpoint URL

    Returns
    -------
    pystac_client.Client
        Connected STAC client
    """
    try:
        return pystac_client.Client.open(catalog_url)
    except (APIError, OSError) as e:
        raise SourceUnavailableError(f"Cannot open STAC catalog {catalog_url}: {e}") from e


def reproject_bbox(
    bbox: Sequence[float],
    src_crs: str = "EPSG:4326",
    dst_crs: str = "EPSG:32722",
) -> List[float]:
    """
    Transform bounding box between coordinate reference systems.

    Parameters
    ----------
    bbox : list
        Bounding box [xmin, ymin, xmax, ymax]
    src_crs : str
        Source CRS
    dst_crs : str
        Destination CRS

    Returns
    -------
    list
        Transformed bounding box [xmin, ymin, xmax, ymax]
    """
    transformer = Transformer.from_crs(src_crs, dst_crs, always_xy=True)
    xmin, ymin, xmax, ymax = transformer.transform_bounds(*bbox)
    return [xmin, ymin, xmax, ymax]


def utm_crs_for(bbox_ll: Sequence[float]) -> str:
    """Pick the WGS84 UTM zone covering the centre of a lon/lat bbox."""
    lon = (bbox_ll[0] + bbox_ll[2]) / 2
    lat = (bbox_ll[1] + bbox_ll[3]) / 2
    infos = query_utm_crs_info(
        datum_name="WGS 84",
        area_of_interest=AreaOfInterest(lon, lat, lon, lat),
    )
    if not infos:
        raise ValueError(f"No UTM zone found for {bbox_ll}")
    return f"{infos[0].auth_name}:{infos[0].code}"


def fetch_scenes(
    items: Iterable,
    load_fn: Callable,
    max_workers: int = 4,
    cancel_token: Optional[CancelToken] = None,
    show_progress: bool = False,
    desc: str = "Loading scenes",
) -> List[Scene]:
    """
    Load items in a bounded thread pool.

    ``load_fn`` maps one item to a Scene (or None to skip it). Results keep
    the order of ``items``. If ``cancel_token`` fires, pending loads are
    cancelled, everything loaded so far is discarded and
    AnalysisCancelledError is raised.
    """
    items = list(items)
    _check(cancel_token, "Scene fetch")
    if not items:
        return []

    results = [None] * len(items)
    executor = ThreadPoolExecutor(max_workers=max_workers)
    pbar = tqdm(total=len(items), desc=desc, unit="scene", disable=not show_progress)
    try:
        futures = {executor.submit(load_fn, item): idx for idx, item in enumerate(items)}
        for fut in as_completed(futures):
            _check(cancel_token, "Scene fetch")
            results[futures[fut]] = fut.result()
            pbar.update(1)
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    else:
        executor.shutdown(wait=True)
    finally:
        pbar.close()

    return [r for r in results if r is not None]


class SceneSource(ABC):
    """Supplies the scenes of a region within a date window."""

    @abstractmethod
    def query(
        self,
        region: Region,
        start: date,
        end: date,
        max_cloud_pct: float,
        cancel_token: Optional[CancelToken] = None,
    ) -> SceneCollection:
        """
        Scenes captured in [start, end) that overlap ``region`` and have
        scene-level cloud cover strictly below ``max_cloud_pct``.

        Raises
        ------
        SourceUnavailableError
            On transport failure
        AnalysisCancelledError
            If ``cancel_token`` fires before completion
        """


def _matches(scene_date: date, cloud: float, start: date, end: date, max_cloud_pct: float) -> bool:
    return start <= scene_date < end and cloud < max_cloud_pct


class InMemorySceneSource(SceneSource):
    """Serves scenes that are already loaded, on a common grid."""

    def __init__(self, scenes: Iterable[Scene], geobox: GeoBox):
        self.scenes = tuple(scenes)
        self.geobox = geobox

    def query(self, region, start, end, max_cloud_pct, cancel_token=None):
        _check(cancel_token, "Scene query")
        kept = [
            s for s in self.scenes
            if _matches(s.date, s.cloud_cover, start, end, max_cloud_pct)
            and (region is None or footprint_intersects(region, s.raster.geobox))
        ]
        logger.debug("In-memory query %s..%s: %d/%d scenes", start, end, len(kept), len(self.scenes))
        return SceneCollection(tuple(kept), self.geobox, region, start, end, max_cloud_pct)


def _geobox_of(src) -> GeoBox:
    crs = src.crs.to_string() if src.crs else None
    return GeoBox((src.height, src.width), src.transform, crs)


class GeoTiffSceneSource(SceneSource):
    """
    One multi-band GeoTIFF per scene in a directory.

    Band names come from the file's band descriptions when every band has
    one, otherwise from ``band_names`` in band order. The acquisition date
    is parsed from the file name and the scene cloud cover from the
    CLOUDY_PIXEL_PERCENTAGE tag (0 when absent).
    """

    def __init__(
        self,
        directory: str,
        band_names: Sequence[str] = DEFAULT_FILE_BANDS,
        geobox: Optional[GeoBox] = None,
        max_workers: int = 4,
        show_progress: bool = False,
    ):
        self.directory = directory
        self.band_names = tuple(band_names)
        self.geobox = geobox
        self.max_workers = max_workers
        self.show_progress = show_progress

    def paths(self) -> List[str]:
        found = []
        for pattern in ('*.tif', '*.tiff', '*.TIF'):
            found.extend(glob.glob(os.path.join(self.directory, pattern)))
        return sorted(set(found))

    def _header(self, path: str) -> Optional[Dict]:
        with rasterio.open(path) as src:
            tags = src.tags()
            scene_date = extract_date(path)
            if scene_date is None and 'ACQUISITION_DATE' in tags:
                scene_date = datetime.fromisoformat(tags['ACQUISITION_DATE']).date()
            if scene_date is None:
                logger.warning("Skipping %s: no acquisition date in name or tags", path)
                return None
            return {
                'path': path,
                'date': scene_date,
                'cloud': float(tags.get(CLOUD_TAG, 0.0)),
                'geobox': _geobox_of(src),
            }

    def _band_names_for(self, src) -> Tuple[str, ...]:
        descriptions = src.descriptions
        if descriptions and all(descriptions):
            return tuple(d.lower() for d in descriptions)
        if src.count > len(self.band_names):
            logger.warning("%s has %d bands, only %d named", src.name, src.count, len(self.band_names))
        return self.band_names[:src.count]

    def load(self, header: Dict) -> Scene:
        with rasterio.open(header['path']) as src:
            names = self._band_names_for(src)
            data = src.read(list(range(1, len(names) + 1)))
            valid = src.dataset_mask() > 0
        raster = Raster(dict(zip(names, data)), valid, header['geobox'])
        scene_id = os.path.splitext(os.path.basename(header['path']))[0]
        return Scene(scene_id, header['date'], header['cloud'], raster)

    def query(self, region, start, end, max_cloud_pct, cancel_token=None):
        _check(cancel_token, "Scene query")
        paths = self.paths()
        if not paths:
            raise SourceUnavailableError(f"No GeoTIFF scenes found in {self.directory}")

        try:
            headers = [h for h in (self._header(p) for p in paths) if h is not None]
            geobox = self.geobox or (headers[0]['geobox'] if headers else None)
            if geobox is None:
                raise SourceUnavailableError(f"No readable scenes in {self.directory}")

            selected = [
                h for h in headers
                if _matches(h['date'], h['cloud'], start, end, max_cloud_pct)
                and (region is None or footprint_intersects(region, h['geobox']))
            ]
            logger.info("%s: %d/%d scenes match %s..%s", self.directory, len(selected), len(headers), start, end)
            scenes = fetch_scenes(
                selected, self.load,
                max_workers=self.max_workers,
                cancel_token=cancel_token,
                show_progress=self.show_progress,
            )
        except RasterioIOError as e:
            raise SourceUnavailableError(str(e)) from e

        return SceneCollection(tuple(scenes), geobox, region, start, end, max_cloud_pct)


def read_asset(href: str, geobox: GeoBox, resampling: Resampling = Resampling.nearest) -> Tuple[np.ndarray, np.ndarray]:
    """
    Read band 1 of a raster asset warped onto ``geobox``.

    Returns
    -------
    tuple
        (values, valid)
    """
    rows, cols = geobox.shape
    with rasterio.open(href) as src:
        with WarpedVRT(
            src,
            crs=geobox.crs,
            transform=geobox.transform,
            width=cols,
            height=rows,
            resampling=resampling,
        ) as vrt:
            values = vrt.read(1)
            valid = vrt.read_masks(1) > 0
    return values, valid


class StacSceneSource(SceneSource):
    """
    Sentinel-2 scenes from a STAC API.

    Parameters
    ----------
    catalog_url : str
        STAC API endpoint
    collection : str
        STAC collection id
    resolution : float
        Target pixel size in metres
    asset_map : dict, optional
        {band name: STAC asset key}; must include the QA band
    crs : str, optional
        Target CRS. Defaults to the UTM zone of the region centre.
    max_workers : int
        Concurrent asset reads
    client : pystac_client.Client, optional
        Pre-opened client (opened lazily from ``catalog_url`` otherwise)
    reader : callable, optional
        ``reader(href, geobox) -> (values, valid)``; defaults to read_asset
    """

    def __init__(
        self,
        catalog_url: str = "https://earth-search.aws.element84.com/v1",
        collection: str = "sentinel-2-l2a",
        resolution: float = 10.0,
        asset_map: Optional[Dict[str, str]] = None,
        crs: Optional[str] = None,
        max_workers: int = 4,
        client=None,
        reader: Callable = read_asset,
        show_progress: bool = False,
    ):
        self.catalog_url = catalog_url
        self.collection = collection
        self.resolution = resolution
        self.asset_map = dict(asset_map or DEFAULT_ASSET_MAP)
        self.crs = crs
        self.max_workers = max_workers
        self._client = client
        self.reader = reader
        self.show_progress = show_progress

    @property
    def client(self):
        if self._client is None:
            self._client = connect_stac_catalog(self.catalog_url)
        return self._client

    def target_geobox(self, region: Region) -> GeoBox:
        """Grid covering the region at ``resolution`` in the target CRS."""
        bbox_ll = region.to_crs("EPSG:4326").bounds
        crs = self.crs or utm_crs_for(bbox_ll)
        return GeoBox.from_bounds(reproject_bbox(bbox_ll, dst_crs=crs), self.resolution, crs)

    def search(self, region: Region, start: date, end: date, max_cloud_pct: float) -> List[Dict]:
        """STAC items for the query, filtered again client-side."""
        bbox_ll = list(region.to_crs("EPSG:4326").bounds)
        last_day = end - timedelta(days=1)
        search = self.client.search(
            collections=[self.collection],
            bbox=bbox_ll,
            datetime=[start.isoformat(), last_day.isoformat()],
            query={"eo:cloud_cover": {"lt": max_cloud_pct}},
        )
        items = []
        for item in search.items_as_dicts():
            props = item.get('properties', {})
            item_date = datetime.fromisoformat(props['datetime'].replace('Z', '+00:00')).date()
            cloud = float(props.get('eo:cloud_cover', 0.0))
            if _matches(item_date, cloud, start, end, max_cloud_pct):
                items.append(item)
        return items

    def load_item(self, item: Dict, geobox: GeoBox) -> Scene:
        """Read every mapped asset of one item onto the target grid."""
        props = item['properties']
        bands = {}
        valid = np.ones(geobox.shape, dtype=bool)
        for band, key in self.asset_map.items():
            asset = item.get('assets', {}).get(key)
            if asset is None:
                # Left out; the compositor drops scenes missing required bands
                logger.debug("Item %s has no asset '%s'", item.get('id'), key)
                continue
            values, band_valid = self.reader(asset['href'], geobox)
            bands[band] = values
            valid &= band_valid
        item_date = datetime.fromisoformat(props['datetime'].replace('Z', '+00:00')).date()
        return Scene(
            scene_id=item.get('id', ''),
            date=item_date,
            cloud_cover=float(props.get('eo:cloud_cover', 0.0)),
            raster=Raster(bands, valid, geobox),
        )

    def query(self, region, start, end, max_cloud_pct, cancel_token=None):
        _check(cancel_token, "Scene query")
        if region is None:
            raise InvalidConfigError("STAC queries need a region")
        geobox = self.target_geobox(region)
        try:
            items = self.search(region, start, end, max_cloud_pct)
            logger.info("STAC %s: %d items for %s %s..%s", self.collection, len(items), region.name, start, end)
            scenes = fetch_scenes(
                items,
                partial(self.load_item, geobox=geobox),
                max_workers=self.max_workers,
                cancel_token=cancel_token,
                show_progress=self.show_progress,
                desc=f"{region.name} {start}",
            )
        except SourceUnavailableError:
            raise
        except (APIError, RasterioIOError, OSError) as e:
            raise SourceUnavailableError(f"STAC source {self.catalog_url} unavailable: {e}") from e

        return SceneCollection(tuple(scenes), geobox, region, start, end, max_cloud_pct)


def _region_key(region) -> Optional[Tuple]:
    if region is None:
        return None
    return region.name, region.crs, region.geometry.wkb


class CachedSceneSource(SceneSource):
    """
    LRU cache of recent query results.

    Keyed by the region (name, CRS and boundary), start, end and max cloud
    %. One lock guards the cache; the wrapped query runs outside it. Cancelled or failed queries
    are never stored.
    """

    def __init__(self, inner: SceneSource, max_entries: int = 16):
        self.inner = inner
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._cache: "OrderedDict[Tuple, SceneCollection]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def query(self, region, start, end, max_cloud_pct, cancel_token=None):
        key = (_region_key(region), start, end, float(max_cloud_pct))
        with self._lock:
            hit = self._cache.get(key)
            if hit is not None:
                self._cache.move_to_end(key)
                logger.debug("Scene cache hit: %s", key)
                return hit

        collection = self.inner.query(region, start, end, max_cloud_pct, cancel_token)
        _check(cancel_token, "Scene query")

        with self._lock:
            self._cache[key] = collection
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)
        return collection


class RetryingSceneSource(SceneSource):
    """Retry SourceUnavailableError with exponential backoff."""

    def __init__(self, inner: SceneSource, attempts: int = 3, delay: float = 2.0, backoff: float = 2.0):
        if attempts < 1:
            raise InvalidConfigError("attempts must be >= 1")
        self.inner = inner
        self.attempts = attempts
        self.delay = delay
        self.backoff = backoff

    def query(self, region, start, end, max_cloud_pct, cancel_token=None):
        wait = self.delay
        for attempt in range(1, self.attempts + 1):
            try:
                return self.inner.query(region, start, end, max_cloud_pct, cancel_token)
            except SourceUnavailableError as e:
                if attempt == self.attempts:
                    raise
                logger.warning(
                    "Scene source unavailable (%s), retrying in %.1f s (%d/%d)",
                    e, wait, attempt, self.attempts,
                )
                time.sleep(wait)
                _check(cancel_token, "Scene query")
                wait *= self.backoff
