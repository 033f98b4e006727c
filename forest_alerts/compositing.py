"""
Cloud-free temporal compositing.

This module handles:
- Per-pixel median of valid observations across a scene stack
- Date-window filtering, cloud masking and NDVI for each scene
- Clipping composites to a region boundary
"""

import logging
from datetime import date
from typing import Optional, Tuple

import dask.array as da
import numpy as np

from .errors import GridMismatchError
from .preprocessing import NDVI_BAND, REQUIRED_BANDS, prepare_scene
from .raster import CompositeImage, Raster, SceneCollection, ensure_same_grid
from .regions import Region, region_mask

logger = logging.getLogger(__name__)


DEFAULT_TILE_SIZE = 512
DEFAULT_BANDS = ('b02', 'b03', 'b04', 'b08', NDVI_BAND)


def _median_block(block: np.ndarray) -> np.ndarray:
    """
    Median along axis 0 ignoring NaN, for one spatial tile.

    Pixels are grouped by their number of valid observations n so that a
    single ``np.partition`` call selects the middle element(s) of every
    pixel in the group. NaN sorts after all numbers, so the n valid values
    occupy the first n slots after partitioning.
    """
    n_layers = block.shape[0]
    flat = block.reshape(n_layers, -1)
    counts = np.count_nonzero(~np.isnan(flat), axis=0)
    result = np.full(flat.shape[1], np.nan, dtype=np.float64)

    for n in np.unique(counts):
        if n == 0:
            continue
        cols = np.flatnonzero(counts == n)
        lo, hi = (n - 1) // 2, n // 2
        part = np.partition(flat[:, cols], [lo, hi] if lo != hi else lo, axis=0)
        # Even counts average the two middle values
        result[cols] = 0.5 * (part[lo] + part[hi])

    return result.reshape(block.shape[1:])


def median_reduce(
    stack: np.ndarray,
    valid: np.ndarray,
    tile_size: int = DEFAULT_TILE_SIZE,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-pixel median of the valid values of a (n, rows, cols) stack.

    The spatial axes are split into tiles and reduced in parallel on the
    dask threaded scheduler.

    Parameters
    ----------
    stack : np.ndarray
        Observations, shape (n, rows, cols)
    valid : np.ndarray
        Boolean validity, same shape as ``stack``
    tile_size : int
        Tile edge length in pixels

    Returns
    -------
    tuple
        (median, valid) each shaped (rows, cols). Pixels without any valid
        observation are invalid and hold 0.
    """
    stack = np.asarray(stack)
    valid = np.asarray(valid, dtype=bool)
    if stack.shape != valid.shape:
        raise GridMismatchError(f"Stack shape {stack.shape} != validity shape {valid.shape}")

    n_layers = stack.shape[0]
    spatial = stack.shape[1:]
    if n_layers == 0:
        return np.zeros(spatial, dtype=np.float64), np.zeros(spatial, dtype=bool)

    data = np.where(valid, stack, np.nan).astype(np.float64)
    # Invalid-flagged NaN and genuine NaN are treated alike
    darr = da.from_array(data, chunks=(n_layers, tile_size, tile_size))
    median = darr.map_blocks(_median_block, drop_axis=0, dtype=np.float64).compute(scheduler='threads')

    out_valid = ~np.isnan(median)
    return np.where(out_valid, median, 0.0), out_valid


def composite(
    collection: SceneCollection,
    start: date,
    end: date,
    region: Optional[Region] = None,
    tile_size: int = DEFAULT_TILE_SIZE,
) -> CompositeImage:
    """
    Create a cloud-free median composite for one date window.

    Parameters
    ----------
    collection : SceneCollection
        Scenes on a common grid (``collection.geobox``)
    start, end : date
        Window bounds, start inclusive, end exclusive
    region : Region, optional
        Clip boundary. Defaults to the collection's region.
    tile_size : int
        Tile edge length for the parallel median

    Returns
    -------
    CompositeImage
        Median of every band including ``ndvi``. A window without usable
        scenes gives an all-invalid composite rather than an error.
    """
    window = collection.within(start, end)
    if region is None:
        region = collection.region
    geobox = collection.geobox
    region_name = region.name if region is not None else None

    usable = []
    for scene in window:
        missing = [b for b in REQUIRED_BANDS if not scene.raster.has_bands(b)]
        if missing:
            logger.warning(
                "Dropping scene %s: missing band(s) %s", scene.scene_id, ', '.join(missing)
            )
            continue
        usable.append(scene)

    if not usable:
        logger.warning(
            "No data for window %s to %s (%s): composite is empty",
            start, end, region_name or 'unclipped',
        )
        return CompositeImage(
            raster=Raster.empty(geobox, DEFAULT_BANDS),
            start=start,
            end=end,
            region=region_name,
            reducer='median',
            n_scenes=0,
            observations=np.zeros(geobox.shape, dtype=np.int32),
        )

    prepared = [prepare_scene(scene) for scene in usable]
    ensure_same_grid(Raster({}, np.zeros(geobox.shape, dtype=bool), geobox), *prepared)

    band_names = [
        name for name in prepared[0].band_names
        if all(name in r.bands for r in prepared)
    ]
    valid_stack = np.stack([r.valid for r in prepared], axis=0)
    observations = valid_stack.sum(axis=0).astype(np.int32)

    bands = {}
    out_valid = observations > 0
    for name in band_names:
        values = np.stack([r.band(name) for r in prepared], axis=0)
        median, band_valid = median_reduce(values, valid_stack, tile_size=tile_size)
        bands[name] = median.astype(np.float32)
        out_valid &= band_valid

    if region is not None:
        out_valid &= region_mask(region, geobox)

    raster = Raster(bands, out_valid, geobox)
    logger.info(
        "Composite %s [%s, %s): %d scenes, %.1f%% valid pixels",
        region_name or 'unclipped', start, end, len(usable), 100.0 * out_valid.mean(),
    )
    return CompositeImage(
        raster=raster,
        start=start,
        end=end,
        region=region_name,
        reducer='median',
        n_scenes=len(usable),
        observations=observations,
    )
