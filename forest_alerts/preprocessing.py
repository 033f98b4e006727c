"""
Preprocessing utilities for Sentinel-2 scenes.

This module handles:
- Cloud masking using the QA60 bitmask band
- Reflectance scaling of digital numbers
- Normalized difference indices (NDVI)
"""

import logging
from typing import Iterable, Union

import numpy as np

from .raster import Raster, Scene

logger = logging.getLogger(__name__)


QA_BAND = 'qa60'
RED_BAND = 'b04'
NIR_BAND = 'b08'
NDVI_BAND = 'ndvi'

# QA60 bits
CLOUD_BIT = 1 << 10   # opaque clouds
CIRRUS_BIT = 1 << 11  # cirrus clouds

# Sentinel-2 L2A digital numbers -> surface reflectance
REFLECTANCE_SCALE = 10000.0

REQUIRED_BANDS = (QA_BAND, RED_BAND, NIR_BAND)


def qa_clear(qa: np.ndarray, bits: Iterable[int] = (CLOUD_BIT, CIRRUS_BIT)) -> np.ndarray:
    """
    True where none of the given QA bits is set.

    Parameters
    ----------
    qa : np.ndarray
        Integer QA bitfield
    bits : iterable of int
        Bit masks that flag a pixel as unusable

    Returns
    -------
    np.ndarray
        Boolean clear-sky mask
    """
    qa = np.asarray(qa).astype(np.int64, copy=False)
    flags = 0
    for bit in bits:
        flags |= bit
    return (qa & flags) == 0


def mask_clouds(
    scene: Union[Scene, Raster],
    qa_band: str = QA_BAND,
    scale: float = REFLECTANCE_SCALE,
) -> Raster:
    """
    Invalidate cloud and cirrus pixels and rescale to reflectance.

    A pixel stays valid only if it was valid before and both the cloud bit
    (10) and the cirrus bit (11) of the QA band are unset. The QA band is
    dropped from the output; every other band is divided by ``scale``.

    Parameters
    ----------
    scene : Scene or Raster
        Raw scene with a QA bitfield band
    qa_band : str
        Name of the QA band
    scale : float
        Divisor mapping digital numbers to reflectance in [0, 1]

    Returns
    -------
    Raster
        Float32 reflectance bands with an updated validity grid

    Raises
    ------
    MissingBandError
        If the QA band is absent
    """
    raster = scene.raster if isinstance(scene, Scene) else scene
    qa = raster.band(qa_band)

    valid = raster.valid & qa_clear(qa)
    bands = {
        name: (values.astype(np.float32) / np.float32(scale))
        for name, values in raster.bands.items()
        if name != qa_band
    }
    return Raster(bands, valid, raster.geobox)


def normalized_difference(
    raster: Raster,
    band_a: str,
    band_b: str,
    name: str,
) -> Raster:
    """
    Append the normalized difference (A - B) / (A + B) as band ``name``.

    Pixels where either input is invalid or A + B == 0 become invalid; no
    division warning is raised and no NaN is left on a valid pixel.

    Returns
    -------
    Raster
        Input bands plus ``name``, with the validity grid narrowed
    """
    a = raster.band(band_a).astype(np.float64)
    b = raster.band(band_b).astype(np.float64)

    denom = a + b
    with np.errstate(divide='ignore', invalid='ignore'):
        index = np.where(denom == 0, np.nan, (a - b) / denom)

    defined = np.isfinite(index)
    index = np.where(defined, index, 0.0).astype(np.float32)
    return raster.with_band(name, index, valid=defined)


def add_ndvi(raster: Raster, red: str = RED_BAND, nir: str = NIR_BAND) -> Raster:
    """
    Compute Normalized Difference Vegetation Index.

    NDVI = (NIR - Red) / (NIR + Red)
    """
    return normalized_difference(raster, nir, red, NDVI_BAND)


def prepare_scene(scene: Scene) -> Raster:
    """Cloud-mask a scene and add its NDVI band."""
    masked = add_ndvi(mask_clouds(scene))
    logger.debug(
        "Scene %s: %d/%d clear pixels",
        scene.scene_id, int(masked.valid.sum()), masked.valid.size,
    )
    return masked
