"""
Writing analysis outputs to disk.

This module handles:
- Single-band GeoTIFFs on the analysis grid
- Patch tables (CSV) and run summaries (JSON)
"""

import json
import logging
import os
from datetime import date
from typing import Dict

import numpy as np
import rasterio

from .postprocessing import patch_table
from .raster import GeoBox

logger = logging.getLogger(__name__)


def write_geotiff(path: str, array: np.ndarray, geobox: GeoBox, nodata=None) -> str:
    """
    Write a single-band GeoTIFF on ``geobox``.

    Boolean arrays are stored as uint8 (1 = True).
    """
    if array.dtype == bool:
        array = array.astype(np.uint8)
    rows, cols = geobox.shape
    profile = {
        'driver': 'GTiff',
        'height': rows,
        'width': cols,
        'count': 1,
        'dtype': str(array.dtype),
        'transform': geobox.transform,
        'compress': 'deflate',
    }
    if geobox.crs is not None:
        profile['crs'] = geobox.crs
    if nodata is not None:
        profile['nodata'] = nodata

    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    with rasterio.open(path, 'w', **profile) as dst:
        dst.write(array, 1)
    logger.info("Saved: %s", path)
    return path


def _json_default(value):
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, np.generic):
        return value.item()
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def run_summary(result) -> Dict:
    """JSON-ready description of an AnalysisResult."""
    params = result.params
    return {
        'region': params.region_name,
        'baseline': {'start': params.baseline_start, 'end': params.baseline_end,
                     'scenes': result.baseline.n_scenes},
        'current': {'start': params.current_start, 'end': params.current_end,
                    'scenes': result.current.n_scenes},
        'config': params.config.to_dict(),
        'no_data': list(result.no_data),
        'statistics': result.statistics,
    }


def write_outputs(result, out_dir: str) -> Dict[str, str]:
    """
    Write alerts.tif, patch_size.tif, patches.csv and summary.json.

    Returns
    -------
    dict
        {output name: path}
    """
    os.makedirs(out_dir, exist_ok=True)
    geobox = result.alerts.geobox
    paths = {
        'alerts': write_geotiff(os.path.join(out_dir, 'alerts.tif'), result.alerts.values, geobox),
        'patch_size': write_geotiff(
            os.path.join(out_dir, 'patch_size.tif'), result.alerts.patch_size.astype(np.int32), geobox, nodata=0,
        ),
    }

    csv_path = os.path.join(out_dir, 'patches.csv')
    patch_table(result.alerts).to_csv(csv_path, index=False)
    logger.info("Saved: %s", csv_path)
    paths['patches'] = csv_path

    json_path = os.path.join(out_dir, 'summary.json')
    with open(json_path, 'w') as f:
        json.dump(run_summary(result), f, indent=2, default=_json_default)
    logger.info("Saved: %s", json_path)
    paths['summary'] = json_path
    return paths
