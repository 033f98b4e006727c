"""
Forest-loss change detection between two composites.

This module handles:
- Threshold classification of baseline vs current NDVI
- Summary statistics for candidate and confirmed alerts
"""

import logging
from typing import Dict, Optional

from .config import ThresholdConfig
from .postprocessing import label_components
from .preprocessing import NDVI_BAND
from .raster import AlertMask, CompositeImage, Raster, ensure_same_grid

logger = logging.getLogger(__name__)


CANDIDATE_BAND = 'candidate'


def _raster(image) -> Raster:
    return image.raster if isinstance(image, CompositeImage) else image


def classify_change(
    baseline,
    current,
    config: ThresholdConfig,
    band: str = NDVI_BAND,
) -> Raster:
    """
    Flag pixels that went from forest to bare ground.

    was_forest = baseline > forest_threshold
    is_bare    = current < bare_threshold
    large_drop = baseline - current > min_drop   (only if min_drop is set)

    A pixel is a candidate only if every enabled predicate holds and it is
    valid in both inputs; a gap in either period never produces a match.

    Parameters
    ----------
    baseline, current : CompositeImage or Raster
        Composites holding ``band`` on the same grid
    config : ThresholdConfig
        Thresholds to apply
    band : str
        Index band to compare

    Returns
    -------
    Raster
        Boolean band ``candidate``; validity = valid in both inputs
    """
    base = _raster(baseline)
    curr = _raster(current)
    geobox = ensure_same_grid(base, curr)

    both_valid = base.valid & curr.valid
    base_idx = base.band(band)
    curr_idx = curr.band(band)

    was_forest = base_idx > config.forest_threshold
    is_bare = curr_idx < config.bare_threshold
    candidate = was_forest & is_bare
    if config.min_drop is not None:
        candidate &= (base_idx - curr_idx) > config.min_drop
    candidate &= both_valid

    logger.debug(
        "Classifier: %d forest, %d bare, %d candidate pixels",
        int((was_forest & base.valid).sum()), int((is_bare & curr.valid).sum()), int(candidate.sum()),
    )
    return Raster({CANDIDATE_BAND: candidate}, both_valid, geobox)


def summarize_alerts(
    alerts: AlertMask,
    candidates: Optional[Raster] = None,
) -> Dict:
    """
    Summarize an alert mask as statistics.

    Parameters
    ----------
    alerts : AlertMask
        Output of filter_by_size()
    candidates : Raster, optional
        Classifier output, for candidate counts and the valid-pixel base

    Returns
    -------
    dict
        Pixel counts, percentages, patch counts and alert area in hectares
    """
    values = alerts.values
    total_pixels = values.size
    valid = candidates.valid if candidates is not None else alerts.raster.valid
    valid_pixels = int(valid.sum())
    alert_pixels = int(values.sum())

    _, sizes = label_components(values, alerts.connectivity)
    n_patches = len(sizes) - 1
    pixel_ha = alerts.geobox.pixel_area / 10000.0

    stats = {
        'total_pixels': int(total_pixels),
        'valid_pixels': valid_pixels,
        'valid_pct': 100 * valid_pixels / total_pixels if total_pixels else 0.0,
        'alert_pixels': alert_pixels,
        'alert_pct': 100 * alert_pixels / valid_pixels if valid_pixels else 0.0,
        'alert_area_ha': alert_pixels * pixel_ha,
        'n_patches': n_patches,
        'largest_patch_pixels': int(sizes.max()) if n_patches else 0,
        'min_patch_size': alerts.min_size,
        'connectivity': alerts.connectivity,
    }
    if candidates is not None:
        stats['candidate_pixels'] = int(candidates.band(CANDIDATE_BAND).sum())
        stats['suppressed_pixels'] = stats['candidate_pixels'] - alert_pixels

    return stats
