"""
End-to-end alert analysis.

This module handles:
- Validated analysis parameters (region, two date windows, thresholds)
- Running both composites in parallel, then classification and cleanup
- Degrading empty windows to no-data results instead of failures
- Re-running analyses in the background, superseding stale runs
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Optional, Tuple, Union

import dask
import numpy as np
import xarray as xr

from .change import CANDIDATE_BAND, classify_change, summarize_alerts
from .compositing import composite
from .config import DisplayHints, ThresholdConfig
from .data_loader import CancelToken, SceneSource
from .errors import AnalysisCancelledError, InvalidConfigError, RegionNotFoundError
from .postprocessing import erode, filter_by_size
from .preprocessing import NDVI_BAND
from .raster import AlertMask, CompositeImage, Raster
from .regions import Region, RegionCatalog, boundary_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisParams:
    """
    What to analyse.

    Parameters
    ----------
    region : Region, str or None
        Boundary, or a sub-region name resolved through a RegionCatalog.
        None analyses the whole source grid without clipping.
    baseline_start, baseline_end : date
        Reference window, start inclusive, end exclusive
    current_start, current_end : date
        Window compared against the baseline
    config : ThresholdConfig
        Thresholds and cleanup options
    """

    region: Union[Region, str, None]
    baseline_start: date
    baseline_end: date
    current_start: date
    current_end: date
    config: ThresholdConfig = field(default_factory=ThresholdConfig)

    def __post_init__(self):
        for name, (start, end) in self.windows.items():
            if not isinstance(start, date) or not isinstance(end, date):
                raise InvalidConfigError(f"{name} window bounds must be dates")
            if start >= end:
                raise InvalidConfigError(f"{name} window start {start} must precede end {end}")
        if not isinstance(self.config, ThresholdConfig):
            raise InvalidConfigError("config must be a ThresholdConfig")

    @property
    def windows(self) -> Dict[str, Tuple[date, date]]:
        return {
            'baseline': (self.baseline_start, self.baseline_end),
            'current': (self.current_start, self.current_end),
        }

    @property
    def region_name(self) -> Optional[str]:
        if isinstance(self.region, Region):
            return self.region.name
        return self.region


@dataclass(frozen=True, eq=False)
class AnalysisResult:
    """Everything a run produced, ready for reporting or display."""

    params: AnalysisParams
    region: Optional[Region]
    baseline: CompositeImage
    current: CompositeImage
    candidates: Raster
    alerts: AlertMask
    statistics: Dict
    hints: DisplayHints = field(default_factory=DisplayHints)
    no_data: Tuple[str, ...] = ()

    @property
    def has_data(self) -> bool:
        return not self.no_data

    def to_dataset(self) -> xr.Dataset:
        """
        Analysis layers as one Dataset on the alert grid.

        Variables: ``baseline_ndvi`` and ``current_ndvi`` (NaN where the
        composite is invalid), ``candidate``, ``alert`` and ``patch_size``.
        """
        ds = xr.Dataset({
            'baseline_ndvi': self.baseline.raster.to_xarray()[NDVI_BAND],
            'current_ndvi': self.current.raster.to_xarray()[NDVI_BAND],
        })
        ds['candidate'] = (('y', 'x'), np.asarray(self.candidates.band(CANDIDATE_BAND)))
        ds['alert'] = (('y', 'x'), np.asarray(self.alerts.values))
        ds['patch_size'] = (('y', 'x'), np.asarray(self.alerts.patch_size))
        ds.attrs['crs'] = self.alerts.geobox.crs
        ds.attrs['region'] = self.params.region_name or ''
        ds.attrs['no_data'] = ','.join(self.no_data)
        return ds


def resolve_region(region, catalog: Optional[RegionCatalog]) -> Optional[Region]:
    """Region instance for a Region, a catalog name or None."""
    if region is None or isinstance(region, Region):
        return region
    if catalog is None:
        raise RegionNotFoundError(region)
    return boundary_for(catalog, region)


def _check(cancel_token: Optional[CancelToken]) -> None:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()


def build_composite(
    source: SceneSource,
    region: Optional[Region],
    start: date,
    end: date,
    config: ThresholdConfig,
    cancel_token: Optional[CancelToken] = None,
) -> CompositeImage:
    """Query one window and reduce it to a median composite."""
    collection = source.query(region, start, end, config.max_cloud_cover_pct, cancel_token)
    _check(cancel_token)
    logger.info(
        "%s [%s, %s): %d scenes below %.0f%% cloud",
        region.name if region is not None else 'grid', start, end,
        len(collection), config.max_cloud_cover_pct,
    )
    return composite(collection, start, end, region)


def detect_alerts(
    baseline: CompositeImage,
    current: CompositeImage,
    config: ThresholdConfig,
) -> Tuple[Raster, AlertMask]:
    """
    Classify, erode and size-filter.

    Returns
    -------
    tuple
        (candidates, alerts)
    """
    candidates = classify_change(baseline, current, config)
    cleaned = erode(candidates, config.erosion_radius)
    alerts = filter_by_size(
        cleaned,
        connectivity=config.connectivity,
        min_size=config.min_patch_size,
        search_radius=config.search_radius,
        method=config.component_method,
    )
    return candidates, alerts


def run_analysis(
    params: AnalysisParams,
    source: SceneSource,
    catalog: Optional[RegionCatalog] = None,
    cancel_token: Optional[CancelToken] = None,
    parallel: bool = True,
) -> AnalysisResult:
    """
    Run the full alert pipeline for one region and two windows.

    Parameters
    ----------
    params : AnalysisParams
        Region, windows and thresholds
    source : SceneSource
        Where scenes come from
    catalog : RegionCatalog, optional
        Needed when ``params.region`` is a name
    cancel_token : CancelToken, optional
        Checked between stages and passed to the source
    parallel : bool
        Build both composites concurrently on the dask threaded scheduler

    Returns
    -------
    AnalysisResult
        A window without data gives an all-invalid composite, no alerts and
        its name in ``no_data``.

    Raises
    ------
    RegionNotFoundError
        If the region name is unknown
    SourceUnavailableError
        If the source cannot be reached
    AnalysisCancelledError
        If ``cancel_token`` fires
    """
    config = params.config
    region = resolve_region(params.region, catalog)
    _check(cancel_token)

    windows = params.windows
    if parallel:
        tasks = [
            dask.delayed(build_composite)(source, region, start, end, config, cancel_token)
            for start, end in windows.values()
        ]
        baseline, current = dask.compute(*tasks, scheduler='threads')
    else:
        baseline, current = (
            build_composite(source, region, start, end, config, cancel_token)
            for start, end in windows.values()
        )
    _check(cancel_token)

    no_data = tuple(
        name for name, image in (('baseline', baseline), ('current', current))
        if image.is_empty
    )
    for name in no_data:
        logger.warning("No valid %s observations: alerts will be empty", name)

    candidates, alerts = detect_alerts(baseline, current, config)
    _check(cancel_token)

    statistics = summarize_alerts(alerts, candidates)
    statistics['baseline_scenes'] = baseline.n_scenes
    statistics['current_scenes'] = current.n_scenes

    logger.info(
        "%s: %d alert pixels in %d patches (%.2f ha)",
        params.region_name or 'grid', statistics['alert_pixels'],
        statistics['n_patches'], statistics['alert_area_ha'],
    )
    return AnalysisResult(
        params=params,
        region=region,
        baseline=baseline,
        current=current,
        candidates=candidates,
        alerts=alerts,
        statistics=statistics,
        hints=DisplayHints(),
        no_data=no_data,
    )


class AnalysisRunner:
    """
    Background runner for interactive re-analysis.

    Each ``rerun`` cancels the run in flight. A superseded run's future
    raises AnalysisCancelledError instead of delivering a stale result.
    """

    def __init__(self, source: SceneSource, catalog: Optional[RegionCatalog] = None, max_workers: int = 2):
        self.source = source
        self.catalog = catalog
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="analysis")
        self._lock = threading.Lock()
        self._token: Optional[CancelToken] = None
        self._generation = 0

    def rerun(self, params: AnalysisParams) -> Future:
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            token = CancelToken()
            self._token = token
            self._generation += 1
            generation = self._generation
        return self._executor.submit(self._run, params, token, generation)

    def _run(self, params: AnalysisParams, token: CancelToken, generation: int) -> AnalysisResult:
        result = run_analysis(params, self.source, self.catalog, cancel_token=token)
        with self._lock:
            if generation != self._generation or token.cancelled:
                raise AnalysisCancelledError("Analysis superseded by a newer run")
        return result

    def cancel(self) -> None:
        with self._lock:
            if self._token is not None:
                self._token.cancel()

    def shutdown(self, wait: bool = True) -> None:
        self.cancel()
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
