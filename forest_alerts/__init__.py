"""
Forest Alerts: Sentinel-2 Forest Loss Detection
===============================================

Modules:
    raster: Grids, rasters with validity masks, scenes and composites
    config: Threshold configuration, presets and display hints
    data_loader: Scene sources (in-memory, GeoTIFF, STAC), caching and retry
    preprocessing: Cloud masking and NDVI
    compositing: Median temporal composites
    change: Forest-to-bare classification and alert statistics
    postprocessing: Erosion and connected-patch size filtering
    regions: Named sub-region boundaries, clipping and protected areas
    pipeline: End-to-end analysis and background re-runs
    export: GeoTIFF, CSV and JSON outputs
    visualization: Plotting utilities
"""

from .errors import (
    ForestAlertsError,
    MissingBandError,
    EmptySceneCollectionError,
    RegionNotFoundError,
    SourceUnavailableError,
    InvalidConfigError,
    GridMismatchError,
    AnalysisCancelledError,
)

from .raster import GeoBox, Raster, Scene, SceneCollection, CompositeImage, AlertMask

from .config import ThresholdConfig, DisplayHints, PRESETS, get_preset, load_config

from .data_loader import (
    CancelToken,
    SceneSource,
    InMemorySceneSource,
    GeoTiffSceneSource,
    StacSceneSource,
    CachedSceneSource,
    RetryingSceneSource,
    fetch_scenes,
    reproject_bbox,
)

from .preprocessing import mask_clouds, normalized_difference, add_ndvi

from .compositing import composite, median_reduce

from .change import classify_change, summarize_alerts

from .postprocessing import erode, label_components, filter_by_size, patch_table

from .regions import Region, RegionCatalog, boundary_for, load_protected_areas, region_mask

from .pipeline import AnalysisParams, AnalysisResult, AnalysisRunner, run_analysis

from .export import write_geotiff, write_outputs

from .visualization import plot_true_color, plot_ndvi, plot_alert_map

__version__ = "0.1.0"
