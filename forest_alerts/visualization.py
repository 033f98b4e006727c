"""
Visualization utilities for forest-loss alerts.

This module handles:
- True-color and NDVI composite maps
- Baseline vs current comparison with alerts overlaid
- Protected-area outlines over the alert maps
- Patch size histograms
"""

import logging
import os
from typing import Optional, Tuple

import matplotlib.patches as mpatches
import matplotlib.pyplot as plt
import numpy as np
from matplotlib.colors import LinearSegmentedColormap, ListedColormap
from matplotlib.lines import Line2D

from .config import DisplayHints
from .preprocessing import NDVI_BAND
from .raster import CompositeImage

logger = logging.getLogger(__name__)


def _save(fig: plt.Figure, output_path: Optional[str]) -> None:
    if output_path:
        os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
        fig.savefig(output_path, dpi=300, bbox_inches='tight')
        logger.info("Saved: %s", output_path)


def _extent(composite: CompositeImage):
    xmin, ymin, xmax, ymax = composite.geobox.bounds
    return [xmin, xmax, ymin, ymax]


def _window_label(composite: CompositeImage) -> str:
    return f"{composite.start} to {composite.end} ({composite.n_scenes} scenes)"


def true_color_image(composite: CompositeImage, hints: DisplayHints = DisplayHints()) -> np.ndarray:
    """
    RGBA array of a composite, stretched to ``hints.true_color_range``.

    Invalid pixels are fully transparent.
    """
    vmin, vmax = hints.true_color_range
    rgb = np.stack([composite.band(b) for b in hints.true_color_bands], axis=-1).astype(np.float64)
    rgb = np.clip((rgb - vmin) / (vmax - vmin), 0, 1)
    alpha = composite.valid.astype(np.float64)[..., None]
    return np.concatenate([rgb, alpha], axis=-1)


def _ndvi_cmap(hints: DisplayHints) -> LinearSegmentedColormap:
    cmap = LinearSegmentedColormap.from_list('ndvi', list(hints.ndvi_palette))
    return cmap.with_extremes(bad=(0, 0, 0, 0))


def plot_true_color(
    composite: CompositeImage,
    hints: DisplayHints = DisplayHints(),
    title: Optional[str] = None,
    output_path: Optional[str] = None,
    figsize: Tuple[int, int] = (8, 8),
) -> plt.Figure:
    """
    Plot a composite as a true-color (red, green, blue) image.

    Parameters
    ----------
    composite : CompositeImage
        Composite holding the bands named in ``hints.true_color_bands``
    hints : DisplayHints
        Band choice and reflectance stretch
    title : str, optional
        Figure title
    output_path : str, optional
        Path to save figure
    figsize : tuple
        Figure size

    Returns
    -------
    plt.Figure
        The generated figure
    """
    fig, ax = plt.subplots(figsize=figsize)
    ax.imshow(true_color_image(composite, hints), extent=_extent(composite))
    ax.set_title(title or f"True color, {_window_label(composite)}", fontsize=12, fontweight='bold')
    ax.set_xlabel('Easting (m)')
    ax.set_ylabel('Northing (m)')
    plt.tight_layout()
    _save(fig, output_path)
    return fig


def plot_ndvi(
    composite: CompositeImage,
    hints: DisplayHints = DisplayHints(),
    title: Optional[str] = None,
    output_path: Optional[str] = None,
    figsize: Tuple[int, int] = (8, 8),
) -> plt.Figure:
    """Plot the NDVI band of a composite with the NDVI palette."""
    vmin, vmax = hints.ndvi_range
    ndvi = composite.raster.masked(NDVI_BAND)

    fig, ax = plt.subplots(figsize=figsize)
    im = ax.imshow(
        np.ma.masked_invalid(ndvi),
        cmap=_ndvi_cmap(hints),
        vmin=vmin,
        vmax=vmax,
        extent=_extent(composite),
    )
    fig.colorbar(im, ax=ax, shrink=0.8, label='NDVI')
    ax.set_title(title or f"NDVI, {_window_label(composite)}", fontsize=12, fontweight='bold')
    ax.set_xlabel('Easting (m)')
    ax.set_ylabel('Northing (m)')
    plt.tight_layout()
    _save(fig, output_path)
    return fig


def _plot_outlines(ax, areas, crs: Optional[str], extent, color: str) -> None:
    if areas.crs is not None and crs is not None:
        areas = areas.to_crs(crs)
    areas.boundary.plot(ax=ax, color=color, linewidth=1.0)
    ax.set_xlim(extent[0], extent[1])
    ax.set_ylim(extent[2], extent[3])


def plot_alert_map(
    result,
    protected_areas=None,
    title: Optional[str] = None,
    output_path: Optional[str] = None,
    figsize: Tuple[int, int] = (16, 8),
) -> plt.Figure:
    """
    Baseline and current NDVI side by side, alerts overlaid on the current.

    Parameters
    ----------
    result : AnalysisResult
        Output of run_analysis()
    protected_areas : gpd.GeoDataFrame, optional
        Polygons outlined on both maps in ``hints.protected_area_color``,
        e.g. from regions.load_protected_areas()
    title : str, optional
        Custom title
    output_path : str, optional
        Path to save figure
    figsize : tuple
        Figure size

    Returns
    -------
    plt.Figure
        The generated figure
    """
    hints = result.hints
    vmin, vmax = hints.ndvi_range
    cmap = _ndvi_cmap(hints)
    alert_cmap = ListedColormap(list(hints.alert_palette))
    ds = result.to_dataset()
    extent = _extent(result.current)
    outlines = protected_areas is not None and len(protected_areas) > 0

    fig, axes = plt.subplots(1, 2, figsize=figsize)
    panels = zip(axes, (result.baseline, result.current), ('Baseline', 'Current'))
    for ax, image, name in panels:
        ax.imshow(
            np.ma.masked_invalid(ds[f'{name.lower()}_ndvi'].values),
            cmap=cmap, vmin=vmin, vmax=vmax, extent=extent,
        )
        if outlines:
            _plot_outlines(ax, protected_areas, ds.attrs['crs'], extent, hints.protected_area_color)
        label = 'no data' if name.lower() in result.no_data else _window_label(image)
        ax.set_title(f"{name}: {label}", fontsize=11, fontweight='bold')
        ax.axis('off')

    alerts = ds['alert'].values
    axes[1].imshow(
        np.ma.masked_where(~alerts, alerts.astype(np.uint8)),
        cmap=alert_cmap, vmin=0, vmax=1, extent=extent,
        interpolation='nearest',
    )
    handles = [mpatches.Patch(color=hints.alert_palette[0], label='Forest loss alert')]
    if outlines:
        handles.append(Line2D([0], [0], color=hints.protected_area_color, label='Protected area'))
    axes[1].legend(handles=handles, loc='lower right', fontsize=9)

    stats = result.statistics
    stats_text = (
        f"Alerts: {stats['alert_pixels']} px ({stats['alert_area_ha']:.2f} ha)\n"
        f"Patches: {stats['n_patches']} (>= {stats['min_patch_size']} px)\n"
        f"Valid: {stats['valid_pct']:.1f}%"
    )
    axes[1].text(0.02, 0.02, stats_text, transform=axes[1].transAxes,
                 fontsize=9, verticalalignment='bottom',
                 bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    if title is None:
        title = f"Forest loss alerts: {result.params.region_name or 'study area'}"
    fig.suptitle(title, fontsize=14, fontweight='bold')
    plt.tight_layout()
    _save(fig, output_path)
    return fig


def plot_patch_sizes(
    result,
    bins: int = 30,
    output_path: Optional[str] = None,
    figsize: Tuple[int, int] = (8, 5),
) -> plt.Figure:
    """Histogram of alert patch sizes in hectares."""
    from .postprocessing import patch_table

    table = patch_table(result.alerts)
    fig, ax = plt.subplots(figsize=figsize)
    if len(table):
        ax.hist(table['area_ha'], bins=bins, color=result.hints.alert_palette[0], alpha=0.8)
    else:
        ax.text(0.5, 0.5, 'No alert patches', ha='center', va='center', transform=ax.transAxes)
    ax.set_xlabel('Patch area (ha)')
    ax.set_ylabel('Patches')
    ax.set_title('Alert patch sizes', fontsize=12, fontweight='bold')
    plt.tight_layout()
    _save(fig, output_path)
    return fig
