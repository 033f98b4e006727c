"""
Command line entry point: ``forest-alerts``.

Runs one alert analysis over a directory of GeoTIFF scenes and writes the
alert raster, patch sizes, a patch table and a JSON summary.
"""

import argparse
import logging
import os
import sys
from datetime import date
from typing import List, Optional

from .config import PRESETS, ThresholdConfig, get_preset, load_config
from .data_loader import DEFAULT_FILE_BANDS, CachedSceneSource, GeoTiffSceneSource
from .errors import (
    EmptySceneCollectionError,
    InvalidConfigError,
    RegionNotFoundError,
    SourceUnavailableError,
)
from .export import write_outputs
from .pipeline import AnalysisParams, run_analysis
from .regions import RegionCatalog, areas_within, load_protected_areas

logger = logging.getLogger("forest_alerts")


def _date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got '{value}'") from None


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="forest-alerts",
        description="Detect forest loss between two date windows of Sentinel-2 scenes.",
    )
    ap.add_argument("scenes_dir", help="Directory of per-scene multi-band GeoTIFFs.")
    ap.add_argument("--baseline", nargs=2, type=_date, metavar=("START", "END"), required=True,
                    help="Baseline window, end exclusive.")
    ap.add_argument("--current", nargs=2, type=_date, metavar=("START", "END"), required=True,
                    help="Current window, end exclusive.")
    ap.add_argument("--preset", choices=sorted(PRESETS), default=None,
                    help="Start from a named threshold preset.")
    ap.add_argument("--config", default=None, help="JSON file with threshold options.")
    ap.add_argument("--forest-threshold", type=float, default=None)
    ap.add_argument("--bare-threshold", type=float, default=None)
    ap.add_argument("--min-drop", type=float, default=None)
    ap.add_argument("--erosion-radius", type=int, default=None)
    ap.add_argument("--connectivity", type=int, choices=[4, 8], default=None)
    ap.add_argument("--min-patch-size", type=int, default=None)
    ap.add_argument("--component-method", choices=["exact", "windowed"], default=None)
    ap.add_argument("--search-radius", type=int, default=None)
    ap.add_argument("--max-cloud-pct", type=float, default=None,
                    help="Keep scenes with cloud cover strictly below this.")
    ap.add_argument("--regions", default=None, help="Vector file of sub-region boundaries.")
    ap.add_argument("--region", default=None, help="Sub-region name (needs --regions).")
    ap.add_argument("--name-field", default="ADM2_NAME", help="Sub-region name column. Default: ADM2_NAME")
    ap.add_argument("--parent-field", default="ADM1_NAME", help="Parent name column. Default: ADM1_NAME")
    ap.add_argument("--parent", default=None, help="Keep only sub-regions of this parent.")
    ap.add_argument("--protected-areas", default=None,
                    help="Vector file of protected areas outlined on the alert map (needs --plot).")
    ap.add_argument("--bands", nargs="+", default=list(DEFAULT_FILE_BANDS),
                    help="Band names in file order when the GeoTIFFs carry no descriptions.")
    ap.add_argument("--out", default="outputs", help="Output directory. Default: outputs")
    ap.add_argument("--plot", action="store_true", help="Also save PNG maps.")
    ap.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")
    return ap


def resolve_config(args) -> ThresholdConfig:
    """Preset, then config file, then individual flags."""
    if args.config:
        config = load_config(args.config)
        if args.preset:
            logger.warning("--config given, ignoring --preset %s", args.preset)
    elif args.preset:
        config = get_preset(args.preset)
    else:
        config = ThresholdConfig()

    return config.replace(
        forest_threshold=args.forest_threshold,
        bare_threshold=args.bare_threshold,
        min_drop=args.min_drop,
        erosion_radius=args.erosion_radius,
        connectivity=args.connectivity,
        min_patch_size=args.min_patch_size,
        component_method=args.component_method,
        search_radius=args.search_radius,
        max_cloud_cover_pct=args.max_cloud_pct,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = resolve_config(args)
        catalog = None
        region = None
        protected_areas = None
        if args.region:
            if not args.regions:
                raise InvalidConfigError("--region needs --regions")
            catalog = RegionCatalog.from_file(
                args.regions, args.name_field, args.parent_field, args.parent,
            )
            region = args.region
        if args.protected_areas:
            protected_areas = load_protected_areas(args.protected_areas)
        params = AnalysisParams(
            region=region,
            baseline_start=args.baseline[0],
            baseline_end=args.baseline[1],
            current_start=args.current[0],
            current_end=args.current[1],
            config=config,
        )
    except (InvalidConfigError, RegionNotFoundError, KeyError) as e:
        logger.error("%s", e)
        return 2

    source = CachedSceneSource(GeoTiffSceneSource(args.scenes_dir, band_names=args.bands, show_progress=True))
    try:
        result = run_analysis(params, source, catalog)
    except RegionNotFoundError as e:
        logger.error("%s", e)
        return 2
    except (SourceUnavailableError, EmptySceneCollectionError) as e:
        logger.error("%s", e)
        return 1

    write_outputs(result, args.out)

    if args.plot:
        from .visualization import plot_alert_map, plot_ndvi, plot_true_color

        if protected_areas is not None and result.region is not None:
            protected_areas = areas_within(protected_areas, result.region)
        plot_alert_map(result, protected_areas, output_path=os.path.join(args.out, 'alert_map.png'))
        for name, image in (('baseline', result.baseline), ('current', result.current)):
            if name in result.no_data:
                continue
            plot_true_color(image, result.hints, output_path=os.path.join(args.out, f'{name}_true_color.png'))
            plot_ndvi(image, result.hints, output_path=os.path.join(args.out, f'{name}_ndvi.png'))

    stats = result.statistics
    print(f"Alert pixels: {stats['alert_pixels']} in {stats['n_patches']} patches "
          f"({stats['alert_area_ha']:.2f} ha)")
    if result.no_data:
        print(f"No data for: {', '.join(result.no_data)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
