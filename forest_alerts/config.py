"""
Threshold configuration, presets and display hints.

Every stage receives an explicit, immutable ThresholdConfig. Validation runs
eagerly on construction so that a bad option is rejected before any raster
work starts.
"""

import json
import math
from dataclasses import asdict, dataclass, fields, replace as _replace
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import InvalidConfigError


# Keys of the language-neutral configuration surface
CAMEL_CASE_KEYS = {
    'forestThreshold': 'forest_threshold',
    'bareThreshold': 'bare_threshold',
    'minDrop': 'min_drop',
    'erosionRadius': 'erosion_radius',
    'connectivity': 'connectivity',
    'minPatchSize': 'min_patch_size',
    'searchRadius': 'search_radius',
    'componentMethod': 'component_method',
    'maxCloudCoverPct': 'max_cloud_cover_pct',
}

COMPONENT_METHODS = ('exact', 'windowed')


def _check_unit_interval(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise InvalidConfigError(f"{name} must be a number, got {value!r}")
    if not 0.0 <= value <= 1.0:
        raise InvalidConfigError(f"{name} must lie in [0, 1], got {value}")


def _check_int(name: str, value, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfigError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise InvalidConfigError(f"{name} must be >= {minimum}, got {value}")


@dataclass(frozen=True)
class ThresholdConfig:
    """
    Numeric thresholds for one alert run.

    Parameters
    ----------
    forest_threshold : float
        Baseline NDVI must exceed this for a pixel to count as forest.
    bare_threshold : float
        Current NDVI must fall below this for a pixel to count as bare.
    min_drop : float, optional
        If set, baseline minus current NDVI must exceed this as well.
    erosion_radius : int
        Square erosion radius applied before patch counting (0 = skip).
    connectivity : int
        4 (orthogonal neighbours) or 8 (orthogonal and diagonal).
    min_patch_size : int
        Patches with fewer pixels are discarded.
    search_radius : int
        Tile side used by the windowed component counter.
    component_method : str
        'exact' (global labelling) or 'windowed' (tile-local lower bound).
    max_cloud_cover_pct : float
        Scenes must have strictly less scene-level cloud cover than this.
    """

    forest_threshold: float = 0.75
    bare_threshold: float = 0.40
    min_drop: Optional[float] = None
    erosion_radius: int = 0
    connectivity: int = 8
    min_patch_size: int = 21
    search_radius: int = 100
    component_method: str = 'exact'
    max_cloud_cover_pct: float = 30.0

    def __post_init__(self):
        _check_unit_interval('forest_threshold', self.forest_threshold)
        _check_unit_interval('bare_threshold', self.bare_threshold)
        if self.min_drop is not None:
            _check_unit_interval('min_drop', self.min_drop)
        _check_int('erosion_radius', self.erosion_radius, 0)
        if self.connectivity not in (4, 8) or isinstance(self.connectivity, bool):
            raise InvalidConfigError(f"connectivity must be 4 or 8, got {self.connectivity!r}")
        _check_int('min_patch_size', self.min_patch_size, 1)
        _check_int('search_radius', self.search_radius, 1)
        if self.component_method not in COMPONENT_METHODS:
            raise InvalidConfigError(
                f"component_method must be one of {COMPONENT_METHODS}, got {self.component_method!r}"
            )
        cloud = self.max_cloud_cover_pct
        if isinstance(cloud, bool) or not isinstance(cloud, (int, float)) or not 0.0 <= cloud <= 100.0:
            raise InvalidConfigError(f"max_cloud_cover_pct must lie in [0, 100], got {cloud!r}")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "ThresholdConfig":
        """
        Build a config from snake_case or camelCase option names.

        Raises
        ------
        InvalidConfigError
            On unknown keys or out-of-range values
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in mapping.items():
            name = CAMEL_CASE_KEYS.get(key, key)
            if name not in known:
                raise InvalidConfigError(f"Unknown configuration option: {key}")
            kwargs[name] = value
        return cls(**kwargs)

    def replace(self, **overrides) -> "ThresholdConfig":
        """Copy with the given fields changed and re-validated; None values are ignored."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return _replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Earlier alert runs kept patches with count > N, hence the +1 on the
# minimum sizes below.
PRESETS: Dict[str, ThresholdConfig] = {
    'standard': ThresholdConfig(
        forest_threshold=0.75,
        bare_threshold=0.40,
        min_patch_size=21,
        search_radius=100,
        max_cloud_cover_pct=30.0,
    ),
    'low_false_positives': ThresholdConfig(
        forest_threshold=0.80,
        bare_threshold=0.30,
        min_drop=0.40,
        erosion_radius=1,
        min_patch_size=250,
        search_radius=500,
        max_cloud_cover_pct=30.0,
    ),
    'monthly': ThresholdConfig(
        forest_threshold=0.75,
        bare_threshold=0.40,
        min_patch_size=6,
        search_radius=50,
        max_cloud_cover_pct=50.0,
    ),
}


def get_preset(name: str) -> ThresholdConfig:
    try:
        return PRESETS[name]
    except KeyError:
        raise InvalidConfigError(
            f"Unknown preset '{name}'. Choose from: {', '.join(sorted(PRESETS))}"
        ) from None


def load_config(path: str) -> ThresholdConfig:
    """
    Load a ThresholdConfig from a JSON file.

    The file holds a mapping of options, optionally with a ``preset`` key
    whose values are overridden by the remaining options.
    """
    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as e:
        raise InvalidConfigError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f"Malformed config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidConfigError(f"Config file {path} must hold a JSON object")

    data = dict(data)
    preset = data.pop('preset', None)
    if preset is None:
        return ThresholdConfig.from_mapping(data)

    base = get_preset(preset).to_dict()
    overrides = {CAMEL_CASE_KEYS.get(k, k): v for k, v in data.items()}
    return ThresholdConfig.from_mapping({**base, **overrides})


@dataclass(frozen=True)
class DisplayHints:
    """Rendering intent handed to the visualization collaborator."""

    ndvi_range: Tuple[float, float] = (0.0, 0.8)
    ndvi_palette: Tuple[str, ...] = ('red', 'orange', 'yellow', 'green', 'darkgreen')
    true_color_bands: Tuple[str, str, str] = ('b04', 'b03', 'b02')
    true_color_range: Tuple[float, float] = (0.0, 0.25)
    alert_palette: Tuple[str, ...] = ('red',)
    protected_area_color: str = 'green'
