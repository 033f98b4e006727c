import json

import pytest

from forest_alerts.config import PRESETS, DisplayHints, ThresholdConfig, get_preset, load_config
from forest_alerts.errors import InvalidConfigError


def test_defaults():
    config = ThresholdConfig()
    assert config.forest_threshold == 0.75
    assert config.bare_threshold == 0.40
    assert config.min_drop is None
    assert config.connectivity == 8
    assert config.component_method == 'exact'


@pytest.mark.parametrize('kwargs', [
    {'forest_threshold': 1.2},
    {'bare_threshold': -0.1},
    {'bare_threshold': float('nan')},
    {'min_drop': 2.0},
    {'erosion_radius': -1},
    {'connectivity': 6},
    {'min_patch_size': 0},
    {'min_patch_size': 3.5},
    {'search_radius': 0},
    {'component_method': 'fuzzy'},
    {'max_cloud_cover_pct': 120},
])
def test_invalid_values_are_rejected(kwargs):
    with pytest.raises(InvalidConfigError):
        ThresholdConfig(**kwargs)


def test_invalid_config_is_a_value_error():
    with pytest.raises(ValueError):
        ThresholdConfig(connectivity=5)


def test_from_mapping_accepts_camel_case():
    config = ThresholdConfig.from_mapping({
        'forestThreshold': 0.8,
        'bareThreshold': 0.3,
        'minPatchSize': 50,
        'erosion_radius': 1,
    })
    assert config.forest_threshold == 0.8
    assert config.bare_threshold == 0.3
    assert config.min_patch_size == 50
    assert config.erosion_radius == 1


def test_from_mapping_rejects_unknown_keys():
    with pytest.raises(InvalidConfigError, match='ndwiThreshold'):
        ThresholdConfig.from_mapping({'ndwiThreshold': 0.2})


def test_replace_revalidates_and_ignores_none():
    config = ThresholdConfig()
    assert config.replace(min_patch_size=None) == config
    assert config.replace(min_patch_size=5).min_patch_size == 5
    with pytest.raises(InvalidConfigError):
        config.replace(connectivity=3)


def test_presets():
    assert set(PRESETS) == {'standard', 'low_false_positives', 'monthly'}
    strict = get_preset('low_false_positives')
    assert strict.min_drop == 0.40
    assert strict.erosion_radius == 1
    assert strict.min_patch_size == 250
    assert get_preset('monthly').max_cloud_cover_pct == 50.0
    with pytest.raises(InvalidConfigError):
        get_preset('weekly')


def test_load_config_with_preset_override(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'preset': 'monthly', 'minPatchSize': 10}))
    config = load_config(str(path))
    assert config.min_patch_size == 10
    assert config.max_cloud_cover_pct == 50.0


def test_load_config_plain(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'forest_threshold': 0.9, 'connectivity': 4}))
    config = load_config(str(path))
    assert config.forest_threshold == 0.9
    assert config.connectivity == 4


def test_load_config_malformed(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text('{not json')
    with pytest.raises(InvalidConfigError):
        load_config(str(path))


def test_display_hints_defaults():
    hints = DisplayHints()
    assert hints.ndvi_range == (0.0, 0.8)
    assert hints.true_color_bands == ('b04', 'b03', 'b02')
    assert hints.alert_palette == ('red',)
    assert hints.protected_area_color == 'green'


def test_load_config_missing_file(tmp_path):
    with pytest.raises(InvalidConfigError, match='Cannot read config file'):
        load_config(str(tmp_path / 'missing.json'))
