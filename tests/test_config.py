"""
Tests for YAML configuration loading.
"""

import yaml

from beacon_analyzer.config import Config


def test_defaults():
    config = Config()
    assert config.get(['threat_intel', 'max_ips']) == 20
    assert config.get(['ml', 'confidence_threshold']) == 0.65
    assert config.get(['threat_intel', 'source_reliability', 'ThreatFox']) == 0.9
    assert config.get(['missing', 'key'], 'fallback') == 'fallback'
    assert config.get(['history', 'path'], 'default.json') == 'default.json'


def test_defaults_are_not_shared():
    first = Config()
    first.set(['threat_intel', 'max_ips'], 5)
    assert Config().get(['threat_intel', 'max_ips']) == 20


def test_yaml_file_is_merged(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump({'threat_intel': {'max_ips': 5}, 'scoring': {'framework_bonus': True}}))

    config = Config(str(path))
    assert config.get(['threat_intel', 'max_ips']) == 5
    assert config.get(['threat_intel', 'cache_ttl']) == 3600
    assert config.get(['scoring', 'framework_bonus']) is True


def test_invalid_yaml_keeps_defaults(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('threat_intel: [unclosed')
    assert Config(str(path)).get(['threat_intel', 'max_ips']) == 20


def test_missing_file_keeps_defaults(tmp_path):
    assert Config(str(tmp_path / 'nope.yaml')).get(['ml', 'enabled']) is True


def test_overrides_and_save(tmp_path):
    config = Config(overrides={'ml': {'beacon_weight': 0.7}})
    config.set(['rules', 'path'], 'rules.json')
    path = tmp_path / 'saved.yaml'
    config.save(str(path))

    saved = yaml.safe_load(path.read_text())
    assert saved['ml']['beacon_weight'] == 0.7
    assert saved['ml']['anomaly_weight'] == 0.4
    assert saved['rules']['path'] == 'rules.json'
