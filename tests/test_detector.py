"""
Tests for the detection engine and end-to-end beacon scenarios.
"""

import orjson
import pytest

from beacon_analyzer.analyzer import BeaconAnalyzer
from beacon_analyzer.analyzers.ml_detector import MLDetector
from beacon_analyzer.analyzers.threat_intel import CustomRuleSet, IntelFeed, ThreatIntelligence
from beacon_analyzer.config import Config
from beacon_analyzer.detector import DetectionEngine, classify, get_severity
from beacon_analyzer.exceptions import FeedUnavailableError, InsufficientDataError
from beacon_analyzer.history import HistoryStore
from beacon_analyzer.models import FeatureVector, ThreatIntelMatch, ThreatIntelReport
from beacon_analyzer.samples import benign_sample

from conftest import NOON_UTC_MS


class CountingFeed(IntelFeed):
    """Feed without IOCs that counts lookups and can be made to fail."""

    name = 'ThreatFox'

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    async def lookup(self, ip):
        self.calls += 1
        if self.fail:
            raise FeedUnavailableError(self.name, 'HTTP 502')
        return []


@pytest.fixture
def engine(config):
    """Fixture providing a detection engine with default scoring."""
    return DetectionEngine(config)


def make_analyzer(config, feed=None, rules=None, history=None):
    return BeaconAnalyzer(
        config,
        threat_intel=ThreatIntelligence(config, feed=feed, rules=rules),
        scorer=MLDetector(config),
        history=history,
    )


def factor_names(result):
    return [f.factor for f in result.detection_factors]


# Classification

@pytest.mark.parametrize('score,classification,severity', [
    (100, 'CRITICAL', 'critical'),
    (80, 'CRITICAL', 'critical'),
    (79, 'SUSPICIOUS', 'high'),
    (65, 'SUSPICIOUS', 'high'),
    (64, 'MONITOR', 'medium'),
    (45, 'MONITOR', 'medium'),
    (44, 'BENIGN', 'info'),
    (0, 'BENIGN', 'info'),
])
def test_classification_tiers(score, classification, severity):
    assert classify(score) == classification
    assert get_severity(score) == severity


# Scenarios

@pytest.mark.asyncio
async def test_cobalt_strike_beacon_is_critical(config, beacon_connections):
    result = await make_analyzer(config).analyze(beacon_connections)

    assert result.score == 100
    assert result.classification == 'CRITICAL'
    assert result.severity == 'critical'
    for name in ('Extreme Periodicity', 'Extremely Low Jitter', 'Cobalt Strike Signature',
                 'Machine Learning Detection', 'Single Destination', 'Low Port Diversity'):
        assert name in factor_names(result)
    assert result.identified_frameworks[0].name == 'Cobalt Strike'
    assert result.identified_frameworks[0].confidence == 'High'
    assert [t.id for t in result.mitre_techniques] == ['T1071', 'T1573', 'T1001']
    assert result.recommendation.startswith('IMMEDIATE ACTION REQUIRED')


@pytest.mark.asyncio
async def test_browsing_traffic_is_benign(config):
    document = orjson.dumps(benign_sample(start_ms=NOON_UTC_MS, seed=7))
    result = await make_analyzer(config).analyze_document(document)

    assert result.score == 0
    assert result.classification == 'BENIGN'
    assert not result.ml_prediction.is_malicious
    assert result.threat_intel_matches == []


@pytest.mark.asyncio
async def test_custom_rule_match_is_suspicious(config, irregular_connections):
    rules = CustomRuleSet()
    rules.add('ip', '203.0.113.7', malware='Sliver', confidence=90)

    result = await make_analyzer(config, rules=rules).analyze(irregular_connections)

    assert result.score == 70
    assert result.classification == 'SUSPICIOUS'
    assert factor_names(result) == ['Threat Intelligence Match', 'High-Confidence IOC']
    assert result.reasons[0] == (
        'Threat Intelligence Match (+45): 1 IOC(s) matched for 203.0.113.7'
    )
    assert result.threat_intel_matches[0].connection_count == 12
    assert result.identified_frameworks[0].name == 'Sliver'
    assert result.identified_frameworks[0].source == 'threat_intel'


@pytest.mark.asyncio
async def test_framework_bonus(irregular_connections):
    config = Config(overrides={'features': {'use_utc': True},
                               'scoring': {'framework_bonus': True}})
    rules = CustomRuleSet()
    rules.add('ip', '203.0.113.7', malware='Sliver', confidence=90)

    result = await make_analyzer(config, rules=rules).analyze(irregular_connections)

    assert result.score == 80
    assert result.classification == 'CRITICAL'
    assert factor_names(result)[-1] == 'Known C2 Framework Attribution'


@pytest.mark.asyncio
async def test_private_destinations_skip_threat_intel(config, make_connections):
    feed = CountingFeed()
    conns = make_connections([30] * 10, dest_ips=['10.0.0.5', '192.168.1.10'])

    result = await make_analyzer(config, feed=feed).analyze(conns)

    assert feed.calls == 0
    assert result.threat_intel_matches == []
    assert not any(f.category == 'threat_intel' for f in result.detection_factors)


@pytest.mark.asyncio
async def test_feed_failure_is_reported(config, irregular_connections):
    rules = CustomRuleSet()
    rules.add('cidr', '203.0.113.0/24', confidence=90)

    result = await make_analyzer(config, feed=CountingFeed(fail=True), rules=rules).analyze(
        irregular_connections
    )

    assert result.score == 70
    assert result.degraded
    assert result.sources['threat_intel'] == 'degraded'
    assert 'HTTP 502' in result.notes[0]


@pytest.mark.asyncio
async def test_minimum_data(config, make_connections):
    with pytest.raises(InsufficientDataError):
        await make_analyzer(config).analyze(make_connections([]))


@pytest.mark.asyncio
async def test_two_connections_produce_result(config):
    raw = [
        {'timestamp': NOON_UTC_MS, 'dest_ip': '198.51.100.20', 'bytes': 300, 'dest_port': 443},
        {'timestamp': NOON_UTC_MS + 90000, 'dest_ip': '198.51.100.20', 'bytes': 340,
         'dest_port': 443},
    ]
    result = await make_analyzer(config).analyze(raw)

    assert result.features.connection_count == 2
    assert result.features.mean_interval == pytest.approx(90.0)
    assert 0 <= result.score <= 100
    assert result.classification in ('BENIGN', 'MONITOR', 'SUSPICIOUS', 'CRITICAL')
    assert orjson.loads(result.to_json())['score'] == result.score


@pytest.mark.asyncio
async def test_history_context(config, beacon_connections, irregular_connections):
    history = HistoryStore()
    analyzer = make_analyzer(config, history=history)

    first = await analyzer.analyze(irregular_connections, 'first.json')
    second = await analyzer.analyze(beacon_connections, 'second.json')

    assert first.history['previous_analyses'] == 0
    assert first.history['percentile'] is None
    assert second.history['previous_analyses'] == 1
    assert second.history['percentile'] == 100.0
    assert [a['file_name'] for a in history.list()] == ['second.json', 'first.json']


def test_analyze_sync(config):
    document = orjson.dumps({'connections': benign_sample(start_ms=NOON_UTC_MS)['connections']})
    result = make_analyzer(config).analyze_sync(document)
    assert result.classification == 'BENIGN'
    assert orjson.loads(result.to_json())['score'] == result.score


# Engine properties

def test_deterministic(engine, config):
    features = FeatureVector(mean_interval=60.0, jitter=0.05, periodicity=0.9,
                             payload_consistency=0.95, connection_count=80,
                             unique_dest_ips=1, unique_dest_ports=1, timing_entropy=2.0)
    ml = MLDetector(config)
    first = engine.evaluate(features, None, ml.predict(features))
    second = engine.evaluate(features, None, ml.predict(features))
    assert first.score == second.score
    assert first.detection_factors == second.detection_factors


def test_score_is_clamped(engine):
    noisy = FeatureVector(mean_interval=1.0, jitter=2.0, unique_dest_ips=40,
                          unique_dest_ports=9, port_entropy=3.0, timing_entropy=5.0,
                          time_diversity=0.9, connection_count=500)
    result = engine.evaluate(noisy)
    assert result.score == 0
    assert sum(f.points for f in result.detection_factors) == -70
    assert result.reasons[0].startswith('Very Short Intervals (-25)')


@pytest.mark.parametrize('overrides,field,values', [
    ({}, 'jitter', [0.8, 0.5, 0.3, 0.2, 0.14, 0.09, 0.05, 0.01]),
    ({}, 'periodicity', [0.1, 0.55, 0.65, 0.75, 0.84, 0.86, 0.95]),
    ({}, 'payload_consistency', [0.2, 0.85, 0.95]),
    ({'periodicity': 0.9, 'payload_consistency': 0.85, 'unique_dest_ips': 1,
      'connection_count': 20},
     'jitter', [0.30, 0.20, 0.16, 0.14, 0.09, 0.05]),
    ({'jitter': 0.1, 'unique_dest_ips': 1, 'connection_count': 60, 'timing_entropy': 1.5},
     'periodicity', [0.5, 0.75, 0.85, 0.86, 0.9, 1.0]),
])
def test_stronger_signals_never_lower_the_score(engine, config, overrides, field, values):
    ml = MLDetector(config)
    base = dict(mean_interval=60.0, jitter=0.3, periodicity=0.8, payload_consistency=0.5,
                connection_count=40, unique_dest_ips=2, unique_dest_ports=2,
                port_entropy=1.0, timing_entropy=3.0, port_diversity=0.3)
    base.update(overrides)
    scores = []
    for value in values:
        features = FeatureVector(**{**base, field: value})
        scores.append(engine.evaluate(features, None, ml.predict(features)).score)
    assert scores == sorted(scores)


def test_threat_intel_confidence_tiers(engine):
    features = FeatureVector(mean_interval=20.0, jitter=0.5, unique_dest_ports=3,
                             port_entropy=1.5, timing_entropy=3.0)
    match = ThreatIntelMatch(ip='198.51.100.9', source='ThreatFox', confidence=60)
    intel = ThreatIntelReport(matches=[match], aggregate_confidence={'198.51.100.9': 60})

    result = engine.evaluate(features, intel)
    assert result.score == 60
    assert factor_names(result) == ['Threat Intelligence Match', 'Moderate-Confidence IOC']
    assert result.classification == 'MONITOR'
