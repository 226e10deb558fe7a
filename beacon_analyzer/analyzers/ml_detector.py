"""
Heuristic beacon scoring models.

The models here are fixed, hand-weighted rule sets rather than fitted
estimators, so every prediction is reproducible. ``Scorer`` is the seam
for plugging in a trained model with the same inputs and outputs.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from ..config import Config
from ..models import FeatureVector, MLPrediction, ModelOutput

logger = logging.getLogger(__name__)


def confidence_level(score: float) -> str:
    if score >= 0.85:
        return 'high'
    if score >= 0.65:
        return 'medium'
    if score >= 0.45:
        return 'low'
    return 'very low'


def severity_level(score: float) -> str:
    if score >= 0.75:
        return 'critical'
    if score >= 0.55:
        return 'high'
    if score >= 0.35:
        return 'medium'
    return 'low'


class Scorer(ABC):
    """Maps a feature vector onto a score in [0, 1]."""

    name = 'scorer'
    version = '1'

    def __init__(self, threshold: float = 0.65):
        self.threshold = threshold

    @abstractmethod
    def score(self, features: FeatureVector) -> ModelOutput:
        """Score one feature vector."""

    def _output(self, score: float, indicators: List[str]) -> ModelOutput:
        score = max(0.0, min(1.0, score))
        return ModelOutput(
            name=self.name,
            version=self.version,
            score=score,
            prediction='malicious' if score >= self.threshold else 'benign',
            confidence=confidence_level(score),
            indicators=indicators,
        )


class BeaconClassifier(Scorer):
    """Weighted rule set over the strongest beaconing features."""

    name = 'beacon_classifier'

    def score(self, features: FeatureVector) -> ModelOutput:
        score = 0.0
        reasons = []

        if features.periodicity > 0.8:
            score += 0.35
            reasons.append('Very high periodicity')
        elif features.periodicity > 0.7:
            score += 0.25
            reasons.append('High periodicity')

        if features.jitter < 0.1:
            score += 0.30
            reasons.append('Very low jitter')
        elif features.jitter < 0.2:
            score += 0.20
            reasons.append('Low jitter')

        if features.payload_consistency > 0.9:
            score += 0.20
            reasons.append('Very consistent payload')
        elif features.payload_consistency > 0.8:
            score += 0.15
            reasons.append('Consistent payload')

        if features.unique_dest_ips == 1:
            score += 0.15
            reasons.append('Single destination')

        if features.port_diversity < 0.1:
            score += 0.10
            reasons.append('Low port diversity')

        if features.duration_hours > 2:
            score += 0.10
            reasons.append('Sustained activity')

        return self._output(score, reasons)


class AnomalyDetector(Scorer):
    """Statistical anomaly checks for automated traffic.

    The score is the sum of the triggered check weights, capped at 1, so a
    check that fires can only raise it.
    """

    name = 'anomaly_detector'
    anomaly_threshold = 0.5

    def _checks(self, features: FeatureVector) -> List[Tuple[str, str, float, str]]:
        mean_ms = features.mean_interval * 1000
        found = []

        if features.periodicity > 0.85 and features.jitter < 0.15:
            found.append(('timing_regularity', 'high', 0.30,
                          'Unnaturally regular connection timing'))

        if 50000 < mean_ms < 150000 and (
                abs(mean_ms - 60000) < 5000 or abs(mean_ms - 120000) < 10000):
            found.append(('known_beacon_interval', 'high', 0.35,
                          f'Interval matches known C2 pattern ({round(features.mean_interval)}s)'))

        if features.payload_consistency > 0.9:
            found.append(('payload_consistency', 'medium', 0.20,
                          'Unusually consistent payload sizes'))

        if features.unique_dest_ips == 1 and features.connection_count > 20:
            found.append(('single_destination', 'medium', 0.15,
                          'Many connections to single destination'))

        if features.timing_entropy < 2.0:
            found.append(('low_entropy', 'medium', 0.15,
                          'Low timing entropy suggests automation'))

        if features.duration_hours > 3:
            found.append(('long_duration', 'low', 0.10,
                          f'Extended connection pattern ({features.duration_hours:.1f}h)'))

        return found

    def detect(self, features: FeatureVector) -> Dict:
        """Full anomaly breakdown with per-check details."""
        checks = self._checks(features)
        score = min(1.0, sum(w for _, _, w, _ in checks))
        return {
            'is_anomaly': score >= self.anomaly_threshold,
            'score': score,
            'severity': severity_level(score),
            'anomalies': [
                {'type': t, 'severity': s, 'weight': w, 'description': d}
                for t, s, w, d in checks
            ],
        }

    def score(self, features: FeatureVector) -> ModelOutput:
        result = self.detect(features)
        return self._output(
            result['score'], [a['description'] for a in result['anomalies']]
        )


class MLDetector:
    """Weighted ensemble of the beacon classifier and anomaly detector."""

    def __init__(self, config: Optional[Config] = None,
                 classifier: Optional[Scorer] = None,
                 anomaly_detector: Optional[Scorer] = None):
        self.config = config or Config()
        self.threshold = self.config.get(['ml', 'confidence_threshold'], 0.65)
        self.use_ensemble = self.config.get(['ml', 'use_ensemble'], True)
        self.beacon_weight = self.config.get(['ml', 'beacon_weight'], 0.6)
        self.anomaly_weight = self.config.get(['ml', 'anomaly_weight'], 0.4)

        self.classifier = classifier or BeaconClassifier(self.threshold)
        self.anomaly_detector = anomaly_detector or AnomalyDetector(self.threshold)
        self.predictions = 0

    def predict(self, features: FeatureVector) -> MLPrediction:
        """Run both models and combine them."""
        self.predictions += 1
        beacon = self.classifier.score(features)

        if not self.use_ensemble:
            return MLPrediction(beacon=beacon, anomaly=None, ensemble=beacon)

        anomaly = self.anomaly_detector.score(features)
        combined = self.beacon_weight * beacon.score + self.anomaly_weight * anomaly.score
        ensemble = ModelOutput(
            name='ensemble',
            version=f'{beacon.version}.{anomaly.version}',
            score=combined,
            prediction='malicious' if combined >= self.threshold else 'benign',
            confidence=confidence_level(combined),
            indicators=beacon.indicators + anomaly.indicators,
        )
        logger.debug(
            f"ML ensemble {ensemble.prediction} ({combined:.2f}): "
            f"beacon={beacon.score:.2f} anomaly={anomaly.score:.2f}"
        )
        return MLPrediction(beacon=beacon, anomaly=anomaly, ensemble=ensemble)

    def explain(self, features: FeatureVector, prediction: MLPrediction) -> Dict:
        """Summarize the features that drove a prediction."""
        key_factors = []

        if features.periodicity > 0.7:
            key_factors.append({
                'factor': 'High periodicity',
                'value': f'{features.periodicity * 100:.1f}%',
                'impact': 'Major indicator of beaconing'
            })

        if features.jitter < 0.15:
            key_factors.append({
                'factor': 'Low jitter',
                'value': f'{features.jitter * 100:.1f}%',
                'impact': 'Indicates automated/regular timing'
            })

        if features.payload_consistency > 0.8:
            key_factors.append({
                'factor': 'Payload consistency',
                'value': f'{features.payload_consistency * 100:.1f}%',
                'impact': 'Suggests automated communication'
            })

        if prediction.anomaly and prediction.anomaly.indicators:
            key_factors.append({
                'factor': 'Anomalies detected',
                'value': f'{len(prediction.anomaly.indicators)} anomalies',
                'impact': 'Multiple unusual patterns found'
            })

        return {
            'decision': prediction.ensemble.prediction,
            'confidence': prediction.ensemble.confidence,
            'score': prediction.ensemble.score,
            'key_factors': key_factors,
        }

    def stats(self) -> Dict:
        return {
            'predictions': self.predictions,
            'threshold': self.threshold,
            'use_ensemble': self.use_ensemble,
        }
