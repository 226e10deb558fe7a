"""
Detection and scoring engine.

Scores are built in one pass: every triggered rule appends a
``DetectionFactor`` with its point delta, the deltas are summed, and the sum
is clamped to [0, 100] only once at the end.
"""

import logging
from typing import List, Optional

from .analyzers.frameworks import identify_frameworks, map_mitre
from .config import Config
from .models import (
    DetectionFactor, DetectionResult, FeatureVector, MLPrediction, ThreatIntelReport
)
from .utils.helpers import format_duration, now_iso

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 100

# (minimum score, classification, severity), evaluated high to low
CLASSIFICATION_TIERS = (
    (80, 'CRITICAL', 'critical'),
    (65, 'SUSPICIOUS', 'high'),
    (45, 'MONITOR', 'medium'),
    (0, 'BENIGN', 'info'),
)

RECOMMENDATIONS = {
    'CRITICAL': (
        'IMMEDIATE ACTION REQUIRED: This traffic shows strong indicators of C2 '
        'beaconing. Recommend immediate isolation of the host, full incident '
        'response procedures, and forensic analysis.'
    ),
    'SUSPICIOUS': (
        'URGENT INVESTIGATION NEEDED: Multiple indicators suggest potential C2 '
        'activity. Recommend enhanced monitoring, packet capture, and '
        'investigation by security team.'
    ),
    'MONITOR': (
        'ENHANCED MONITORING RECOMMENDED: Some suspicious patterns detected. '
        'Consider increased logging and continued observation to determine if '
        'this is malicious or benign.'
    ),
    'BENIGN': (
        'APPEARS BENIGN: Traffic patterns are consistent with normal network '
        'activity. No immediate action required, but continue standard monitoring.'
    ),
}

ML_CONFIDENCE_POINTS = {'high': 15, 'medium': 10}


def classify(score: int) -> str:
    for minimum, classification, _ in CLASSIFICATION_TIERS:
        if score >= minimum:
            return classification
    return 'BENIGN'


def get_severity(score: int) -> str:
    for minimum, _, severity in CLASSIFICATION_TIERS:
        if score >= minimum:
            return severity
    return 'info'


class _Tally:
    """Ordered accumulator of scoring factors."""

    def __init__(self):
        self.factors: List[DetectionFactor] = []
        self.technical_details: List[str] = []

    def add(self, factor: str, points: int, details: str,
            category: str = 'behavioral', technical: Optional[str] = None) -> None:
        self.factors.append(DetectionFactor(factor, points, details, category))
        if technical:
            self.technical_details.append(technical)

    @property
    def total(self) -> int:
        return sum(f.points for f in self.factors)


class DetectionEngine:
    """Combines threat intel, ML and behavioral signals into one score."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.framework_bonus = bool(self.config.get(['scoring', 'framework_bonus'], False))

    def evaluate(self, features: FeatureVector,
                 intel: Optional[ThreatIntelReport] = None,
                 ml_prediction: Optional[MLPrediction] = None) -> DetectionResult:
        tally = _Tally()
        matches = intel.matches if intel else []

        self._score_threat_intel(tally, intel)
        self._score_ml(tally, ml_prediction)
        self._score_behavioral(tally, features)
        self._score_benign(tally, features)

        frameworks = identify_frameworks(features, matches)
        if self.framework_bonus:
            attributed = [fw for fw in frameworks if fw.source == 'threat_intel']
            if attributed:
                tally.add(
                    'Known C2 Framework Attribution', 10,
                    f"Threat intel attributes destination to {attributed[0].name}",
                    category='framework',
                )

        score = max(MIN_SCORE, min(MAX_SCORE, int(round(tally.total))))
        classification = classify(score)

        result = DetectionResult(
            score=score,
            classification=classification,
            severity=get_severity(score),
            recommendation=RECOMMENDATIONS[classification],
            timestamp=now_iso(),
            features=features,
            detection_factors=tally.factors,
            reasons=[f"{f.factor} ({f.points:+d}): {f.details}" for f in tally.factors],
            technical_details=tally.technical_details,
            identified_frameworks=frameworks,
            mitre_techniques=map_mitre(features),
            threat_intel_matches=list(matches),
            ml_prediction=ml_prediction,
        )
        self._annotate_sources(result, intel, ml_prediction)

        logger.info(f"Detection complete: {classification} ({score})")
        return result

    def _score_threat_intel(self, tally: _Tally, intel: Optional[ThreatIntelReport]) -> None:
        if not intel or not intel.matches:
            return

        ips = sorted({m.ip for m in intel.matches})
        tally.add(
            'Threat Intelligence Match', 45,
            f"{len(intel.matches)} IOC(s) matched for {', '.join(ips)}",
            category='threat_intel',
        )

        highest = intel.highest_confidence
        if highest >= 75:
            tally.add(
                'High-Confidence IOC', 25,
                f"Highest aggregate IOC confidence {highest}%",
                category='threat_intel',
                technical=f"Threat intel confidence: {highest} (threshold: >=75)",
            )
        else:
            tally.add(
                'Moderate-Confidence IOC', 15,
                f"Highest aggregate IOC confidence {highest}%",
                category='threat_intel',
                technical=f"Threat intel confidence: {highest} (threshold: <75)",
            )

    def _score_ml(self, tally: _Tally, prediction: Optional[MLPrediction]) -> None:
        if prediction is None or not prediction.is_malicious:
            return
        ensemble = prediction.ensemble
        points = 20 + ML_CONFIDENCE_POINTS.get(ensemble.confidence, 5)
        tally.add(
            'Machine Learning Detection', points,
            f"Prediction: {ensemble.prediction} ({ensemble.confidence} confidence, "
            f"score {ensemble.score:.2f})",
            category='ml',
            technical=(
                f"Beacon classifier: {prediction.beacon.score:.2f}, anomaly detector: "
                f"{prediction.anomaly.score if prediction.anomaly else 0:.2f}"
            ),
        )

    def _score_behavioral(self, tally: _Tally, f: FeatureVector) -> None:
        # Periodicity
        pct = f.periodicity * 100
        if f.periodicity > 0.80:
            tally.add('Extreme Periodicity', 35,
                      f"{pct:.1f}% of intervals follow a highly regular pattern",
                      technical=f"Periodicity: {f.periodicity:.3f} (threshold: >0.80)")
        elif f.periodicity > 0.70:
            tally.add('High Periodicity', 25, f"{pct:.1f}% of intervals are regular",
                      technical=f"Periodicity: {f.periodicity:.3f} (threshold: >0.70)")
        elif f.periodicity > 0.60:
            tally.add('Moderate Periodicity', 15, f"{pct:.1f}% of intervals are regular",
                      technical=f"Periodicity: {f.periodicity:.3f} (threshold: >0.60)")

        # Jitter
        jitter_pct = f.jitter * 100
        if f.jitter < 0.08:
            tally.add('Extremely Low Jitter', 30,
                      f"{jitter_pct:.2f}% jitter is an automated timing signature",
                      technical=f"Jitter (CV): {f.jitter:.4f} (threshold: <0.08)")
        elif f.jitter < 0.15:
            tally.add('Low Jitter', 20,
                      f"{jitter_pct:.2f}% jitter indicates an automated process",
                      technical=f"Jitter (CV): {f.jitter:.4f} (threshold: <0.15)")
        elif f.jitter < 0.25:
            tally.add('Consistent Timing', 10, f"{jitter_pct:.2f}% jitter",
                      technical=f"Jitter (CV): {f.jitter:.4f} (threshold: <0.25)")

        # Payload consistency
        consistency_pct = f.payload_consistency * 100
        if f.payload_consistency > 0.90:
            tally.add('Very Consistent Payloads', 20,
                      f"{consistency_pct:.1f}% payload size similarity, typical of C2 beaconing",
                      technical=(
                          f"Byte size CV: {f.bytes_cv:.3f} "
                          f"(consistency: {f.payload_consistency:.3f})"
                      ))
        elif f.payload_consistency > 0.80:
            tally.add('Consistent Payloads', 15,
                      f"{consistency_pct:.1f}% payload size similarity")

        interval = f.mean_interval
        if 30 <= interval <= 300:
            tally.add('Suspicious Interval Range', 15,
                      f"Mean interval {interval:.1f}s within common C2 range (30-300s)",
                      technical=(
                          'Common C2 frameworks: Cobalt Strike (~60s), '
                          'Metasploit (60-120s), Empire (variable)'
                      ))

        # Framework timing signatures
        if 58 <= interval <= 62 and f.jitter < 0.10:
            tally.add('Cobalt Strike Signature', 20,
                      '60-second beacon with low jitter',
                      category='signature',
                      technical='Cobalt Strike default beacon: 60s +/-5%')
        if 115 <= interval <= 125 and f.jitter < 0.12:
            tally.add('Metasploit Signature', 18,
                      '120-second beacon pattern',
                      category='signature',
                      technical='Meterpreter default sleep: 120s')

        # Persistence
        duration = format_duration(f.duration_minutes * 60)
        if f.duration_minutes > 120 and f.connection_count > 50:
            tally.add('Sustained Beaconing', 15,
                      f"Activity over {duration} with {f.connection_count} connections")
        elif f.duration_minutes > 60 and f.connection_count > 30:
            tally.add('Extended Connection Pattern', 12,
                      f"Activity over {duration} with {f.connection_count} connections")

        # Destinations and ports
        if f.unique_dest_ips == 1 and f.connection_count > 50:
            tally.add('Single Destination', 12,
                      f"All {f.connection_count} connections target a single IP")
        elif f.unique_dest_ips == 1 and f.connection_count > 20:
            tally.add('Single Destination', 10,
                      f"All {f.connection_count} connections target a single IP")

        if f.port_entropy < 0.5 and f.unique_dest_ports == 1:
            tally.add('Low Port Diversity', 10,
                      f"Consistent destination port {f.most_common_port}",
                      technical=f"Port entropy: {f.port_entropy:.3f} (threshold: <0.5)")

        if f.timing_entropy < 1.5 and f.connection_count > 20:
            tally.add('Low Timing Entropy', 12, 'Predictable timing pattern',
                      technical=f"Timing entropy: {f.timing_entropy:.3f} bits (threshold: <1.5)")

        if f.night_ratio > 0.7 and f.connection_count > 30:
            tally.add('Night Activity', 8,
                      f"{f.night_ratio * 100:.1f}% of connections between 22:00 and 06:00")

    def _score_benign(self, tally: _Tally, f: FeatureVector) -> None:
        if f.mean_interval < 3:
            tally.add('Very Short Intervals', -25,
                      'Intervals under 3s are typical of legitimate real-time applications',
                      category='benign')
        if f.jitter > 0.70:
            tally.add('High Timing Variability', -20,
                      f"{f.jitter * 100:.1f}% variation suggests organic/human behavior",
                      category='benign')
        if f.unique_dest_ips > 10:
            tally.add('Many Destinations', -15,
                      f"Traffic spread over {f.unique_dest_ips} destination IPs",
                      category='benign')
        if f.time_diversity > 0.7:
            tally.add('High Time Diversity', -10,
                      f"Activity spread over {round(f.time_diversity * 24)} hours of the day",
                      category='benign')

    @staticmethod
    def _annotate_sources(result: DetectionResult, intel: Optional[ThreatIntelReport],
                          ml_prediction: Optional[MLPrediction]) -> None:
        result.sources['threat_intel'] = intel.status if intel else 'disabled'
        result.sources['ml'] = 'enabled' if ml_prediction else 'disabled'
        result.sources['behavioral'] = 'enabled'

        if intel and intel.degraded:
            reason = '; '.join(dict.fromkeys(intel.errors)) or 'feed unavailable'
            result.notes.append(
                f"Threat intelligence feed {intel.status}: {reason}. "
                'Result based on custom rules and behavioral analysis.'
            )
