"""
This module contains models for connections, features and detection results.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

import orjson


@dataclass(frozen=True)
class ConnectionRecord:
    """One observed network connection event."""
    timestamp: int
    dest_ip: str = 'unknown'
    bytes: int = 0
    src_ip: str = 'unknown'
    src_port: int = 0
    dest_port: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FeatureVector:
    """Behavioral features derived from one connection list."""
    # Timing (seconds)
    mean_interval: float = 0.0
    median_interval: float = 0.0
    std_interval: float = 0.0
    min_interval: float = 0.0
    max_interval: float = 0.0
    jitter: float = 1.0
    periodicity: float = 0.0
    timing_entropy: float = 0.0
    regularity_score: float = 0.0

    # Payload
    avg_bytes: float = 0.0
    median_bytes: float = 0.0
    std_bytes: float = 0.0
    min_bytes: float = 0.0
    max_bytes: float = 0.0
    total_bytes: int = 0
    bytes_cv: float = 1.0
    payload_consistency: float = 0.0
    payload_entropy: float = 0.0

    # Network
    connection_count: int = 0
    duration_minutes: float = 0.0
    duration_hours: float = 0.0
    unique_dest_ips: int = 0
    unique_src_ips: int = 0
    unique_dest_ports: int = 0
    unique_src_ports: int = 0
    port_diversity: float = 0.0
    port_entropy: float = 0.0
    most_common_port: int = 0
    port_concentration: float = 0.0
    connections_per_minute: float = 0.0

    # Time of day
    time_diversity: float = 0.0
    night_ratio: float = 0.0

    @property
    def cv_interval(self) -> float:
        return self.jitter

    @classmethod
    def neutral(cls, connection_count: int = 0) -> 'FeatureVector':
        """Feature vector for a series without any interval."""
        return cls(connection_count=connection_count, jitter=1.0, periodicity=0.0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ThreatIntelMatch:
    """A known-malicious indicator matched for one IP."""
    ip: str
    source: str
    malware: str = 'Unknown'
    confidence: int = 60
    threat_type: str = 'c2'
    tags: List[str] = field(default_factory=list)
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None
    reference: Optional[str] = None
    rule_id: Optional[str] = None
    cidr: Optional[str] = None
    connection_count: int = 0


@dataclass
class ThreatIntelReport:
    """Outcome of resolving the destinations of one analysis."""
    checked: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    matches: List[ThreatIntelMatch] = field(default_factory=list)
    aggregate_confidence: Dict[str, int] = field(default_factory=dict)
    status: str = 'online'
    errors: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.status in ('offline', 'degraded')

    @property
    def highest_confidence(self) -> int:
        if self.aggregate_confidence:
            return max(self.aggregate_confidence.values())
        return max((m.confidence for m in self.matches), default=0)


@dataclass
class CustomRule:
    """User-declared indicator of compromise."""
    id: str
    type: str
    value: str
    malware: str = 'Custom Detection'
    confidence: int = 70
    threat_type: str = 'custom'
    tags: List[str] = field(default_factory=list)
    description: Optional[str] = None
    created: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CustomRule':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DetectionFactor:
    """One scored contribution to a detection result."""
    factor: str
    points: int
    details: str
    category: str = 'behavioral'


@dataclass
class ModelOutput:
    """Output of one scoring model."""
    name: str
    version: str
    score: float
    prediction: str
    confidence: str
    indicators: List[str] = field(default_factory=list)


@dataclass
class MLPrediction:
    """Combined output of the heuristic models."""
    beacon: ModelOutput
    anomaly: Optional[ModelOutput]
    ensemble: ModelOutput

    @property
    def is_malicious(self) -> bool:
        return self.ensemble.prediction == 'malicious'


@dataclass
class FrameworkMatch:
    """A C2 framework signature matched by features or threat intel."""
    name: str
    confidence: str
    reason: str
    source: str = 'behavioral'


@dataclass
class MitreTechnique:
    """A MITRE ATT&CK technique annotation."""
    id: str
    name: str
    tactic: str
    description: str


@dataclass
class DetectionResult:
    """Container for the full assessment of one connection list."""
    score: int
    classification: str
    severity: str
    recommendation: str
    timestamp: str
    features: FeatureVector
    detection_factors: List[DetectionFactor] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    technical_details: List[str] = field(default_factory=list)
    identified_frameworks: List[FrameworkMatch] = field(default_factory=list)
    mitre_techniques: List[MitreTechnique] = field(default_factory=list)
    threat_intel_matches: List[ThreatIntelMatch] = field(default_factory=list)
    ml_prediction: Optional[MLPrediction] = None
    sources: Dict[str, str] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
    history: Optional[Dict[str, Any]] = None

    @property
    def degraded(self) -> bool:
        return bool(self.notes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self, indent: bool = True) -> str:
        option = orjson.OPT_INDENT_2 if indent else 0
        return orjson.dumps(self.to_dict(), option=option).decode('utf-8')
