"""
Behavioral feature extraction for connection series.
"""

import logging
from collections import Counter
from datetime import datetime, timezone
from math import sqrt
from typing import Dict, List, Optional, Sequence

from ..config import Config
from ..exceptions import InsufficientDataError
from ..models import ConnectionRecord, FeatureVector
from ..utils.helpers import (
    coefficient_of_variation, mean, median, shannon_entropy, stddev
)

logger = logging.getLogger(__name__)

PERIODICITY_TOLERANCE = 0.15
INTERVAL_BUCKET_MS = 1000
PAYLOAD_BUCKET_BYTES = 100
NIGHT_START_HOUR = 22
NIGHT_END_HOUR = 6


def calculate_periodicity(intervals: Sequence[float], median_interval: float) -> float:
    """Fraction of intervals within 15% of the median interval."""
    if not intervals or median_interval == 0:
        return 0.0
    close = sum(
        1 for i in intervals
        if abs(i - median_interval) / median_interval < PERIODICITY_TOLERANCE
    )
    return close / len(intervals)


class FeatureExtractor:
    """Converts an ordered connection list into a FeatureVector."""

    def __init__(self, config: Optional[Config] = None, use_utc: Optional[bool] = None):
        self.config = config or Config()
        if use_utc is None:
            use_utc = bool(self.config.get(['features', 'use_utc'], False))
        self.use_utc = use_utc

    def extract(self, connections: Sequence[ConnectionRecord]) -> FeatureVector:
        if len(connections) < 2:
            raise InsufficientDataError(len(connections))

        timestamps = sorted(c.timestamp for c in connections)
        intervals = [b - a for a, b in zip(timestamps, timestamps[1:])]
        if not intervals:
            return FeatureVector.neutral(len(connections))

        features: Dict = {}
        features.update(self._timing_features(intervals))
        features.update(self._payload_features(connections))
        features.update(self._network_features(connections, timestamps))
        features.update(self._time_of_day_features(timestamps))

        vector = FeatureVector(**features)
        logger.debug(
            f"Extracted features for {vector.connection_count} connections: "
            f"mean interval {vector.mean_interval:.1f}s, jitter {vector.jitter:.3f}, "
            f"periodicity {vector.periodicity:.2f}"
        )
        return vector

    def _timing_features(self, intervals: List[int]) -> Dict:
        median_ms = median(intervals)
        jitter = coefficient_of_variation(intervals, default=0.0)
        return {
            'mean_interval': mean(intervals) / 1000,
            'median_interval': median_ms / 1000,
            'std_interval': stddev(intervals) / 1000,
            'min_interval': min(intervals) / 1000,
            'max_interval': max(intervals) / 1000,
            'jitter': jitter,
            'periodicity': calculate_periodicity(intervals, median_ms),
            'timing_entropy': shannon_entropy(intervals, bucket_size=INTERVAL_BUCKET_MS),
            'regularity_score': 1 / (1 + jitter) if jitter > 0 else 0.0,
        }

    def _payload_features(self, connections: Sequence[ConnectionRecord]) -> Dict:
        sizes = [c.bytes for c in connections if c.bytes > 0]
        if not sizes:
            return {'bytes_cv': 1.0, 'payload_consistency': 0.0}

        bytes_cv = coefficient_of_variation(sizes, default=1.0)
        return {
            'avg_bytes': mean(sizes),
            'median_bytes': median(sizes),
            'std_bytes': stddev(sizes),
            'min_bytes': float(min(sizes)),
            'max_bytes': float(max(sizes)),
            'total_bytes': sum(sizes),
            'bytes_cv': bytes_cv,
            'payload_consistency': 1 - min(bytes_cv, 1.0),
            'payload_entropy': shannon_entropy(sizes, bucket_size=PAYLOAD_BUCKET_BYTES),
        }

    def _network_features(self, connections: Sequence[ConnectionRecord],
                          timestamps: List[int]) -> Dict:
        count = len(connections)
        dest_ports = [c.dest_port for c in connections if c.dest_port > 0]
        src_ports = {c.src_port for c in connections if c.src_port > 0}
        unique_dest_ports = len(set(dest_ports))

        duration_minutes = (timestamps[-1] - timestamps[0]) / 1000 / 60

        port_diversity = 0.0
        most_common_port = 0
        port_concentration = 0.0
        if dest_ports:
            port_diversity = min(unique_dest_ports / sqrt(len(dest_ports)), 1.0)
            most_common_port, top_count = Counter(dest_ports).most_common(1)[0]
            port_concentration = top_count / len(dest_ports)

        return {
            'connection_count': count,
            'duration_minutes': duration_minutes,
            'duration_hours': duration_minutes / 60,
            'unique_dest_ips': len({c.dest_ip for c in connections}),
            'unique_src_ips': len({c.src_ip for c in connections}),
            'unique_dest_ports': unique_dest_ports,
            'unique_src_ports': len(src_ports),
            'port_diversity': port_diversity,
            'port_entropy': shannon_entropy(dest_ports),
            'most_common_port': most_common_port,
            'port_concentration': port_concentration,
            'connections_per_minute': count / max(duration_minutes, 1),
        }

    def _hour_of_day(self, timestamp_ms: int) -> int:
        tz = timezone.utc if self.use_utc else None
        return datetime.fromtimestamp(timestamp_ms / 1000, tz=tz).hour

    def _time_of_day_features(self, timestamps: List[int]) -> Dict:
        hours = [self._hour_of_day(ts) for ts in timestamps]
        night = sum(1 for h in hours if h >= NIGHT_START_HOUR or h < NIGHT_END_HOUR)
        return {
            'time_diversity': len(set(hours)) / 24,
            'night_ratio': night / len(hours),
        }
