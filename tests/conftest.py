"""
Shared fixtures for the beacon analyzer test suite.
"""

from datetime import datetime, timezone

import pytest

from beacon_analyzer.config import Config
from beacon_analyzer.models import ConnectionRecord

NOON_UTC_MS = int(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc).timestamp() * 1000)


def build_connections(intervals_s, dest_ips='185.220.101.42', sizes=1024, ports=443,
                      start_ms=NOON_UTC_MS):
    """Connections separated by ``intervals_s`` seconds.

    ``dest_ips``, ``sizes`` and ``ports`` may be scalars or sequences that
    are cycled over.
    """
    def pick(value, i):
        if isinstance(value, (list, tuple)):
            return value[i % len(value)]
        return value

    timestamps = [start_ms]
    for interval in intervals_s:
        timestamps.append(timestamps[-1] + int(interval * 1000))

    return [
        ConnectionRecord(
            timestamp=ts,
            dest_ip=pick(dest_ips, i),
            bytes=pick(sizes, i),
            src_ip='10.0.0.50',
            src_port=49152 + i,
            dest_port=pick(ports, i),
        )
        for i, ts in enumerate(timestamps)
    ]


@pytest.fixture
def config():
    """Fixture providing test configuration with UTC hours and no feed."""
    return Config(overrides={
        'features': {'use_utc': True},
        'threat_intel': {'enabled': False},
    })


@pytest.fixture
def beacon_connections():
    """121 connections at 58-62s intervals to one IP on port 443."""
    intervals = [60 + ((i * 7) % 5 - 2) for i in range(120)]
    sizes = [1000 + (i % 3) * 20 for i in range(121)]
    return build_connections(intervals, sizes=sizes)


@pytest.fixture
def irregular_connections():
    """12 irregular connections to one public IP over several ports."""
    intervals = [10, 30, 12, 40, 8, 25, 15, 35, 9, 28, 11]
    sizes = [200, 1500, 800, 3000, 450, 2200, 900, 1200, 5000, 350, 2600, 700]
    return build_connections(intervals, dest_ips='203.0.113.7', sizes=sizes,
                             ports=[443, 80, 8080, 8443])


@pytest.fixture
def make_connections():
    """Fixture providing the connection builder."""
    return build_connections
