"""
Synthetic connection datasets for demos and tests.

All generators are seeded so the same arguments always produce the same
connections.
"""

import random
import time
from typing import Dict, List, Optional

HOUR_MS = 60 * 60 * 1000


def _start_time(start_ms: Optional[int], hours_ago: float) -> int:
    if start_ms is not None:
        return start_ms
    return int(time.time() * 1000 - hours_ago * HOUR_MS)


def cobalt_strike_sample(count: int = 120, start_ms: Optional[int] = None,
                         seed: int = 42, dest_ip: str = '185.220.101.42') -> Dict[str, List[Dict]]:
    """60-second beacon with 5% jitter and ~1 KB payloads."""
    rng = random.Random(seed)
    start = _start_time(start_ms, 3)
    interval = 60000
    jitter = 0.05

    connections = []
    for i in range(count):
        offset = interval * jitter * (rng.random() - 0.5) * 2
        connections.append({
            'timestamp': int(start + i * interval + offset),
            'bytes': 1024 + rng.randint(0, 200),
            'dest_ip': dest_ip,
            'src_ip': '10.0.0.50',
            'src_port': 49152 + i,
            'dest_port': 443,
        })
    return {'connections': connections}


def metasploit_sample(count: int = 60, start_ms: Optional[int] = None,
                      seed: int = 42, dest_ip: str = '198.51.100.42') -> Dict[str, List[Dict]]:
    """120-second Meterpreter-style beacon with 15% jitter."""
    rng = random.Random(seed)
    start = _start_time(start_ms, 2)
    interval = 120000
    jitter = 0.15

    connections = []
    for i in range(count):
        offset = interval * jitter * (rng.random() - 0.5) * 2
        connections.append({
            'timestamp': int(start + i * interval + offset),
            'bytes': 512 + rng.randint(0, 512),
            'dest_ip': dest_ip,
            'src_ip': '10.0.0.75',
            'src_port': 50000 + i,
            'dest_port': 8080,
        })
    return {'connections': connections}


def benign_sample(count: int = 50, start_ms: Optional[int] = None,
                  seed: int = 42) -> Dict[str, List[Dict]]:
    """Irregular browsing-like traffic to several web servers."""
    rng = random.Random(seed)
    start = _start_time(start_ms, 1)
    web_servers = ['93.184.216.34', '151.101.1.140', '172.217.14.206']

    connections = []
    timestamp = start
    for i in range(count):
        timestamp += rng.randint(5000, 35000)
        connections.append({
            'timestamp': timestamp,
            'bytes': rng.randint(500, 10500),
            'dest_ip': web_servers[i % len(web_servers)],
            'src_ip': '10.0.0.100',
            'src_port': 55000 + i,
            'dest_port': 443 if rng.random() > 0.5 else 80,
        })
    return {'connections': connections}


SAMPLES = {
    'cobalt-strike': cobalt_strike_sample,
    'metasploit': metasploit_sample,
    'benign': benign_sample,
}
