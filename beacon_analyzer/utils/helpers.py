"""
Helper functions for statistics, addresses and formatting.
"""

from collections import Counter
from datetime import datetime, timezone
from math import floor, log2
from typing import Hashable, Iterable, Optional, Sequence

import numpy as np
from netaddr import AddrFormatError, IPAddress, IPNetwork, valid_ipv4

# RFC1918, loopback and link-local ranges never sent to external feeds
PRIVATE_NETWORKS = (
    IPNetwork('10.0.0.0/8'),
    IPNetwork('172.16.0.0/12'),
    IPNetwork('192.168.0.0/16'),
    IPNetwork('127.0.0.0/8'),
    IPNetwork('169.254.0.0/16'),
)
UNIQUE_LOCAL_V6 = IPNetwork('fc00::/7')


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean, 0 for an empty series."""
    if len(values) == 0:
        return 0.0
    return float(np.mean(values))


def median(values: Sequence[float]) -> float:
    """Median, averaging the two middle values for even lengths."""
    if len(values) == 0:
        return 0.0
    return float(np.median(values))


def variance(values: Sequence[float]) -> float:
    """Population variance."""
    if len(values) == 0:
        return 0.0
    return float(np.var(values))


def stddev(values: Sequence[float]) -> float:
    """Population standard deviation."""
    if len(values) == 0:
        return 0.0
    return float(np.std(values))


def percentile(values: Sequence[float], p: float) -> float:
    """Percentile with linear interpolation between closest ranks."""
    if len(values) == 0:
        return 0.0
    return float(np.percentile(values, p))


def coefficient_of_variation(values: Sequence[float], default: float = 0.0) -> float:
    """Standard deviation over mean, ``default`` when the mean is zero."""
    avg = mean(values)
    if avg == 0:
        return default
    return stddev(values) / avg


def shannon_entropy(values: Iterable[Hashable], bucket_size: Optional[float] = None) -> float:
    """Calculate Shannon entropy in bits.

    Works on strings (per character) and on numeric series. When
    ``bucket_size`` is given, numbers are grouped into buckets of that width
    before counting.
    """
    if bucket_size:
        values = [floor(v / bucket_size) for v in values]
    counts = Counter(values)
    total = float(sum(counts.values()))
    if not total:
        return 0.0

    entropy = 0.0
    for count in counts.values():
        p = count / total
        if p > 0:
            entropy -= p * log2(p)

    return max(entropy, 0.0)


def is_private_ip(ip: str) -> bool:
    """Check if an IP address is private, loopback or link-local."""
    try:
        addr = IPAddress(ip)
    except (AddrFormatError, ValueError, TypeError):
        return False
    if addr.version != 4:
        return addr.is_loopback() or addr.is_link_local() or addr in UNIQUE_LOCAL_V6
    return any(addr in network for network in PRIVATE_NETWORKS)


def is_lookup_candidate(ip: str) -> bool:
    """True for public IPv4 addresses eligible for threat intel lookups."""
    if not isinstance(ip, str) or not valid_ipv4(ip):
        return False
    return not is_private_ip(ip)


def match_cidr(ip: str, cidr: str) -> bool:
    """Check whether ``ip`` falls inside the ``cidr`` range."""
    try:
        return IPAddress(ip) in IPNetwork(cidr)
    except (AddrFormatError, ValueError, TypeError):
        return False


def is_valid_ip(ip: str) -> bool:
    return isinstance(ip, str) and valid_ipv4(ip)


def is_valid_cidr(cidr: str) -> bool:
    if not isinstance(cidr, str) or '/' not in cidr:
        return False
    address, _, bits = cidr.partition('/')
    if not valid_ipv4(address) or not bits.isdigit():
        return False
    return 0 <= int(bits) <= 32


def now_iso() -> str:
    """Get current time in ISO format with UTC timezone."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def format_bytes(bytes: float) -> str:
    """Format bytes into human readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes < 1024:
            return f"{bytes:.2f} {unit}"
        bytes /= 1024
    return f"{bytes:.2f} PB"


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human readable string."""
    units = [('d', 86400), ('h', 3600), ('m', 60), ('s', 1)]
    parts = []

    for unit, div in units:
        amount = int(seconds / div)
        if amount > 0:
            parts.append(f"{amount}{unit}")
            seconds %= div

    return ' '.join(parts) if parts else '0s'
