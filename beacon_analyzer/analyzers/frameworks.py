"""
C2 framework signatures and MITRE ATT&CK annotations.
"""

from typing import Dict, Iterable, List, Optional

from ..models import FeatureVector, FrameworkMatch, MitreTechnique, ThreatIntelMatch

# Malware family substrings (lowercase) to the framework they belong to
MALWARE_FAMILIES: Dict[str, str] = {
    'cobalt strike': 'Cobalt Strike',
    'cobaltstrike': 'Cobalt Strike',
    'meterpreter': 'Metasploit/Meterpreter',
    'metasploit': 'Metasploit/Meterpreter',
    'powershell empire': 'PowerShell Empire',
    'empire': 'PowerShell Empire',
    'sliver': 'Sliver',
    'covenant': 'Covenant',
    'brute ratel': 'Brute Ratel C4',
    'bruteratel': 'Brute Ratel C4',
    'mythic': 'Mythic',
    'havoc': 'Havoc',
    'poshc2': 'PoshC2',
}

WEB_PORTS = {80, 443, 8080}
TLS_PORT = 443

UNKNOWN_FRAMEWORK = FrameworkMatch(
    name='Unknown/Custom',
    confidence='N/A',
    reason='Does not match known framework signatures',
    source='behavioral',
)


def framework_for_malware(malware: Optional[str]) -> Optional[str]:
    """Case-insensitive family lookup for a malware label."""
    if not isinstance(malware, str) or not malware:
        return None
    label = malware.lower()
    for needle, framework in MALWARE_FAMILIES.items():
        if needle in label:
            return framework
    return None


def identify_frameworks(features: FeatureVector,
                        matches: Iterable[ThreatIntelMatch] = ()) -> List[FrameworkMatch]:
    """Match the traffic against known C2 framework signatures."""
    found = []

    for match in matches:
        framework = framework_for_malware(match.malware)
        if framework:
            found.append(FrameworkMatch(
                name=framework,
                confidence='High',
                reason=f"Matched known {match.malware} IOC ({match.source})",
                source='threat_intel',
            ))

    interval = features.mean_interval

    if 55 <= interval <= 65 and features.jitter < 0.10:
        found.append(FrameworkMatch(
            name='Cobalt Strike',
            confidence='High',
            reason='60-second beacon interval with low jitter',
        ))

    if 110 <= interval <= 130 and features.jitter < 0.15:
        found.append(FrameworkMatch(
            name='Metasploit/Meterpreter',
            confidence='Medium',
            reason='120-second beacon pattern',
        ))

    if 4 <= interval <= 12 and features.periodicity > 0.6:
        found.append(FrameworkMatch(
            name='PowerShell Empire',
            confidence='Medium',
            reason='Short interval with moderate periodicity',
        ))

    if 55 <= interval <= 65 and features.payload_consistency > 0.85:
        found.append(FrameworkMatch(
            name='Sliver',
            confidence='Low',
            reason='60s interval with consistent payloads',
        ))

    if features.port_entropy < 0.5 and features.unique_dest_ports == 1:
        found.append(FrameworkMatch(
            name='Generic C2',
            confidence='Low',
            reason='Single port with consistent pattern',
        ))

    unique = []
    seen = set()
    for fw in found:
        if fw.name not in seen:
            seen.add(fw.name)
            unique.append(fw)

    return unique or [FrameworkMatch(**vars(UNKNOWN_FRAMEWORK))]


def map_mitre(features: FeatureVector) -> List[MitreTechnique]:
    """ATT&CK techniques suggested by the feature vector."""
    techniques = []
    port = features.most_common_port

    if features.periodicity > 0.7 or port in WEB_PORTS:
        description = 'Regular beaconing pattern detected'
        if features.periodicity <= 0.7:
            description = f'Traffic over common web port {port}'
        techniques.append(MitreTechnique(
            id='T1071',
            name='Application Layer Protocol',
            tactic='Command and Control',
            description=description,
        ))

    sustained = features.unique_dest_ips == 1 and features.duration_minutes > 60
    if port == TLS_PORT or sustained:
        techniques.append(MitreTechnique(
            id='T1573',
            name='Encrypted Channel',
            tactic='Command and Control',
            description=(
                'Sustained communication with single endpoint' if sustained
                else 'Communication over TLS port 443'
            ),
        ))

    if features.payload_consistency > 0.85:
        techniques.append(MitreTechnique(
            id='T1001',
            name='Data Obfuscation',
            tactic='Command and Control',
            description='Consistent payload sizes may indicate obfuscation',
        ))

    return techniques
