"""
Threat intelligence integration module.

Destination IPs are checked against user-defined IOC rules and, optionally,
the ThreatFox IOC database. Feed failures never abort an analysis: the
resolver records a degraded status and carries on with custom rules.
"""

import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import aiohttp
import orjson

from ..config import Config
from ..exceptions import FeedUnavailableError, RuleValidationError
from ..models import ConnectionRecord, CustomRule, ThreatIntelMatch, ThreatIntelReport
from ..utils.helpers import (
    is_lookup_candidate, is_valid_cidr, is_valid_ip, match_cidr, now_iso
)

logger = logging.getLogger(__name__)

CUSTOM_SOURCE = 'Custom Rules'
MULTI_SOURCE_BONUS = 1.2
DEFAULT_RELIABILITY = 0.5
RULES_EXPORT_VERSION = '2.1'
REQUIRED_RULE_FIELDS = {'id', 'type', 'value'}
IOC_TEXT_FIELDS = ('malware_printable', 'malware', 'threat_type',
                   'first_seen', 'last_seen', 'reference')

CONFIDENCE_LEVELS = {
    'high': 90,
    'medium': 70,
    'low': 50
}


def map_confidence(level: Any) -> int:
    """Map a feed confidence level onto 0-100."""
    if isinstance(level, bool):
        return 60
    if isinstance(level, (int, float)):
        return int(max(0, min(100, level)))
    if isinstance(level, str):
        if level.strip().isdigit():
            return max(0, min(100, int(level.strip())))
        return CONFIDENCE_LEVELS.get(level.strip().lower(), 60)
    return 60


class IntelFeed(ABC):
    """An external source of IOC matches."""

    name = 'feed'

    @abstractmethod
    async def lookup(self, ip: str) -> List[ThreatIntelMatch]:
        """Return matches for ``ip``; raise FeedUnavailableError on failure."""

    async def probe(self) -> int:
        """Check the feed is reachable, returning the number of recent IOCs."""
        return 0

    async def close(self) -> None:
        pass


class ThreatFoxFeed(IntelFeed):
    """Client for the abuse.ch ThreatFox JSON API."""

    name = 'ThreatFox'

    def __init__(self, api_url: str, api_key: Optional[str] = None,
                 timeout: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.api_url = api_url
        self.api_key = api_key or os.environ.get('THREATFOX_API_KEY')
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _query(self, payload: Dict) -> Dict:
        headers = {'Accept': 'application/json'}
        if self.api_key:
            headers['Auth-Key'] = self.api_key

        try:
            async with self._get_session().post(
                self.api_url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    raise FeedUnavailableError(self.name, f"HTTP {response.status}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FeedUnavailableError(self.name, str(e) or type(e).__name__) from e
        except ValueError as e:
            raise FeedUnavailableError(self.name, f"malformed response: {e}") from e

        if not isinstance(data, dict) or 'query_status' not in data:
            raise FeedUnavailableError(self.name, 'malformed response')
        return data

    async def probe(self) -> int:
        data = await self._query({'query': 'get_iocs', 'days': 1})
        if data['query_status'] != 'ok':
            raise FeedUnavailableError(self.name, f"status {data['query_status']}")
        return len(data.get('data') or [])

    async def lookup(self, ip: str) -> List[ThreatIntelMatch]:
        data = await self._query({'query': 'search_ioc', 'search_term': ip})
        status = data['query_status']
        if status == 'no_result':
            return []
        if status != 'ok':
            raise FeedUnavailableError(self.name, f"status {status}")

        iocs = data.get('data') or []
        if not isinstance(iocs, list):
            raise FeedUnavailableError(self.name, 'malformed response')
        return [self._to_match(ip, ioc) for ioc in iocs if isinstance(ioc, dict)]

    def _to_match(self, ip: str, ioc: Dict) -> ThreatIntelMatch:
        for key in IOC_TEXT_FIELDS:
            if ioc.get(key) is not None and not isinstance(ioc[key], str):
                raise FeedUnavailableError(self.name, f"malformed response: bad {key!r}")
        tags = ioc.get('tags') or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise FeedUnavailableError(self.name, "malformed response: bad 'tags'")

        malware = ioc.get('malware_printable') or ioc.get('malware') or 'Unknown'
        return ThreatIntelMatch(
            ip=ip,
            source=self.name,
            malware=malware,
            confidence=map_confidence(ioc.get('confidence_level')),
            threat_type=ioc.get('threat_type') or 'c2',
            tags=list(tags),
            first_seen=ioc.get('first_seen'),
            last_seen=ioc.get('last_seen'),
            reference=ioc.get('reference'),
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class IntelCache:
    """TTL cache of feed answers, including negative ones."""

    def __init__(self, ttl: float = 3600, clock: Callable[[], datetime] = datetime.now):
        self.cache: Dict[str, List[ThreatIntelMatch]] = {}
        self.cache_expiry: Dict[str, datetime] = {}
        self.cache_duration = timedelta(seconds=ttl)
        self.clock = clock
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[List[ThreatIntelMatch]]:
        if key in self.cache:
            if self.clock() < self.cache_expiry[key]:
                self.hits += 1
                return self.cache[key]
            del self.cache[key]
            del self.cache_expiry[key]
        self.misses += 1
        return None

    def set(self, key: str, value: List[ThreatIntelMatch]) -> None:
        self.cache[key] = value
        self.cache_expiry[key] = self.clock() + self.cache_duration

    def clear(self) -> None:
        self.cache.clear()
        self.cache_expiry.clear()

    def __len__(self) -> int:
        return len(self.cache)


class RuleStore(ABC):
    """Persistence for custom IOC rules."""

    @abstractmethod
    def load(self) -> List[CustomRule]:
        pass

    @abstractmethod
    def save(self, rules: List[CustomRule]) -> None:
        pass


class MemoryRuleStore(RuleStore):

    def __init__(self, rules: Optional[Iterable[CustomRule]] = None):
        self._rules = list(rules or [])

    def load(self) -> List[CustomRule]:
        return list(self._rules)

    def save(self, rules: List[CustomRule]) -> None:
        self._rules = list(rules)


class JsonRuleStore(RuleStore):
    """Rules kept in a JSON file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> List[CustomRule]:
        if not self.path.exists():
            return []
        try:
            data = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.error(f"Error loading custom rules from {self.path}: {e}")
            return []
        rules = data.get('rules', []) if isinstance(data, dict) else data
        return [
            CustomRule.from_dict(r) for r in rules
            if isinstance(r, dict) and REQUIRED_RULE_FIELDS <= r.keys()
        ]

    def save(self, rules: List[CustomRule]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [rule.to_dict() for rule in rules]
        self.path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))


class CustomRuleSet:
    """User-defined IP and CIDR indicators."""

    def __init__(self, store: Optional[RuleStore] = None):
        self.store = store or MemoryRuleStore()
        self.rules: List[CustomRule] = self.store.load()
        if self.rules:
            logger.info(f"Loaded {len(self.rules)} custom rules")

    @staticmethod
    def _validate(rule_type: str, value: str) -> None:
        if rule_type not in ('ip', 'cidr') or not value:
            raise RuleValidationError("Rule must have type 'ip' or 'cidr' and a value")
        if rule_type == 'ip' and not is_valid_ip(value):
            raise RuleValidationError(f"Invalid IP address: {value}")
        if rule_type == 'cidr' and not is_valid_cidr(value):
            raise RuleValidationError(f"Invalid CIDR notation: {value}")

    @staticmethod
    def _confidence(value: Any) -> int:
        try:
            return max(0, min(100, int(value)))
        except (TypeError, ValueError):
            raise RuleValidationError(f"Invalid confidence: {value}") from None

    def add(self, rule_type: str, value: str, malware: Optional[str] = None,
            confidence: Optional[int] = None, threat_type: Optional[str] = None,
            tags: Optional[List[str]] = None,
            description: Optional[str] = None) -> CustomRule:
        """Validate, store and return a new rule."""
        self._validate(rule_type, value)
        rule = CustomRule(
            id=uuid.uuid4().hex,
            type=rule_type,
            value=value,
            malware=malware or 'Custom Detection',
            confidence=self._confidence(70 if confidence is None else confidence),
            threat_type=threat_type or 'custom',
            tags=list(tags or []),
            description=description,
            created=now_iso(),
        )
        self.rules.append(rule)
        self.store.save(self.rules)
        logger.info(f"Added custom rule {rule.id} ({rule.type} {rule.value})")
        return rule

    def update(self, rule_id: str, **changes) -> CustomRule:
        rule = self.get(rule_id)
        if rule is None:
            raise KeyError(rule_id)

        changes.pop('id', None)
        changes.pop('created', None)
        unknown = set(changes) - set(CustomRule.__dataclass_fields__)
        if unknown:
            raise RuleValidationError(f"Unknown rule fields: {', '.join(sorted(unknown))}")
        self._validate(changes.get('type', rule.type), changes.get('value', rule.value))
        if 'confidence' in changes:
            changes['confidence'] = self._confidence(changes['confidence'])

        for key, value in changes.items():
            setattr(rule, key, value)
        self.store.save(self.rules)
        return rule

    def remove(self, rule_id: str) -> bool:
        for index, rule in enumerate(self.rules):
            if rule.id == rule_id:
                del self.rules[index]
                self.store.save(self.rules)
                return True
        return False

    def get(self, rule_id: str) -> Optional[CustomRule]:
        return next((r for r in self.rules if r.id == rule_id), None)

    def all(self) -> List[CustomRule]:
        return list(self.rules)

    def match(self, ip: str) -> Optional[ThreatIntelMatch]:
        """First rule matching ``ip`` exactly or by CIDR containment."""
        for rule in self.rules:
            exact = rule.type == 'ip' and rule.value == ip
            if exact or (rule.type == 'cidr' and match_cidr(ip, rule.value)):
                return ThreatIntelMatch(
                    ip=ip,
                    source=CUSTOM_SOURCE,
                    malware=rule.malware or 'Custom Detection',
                    confidence=rule.confidence,
                    threat_type=rule.threat_type or 'custom',
                    tags=list(rule.tags),
                    rule_id=rule.id,
                    cidr=None if exact else rule.value,
                )
        return None

    def export_rules(self) -> str:
        return orjson.dumps({
            'version': RULES_EXPORT_VERSION,
            'exported': now_iso(),
            'rules': [r.to_dict() for r in self.rules],
        }, option=orjson.OPT_INDENT_2).decode('utf-8')

    def import_rules(self, text: str) -> int:
        """Replace the rule set with the rules in an export document."""
        try:
            data = orjson.loads(text)
        except orjson.JSONDecodeError as e:
            raise RuleValidationError(f"Invalid rules document: {e}") from e

        rules = data.get('rules', data) if isinstance(data, dict) else data
        if not isinstance(rules, list):
            raise RuleValidationError('Invalid rules format')

        imported = []
        for raw in rules:
            if not isinstance(raw, dict):
                raise RuleValidationError('Invalid rule structure')
            self._validate(raw.get('type'), raw.get('value'))
            rule = CustomRule.from_dict({
                'id': raw.get('id') or uuid.uuid4().hex,
                'created': raw.get('created') or now_iso(),
                **{k: v for k, v in raw.items() if k not in ('id', 'created')},
            })
            rule.confidence = self._confidence(70 if rule.confidence is None else rule.confidence)
            rule.tags = list(rule.tags or [])
            imported.append(rule)

        self.rules = imported
        self.store.save(self.rules)
        logger.info(f"Imported {len(imported)} custom rules")
        return len(imported)

    def __len__(self) -> int:
        return len(self.rules)


class ThreatIntelligence:
    """Resolves destination IPs against custom rules and an IOC feed."""

    def __init__(self, config: Optional[Config] = None,
                 feed: Optional[IntelFeed] = None,
                 rules: Optional[CustomRuleSet] = None):
        self.config = config or Config()
        self.feed = feed
        self.rules = rules or CustomRuleSet()
        self.max_ips = int(self.config.get(['threat_intel', 'max_ips'], 20))
        self.timeout = float(self.config.get(['threat_intel', 'timeout'], 10.0))
        self.reliability: Dict[str, float] = dict(
            self.config.get(['threat_intel', 'source_reliability'], {})
        )
        self.cache = IntelCache(self.config.get(['threat_intel', 'cache_ttl'], 3600))

        self.status = 'unknown' if feed else 'disabled'
        self.error: Optional[str] = None
        self.feed_iocs = 0
        self.lookup_count = 0

    @classmethod
    def from_config(cls, config: Config, rules: Optional[CustomRuleSet] = None,
                    offline: bool = False) -> 'ThreatIntelligence':
        """Build a resolver with the feed and rule store named in ``config``."""
        feed = None
        if config.get(['threat_intel', 'enabled'], True) and not offline:
            feed = ThreatFoxFeed(
                config.get(['threat_intel', 'api_url']),
                api_key=config.get(['threat_intel', 'api_key']),
                timeout=float(config.get(['threat_intel', 'timeout'], 10.0)),
            )
        if rules is None:
            rules_path = config.get(['rules', 'path'])
            rules = CustomRuleSet(JsonRuleStore(rules_path) if rules_path else None)
        return cls(config, feed=feed, rules=rules)

    async def initialize(self) -> Dict:
        """Probe the feed and record whether it is reachable."""
        if self.feed is None:
            return self.stats()
        try:
            async with asyncio.timeout(self.timeout):
                self.feed_iocs = await self.feed.probe()
            self.status = 'online'
            self.error = None
            logger.info(f"{self.feed.name} connected: {self.feed_iocs} recent IOCs")
        except (FeedUnavailableError, TimeoutError) as e:
            self.status = 'offline'
            self.error = str(e) or 'timeout'
            logger.warning(f"{self.feed.name} unavailable, using custom rules only: {self.error}")
        return self.stats()

    async def close(self) -> None:
        if self.feed is not None:
            await self.feed.close()

    async def _feed_lookup(self, ip: str) -> List[ThreatIntelMatch]:
        key = f"{self.feed.name}:{ip}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        async with asyncio.timeout(self.timeout):
            matches = await self.feed.lookup(ip)
        self.cache.set(key, matches)
        return matches

    async def _resolve(self, ip: str) -> Tuple[List[ThreatIntelMatch], Optional[str]]:
        self.lookup_count += 1
        results = []

        custom = self.rules.match(ip)
        if custom is not None:
            results.append(custom)

        if self.feed is None or self.status == 'offline':
            return results, None

        try:
            results.extend(await self._feed_lookup(ip))
        except FeedUnavailableError as e:
            logger.warning(f"Threat intel lookup failed for {ip}: {e}")
            return results, str(e)
        except TimeoutError:
            logger.warning(f"Threat intel lookup for {ip} timed out after {self.timeout}s")
            return results, f"{self.feed.name} lookup for {ip} timed out"
        return results, None

    async def lookup(self, ip: str) -> List[ThreatIntelMatch]:
        """All matches for one IP; never raises for feed problems."""
        if not is_lookup_candidate(ip):
            return []
        matches, _ = await self._resolve(ip)
        return matches

    def aggregate_confidence(self, matches: List[ThreatIntelMatch]) -> int:
        """Reliability-weighted confidence, boosted when sources agree."""
        if not matches:
            return 0
        weights = [self.reliability.get(m.source, DEFAULT_RELIABILITY) for m in matches]
        total_weight = sum(weights)
        if total_weight <= 0:
            combined = sum(m.confidence for m in matches) / len(matches)
        else:
            combined = sum(m.confidence * w for m, w in zip(matches, weights)) / total_weight
        if len({m.source for m in matches}) >= 2:
            combined *= MULTI_SOURCE_BONUS
        return int(round(min(100.0, combined)))

    def select_ips(self, connections: Iterable[ConnectionRecord]) -> Tuple[List[str], List[str]]:
        """Split destinations into those to check and those skipped."""
        seen = []
        for conn in connections:
            if conn.dest_ip not in seen:
                seen.append(conn.dest_ip)

        candidates = [ip for ip in seen if is_lookup_candidate(ip)]
        checked = candidates[:self.max_ips]
        skipped = [ip for ip in seen if ip not in checked]
        if len(candidates) > self.max_ips:
            logger.info(
                f"Checking {self.max_ips} of {len(candidates)} public destinations"
            )
        return checked, skipped

    async def check_connections(self, connections: List[ConnectionRecord]) -> ThreatIntelReport:
        """Resolve every eligible destination concurrently."""
        checked, skipped = self.select_ips(connections)
        report = ThreatIntelReport(checked=checked, skipped=skipped)

        outcomes = await asyncio.gather(*(self._resolve(ip) for ip in checked))

        per_dest = Counter(c.dest_ip for c in connections)
        by_ip: Dict[str, List[ThreatIntelMatch]] = defaultdict(list)
        for ip, (matches, error) in zip(checked, outcomes):
            if error:
                report.errors.append(error)
            for match in matches:
                match = replace(match, connection_count=per_dest[ip])
                by_ip[ip].append(match)
                report.matches.append(match)

        report.aggregate_confidence = {
            ip: self.aggregate_confidence(matches) for ip, matches in by_ip.items()
        }

        if self.feed is None:
            report.status = 'disabled'
        elif self.status == 'offline':
            report.status = 'offline'
            report.errors.append(self.error or f"{self.feed.name} unavailable")
        elif report.errors:
            report.status = 'degraded'
        else:
            report.status = 'online'

        logger.info(
            f"Threat intel: checked {len(checked)} IPs, {len(report.matches)} matches "
            f"({report.status})"
        )
        return report

    def stats(self) -> Dict:
        return {
            'status': self.status,
            'error': self.error,
            'lookup_count': self.lookup_count,
            'cache_hits': self.cache.hits,
            'cache_size': len(self.cache),
            'custom_rules': len(self.rules),
            'sources': {
                'feed': {
                    'name': self.feed.name if self.feed else None,
                    'enabled': self.feed is not None,
                    'status': self.status,
                    'iocs': self.feed_iocs,
                },
                'custom_rules': {
                    'enabled': True,
                    'status': 'active',
                    'count': len(self.rules),
                },
            },
        }
