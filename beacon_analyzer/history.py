"""
Persistent history of past detection results.

Only summaries are stored, never raw connections. The history is used to
place a new score in context (percentile, similar analyses, daily trends).
"""

import csv
import io
import logging
import uuid
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson

from .models import DetectionResult
from .utils.helpers import now_iso

logger = logging.getLogger(__name__)

EXPORT_VERSION = '2.1'

CSV_HEADERS = [
    'Timestamp',
    'File Name',
    'Score',
    'Classification',
    'Connection Count',
    'Threat Intel Matches',
    'ML Prediction',
]


def _parse_time(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def summarize(result: DetectionResult, file_name: Optional[str] = None) -> Dict[str, Any]:
    """Reduce a DetectionResult to the fields kept in history."""
    f = result.features
    return {
        'id': uuid.uuid4().hex,
        'timestamp': result.timestamp or now_iso(),
        'file_name': file_name,
        'score': result.score,
        'classification': result.classification,
        'severity': result.severity,
        'connection_count': f.connection_count,
        'threat_intel_matches': len(result.threat_intel_matches),
        'ml_prediction': (
            result.ml_prediction.ensemble.prediction if result.ml_prediction else None
        ),
        'frameworks': [fw.name for fw in result.identified_frameworks],
        'features': {
            'periodicity': f.periodicity,
            'jitter': f.jitter,
            'mean_interval': f.mean_interval,
            'payload_consistency': f.payload_consistency,
        },
    }


class HistoryStore:
    """Newest-first, size-capped list of analysis summaries."""

    def __init__(self, path: Optional[str] = None, max_size: int = 100):
        self.path = Path(path) if path else None
        self.max_size = max_size
        self.history: List[Dict[str, Any]] = []
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.error(f"Failed to load history from {self.path}: {e}")
            return
        entries = data.get('analyses', []) if isinstance(data, dict) else data
        self.history = [e for e in entries if isinstance(e, dict)]
        self._sort()
        logger.info(f"History: {len(self.history)} analyses loaded")

    def _sort(self) -> None:
        self.history.sort(key=lambda a: _parse_time(a.get('timestamp', '')), reverse=True)

    def _save(self) -> None:
        del self.history[self.max_size:]
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(orjson.dumps(self.history))

    def add(self, result: DetectionResult, file_name: Optional[str] = None) -> str:
        """Record a result, evicting the oldest entries beyond max_size."""
        entry = summarize(result, file_name)
        self.history.insert(0, entry)
        self._save()
        logger.debug(f"Added analysis to history: {entry['id']}")
        return entry['id']

    def list(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if limit:
            return self.history[:limit]
        return list(self.history)

    def get(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        return next((a for a in self.history if a.get('id') == analysis_id), None)

    def delete(self, analysis_id: str) -> bool:
        for index, entry in enumerate(self.history):
            if entry.get('id') == analysis_id:
                del self.history[index]
                self._save()
                return True
        return False

    def clear(self) -> None:
        self.history = []
        self._save()
        logger.info('History cleared')

    def stats(self) -> Optional[Dict[str, Any]]:
        if not self.history:
            return None
        scores = [a['score'] for a in self.history]
        return {
            'total': len(self.history),
            'avg_score': sum(scores) / len(scores),
            'max_score': max(scores),
            'min_score': min(scores),
            'classifications': dict(Counter(a['classification'] for a in self.history)),
        }

    def percentile(self, score: float) -> Optional[float]:
        """Percentage of stored analyses scoring strictly below ``score``."""
        if not self.history:
            return None
        lower = sum(1 for a in self.history if a['score'] < score)
        return lower / len(self.history) * 100

    @staticmethod
    def similarity(a1: Dict[str, Any], a2: Dict[str, Any]) -> float:
        score = 1 - abs(a1['score'] - a2['score']) / 100
        factors = 1

        if a1.get('classification') == a2.get('classification'):
            score += 1
        factors += 1

        f1 = a1.get('features') or {}
        f2 = a2.get('features') or {}
        for key in ('periodicity', 'jitter'):
            if f1.get(key) is not None and f2.get(key) is not None:
                score += 1 - min(abs(f1[key] - f2[key]), 1)
                factors += 1

        return score / factors

    def find_similar(self, analysis: Dict[str, Any], limit: int = 5) -> List[Dict[str, Any]]:
        candidates = [a for a in self.history if a.get('id') != analysis.get('id')]
        ranked = sorted(
            ({'analysis': a, 'similarity': self.similarity(analysis, a)} for a in candidates),
            key=lambda item: item['similarity'],
            reverse=True,
        )
        return ranked[:limit]

    def trends(self, days: int = 7, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Daily counts and average scores over the last ``days`` days."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=days)
        recent = [a for a in self.history if _parse_time(a.get('timestamp', '')) > cutoff]
        if not recent:
            return None

        by_day: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for a in recent:
            by_day[_parse_time(a['timestamp']).date().isoformat()].append(a)

        daily = []
        for day in sorted(by_day):
            entries = by_day[day]
            daily.append({
                'date': day,
                'count': len(entries),
                'avg_score': sum(a['score'] for a in entries) / len(entries),
                'critical': sum(1 for a in entries if a['classification'] == 'CRITICAL'),
                'suspicious': sum(1 for a in entries if a['classification'] == 'SUSPICIOUS'),
            })

        return {
            'period': days,
            'total': len(recent),
            'daily': daily,
            'avg_score': sum(a['score'] for a in recent) / len(recent),
        }

    def compare(self, result: DetectionResult) -> Dict[str, Any]:
        """Context for a fresh result relative to the stored history."""
        return {
            'percentile': self.percentile(result.score),
            'previous_analyses': len(self.history),
            'stats': self.stats(),
        }

    def export(self, format: str = 'json') -> str:
        if format == 'json':
            return orjson.dumps({
                'version': EXPORT_VERSION,
                'exported': now_iso(),
                'count': len(self.history),
                'analyses': self.history,
            }, option=orjson.OPT_INDENT_2).decode('utf-8')
        if format == 'csv':
            return self._export_csv()
        raise ValueError(f"Unknown format: {format}")

    def _export_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator='\n')
        writer.writerow(CSV_HEADERS)
        for a in self.history:
            writer.writerow([
                a.get('timestamp'),
                a.get('file_name') or 'N/A',
                a.get('score'),
                a.get('classification'),
                a.get('connection_count', 0),
                a.get('threat_intel_matches', 0),
                a.get('ml_prediction') or 'N/A',
            ])
        return buffer.getvalue()

    def import_history(self, text: str) -> int:
        """Merge analyses from an export, skipping ids already present."""
        try:
            data = orjson.loads(text)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Invalid history format: {e}") from e

        analyses = data.get('analyses', data) if isinstance(data, dict) else data
        if not isinstance(analyses, list):
            raise ValueError('Invalid history format')

        known = {a.get('id') for a in self.history}
        added = 0
        for entry in analyses:
            if isinstance(entry, dict) and {'score', 'classification'} <= entry.keys() \
                    and entry.get('id') not in known:
                self.history.append(entry)
                known.add(entry.get('id'))
                added += 1

        self._sort()
        self._save()
        logger.info(f"Imported {added} analyses")
        return added
