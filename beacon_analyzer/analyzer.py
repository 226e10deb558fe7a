"""
End-to-end beacon analysis pipeline.
"""

import asyncio
import logging
from typing import Any, Iterable, List, Optional

from .analyzers.feature_extractor import FeatureExtractor
from .analyzers.ml_detector import MLDetector
from .analyzers.threat_intel import ThreatIntelligence
from .config import Config
from .detector import DetectionEngine
from .history import HistoryStore
from .models import ConnectionRecord, DetectionResult
from .normalizer import extract_connections, normalize_connections
from .utils.logging import log_exceptions

logger = logging.getLogger(__name__)


class BeaconAnalyzer:
    """Runs normalization, feature extraction, enrichment and scoring.

    Threat intelligence, the ML scorer and history are optional
    collaborators; passing None disables that stage explicitly.
    """

    def __init__(self, config: Optional[Config] = None,
                 threat_intel: Optional[ThreatIntelligence] = None,
                 scorer: Optional[MLDetector] = None,
                 history: Optional[HistoryStore] = None,
                 extractor: Optional[FeatureExtractor] = None,
                 engine: Optional[DetectionEngine] = None):
        self.config = config or Config()
        self.threat_intel = threat_intel
        self.scorer = scorer
        self.history = history
        self.extractor = extractor or FeatureExtractor(self.config)
        self.engine = engine or DetectionEngine(self.config)

    @classmethod
    def from_config(cls, config: Optional[Config] = None, offline: bool = False,
                    with_history: bool = True) -> 'BeaconAnalyzer':
        """Build an analyzer with every collaborator enabled in ``config``."""
        config = config or Config()
        scorer = MLDetector(config) if config.get(['ml', 'enabled'], True) else None

        history = None
        history_path = config.get(['history', 'path'])
        if with_history and history_path:
            history = HistoryStore(history_path, int(config.get(['history', 'max_size'], 100)))

        return cls(
            config,
            threat_intel=ThreatIntelligence.from_config(config, offline=offline),
            scorer=scorer,
            history=history,
        )

    async def initialize(self) -> None:
        if self.threat_intel is not None:
            await self.threat_intel.initialize()

    async def close(self) -> None:
        if self.threat_intel is not None:
            await self.threat_intel.close()

    async def __aenter__(self) -> 'BeaconAnalyzer':
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @log_exceptions(logger)
    async def analyze(self, connections: Iterable[Any],
                      file_name: Optional[str] = None) -> DetectionResult:
        """Analyze raw or normalized connections.

        Raises InputError subclasses for unusable input; every other problem
        degrades the result instead of failing it.
        """
        records: List[ConnectionRecord] = normalize_connections(connections)
        features = self.extractor.extract(records)

        intel = None
        if self.threat_intel is not None:
            intel = await self.threat_intel.check_connections(records)

        prediction = None
        if self.scorer is not None:
            prediction = self.scorer.predict(features)

        result = self.engine.evaluate(features, intel, prediction)

        if self.history is not None:
            result.history = self.history.compare(result)
            self.history.add(result, file_name)

        return result

    async def analyze_document(self, document: Any,
                               file_name: Optional[str] = None) -> DetectionResult:
        """Analyze a JSON document (text, bytes or parsed object)."""
        return await self.analyze(extract_connections(document), file_name)

    def analyze_sync(self, document: Any, file_name: Optional[str] = None) -> DetectionResult:
        """Synchronous wrapper for callers without an event loop."""
        async def run():
            try:
                await self.initialize()
                return await self.analyze_document(document, file_name)
            finally:
                await self.close()

        return asyncio.run(run())
