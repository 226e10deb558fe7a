"""
C2 beaconing detection for connection logs.
"""

from .analyzer import BeaconAnalyzer
from .config import Config
from .exceptions import (
    AnalysisError, FeedUnavailableError, InputError, InsufficientDataError,
    InvalidDocumentError, MissingFieldError, RuleValidationError
)
from .models import ConnectionRecord, DetectionResult, FeatureVector

__version__ = '0.1.0'

__all__ = [
    'BeaconAnalyzer',
    'Config',
    'ConnectionRecord',
    'DetectionResult',
    'FeatureVector',
    'AnalysisError',
    'FeedUnavailableError',
    'InputError',
    'InsufficientDataError',
    'InvalidDocumentError',
    'MissingFieldError',
    'RuleValidationError',
]
