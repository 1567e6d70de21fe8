from src.quota_tracker.detector import DetectionResult, WindowDetector
from src.quota_tracker.event_cache import EventCache
from src.quota_tracker.history import ValidationResult, WindowHistoryStore, WindowRecord
from src.quota_tracker.loader import UsageLogLoader
from src.quota_tracker.metrics import MetricsCalculator
from src.quota_tracker.models import (
    DetectorConfig,
    LimitSignal,
    Plan,
    Session,
    TimestampedEvent,
    Usage,
    WindowCandidate,
    WindowDetectionInfo,
    get_plan,
)
from src.quota_tracker.selector import WindowSelector
from src.quota_tracker.sessions import SessionBuilder
from src.quota_tracker.strategies import DetectionContext, StrategyRegistry
from src.quota_tracker.timeline import TimelineBuilder

__all__ = [
    "DetectionContext",
    "DetectionResult",
    "DetectorConfig",
    "EventCache",
    "LimitSignal",
    "MetricsCalculator",
    "Plan",
    "Session",
    "SessionBuilder",
    "StrategyRegistry",
    "TimelineBuilder",
    "TimestampedEvent",
    "Usage",
    "UsageLogLoader",
    "ValidationResult",
    "WindowCandidate",
    "WindowDetectionInfo",
    "WindowDetector",
    "WindowHistoryStore",
    "WindowRecord",
    "WindowSelector",
    "get_plan",
]
