"""
Per-feature data coordinators: cache first, refresh through the queue.
"""
from .features import FEATURES, Feature, FeatureSpec, get_feature_spec
from .snapshot import FeatureLoad, FeatureSnapshot
from .monitor import LoadMonitor
from .coalescer import CallCoalescer
from .coordinator import DataOrchestrator

__all__ = [
    "FEATURES",
    "Feature",
    "FeatureSpec",
    "get_feature_spec",
    "FeatureLoad",
    "FeatureSnapshot",
    "LoadMonitor",
    "CallCoalescer",
    "DataOrchestrator",
]
