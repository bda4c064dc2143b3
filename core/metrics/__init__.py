from .accuracy import DirectionalAccuracy, ClassificationAccuracy, LossSummary
from .tracker import MetricsTracker, average_metrics

__all__ = [
    'DirectionalAccuracy',
    'ClassificationAccuracy',
    'LossSummary',
    'MetricsTracker',
    'average_metrics',
]
