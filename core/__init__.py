# core/__init__.py
"""
Module core contenant la configuration, les types partagés et les exceptions.
"""
from .config import TrainerConfig, load_config
from .types import Experience, ExperienceMetadata, SampledBatch, EvaluationResult, TradeAction, TrainingMetrics
from .exceptions import (
    TrainingCoreError, ConfigError, InsufficientDataError, UnknownStrategyError,
    MaxResetsExceededError, NonFiniteGradientError, NotInitializedError, EvaluationError
)

__all__ = [
    'TrainerConfig', 'load_config',
    'Experience', 'ExperienceMetadata', 'SampledBatch', 'EvaluationResult', 'TradeAction', 'TrainingMetrics',
    'TrainingCoreError', 'ConfigError', 'InsufficientDataError', 'UnknownStrategyError',
    'MaxResetsExceededError', 'NonFiniteGradientError', 'NotInitializedError', 'EvaluationError',
]
