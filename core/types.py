# core/types.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum, IntEnum

import numpy as np

class TradeAction(IntEnum):
    HOLD = 0
    LONG = 1
    SHORT = 2

class SchedulerType(str, Enum):
    WARMUP_COSINE = "warmup_cosine"
    COSINE = "cosine"
    PLATEAU = "plateau"
    WARM_RESTARTS = "warm_restarts"

class ExplorationStrategy(str, Enum):
    EPSILON_GREEDY = "epsilon_greedy"
    TEMPERATURE = "temperature"
    ENTROPY_GUIDED = "entropy_guided"

class NormType(str, Enum):
    L2 = "l2"
    L1 = "l1"
    INF = "inf"

@dataclass
class ExperienceMetadata:
    price: float = 0.0
    volume: float = 0.0
    volatility: float = 0.0
    confidence: float = 0.8

@dataclass
class Experience:
    """One observed market transition."""
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    terminal: bool = False
    timestamp: Any = None
    symbol: str = ""
    metadata: ExperienceMetadata = field(default_factory=ExperienceMetadata)
    td_error: float = 0.0
    priority: float = 0.0
    id: Optional[str] = None

    def __post_init__(self):
        self.state = np.asarray(self.state, dtype=np.float64)
        self.next_state = np.asarray(self.next_state, dtype=np.float64)

@dataclass
class SampledBatch:
    experiences: List[Experience]
    indices: np.ndarray
    weights: np.ndarray

    def __len__(self):
        return len(self.experiences)

@dataclass
class EvaluationResult:
    """What the model evaluation collaborator hands back for one batch.

    ``td_errors`` and ``predictions`` are optional; without TD errors the
    trainer re-prioritizes with the per-sample absolute reward.
    """
    loss: float
    gradients: List[np.ndarray]
    td_errors: Optional[np.ndarray] = None
    predictions: Optional[np.ndarray] = None

@dataclass
class StepInfo:
    step: int
    bias_correction1: float
    bias_correction2: float
    effective_lr: float

@dataclass
class ClipResult:
    clipped_gradients: List[np.ndarray]
    global_norm: float
    was_clipped: bool
    scale_factor: float

@dataclass
class SchedulerInfo:
    phase: str = "training"
    progress: float = 0.0
    was_reduced: bool = False
    was_restarted: bool = False

@dataclass
class ResetRecord:
    step: int
    cause: str
    loss_value: float
    gradient_norm: float
    nan_count: int
    inf_count: int

@dataclass
class StabilityReport:
    is_stable: bool
    should_reset: bool
    checked: bool = False
    reset_cause: Optional[str] = None
    max_resets_exceeded: bool = False
    new_lr_factor: Optional[float] = None
    restored_parameters: Optional[List[np.ndarray]] = None
    restored_optimizer_state: Any = None
    nan_count: int = 0
    inf_count: int = 0
    gradient_norm: float = 0.0

@dataclass
class ActionSelection:
    action: int
    is_exploration: bool
    info: Dict[str, Any] = field(default_factory=dict)

@dataclass
class LossBreakdown:
    mse: float
    mae: float
    r_squared: float

@dataclass
class AccuracyMetrics:
    directional: float
    classification: float

@dataclass
class StabilityMetrics:
    nan_count: int
    inf_count: int
    reset_count: int

@dataclass
class ExplorationStats:
    epsilon: float
    exploration_ratio: float
    exploitation_ratio: float

@dataclass
class TrainingMetrics:
    epoch: int
    step: int
    timestamp: float
    loss: LossBreakdown
    accuracy: AccuracyMetrics
    gradient_norm: float
    learning_rate: float
    stability: StabilityMetrics
    exploration: ExplorationStats
    was_clipped: bool = False
    was_reset: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'epoch': self.epoch,
            'step': self.step,
            'timestamp': self.timestamp,
            'loss_mse': self.loss.mse,
            'loss_mae': self.loss.mae,
            'r_squared': self.loss.r_squared,
            'directional_accuracy': self.accuracy.directional,
            'classification_accuracy': self.accuracy.classification,
            'gradient_norm': self.gradient_norm,
            'learning_rate': self.learning_rate,
            'nan_count': self.stability.nan_count,
            'inf_count': self.stability.inf_count,
            'reset_count': self.stability.reset_count,
            'epsilon': self.exploration.epsilon,
            'exploration_ratio': self.exploration.exploration_ratio,
            'exploitation_ratio': self.exploration.exploitation_ratio,
            'was_clipped': self.was_clipped,
            'was_reset': self.was_reset,
        }


def reward_to_action(reward: float, zero_action: int = TradeAction.HOLD) -> int:
    """Map a realised reward/label to the trade it rewards: >0 long, <0 short."""
    if reward > 0:
        return int(TradeAction.LONG)
    if reward < 0:
        return int(TradeAction.SHORT)
    return int(zero_action)
