# core/config.py
from dataclasses import dataclass, field, fields, asdict, replace
from typing import Any, Dict, Optional
import logging

import yaml

from .exceptions import ConfigError
from .types import TradeAction

logger = logging.getLogger(__name__)


class _MergeableConfig:
    """Partial-override support shared by every component config."""

    def update(self, **overrides) -> "_MergeableConfig":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigError(f"{type(self).__name__} has no option(s): {', '.join(unknown)}")
        # Validate a candidate first so a rejected override leaves self untouched
        candidate = replace(self, **overrides)
        for key in overrides:
            setattr(self, key, getattr(candidate, key))
        logger.info(f"{type(self).__name__} updated: {overrides}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def _validate(self):
        pass

    def __post_init__(self):
        self._validate()
        logger.debug(f"{type(self).__name__} initialized: {self.to_dict()}")


@dataclass
class BufferConfig(_MergeableConfig):
    capacity: int = 200000
    alpha: float = 0.6             # priority exponent
    beta: float = 0.4              # importance-sampling exponent, annealed towards 1.0
    beta_increment: float = 0.001
    epsilon: float = 1e-6
    max_priority: float = 1.0

    # Critical event detection (oversampling of rare, high-signal transitions)
    volatility_threshold: float = 0.05   # 5% bar range
    volume_threshold: float = 1_000_000.0
    reward_threshold: float = 0.03       # 3% move
    volatility_boost: float = 2.0
    volume_boost: float = 1.5
    reward_boost: float = 1.8

    def _validate(self):
        if self.capacity < 1:
            raise ConfigError(f"Buffer capacity must be positive, got {self.capacity}")
        if self.max_priority <= 0:
            raise ConfigError(f"max_priority must be > 0, got {self.max_priority}")


@dataclass
class OptimizerConfig(_MergeableConfig):
    learning_rate: float = 1e-3
    beta1: float = 0.9
    beta2: float = 0.999
    weight_decay: float = 0.01
    epsilon: float = 1e-8
    amsgrad: bool = False

    def _validate(self):
        if self.learning_rate < 0.0:
            raise ConfigError(f"Invalid learning rate: {self.learning_rate}")
        if not 0.0 <= self.beta1 < 1.0:
            raise ConfigError(f"Invalid beta1: {self.beta1}")
        if not 0.0 <= self.beta2 < 1.0:
            raise ConfigError(f"Invalid beta2: {self.beta2}")


@dataclass
class ClipConfig(_MergeableConfig):
    max_norm: float = 1.0
    norm_type: str = "l2"              # 'l2', 'l1' or 'inf'
    error_if_nonfinite: bool = False

    def _validate(self):
        if self.max_norm <= 0:
            raise ConfigError(f"max_norm must be > 0, got {self.max_norm}")


@dataclass
class SchedulerConfig(_MergeableConfig):
    initial_lr: float = 1e-3
    warmup_steps: int = 1000
    total_steps: int = 100000
    min_lr: float = 1e-6
    scheduler_type: str = "warmup_cosine"  # 'warmup_cosine', 'cosine', 'plateau', 'warm_restarts'
    # Plateau
    patience: int = 10
    factor: float = 0.5
    threshold: float = 1e-4
    # Warm restarts
    restart_period: int = 10000
    restart_mult: float = 2.0


@dataclass
class WatchdogConfig(_MergeableConfig):
    check_interval: int = 10
    nan_threshold: int = 0              # counts strictly above this trip the check
    inf_threshold: int = 0
    loss_threshold: float = 1e6
    gradient_threshold: float = 100.0
    reset_lr_factor: float = 0.25
    max_resets: int = 5


@dataclass
class ExplorationConfig(_MergeableConfig):
    strategy: str = "epsilon_greedy"   # 'epsilon_greedy', 'temperature', 'entropy_guided'
    initial_epsilon: float = 0.2
    final_epsilon: float = 0.02
    decay_steps: int = 50000
    initial_temperature: float = 1.0
    final_temperature: float = 0.1
    temperature_decay: float = 0.995
    entropy_threshold: float = 0.5
    uncertainty_weight: float = 0.3


@dataclass
class TrainingConfig(_MergeableConfig):
    batch_size: int = 32
    epochs: int = 1000
    validation_split: float = 0.2
    early_stopping_patience: int = 50
    checkpoint_interval: int = 100
    log_interval: int = 10
    gamma: float = 0.99                 # discount for TD targets
    seed: Optional[int] = None


@dataclass
class IngestionConfig(_MergeableConfig):
    default_confidence: float = 0.8
    volume_scale: float = 1_000_000.0
    # Action used when a label/reward is exactly zero
    zero_reward_action: int = int(TradeAction.HOLD)


_SECTIONS = {
    'buffer': BufferConfig,
    'optimizer': OptimizerConfig,
    'clipping': ClipConfig,
    'scheduler': SchedulerConfig,
    'watchdog': WatchdogConfig,
    'exploration': ExplorationConfig,
    'training': TrainingConfig,
    'ingestion': IngestionConfig,
}


@dataclass
class TrainerConfig:
    """Full configuration, one section per component."""
    buffer: BufferConfig = field(default_factory=BufferConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    clipping: ClipConfig = field(default_factory=ClipConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    exploration: ExplorationConfig = field(default_factory=ExplorationConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)

    @classmethod
    def from_dict(cls, config_dict: Optional[Dict[str, Any]]) -> "TrainerConfig":
        config_dict = config_dict or {}
        unknown = sorted(set(config_dict) - set(_SECTIONS))
        if unknown:
            raise ConfigError(f"Unknown configuration section(s): {', '.join(unknown)}")
        kwargs = {}
        for name, section_cls in _SECTIONS.items():
            section = config_dict.get(name) or {}
            if not isinstance(section, dict):
                raise ConfigError(f"Section '{name}' must be a mapping, got {type(section).__name__}")
            try:
                kwargs[name] = section_cls(**section)
            except TypeError as e:
                raise ConfigError(f"Invalid option in section '{name}': {e}") from e
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name).to_dict() for name in _SECTIONS}


def load_config(config_path: str) -> TrainerConfig:
    """Load a TrainerConfig from a YAML file; missing sections keep defaults."""
    with open(config_path, 'r') as f:
        config_dict = yaml.safe_load(f)
    logger.info(f"Loaded configuration from {config_path}")
    return TrainerConfig.from_dict(config_dict)
