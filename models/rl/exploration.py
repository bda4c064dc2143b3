# models/rl/exploration.py

import numpy as np
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence
import logging

from core.config import ExplorationConfig
from core.exceptions import UnknownStrategyError
from core.types import ActionSelection, ExplorationStrategy

logger = logging.getLogger(__name__)


@dataclass
class ExplorationState:
    current_step: int
    current_epsilon: float
    current_temperature: float
    exploration_count: int = 0
    exploitation_count: int = 0
    total_actions: int = 0


def softmax(values: np.ndarray) -> np.ndarray:
    """Numerically stable softmax (max-shifted)."""
    values = np.asarray(values, dtype=np.float64)
    shifted = values - np.max(values)
    exp_values = np.exp(shifted)
    return exp_values / np.sum(exp_values)


def entropy(probabilities: np.ndarray) -> float:
    """Shannon entropy in nats; the 1e-8 floor keeps log() finite."""
    probabilities = np.asarray(probabilities, dtype=np.float64)
    return float(-np.sum(probabilities * np.log(probabilities + 1e-8)))


class ExplorationPolicy:
    """Explore/exploit action selection over a vector of value estimates.

    Strategies (``config.strategy``):

    - epsilon_greedy: epsilon decays linearly initial → final over
      decay_steps; with probability epsilon a uniform random action is taken.
    - temperature: temperature decays exponentially (floored at
      final_temperature) and the action is drawn from softmax(values / T) by
      inverse-CDF sampling. Any non-greedy draw counts as exploration.
    - entropy_guided: explore when the softmax entropy of the values exceeds
      entropy_threshold or the largest supplied uncertainty exceeds
      uncertainty_weight; the explored action is the most uncertain one (or a
      random one when no uncertainties are given).
    """

    def __init__(self, config: Optional[ExplorationConfig] = None, rng: Optional[np.random.Generator] = None):
        self.config = config if config is not None else ExplorationConfig()
        self.rng = rng if rng is not None else np.random.default_rng()
        self._handlers: Dict[ExplorationStrategy, Callable] = {
            ExplorationStrategy.EPSILON_GREEDY: self._epsilon_greedy,
            ExplorationStrategy.TEMPERATURE: self._temperature,
            ExplorationStrategy.ENTROPY_GUIDED: self._entropy_guided,
        }

    def update_config(self, **overrides):
        self.config.update(**overrides)

    @property
    def strategy(self) -> ExplorationStrategy:
        try:
            return ExplorationStrategy(self.config.strategy)
        except ValueError:
            raise UnknownStrategyError('exploration', self.config.strategy) from None

    def initialize_state(self) -> ExplorationState:
        state = ExplorationState(
            current_step=0,
            current_epsilon=self.config.initial_epsilon,
            current_temperature=self.config.initial_temperature,
        )
        logger.info("Exploration state initialized: strategy=%s epsilon=%.3f temperature=%.3f",
                    self.config.strategy, state.current_epsilon, state.current_temperature)
        return state

    def reset(self, state: ExplorationState):
        """Restart decay and counters from the configured initial values."""
        state.current_step = 0
        state.current_epsilon = self.config.initial_epsilon
        state.current_temperature = self.config.initial_temperature
        state.exploration_count = 0
        state.exploitation_count = 0
        state.total_actions = 0
        logger.info("Exploration state reset")

    def select_action(self, q_values: Sequence[float], state: ExplorationState,
                      uncertainties: Optional[Sequence[float]] = None) -> ActionSelection:
        handler = self._handlers[self.strategy]
        q_values = np.asarray(q_values, dtype=np.float64)
        if q_values.size == 0:
            raise ValueError("q_values must contain at least one action")

        state.current_step += 1
        state.total_actions += 1
        action, is_exploration, info = handler(q_values, state, uncertainties)
        info['strategy'] = self.strategy.value

        if is_exploration:
            state.exploration_count += 1
        else:
            state.exploitation_count += 1

        logger.debug("Action selected: action=%d exploration=%s ratio=%.3f %s",
                     action, is_exploration, state.exploration_count / state.total_actions, info)
        return ActionSelection(action=int(action), is_exploration=bool(is_exploration), info=info)

    def _epsilon_greedy(self, q_values: np.ndarray, state: ExplorationState, uncertainties):
        cfg = self.config
        decay_progress = min(state.current_step / max(cfg.decay_steps, 1), 1.0)
        state.current_epsilon = cfg.initial_epsilon - (cfg.initial_epsilon - cfg.final_epsilon) * decay_progress

        is_exploration = self.rng.random() < state.current_epsilon
        if is_exploration:
            action = int(self.rng.integers(len(q_values)))
        else:
            action = int(np.argmax(q_values))
        return action, is_exploration, {'epsilon': state.current_epsilon}

    def _temperature(self, q_values: np.ndarray, state: ExplorationState, uncertainties):
        cfg = self.config
        state.current_temperature = max(cfg.final_temperature,
                                        state.current_temperature * cfg.temperature_decay)

        probabilities = softmax(q_values / state.current_temperature)
        cumulative = np.cumsum(probabilities)
        draw = self.rng.random()
        # First index whose cumulative mass reaches the draw; rounding can leave cumulative[-1] < 1
        action = int(min(np.searchsorted(cumulative, draw, side='left'), len(q_values) - 1))

        greedy_action = int(np.argmax(q_values))
        return action, action != greedy_action, {'temperature': state.current_temperature}

    def _entropy_guided(self, q_values: np.ndarray, state: ExplorationState, uncertainties):
        cfg = self.config
        value_entropy = entropy(softmax(q_values))

        if uncertainties is not None:
            uncertainties = np.asarray(uncertainties, dtype=np.float64)
            uncertainty = float(np.max(uncertainties))
        else:
            uncertainty = value_entropy

        should_explore = value_entropy > cfg.entropy_threshold or uncertainty > cfg.uncertainty_weight
        if should_explore:
            if uncertainties is not None:
                action = int(np.argmax(uncertainties))
            else:
                action = int(self.rng.integers(len(q_values)))
        else:
            action = int(np.argmax(q_values))
        return action, should_explore, {'entropy': value_entropy, 'uncertainty': uncertainty}

    def statistics(self, state: ExplorationState) -> Dict:
        total = state.total_actions
        return {
            'exploration_ratio': state.exploration_count / total if total > 0 else 0.0,
            'exploitation_ratio': state.exploitation_count / total if total > 0 else 0.0,
            'current_epsilon': state.current_epsilon,
            'current_temperature': state.current_temperature,
            'total_actions': total,
            'decay_progress': min(state.current_step / max(self.config.decay_steps, 1), 1.0),
        }
