# models/rl/scheduler.py

import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
import logging

from core.config import SchedulerConfig
from core.exceptions import UnknownStrategyError
from core.types import SchedulerInfo, SchedulerType

logger = logging.getLogger(__name__)


@dataclass
class SchedulerState:
    current_step: int
    current_lr: float
    best_metric: float = math.inf
    plateau_counter: int = 0
    last_restart_step: int = 0
    restart_count: int = 0
    base_lr: Optional[float] = None


class LearningRateScheduler:
    """Learning-rate schedule state machine.

    One mode is active per scheduler, chosen by ``config.scheduler_type``:

    - warmup_cosine: linear ramp 0 → initial_lr over warmup_steps, then
      cosine decay initial_lr → min_lr over the remaining steps.
    - cosine: cosine decay initial_lr → min_lr over total_steps.
    - plateau: multiply the LR by ``factor`` once the supplied metric has not
      improved by more than ``threshold`` for ``patience`` consecutive steps.
    - warm_restarts: cosine decay inside a period that starts at
      restart_period and is multiplied by restart_mult after every restart.

    The returned LR is always floored at min_lr.
    """

    def __init__(self, config: Optional[SchedulerConfig] = None):
        self.config = config if config is not None else SchedulerConfig()
        self._handlers: Dict[SchedulerType, Callable] = {
            SchedulerType.WARMUP_COSINE: self._warmup_cosine,
            SchedulerType.COSINE: self._cosine,
            SchedulerType.PLATEAU: self._plateau,
            SchedulerType.WARM_RESTARTS: self._warm_restarts,
        }

    def update_config(self, **overrides):
        self.config.update(**overrides)

    @property
    def scheduler_type(self) -> SchedulerType:
        try:
            return SchedulerType(self.config.scheduler_type)
        except ValueError:
            raise UnknownStrategyError('scheduler', self.config.scheduler_type) from None

    def initialize_state(self) -> SchedulerState:
        state = SchedulerState(current_step=0, current_lr=self.config.initial_lr,
                               base_lr=self.config.initial_lr)
        logger.info("LR scheduler state initialized: type=%s initial_lr=%.3e",
                    self.config.scheduler_type, self.config.initial_lr)
        return state

    def step(self, state: SchedulerState, metric: Optional[float] = None) -> Tuple[float, SchedulerInfo]:
        """Advance one step and return (new_lr, info). ``state`` is mutated in place."""
        handler = self._handlers[self.scheduler_type]
        state.current_step += 1
        new_lr, info = handler(state, metric)

        new_lr = max(new_lr, self.config.min_lr)
        state.current_lr = new_lr

        logger.debug("LR step %d: lr=%.3e type=%s phase=%s progress=%.4f",
                     state.current_step, new_lr, self.config.scheduler_type, info.phase, info.progress)
        return new_lr, info

    def current_lr(self, state: SchedulerState) -> float:
        return state.current_lr

    def apply_lr_factor(self, state: SchedulerState, factor: float) -> float:
        """Shrink the schedule after an instability reset.

        The peak of the schedule becomes ``base_lr * factor``, where ``base_lr``
        is the unpenalized initial LR. ``factor`` already carries the reset
        count, so successive resets shrink the peak geometrically.
        """
        base_lr = state.base_lr if state.base_lr is not None else self.config.initial_lr
        new_initial = base_lr * factor
        self.config.update(initial_lr=new_initial)
        state.current_lr = max(new_initial, self.config.min_lr)
        logger.info("LR penalty applied: factor=%.4f new_initial_lr=%.3e", factor, new_initial)
        return state.current_lr

    def _cosine_value(self, progress: float) -> float:
        cfg = self.config
        return cfg.min_lr + (cfg.initial_lr - cfg.min_lr) * 0.5 * (1 + math.cos(math.pi * progress))

    def _warmup_cosine(self, state: SchedulerState, metric) -> Tuple[float, SchedulerInfo]:
        cfg = self.config
        if cfg.warmup_steps > 0 and state.current_step <= cfg.warmup_steps:
            progress = state.current_step / cfg.warmup_steps
            return cfg.initial_lr * progress, SchedulerInfo(phase='warmup', progress=progress)

        cosine_steps = state.current_step - cfg.warmup_steps
        total_cosine_steps = max(cfg.total_steps - cfg.warmup_steps, 1)
        progress = min(cosine_steps / total_cosine_steps, 1.0)
        return self._cosine_value(progress), SchedulerInfo(phase='cosine_annealing', progress=progress)

    def _cosine(self, state: SchedulerState, metric) -> Tuple[float, SchedulerInfo]:
        progress = min(state.current_step / max(self.config.total_steps, 1), 1.0)
        return self._cosine_value(progress), SchedulerInfo(phase='cosine_annealing', progress=progress)

    def _plateau(self, state: SchedulerState, metric) -> Tuple[float, SchedulerInfo]:
        cfg = self.config
        info = SchedulerInfo(phase='plateau')
        if metric is None:
            return state.current_lr, info

        if metric < state.best_metric - cfg.threshold:
            state.best_metric = metric
            state.plateau_counter = 0
        else:
            state.plateau_counter += 1

        info.progress = state.plateau_counter / max(cfg.patience, 1)
        if state.plateau_counter >= cfg.patience:
            new_lr = state.current_lr * cfg.factor
            state.plateau_counter = 0
            info.was_reduced = True
            logger.info("Learning rate reduced on plateau: %.3e -> %.3e (metric=%s best=%s)",
                        state.current_lr, new_lr, metric, state.best_metric)
            return new_lr, info
        return state.current_lr, info

    def _warm_restarts(self, state: SchedulerState, metric) -> Tuple[float, SchedulerInfo]:
        cfg = self.config
        info = SchedulerInfo(phase='warm_restarts')
        period = cfg.restart_period * cfg.restart_mult ** state.restart_count
        steps_since_restart = state.current_step - state.last_restart_step

        if steps_since_restart >= period:
            state.last_restart_step = state.current_step
            state.restart_count += 1
            steps_since_restart = 0
            period = cfg.restart_period * cfg.restart_mult ** state.restart_count
            info.was_restarted = True
            logger.info("Warm restart %d at step %d, next period=%s",
                        state.restart_count, state.current_step, period)

        info.progress = min(steps_since_restart / max(period, 1), 1.0)
        return self._cosine_value(info.progress), info

    def progression(self, steps: int = 1000, metrics: Optional[List[float]] = None) -> Dict:
        """Dry-run the schedule on a fresh state and sample the LR trajectory."""
        state = self.initialize_state()
        trajectory = [{'step': 0, 'lr': state.current_lr, 'phase': 'initial'}]
        for i in range(steps):
            metric = metrics[i] if metrics is not None and i < len(metrics) else None
            lr, info = self.step(state, metric)
            if i % 10 == 0 or info.was_reduced or info.was_restarted:
                trajectory.append({'step': state.current_step, 'lr': lr, 'phase': info.phase})
        return {
            'scheduler_type': self.config.scheduler_type,
            'lr_progression': trajectory,
            'final_lr': state.current_lr,
        }
