# trainer.py
# Training orchestrator: replay memory -> evaluator -> watchdog -> clip -> schedule -> AdamW.

import asyncio
import inspect
import time
import logging
import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from core.config import TrainerConfig
from core.exceptions import (
    EvaluationError,
    InsufficientDataError,
    MaxResetsExceededError,
    NotInitializedError,
)
from core.metrics import ClassificationAccuracy, DirectionalAccuracy, LossSummary, MetricsTracker, average_metrics
from core.tensors import TensorList, as_tensor_list, clone_tensors, count_parameters
from core.types import (
    AccuracyMetrics,
    ActionSelection,
    EvaluationResult,
    ExplorationStats,
    LossBreakdown,
    SampledBatch,
    StabilityMetrics,
    TrainingMetrics,
)
from models.evaluator import ModelEvaluator
from models.initializer import NetworkSpec, XavierInitializer
from models.rl.clipping import GradientClipper
from models.rl.exploration import ExplorationPolicy, ExplorationState
from models.rl.memory import PrioritizedReplayMemory
from models.rl.optimizer import AdamW, OptimizerState
from models.rl.scheduler import LearningRateScheduler, SchedulerState
from models.rl.watchdog import InstabilityWatchdog, WatchdogState

logger = logging.getLogger(__name__)


@dataclass
class TrainingState:
    epoch: int = 0
    step: int = 0
    best_validation_loss: float = float('inf')
    patience_counter: int = 0
    is_training: bool = False
    start_time: float = 0.0


class Trainer:
    """
    Owns one parameter set and every piece of state that evolves with it.

    The components (memory, optimizer, clipper, scheduler, watchdog,
    exploration) are stateless apart from their configs; their states are
    created in ``initialize`` and passed explicitly on every call.

    ``train_step`` and ``train_epoch`` are coroutines. The evaluator may be
    synchronous or return an awaitable; a lock keeps at most one step in
    flight against the parameters.
    """

    def __init__(self, evaluator: ModelEvaluator, config: Optional[TrainerConfig] = None,
                 memory: Optional[PrioritizedReplayMemory] = None,
                 rng: Optional[np.random.Generator] = None):
        self.config = config if config is not None else TrainerConfig()
        self.evaluator = evaluator
        self.rng = rng if rng is not None else np.random.default_rng(self.config.training.seed)

        self.memory = memory if memory is not None else PrioritizedReplayMemory(self.config.buffer, self.rng)
        self.optimizer = AdamW(self.config.optimizer)
        self.clipper = GradientClipper(self.config.clipping)
        self.scheduler = LearningRateScheduler(self.config.scheduler)
        self.watchdog = InstabilityWatchdog(self.config.watchdog)
        self.exploration = ExplorationPolicy(self.config.exploration, self.rng)
        self.initializer = XavierInitializer(self.rng)

        self.directional_accuracy = DirectionalAccuracy()
        self.classification_accuracy = ClassificationAccuracy(self.config.ingestion.zero_reward_action)
        self.loss_summary = LossSummary()
        self.tracker = MetricsTracker()

        self.spec: Optional[NetworkSpec] = None
        self.parameters: Optional[TensorList] = None
        self.optimizer_state: Optional[OptimizerState] = None
        self.scheduler_state: Optional[SchedulerState] = None
        self.watchdog_state: Optional[WatchdogState] = None
        self.exploration_state: Optional[ExplorationState] = None
        self.state = TrainingState()

        # Created inside the running event loop on the first step of each loop
        self._step_lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._last_td_errors: Optional[np.ndarray] = None

    @property
    def is_initialized(self) -> bool:
        return self.parameters is not None

    @property
    def is_training(self) -> bool:
        return self.state.is_training

    def initialize(self, spec: NetworkSpec, parameters: Optional[Sequence[np.ndarray]] = None):
        """Allocate parameters (Xavier unless given) and fresh component states."""
        self.spec = spec
        if parameters is None:
            self.parameters = self.initializer.initialize_network(spec)
        else:
            self.parameters = clone_tensors(as_tensor_list(parameters))

        shapes = [p.shape for p in self.parameters]
        self.optimizer_state = self.optimizer.initialize_state(shapes)
        self.scheduler_state = self.scheduler.initialize_state()
        self.watchdog_state = self.watchdog.initialize_state()
        self.exploration_state = self.exploration.initialize_state()
        self.state = TrainingState()
        self.tracker.clear()

        logger.info(f"Trainer initialized: tensors={len(self.parameters)} "
                    f"parameters={count_parameters(self.parameters)} "
                    f"scheduler={self.config.scheduler.scheduler_type} "
                    f"exploration={self.config.exploration.strategy}")

    def _require_initialized(self):
        if not self.is_initialized:
            raise NotInitializedError("Training engine not initialized, call initialize() first")

    async def _evaluate(self, batch: SampledBatch) -> EvaluationResult:
        try:
            result = self.evaluator.evaluate(self.parameters, batch)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            raise EvaluationError(f"Model evaluation failed at step {self.state.step}: {e}") from e
        return result

    async def train_step(self, batch: SampledBatch) -> TrainingMetrics:
        """One optimization step on ``batch``; returns the step's metrics record."""
        self._require_initialized()
        loop = asyncio.get_running_loop()
        if self._step_lock is None or self._lock_loop is not loop:
            self._step_lock = asyncio.Lock()
            self._lock_loop = loop
        async with self._step_lock:
            try:
                return await self._train_step(batch)
            except Exception:
                logger.exception(f"Training step {self.state.step} failed")
                raise

    async def _train_step(self, batch: SampledBatch) -> TrainingMetrics:
        self.state.step += 1
        step = self.state.step

        evaluation = await self._evaluate(batch)
        loss = float(evaluation.loss)
        gradients = as_tensor_list(evaluation.gradients)
        self._last_td_errors = evaluation.td_errors

        report = self.watchdog.check_stability(step, self.parameters, gradients, loss,
                                               self.optimizer_state, self.watchdog_state)
        if report.max_resets_exceeded:
            logger.error(f"Halting training at step {step}: {report.reset_cause}")
            raise MaxResetsExceededError(self.watchdog_state.reset_count,
                                         self.config.watchdog.max_resets, step)

        if report.should_reset:
            logger.warning(f"Training instability detected, performing reset: cause={report.reset_cause} "
                           f"step={step}")
            if report.restored_parameters is not None:
                self.parameters = report.restored_parameters
            if report.restored_optimizer_state is not None:
                self.optimizer_state = report.restored_optimizer_state
            if report.new_lr_factor is not None:
                self.scheduler.apply_lr_factor(self.scheduler_state, report.new_lr_factor)

        clip_result = self.clipper.clip(gradients)
        learning_rate, _ = self.scheduler.step(self.scheduler_state, loss)
        self.optimizer.update_config(learning_rate=learning_rate)

        # Gradients from the rejected step are not applied to the restored parameters
        if not report.should_reset:
            self.parameters, self.optimizer_state, _ = self.optimizer.step(
                self.parameters, clip_result.clipped_gradients, self.optimizer_state)

        metrics = self._build_metrics(batch, evaluation, loss, clip_result.global_norm, learning_rate,
                                      report, clip_result.was_clipped)
        self.tracker.update(metrics)

        if step % max(self.config.training.log_interval, 1) == 0:
            logger.info(f"Step {step}: loss={loss:.6f} grad_norm={clip_result.global_norm:.4f} "
                        f"lr={learning_rate:.3e} dir_acc={metrics.accuracy.directional:.3f} "
                        f"resets={self.watchdog_state.reset_count}")
        return metrics

    def _build_metrics(self, batch: SampledBatch, evaluation: EvaluationResult, loss: float,
                       gradient_norm: float, learning_rate: float, report, was_clipped: bool) -> TrainingMetrics:
        rewards = [e.reward for e in batch.experiences]
        mse, mae, r_squared = self.loss_summary.calculate(loss, evaluation.td_errors, rewards)
        exploration = self.exploration.statistics(self.exploration_state)
        return TrainingMetrics(
            epoch=self.state.epoch,
            step=self.state.step,
            timestamp=time.time(),
            loss=LossBreakdown(mse=mse, mae=mae, r_squared=r_squared),
            accuracy=AccuracyMetrics(
                directional=self.directional_accuracy.calculate(evaluation.predictions, rewards),
                classification=self.classification_accuracy.calculate(evaluation.predictions, rewards),
            ),
            gradient_norm=float(gradient_norm),
            learning_rate=float(learning_rate),
            stability=StabilityMetrics(
                nan_count=report.nan_count,
                inf_count=report.inf_count,
                reset_count=self.watchdog_state.reset_count,
            ),
            exploration=ExplorationStats(
                epsilon=exploration['current_epsilon'],
                exploration_ratio=exploration['exploration_ratio'],
                exploitation_ratio=exploration['exploitation_ratio'],
            ),
            was_clipped=was_clipped,
            was_reset=report.should_reset,
        )

    async def train_epoch(self) -> List[TrainingMetrics]:
        """Sample ``len(memory) // batch_size`` batches, train on each and re-prioritize.

        TD errors from the evaluator drive the new priorities; without them
        the absolute reward is used.
        """
        self._require_initialized()
        batch_size = self.config.training.batch_size
        if len(self.memory) < batch_size:
            raise InsufficientDataError(len(self.memory), batch_size)

        self.state.epoch += 1
        self.state.is_training = True
        self.state.start_time = time.time()
        epoch_metrics: List[TrainingMetrics] = []

        try:
            num_batches = len(self.memory) // batch_size
            for _ in range(num_batches):
                batch = self.memory.sample(batch_size)
                metrics = await self.train_step(batch)
                epoch_metrics.append(metrics)
                self.memory.update_priorities(batch.indices, self._priority_errors(batch))

            averages = average_metrics(epoch_metrics)
            epoch_loss = averages.get('loss_mse', float('nan'))
            if epoch_loss < self.state.best_validation_loss:
                self.state.best_validation_loss = epoch_loss
                self.state.patience_counter = 0
            else:
                self.state.patience_counter += 1
            self.tracker.end_epoch(epoch_loss)

            logger.info(f"Epoch {self.state.epoch} completed: batches={num_batches} "
                        f"avg_loss={epoch_loss:.6f} "
                        f"avg_dir_acc={averages.get('directional_accuracy', float('nan')):.3f} "
                        f"patience={self.state.patience_counter} "
                        f"duration={time.time() - self.state.start_time:.2f}s")
            return epoch_metrics
        except Exception as e:
            logger.error(f"Epoch {self.state.epoch} training failed: {e}")
            raise
        finally:
            self.state.is_training = False

    def _priority_errors(self, batch: SampledBatch) -> np.ndarray:
        latest = self._last_td_errors
        if latest is not None and len(latest) == len(batch):
            return np.abs(np.asarray(latest, dtype=np.float64))
        return np.abs(np.array([e.reward for e in batch.experiences], dtype=np.float64))

    def should_stop_early(self) -> bool:
        return self.state.patience_counter >= self.config.training.early_stopping_patience

    def select_action(self, q_values: Sequence[float],
                      uncertainties: Optional[Sequence[float]] = None) -> ActionSelection:
        self._require_initialized()
        return self.exploration.select_action(q_values, self.exploration_state, uncertainties)

    def training_state(self) -> Dict:
        """Snapshot of progress and component statistics."""
        self._require_initialized()
        return {
            'epoch': self.state.epoch,
            'step': self.state.step,
            'is_training': self.state.is_training,
            'best_validation_loss': self.state.best_validation_loss,
            'patience_counter': self.state.patience_counter,
            'learning_rate': self.scheduler.current_lr(self.scheduler_state),
            'optimizer_step': self.optimizer_state.step,
            'memory': self.memory.statistics(),
            'watchdog': self.watchdog.statistics(self.watchdog_state),
            'exploration': self.exploration.statistics(self.exploration_state),
            'metrics': self.tracker.get_metrics_summary(),
        }
