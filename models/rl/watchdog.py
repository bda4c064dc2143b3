# models/rl/watchdog.py

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging

from core.config import WatchdogConfig
from core.tensors import TensorList, as_tensor_list, clone_tensors, count_non_finite, finite_l2_norm
from core.types import ResetRecord, StabilityReport
from .optimizer import OptimizerState

logger = logging.getLogger(__name__)

MAX_RESETS_EXCEEDED = "Max resets exceeded"


def clone_optimizer_state(optimizer_state: Optional[OptimizerState]) -> Optional[OptimizerState]:
    if optimizer_state is None:
        return None
    return optimizer_state.clone()


@dataclass
class StableCheckpoint:
    step: int
    parameters: TensorList
    optimizer_state: Optional[OptimizerState]
    loss: float


@dataclass
class WatchdogState:
    last_check_step: int = 0
    reset_count: int = 0
    total_nan_detected: int = 0
    total_inf_detected: int = 0
    last_stable_checkpoint: Optional[StableCheckpoint] = None
    reset_history: List[ResetRecord] = field(default_factory=list)


def _is_finite_loss(loss) -> bool:
    try:
        return math.isfinite(float(loss))
    except (TypeError, ValueError):
        return False


class InstabilityWatchdog:
    """Periodic numerical health check with checkpoint rollback.

    Every ``check_interval`` steps the watchdog counts NaN/Inf values in the
    parameters and gradients and measures the gradient norm. Instability is
    declared on the first tripped condition, in order: NaN count, Inf count,
    non-finite or excessive loss, gradient explosion.

    On instability it suggests a rollback to the last stable checkpoint and
    an LR factor of ``reset_lr_factor ** reset_count``; the caller applies it.
    Once ``max_resets`` is reached it stops resetting and flags the report
    with ``max_resets_exceeded`` so the caller can halt training.

    A passing check replaces the stored checkpoint with a deep copy of the
    current parameters and optimizer state.
    """

    def __init__(self, config: Optional[WatchdogConfig] = None):
        self.config = config if config is not None else WatchdogConfig()

    def update_config(self, **overrides):
        self.config.update(**overrides)

    def initialize_state(self) -> WatchdogState:
        logger.info("Instability watchdog initialized: check_interval=%d max_resets=%d",
                    self.config.check_interval, self.config.max_resets)
        return WatchdogState()

    def check_stability(self, current_step: int, parameters, gradients, loss,
                        optimizer_state: Optional[OptimizerState], state: WatchdogState) -> StabilityReport:
        cfg = self.config
        if current_step - state.last_check_step < cfg.check_interval:
            return StabilityReport(is_stable=True, should_reset=False, checked=False)

        state.last_check_step = current_step
        parameters = as_tensor_list(parameters)
        gradients = as_tensor_list(gradients)

        param_nan, param_inf = count_non_finite(parameters)
        grad_nan, grad_inf = count_non_finite(gradients)
        nan_count = param_nan + grad_nan
        inf_count = param_inf + grad_inf
        state.total_nan_detected += nan_count
        state.total_inf_detected += inf_count

        gradient_norm = finite_l2_norm(gradients)

        reset_cause = None
        if nan_count > cfg.nan_threshold:
            reset_cause = f"NaN values detected: {nan_count}"
        elif inf_count > cfg.inf_threshold:
            reset_cause = f"Inf values detected: {inf_count}"
        elif not _is_finite_loss(loss) or float(loss) > cfg.loss_threshold:
            reset_cause = f"Loss instability: {loss}"
        elif gradient_norm > cfg.gradient_threshold:
            reset_cause = f"Gradient explosion: {gradient_norm:.2f}"

        report = StabilityReport(is_stable=reset_cause is None, should_reset=False, checked=True,
                                 reset_cause=reset_cause, nan_count=nan_count, inf_count=inf_count,
                                 gradient_norm=gradient_norm)

        if reset_cause is None:
            state.last_stable_checkpoint = StableCheckpoint(
                step=current_step,
                parameters=clone_tensors(parameters),
                optimizer_state=clone_optimizer_state(optimizer_state),
                loss=float(loss),
            )
            logger.debug("Stable check at step %d, checkpoint stored (loss=%.6f)", current_step, float(loss))
            return report

        if state.reset_count >= cfg.max_resets:
            logger.error("Maximum resets exceeded (%d/%d) at step %d: %s. Training should be stopped",
                         state.reset_count, cfg.max_resets, current_step, reset_cause)
            report.reset_cause = f"{MAX_RESETS_EXCEEDED}: {reset_cause}"
            report.max_resets_exceeded = True
            return report

        state.reset_count += 1
        report.should_reset = True
        report.new_lr_factor = cfg.reset_lr_factor ** state.reset_count
        state.reset_history.append(ResetRecord(
            step=current_step,
            cause=reset_cause,
            loss_value=float(loss) if loss is not None else float('nan'),
            gradient_norm=gradient_norm,
            nan_count=nan_count,
            inf_count=inf_count,
        ))
        logger.warning("Numerical instability at step %d: %s (reset %d/%d, lr factor %.4f)",
                       current_step, reset_cause, state.reset_count, cfg.max_resets, report.new_lr_factor)

        checkpoint = state.last_stable_checkpoint
        if checkpoint is not None:
            report.restored_parameters = clone_tensors(checkpoint.parameters)
            report.restored_optimizer_state = clone_optimizer_state(checkpoint.optimizer_state)
            logger.info("Rollback suggested to checkpoint from step %d (loss=%.6f)",
                        checkpoint.step, checkpoint.loss)
        return report

    def statistics(self, state: WatchdogState) -> Dict:
        return {
            'reset_count': state.reset_count,
            'total_nan_detected': state.total_nan_detected,
            'total_inf_detected': state.total_inf_detected,
            'reset_history': list(state.reset_history),
            'has_stable_checkpoint': state.last_stable_checkpoint is not None,
        }

    def detection_self_test(self) -> Tuple[bool, List[Dict]]:
        """Run the canonical instability cases against fresh states."""
        stable_params = [[[1.0, 2.0], [3.0, 4.0]]]
        stable_grads = [[[0.1, 0.2], [0.3, 0.4]]]
        cases = [
            ('stable_case', stable_params, stable_grads, 0.5, False),
            ('nan_parameters', [[[float('nan'), 2.0], [3.0, 4.0]]], stable_grads, 0.5, True),
            ('inf_gradients', stable_params, [[[float('inf'), 0.2], [0.3, 0.4]]], 0.5, True),
            ('high_loss', stable_params, stable_grads, 1e7, True),
            ('exploding_gradients', stable_params, [[[1000.0, 2000.0], [3000.0, 4000.0]]], 0.5, True),
        ]
        results = []
        all_passed = True
        for name, params, grads, loss, should_detect in cases:
            state = WatchdogState()
            report = self.check_stability(max(100, self.config.check_interval), params, grads, loss, None, state)
            passed = report.should_reset == should_detect
            results.append({
                'test_name': name,
                'should_detect': should_detect,
                'was_detected': report.should_reset,
                'reset_cause': report.reset_cause,
                'passed': passed,
            })
            all_passed = all_passed and passed
        logger.info("Instability detection self-test: passed=%s cases=%d", all_passed, len(results))
        return all_passed, results
