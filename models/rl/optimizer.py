# models/rl/optimizer.py
# Framework-free AdamW over lists of numpy tensors.

import numpy as np
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple
import logging

from core.config import OptimizerConfig
from core.tensors import TensorList, as_tensor_list, clone_tensors, count_parameters
from core.types import StepInfo

logger = logging.getLogger(__name__)


@dataclass
class OptimizerState:
    """Per-tensor moment estimates plus the shared step counter."""
    step: int
    momentum: TensorList
    velocity: TensorList
    max_velocity: Optional[TensorList] = None

    def clone(self) -> "OptimizerState":
        return OptimizerState(
            step=self.step,
            momentum=clone_tensors(self.momentum),
            velocity=clone_tensors(self.velocity),
            max_velocity=clone_tensors(self.max_velocity) if self.max_velocity is not None else None,
        )

    def state_dict(self) -> Dict:
        return {
            'step': self.step,
            'momentum': [m.tolist() for m in self.momentum],
            'velocity': [v.tolist() for v in self.velocity],
            'max_velocity': [v.tolist() for v in self.max_velocity] if self.max_velocity is not None else None,
        }

    @classmethod
    def from_state_dict(cls, state: Dict) -> "OptimizerState":
        max_velocity = state.get('max_velocity')
        return cls(
            step=int(state['step']),
            momentum=as_tensor_list(state['momentum']),
            velocity=as_tensor_list(state['velocity']),
            max_velocity=as_tensor_list(max_velocity) if max_velocity is not None else None,
        )


class AdamW:
    """
    AdamW - Adam with decoupled weight decay (Loshchilov & Hutter, 2019)

    === UPDATE RULE ===

        m_t = β1 * m_{t-1} + (1 - β1) * g_t
        v_t = β2 * v_{t-1} + (1 - β2) * g_t²
        lr_eff = lr * sqrt(1 - β2^t) / (1 - β1^t)          # bias correction
        θ_t = θ_{t-1} - lr_eff * m_t / (sqrt(v_t) + ε) - lr * λ * θ_{t-1}

    The weight-decay term uses the *original* parameter and never passes
    through the adaptive denominator. With AMSGrad, v_max = max(v_max, v_t)
    replaces v_t in the denominator.

    The optimizer itself is stateless between calls: all moment buffers live
    in an OptimizerState owned by the caller.
    """

    def __init__(self, config: Optional[OptimizerConfig] = None):
        self.config = config if config is not None else OptimizerConfig()

    def update_config(self, **overrides):
        self.config.update(**overrides)

    def initialize_state(self, parameter_shapes: Sequence[Tuple[int, ...]]) -> OptimizerState:
        momentum = [np.zeros(shape, dtype=np.float64) for shape in parameter_shapes]
        velocity = [np.zeros(shape, dtype=np.float64) for shape in parameter_shapes]
        max_velocity = None
        if self.config.amsgrad:
            max_velocity = [np.zeros(shape, dtype=np.float64) for shape in parameter_shapes]

        state = OptimizerState(step=0, momentum=momentum, velocity=velocity, max_velocity=max_velocity)
        logger.info("AdamW state initialized: tensors=%d parameters=%d amsgrad=%s",
                    len(parameter_shapes), count_parameters(momentum), self.config.amsgrad)
        return state

    def step(self, parameters, gradients, state: OptimizerState) -> Tuple[TensorList, OptimizerState, StepInfo]:
        """Apply one AdamW update.

        Returns freshly allocated parameters; ``state`` is mutated in place
        (moments and step counter) and returned for convenience.
        """
        cfg = self.config
        parameters = as_tensor_list(parameters)
        gradients = as_tensor_list(gradients)
        if len(parameters) != len(gradients):
            raise ValueError(f"parameters/gradients tensor count mismatch: {len(parameters)} != {len(gradients)}")

        if cfg.amsgrad and state.max_velocity is None:
            state.max_velocity = [np.zeros_like(v) for v in state.velocity]

        state.step += 1
        bias_correction1 = 1.0 - cfg.beta1 ** state.step
        bias_correction2 = 1.0 - cfg.beta2 ** state.step
        effective_lr = cfg.learning_rate * np.sqrt(bias_correction2) / bias_correction1

        updated: TensorList = []
        for idx, (param, grad) in enumerate(zip(parameters, gradients)):
            m = state.momentum[idx]
            v = state.velocity[idx]

            m *= cfg.beta1
            m += (1.0 - cfg.beta1) * grad
            v *= cfg.beta2
            v += (1.0 - cfg.beta2) * grad * grad

            if cfg.amsgrad:
                v_max = state.max_velocity[idx]
                np.maximum(v_max, v, out=v_max)
                denominator = np.sqrt(v_max) + cfg.epsilon
            else:
                denominator = np.sqrt(v) + cfg.epsilon

            gradient_update = effective_lr * m / denominator
            weight_decay_update = cfg.learning_rate * cfg.weight_decay * param
            updated.append(param - gradient_update - weight_decay_update)

        info = StepInfo(
            step=state.step,
            bias_correction1=bias_correction1,
            bias_correction2=bias_correction2,
            effective_lr=float(effective_lr),
        )
        logger.debug("AdamW step %d: effective_lr=%.8f bc1=%.6f bc2=%.6f",
                     state.step, effective_lr, bias_correction1, bias_correction2)
        return updated, state, info

    def verify_decoupled_weight_decay(self, tolerance: float = 1e-6) -> Tuple[bool, Dict[str, float]]:
        """Self-check: the weight-decay contribution must equal lr * λ * θ exactly.

        Runs the same first step with λ=0 and λ=0.01 on identical inputs and
        compares the difference at position [0][0].
        """
        test_params = [np.array([[1.0, 2.0], [3.0, 4.0]])]
        test_grads = [np.array([[0.1, 0.2], [0.3, 0.4]])]
        shapes = [(2, 2)]

        base = self.config.to_dict()
        without_decay = AdamW(OptimizerConfig(**{**base, 'weight_decay': 0.0}))
        with_decay = AdamW(OptimizerConfig(**{**base, 'weight_decay': 0.01}))

        params_without, _, _ = without_decay.step(test_params, test_grads, without_decay.initialize_state(shapes))
        params_with, _, _ = with_decay.step(test_params, test_grads, with_decay.initialize_state(shapes))

        expected = self.config.learning_rate * 0.01 * test_params[0][0, 0]
        actual = float(params_without[0][0, 0] - params_with[0][0, 0])
        passed = abs(actual - expected) < tolerance

        details = {
            'without_weight_decay': float(params_without[0][0, 0]),
            'with_weight_decay': float(params_with[0][0, 0]),
            'expected_difference': float(expected),
            'actual_difference': actual,
        }
        logger.info("Weight decay decoupling verification: passed=%s %s", passed, details)
        return passed, details
