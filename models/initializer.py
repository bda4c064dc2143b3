# models/initializer.py
# Xavier/Glorot initialization for the dense parameter tensors handed to the trainer.

import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from core.tensors import TensorList

logger = logging.getLogger(__name__)

# Gain multipliers per layer family
LAYER_GAINS = {
    'dense': 1.0,
    'lstm': 0.8,
    'conv': 1.2,
}


@dataclass
class NetworkSpec:
    """Architecture descriptor: a stack of fully connected layers.

    Parameters are laid out as ``[W_0, b_0, W_1, b_1, ...]`` with ``W_i`` of
    shape ``(fan_out, fan_in)``.
    """
    input_features: int
    output_size: int
    hidden_sizes: Tuple[int, ...] = ()
    layer_type: str = 'dense'
    mode: str = 'uniform'       # 'uniform' or 'normal'
    gain: float = 1.0

    @property
    def layer_sizes(self) -> List[Tuple[int, int]]:
        sizes = [self.input_features, *self.hidden_sizes, self.output_size]
        return [(sizes[i], sizes[i + 1]) for i in range(len(sizes) - 1)]

    def parameter_shapes(self) -> List[Tuple[int, ...]]:
        shapes: List[Tuple[int, ...]] = []
        for fan_in, fan_out in self.layer_sizes:
            shapes.append((fan_out, fan_in))
            shapes.append((fan_out,))
        return shapes


class XavierInitializer:
    """
    Xavier/Glorot initialization (Glorot & Bengio, 2010)

    Uniform:  W ~ U(-limit, limit), limit = gain * sqrt(6 / (fan_in + fan_out))
    Normal:   W ~ N(0, std²),       std   = gain * sqrt(2 / (fan_in + fan_out))

    Both keep the activation variance roughly constant across layers.
    """

    def __init__(self, rng: Optional[np.random.Generator] = None):
        self.rng = rng if rng is not None else np.random.default_rng()

    def uniform(self, fan_in: int, fan_out: int, gain: float = 1.0) -> np.ndarray:
        limit = gain * np.sqrt(6.0 / (fan_in + fan_out))
        weights = self.rng.uniform(-limit, limit, size=(fan_out, fan_in))
        logger.debug("Xavier uniform: fan_in=%d fan_out=%d gain=%.3f limit=%.6f",
                     fan_in, fan_out, gain, limit)
        return weights

    def normal(self, fan_in: int, fan_out: int, gain: float = 1.0) -> np.ndarray:
        std = gain * np.sqrt(2.0 / (fan_in + fan_out))
        weights = self.rng.normal(0.0, std, size=(fan_out, fan_in))
        logger.debug("Xavier normal: fan_in=%d fan_out=%d gain=%.3f std=%.6f",
                     fan_in, fan_out, gain, std)
        return weights

    def initialize_layer(self, layer_type: str, fan_in: int, fan_out: int,
                         gain: float = 1.0, mode: str = 'uniform') -> np.ndarray:
        if layer_type not in LAYER_GAINS:
            raise ValueError(f"Unknown layer type: {layer_type}. Choose from: {', '.join(LAYER_GAINS)}")
        gain = gain * LAYER_GAINS[layer_type]
        if mode == 'uniform':
            return self.uniform(fan_in, fan_out, gain)
        if mode == 'normal':
            return self.normal(fan_in, fan_out, gain)
        raise ValueError(f"Unknown initialization mode: {mode}")

    def initialize_network(self, spec: NetworkSpec) -> TensorList:
        parameters: TensorList = []
        for fan_in, fan_out in spec.layer_sizes:
            parameters.append(self.initialize_layer(spec.layer_type, fan_in, fan_out, spec.gain, spec.mode))
            parameters.append(np.zeros(fan_out, dtype=np.float64))
        logger.info("Network initialized: layers=%d parameters=%d",
                    len(spec.layer_sizes), sum(p.size for p in parameters))
        return parameters

    @staticmethod
    def verify_gradient_balance(layer_weights: Sequence[np.ndarray]) -> Dict:
        """Compare weight variances between consecutive layers.

        An average variance ratio outside (0.5, 2.0) hints at vanishing or
        exploding signal through the stack.
        """
        variances = [float(np.var(w)) for w in layer_weights]
        ratios = [variances[i] / variances[i - 1] if variances[i - 1] > 0 else float('inf')
                  for i in range(1, len(variances))]
        recommendations = []
        if not ratios:
            return {'is_balanced': True, 'variance_ratios': [], 'recommendations': recommendations}

        avg_ratio = float(np.mean(ratios))
        is_balanced = 0.5 < avg_ratio < 2.0
        if not is_balanced:
            if avg_ratio <= 0.5:
                recommendations.append('Gradients may vanish - consider increasing initialization gain')
            else:
                recommendations.append('Gradients may explode - consider decreasing initialization gain')
        logger.info("Gradient balance: avg_variance_ratio=%.3f balanced=%s", avg_ratio, is_balanced)
        return {'is_balanced': is_balanced, 'variance_ratios': ratios, 'recommendations': recommendations}
