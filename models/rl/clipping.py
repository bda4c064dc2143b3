# models/rl/clipping.py

import numpy as np
from typing import Dict, List, Optional, Tuple
import logging

from core.config import ClipConfig
from core.exceptions import NonFiniteGradientError, UnknownStrategyError
from core.tensors import as_tensor_list
from core.types import ClipResult, NormType

logger = logging.getLogger(__name__)


def global_norm(gradients, norm_type: NormType = NormType.L2) -> float:
    """Norm of the concatenation of every scalar of every tensor."""
    tensors = as_tensor_list(gradients)
    if not tensors:
        return 0.0
    flat = np.concatenate([t.ravel() for t in tensors])
    if flat.size == 0:
        return 0.0
    if norm_type == NormType.L2:
        return float(np.sqrt(np.sum(flat * flat)))
    if norm_type == NormType.L1:
        return float(np.sum(np.abs(flat)))
    if norm_type == NormType.INF:
        return float(np.max(np.abs(flat)))
    raise UnknownStrategyError('norm', norm_type)


class GradientClipper:
    """Global-norm gradient clipping.

    If the global norm exceeds ``max_norm`` every element is scaled by
    ``max_norm / norm``, preserving the relative direction across tensors.
    Sub-threshold inputs pass through unchanged.
    """

    def __init__(self, config: Optional[ClipConfig] = None):
        self.config = config if config is not None else ClipConfig()

    def update_config(self, **overrides):
        self.config.update(**overrides)

    def _norm_type(self) -> NormType:
        try:
            return NormType(self.config.norm_type)
        except ValueError:
            raise UnknownStrategyError('norm', self.config.norm_type) from None

    def clip(self, gradients) -> ClipResult:
        """Return a clipped copy; the input tensors are left untouched.

        A non-finite norm raises in strict mode. Otherwise the gradients are
        returned unscaled (``was_clipped=False``) so the NaN/Inf values reach
        the stability watchdog intact.
        """
        tensors = as_tensor_list(gradients)
        norm = global_norm(tensors, self._norm_type())

        if not np.isfinite(norm):
            if self.config.error_if_nonfinite:
                raise NonFiniteGradientError(norm)
            logger.warning("Non-finite gradient norm (%s), passing gradients through unscaled", norm)
            return ClipResult(clipped_gradients=[t.copy() for t in tensors], global_norm=norm,
                              was_clipped=False, scale_factor=1.0)

        if norm > self.config.max_norm:
            scale = self.config.max_norm / norm
            clipped = [t * scale for t in tensors]
            was_clipped = True
        else:
            scale = 1.0
            clipped = [t.copy() for t in tensors]
            was_clipped = False

        logger.debug("Gradient clipping: norm=%.6f max_norm=%.4f clipped=%s scale=%.6f",
                     norm, self.config.max_norm, was_clipped, scale)
        return ClipResult(clipped_gradients=clipped, global_norm=norm,
                          was_clipped=was_clipped, scale_factor=float(scale))

    def clip_(self, gradients: List[np.ndarray]) -> ClipResult:
        """In-place variant: scales the given float arrays directly."""
        norm = global_norm(gradients, self._norm_type())
        if not np.isfinite(norm) and self.config.error_if_nonfinite:
            raise NonFiniteGradientError(norm)
        scale = 1.0
        if np.isfinite(norm) and norm > self.config.max_norm:
            scale = self.config.max_norm / norm
            for t in gradients:
                t *= scale
        return ClipResult(clipped_gradients=gradients, global_norm=norm,
                          was_clipped=scale != 1.0, scale_factor=float(scale))

    def exploding_gradient_self_test(self) -> Tuple[bool, List[Dict]]:
        """Clip a few extreme gradient sets and check the result norm respects max_norm."""
        cases = {
            'normal_gradients': [np.array([[0.1, 0.2], [0.3, 0.4]])],
            'large_gradients': [np.array([[10.0, 20.0], [30.0, 40.0]])],
            'exploding_gradients': [np.array([[1000.0, 2000.0], [3000.0, 4000.0]])],
            'mixed_scale': [np.array([[1e-6, 1e6], [1e-3, 1e3]])],
        }
        results = []
        all_passed = True
        norm_type = self._norm_type()
        for name, grads in cases.items():
            result = self.clip(grads)
            clipped_norm = global_norm(result.clipped_gradients, norm_type)
            if result.was_clipped:
                passed = clipped_norm <= self.config.max_norm * (1 + 1e-6)
            else:
                passed = result.global_norm <= self.config.max_norm
            results.append({
                'test_name': name,
                'original_norm': result.global_norm,
                'clipped_norm': clipped_norm,
                'was_clipped': result.was_clipped,
                'passed': bool(passed),
            })
            all_passed = all_passed and bool(passed)
        logger.info("Exploding gradient self-test: passed=%s cases=%d", all_passed, len(results))
        return all_passed, results
