"""Tests for the AdamW optimizer and the gradient clipper."""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest
import torch
from core.config import ClipConfig, OptimizerConfig
from core.exceptions import ConfigError, NonFiniteGradientError, UnknownStrategyError
from models.rl.clipping import GradientClipper, global_norm
from models.rl.optimizer import AdamW, OptimizerState

PARAMS = [np.array([[1.0, 2.0], [3.0, 4.0]])]
GRADS = [np.array([[0.1, 0.2], [0.3, 0.4]])]


class TestAdamW:
    def test_decoupled_weight_decay_difference(self):
        without = AdamW(OptimizerConfig(learning_rate=0.001, weight_decay=0.0))
        with_decay = AdamW(OptimizerConfig(learning_rate=0.001, weight_decay=0.01))
        p0, _, _ = without.step(PARAMS, GRADS, without.initialize_state([(2, 2)]))
        p1, _, _ = with_decay.step(PARAMS, GRADS, with_decay.initialize_state([(2, 2)]))
        assert p0[0][0, 0] - p1[0][0, 0] == pytest.approx(1e-5, abs=1e-6)

    def test_self_check_passes(self):
        passed, details = AdamW().verify_decoupled_weight_decay()
        assert passed
        assert details['expected_difference'] == pytest.approx(1e-5)

    def test_first_step_moves_by_learning_rate(self):
        # With bias correction the first step is ~lr * sign(g)
        optimizer = AdamW(OptimizerConfig(learning_rate=0.01, weight_decay=0.0))
        state = optimizer.initialize_state([(2, 2)])
        updated, state, info = optimizer.step(PARAMS, GRADS, state)
        np.testing.assert_allclose(PARAMS[0] - updated[0], 0.01, rtol=1e-4)
        assert info.step == 1
        assert info.bias_correction1 == pytest.approx(0.1)
        assert info.bias_correction2 == pytest.approx(0.001)

    def test_does_not_mutate_parameters(self):
        params = [PARAMS[0].copy()]
        optimizer = AdamW()
        optimizer.step(params, GRADS, optimizer.initialize_state([(2, 2)]))
        np.testing.assert_array_equal(params[0], PARAMS[0])

    def test_matches_torch_adamw(self):
        rng = np.random.default_rng(0)
        params = [rng.normal(size=(3, 4)), rng.normal(size=(4,))]
        grads_seq = [[rng.normal(size=(3, 4)), rng.normal(size=(4,))] for _ in range(5)]

        optimizer = AdamW(OptimizerConfig(learning_rate=0.01, weight_decay=0.05))
        state = optimizer.initialize_state([p.shape for p in params])
        ours = params
        for grads in grads_seq:
            ours, state, _ = optimizer.step(ours, grads, state)

        torch_params = [torch.tensor(p, dtype=torch.float64, requires_grad=True) for p in params]
        reference = torch.optim.AdamW(torch_params, lr=0.01, betas=(0.9, 0.999), eps=1e-8, weight_decay=0.05)
        for grads in grads_seq:
            for tp, g in zip(torch_params, grads):
                tp.grad = torch.tensor(g, dtype=torch.float64)
            reference.step()

        for mine, theirs in zip(ours, torch_params):
            np.testing.assert_allclose(mine, theirs.detach().numpy(), rtol=1e-5, atol=1e-5)

    def test_amsgrad_keeps_max_velocity(self):
        optimizer = AdamW(OptimizerConfig(amsgrad=True))
        state = optimizer.initialize_state([(2, 2)])
        params, state, _ = optimizer.step(PARAMS, [GRADS[0] * 10], state)
        peak = state.max_velocity[0].copy()
        optimizer.step(params, GRADS, state)
        assert np.all(state.max_velocity[0] >= peak)
        assert np.all(state.max_velocity[0] >= state.velocity[0])

    def test_state_round_trip(self):
        optimizer = AdamW()
        state = optimizer.initialize_state([(2, 2)])
        optimizer.step(PARAMS, GRADS, state)
        restored = OptimizerState.from_state_dict(state.state_dict())
        assert restored.step == 1
        np.testing.assert_allclose(restored.momentum[0], state.momentum[0])

    def test_clone_is_independent(self):
        optimizer = AdamW()
        state = optimizer.initialize_state([(2, 2)])
        copy = state.clone()
        optimizer.step(PARAMS, GRADS, state)
        assert copy.step == 0
        assert np.all(copy.momentum[0] == 0)

    def test_tensor_count_mismatch(self):
        optimizer = AdamW()
        with pytest.raises(ValueError):
            optimizer.step(PARAMS, GRADS + GRADS, optimizer.initialize_state([(2, 2)]))

    def test_invalid_override_keeps_learning_rate(self):
        optimizer = AdamW()
        with pytest.raises(ConfigError):
            optimizer.update_config(learning_rate=-1.0)
        assert optimizer.config.learning_rate == 1e-3


class TestGradientClipper:
    def test_sub_threshold_is_unchanged(self):
        clipper = GradientClipper(ClipConfig(max_norm=10.0))
        result = clipper.clip(GRADS)
        assert not result.was_clipped
        assert result.scale_factor == 1.0
        np.testing.assert_array_equal(result.clipped_gradients[0], GRADS[0])

    def test_exploding_gradients_clipped_to_max_norm(self):
        clipper = GradientClipper(ClipConfig(max_norm=1.0))
        grads = [np.array([[1000.0, 2000.0], [3000.0, 4000.0]])]
        result = clipper.clip(grads)
        assert result.was_clipped
        assert result.global_norm == pytest.approx(np.sqrt(30_000_000.0))
        assert global_norm(result.clipped_gradients) == pytest.approx(1.0)
        # Input is left untouched
        assert grads[0][0, 0] == 1000.0

    def test_in_place_variant(self):
        clipper = GradientClipper(ClipConfig(max_norm=1.0))
        grads = [np.array([3.0, 4.0])]
        result = clipper.clip_(grads)
        assert result.clipped_gradients is grads
        np.testing.assert_allclose(grads[0], [0.6, 0.8])

    @pytest.mark.parametrize("norm_type,expected", [
        ("l2", 5.0),
        ("l1", 7.0),
        ("inf", 4.0),
    ])
    def test_norm_types(self, norm_type, expected):
        grads = [np.array([3.0, -4.0])]
        assert global_norm(grads, norm_type) == pytest.approx(expected)

    def test_global_norm_spans_tensors(self):
        grads = [np.array([3.0]), np.array([[4.0]])]
        assert global_norm(grads) == pytest.approx(5.0)

    def test_unknown_norm_type(self):
        clipper = GradientClipper(ClipConfig(norm_type="l3"))
        with pytest.raises(UnknownStrategyError):
            clipper.clip(GRADS)

    def test_strict_non_finite(self):
        clipper = GradientClipper(ClipConfig(error_if_nonfinite=True))
        with pytest.raises(NonFiniteGradientError):
            clipper.clip([np.array([np.nan, 1.0])])

    def test_lenient_non_finite(self):
        clipper = GradientClipper()
        result = clipper.clip([np.array([np.inf, 1.0])])
        assert not np.isfinite(result.global_norm)
        # Passed through unscaled: Inf must not turn into NaN
        assert not result.was_clipped
        assert result.scale_factor == 1.0
        np.testing.assert_array_equal(result.clipped_gradients[0], [np.inf, 1.0])

    def test_lenient_nan_passes_through(self):
        clipper = GradientClipper()
        grads = [np.array([np.nan, 5.0])]
        result = clipper.clip(grads)
        assert not result.was_clipped
        assert np.isnan(result.clipped_gradients[0][0])
        assert result.clipped_gradients[0][1] == 5.0
        in_place = clipper.clip_(grads)
        assert not in_place.was_clipped
        assert grads[0][1] == 5.0

    def test_self_test(self):
        passed, results = GradientClipper().exploding_gradient_self_test()
        assert passed
        assert len(results) == 4
