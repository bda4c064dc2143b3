"""Tests for the sum-tree and the prioritized replay memory."""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest
from core.config import BufferConfig
from core.exceptions import ConfigError, InsufficientDataError
from core.types import Experience, ExperienceMetadata
from models.rl.memory import PrioritizedReplayMemory, SumTree


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _experience(reward=0.0, volatility=0.01, volume=1000.0, symbol="BTCUSDT", timestamp=0):
    return Experience(
        state=np.zeros(4),
        action=0,
        reward=reward,
        next_state=np.ones(4),
        timestamp=timestamp,
        symbol=symbol,
        metadata=ExperienceMetadata(price=100.0, volume=volume, volatility=volatility),
    )


def _memory(capacity=16, seed=0, **overrides):
    return PrioritizedReplayMemory(BufferConfig(capacity=capacity, **overrides), np.random.default_rng(seed))


def _fill(memory, n):
    for i in range(n):
        memory.insert(_experience(timestamp=i))


# ---------------------------------------------------------------------------
# SumTree
# ---------------------------------------------------------------------------

class TestSumTree:
    def test_root_is_sum_of_leaves(self):
        tree = SumTree(8)
        for i, p in enumerate([1.0, 2.0, 3.0, 4.0, 0.5]):
            tree.update(i, p)
        assert tree.total == pytest.approx(10.5)
        assert tree.is_consistent()

    def test_overwrite_keeps_invariant(self):
        tree = SumTree(5)
        for i in range(5):
            tree.update(i, 1.0)
        tree.update(2, 7.0)
        tree.update(4, 0.25)
        assert tree.total == pytest.approx(1 + 1 + 7 + 1 + 0.25)
        assert tree.is_consistent()

    def test_find_maps_cumulative_ranges(self):
        tree = SumTree(4)
        for i, p in enumerate([1.0, 2.0, 3.0, 4.0]):
            tree.update(i, p)
        assert tree.find(0.5) == 0
        assert tree.find(1.5) == 1
        assert tree.find(3.5) == 2
        assert tree.find(9.9) == 3

    def test_find_skips_empty_leaves(self):
        tree = SumTree(8)
        tree.update(0, 1.0)
        tree.update(1, 1.0)
        # Values at or past the total must still land on a populated slot
        assert tree.find(2.0) in (0, 1)
        assert tree.find(2.0000001) in (0, 1)


# ---------------------------------------------------------------------------
# Insert / sample
# ---------------------------------------------------------------------------

class TestPrioritizedReplayMemory:
    def test_insert_assigns_id_and_max_priority(self):
        memory = _memory()
        exp = _experience()
        memory.insert(exp)
        assert exp.id.startswith("exp_")
        assert exp.priority == pytest.approx(1.0)
        assert len(memory) == 1
        assert memory.total_priority == pytest.approx(1.0)

    def test_circular_overwrite(self):
        memory = _memory(capacity=4)
        _fill(memory, 6)
        assert len(memory) == 4
        assert memory.position == 2
        assert memory.buffer[0].timestamp == 4
        assert memory.buffer[1].timestamp == 5
        assert memory.tree.is_consistent()

    def test_sample_requires_enough_data(self):
        memory = _memory()
        _fill(memory, 3)
        with pytest.raises(InsufficientDataError):
            memory.sample(4)
        with pytest.raises(InsufficientDataError):
            memory.sample(0)

    def test_sample_shapes_and_weights(self):
        memory = _memory(capacity=32)
        _fill(memory, 20)
        batch = memory.sample(8)
        assert len(batch) == 8
        assert batch.indices.shape == (8,)
        assert np.all(batch.indices < 20)
        assert batch.weights.max() == pytest.approx(1.0)
        assert np.all(batch.weights > 0)

    def test_beta_anneals_and_caps(self):
        memory = _memory(beta=0.999, beta_increment=0.001)
        _fill(memory, 4)
        memory.sample(2)
        assert memory.beta == pytest.approx(1.0)
        memory.sample(2)
        assert memory.beta == pytest.approx(1.0)

    def test_uniform_sampling_frequency(self):
        memory = _memory(capacity=8, seed=1)
        _fill(memory, 8)
        counts = np.zeros(8)
        for _ in range(2000):
            batch = memory.sample(4)
            np.add.at(counts, batch.indices, 1)
        frequencies = counts / counts.sum()
        np.testing.assert_allclose(frequencies, 1 / 8, atol=0.02)

    def test_heavy_slot_sampled_proportionally(self):
        memory = _memory(capacity=8, seed=2)
        _fill(memory, 8)
        memory.update_priorities(list(range(8)), [1.0] * 8)
        # (|td| + eps) ** alpha with alpha=1 gives exactly 10x
        memory.update_config(alpha=1.0, epsilon=0.0)
        memory.update_priorities([3], [10.0])
        counts = np.zeros(8)
        for _ in range(4000):
            batch = memory.sample(1)
            counts[batch.indices[0]] += 1
        normal = np.delete(counts, 3).mean()
        assert counts[3] / normal == pytest.approx(10.0, rel=0.2)

    def test_update_priorities_formula(self):
        memory = _memory()
        _fill(memory, 4)
        memory.update_priorities([0, 2], [0.5, -2.0])
        cfg = memory.config
        assert memory.tree.leaf(0) == pytest.approx((0.5 + cfg.epsilon) ** cfg.alpha)
        assert memory.tree.leaf(2) == pytest.approx((2.0 + cfg.epsilon) ** cfg.alpha)
        assert memory.buffer[2].td_error == pytest.approx(2.0)
        assert memory.tree.is_consistent()

    def test_update_priorities_non_finite_td_error(self):
        memory = _memory()
        _fill(memory, 2)
        memory.update_priorities([1], [float('nan')])
        assert memory.tree.leaf(1) == pytest.approx(memory.config.max_priority)
        assert np.isfinite(memory.total_priority)

    def test_update_priorities_length_mismatch(self):
        memory = _memory()
        _fill(memory, 2)
        with pytest.raises(ValueError):
            memory.update_priorities([0, 1], [0.1])

    def test_random_operations_keep_tree_consistent(self):
        rng = np.random.default_rng(5)
        memory = _memory(capacity=13)
        for _ in range(200):
            if rng.random() < 0.6 or len(memory) < 2:
                memory.insert(_experience(reward=float(rng.normal(0, 0.05))))
            else:
                indices = rng.integers(0, len(memory), size=3)
                memory.update_priorities(indices, rng.normal(0, 1, size=3))
        leaves = memory.tree.tree[13:13 + len(memory)]
        assert memory.tree.is_consistent()
        assert memory.total_priority == pytest.approx(leaves.sum())


# ---------------------------------------------------------------------------
# Critical events / statistics
# ---------------------------------------------------------------------------

class TestCriticalEvents:
    def test_boosts_compound(self):
        memory = _memory()
        exp = _experience(reward=0.05, volatility=0.08, volume=2_000_000.0, timestamp=7)
        memory.insert(exp)
        assert exp.priority == pytest.approx(2.0 * 1.5 * 1.8)
        assert memory.critical_event_tags == {
            "BTCUSDT_high_volatility_7",
            "BTCUSDT_volume_spike_7",
            "BTCUSDT_price_movement_7",
        }

    def test_single_boost(self):
        memory = _memory()
        exp = _experience(reward=-0.04)
        memory.insert(exp)
        assert exp.priority == pytest.approx(1.8)

    def test_statistics(self):
        memory = _memory(capacity=10)
        assert memory.statistics()['size'] == 0
        _fill(memory, 4)
        memory.update_priorities([0], [3.0])
        stats = memory.statistics()
        assert stats['size'] == 4
        assert stats['capacity'] == 10
        assert stats['utilization'] == pytest.approx(0.4)
        assert stats['max_priority'] == pytest.approx((3.0 + 1e-6) ** 0.6)
        assert stats['min_priority'] == pytest.approx(1.0)

    def test_grow_capacity_between_steps(self):
        memory = _memory(capacity=4)
        _fill(memory, 4)
        memory.update_config(capacity=8)
        assert memory.capacity == 8
        assert len(memory.buffer) == 8
        for i in range(4, 8):
            memory.insert(_experience(timestamp=i))
        stats = memory.statistics()
        assert stats['size'] == 8
        assert stats['utilization'] == pytest.approx(1.0)
        assert [e.timestamp for e in memory.buffer] == list(range(8))
        assert memory.tree.is_consistent()

    def test_shrink_capacity_keeps_newest(self):
        memory = _memory(capacity=8)
        _fill(memory, 10)
        memory.update_priorities([3], [2.0])
        memory.update_config(capacity=4)
        assert len(memory) == 4
        # Slots 0..7 held timestamps 8, 9, 2..7; the newest four are 6, 7, 8, 9
        assert [e.timestamp for e in memory.buffer] == [6, 7, 8, 9]
        assert memory.total_priority == pytest.approx(4.0)
        assert memory.tree.is_consistent()

        memory.insert(_experience(timestamp=10))
        assert memory.buffer[0].timestamp == 10
        batch = memory.sample(4)
        assert all(0 <= i < 4 for i in batch.indices)
        assert np.all(batch.weights <= 1.0)
        assert batch.weights.max() == pytest.approx(1.0)

    def test_rejected_capacity_keeps_storage(self):
        memory = _memory(capacity=4)
        _fill(memory, 2)
        with pytest.raises(ConfigError):
            memory.update_config(capacity=0)
        assert memory.capacity == 4
        assert memory.config.capacity == 4
        assert len(memory) == 2

    def test_clear(self):
        memory = _memory()
        memory.insert(_experience(volatility=0.5))
        memory.clear()
        assert len(memory) == 0
        assert memory.total_priority == 0.0
        assert not memory.critical_event_tags
