# models/rl/memory.py
# Prioritized experience replay: circular storage + binary sum-tree over priorities.

import time
import uuid
import numpy as np
from typing import Dict, List, Optional, Sequence, Set
import logging

from core.config import BufferConfig
from core.exceptions import InsufficientDataError
from core.types import Experience, SampledBatch

logger = logging.getLogger('market_trainer.memory')


class SumTree:
    """Binary sum-tree over ``capacity`` leaves.

    Layout: ``tree[capacity + i]`` holds the priority of slot ``i`` and every
    internal node ``k`` in ``[1, capacity)`` holds ``tree[2k] + tree[2k+1]``.
    ``tree[1]`` is the total priority mass. Index 0 is unused.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.tree = np.zeros(2 * capacity, dtype=np.float64)

    @property
    def total(self) -> float:
        return float(self.tree[1])

    def leaf(self, index: int) -> float:
        return float(self.tree[self.capacity + index])

    def update(self, index: int, priority: float):
        """Write a leaf and propagate the change up to the root. O(log n)."""
        tree_index = index + self.capacity
        self.tree[tree_index] = priority
        parent = tree_index // 2
        while parent >= 1:
            self.tree[parent] = self.tree[2 * parent] + self.tree[2 * parent + 1]
            parent //= 2

    def find(self, value: float) -> int:
        """Descend from the root to the leaf whose cumulative range contains ``value``."""
        index = 1
        while index < self.capacity:
            left = 2 * index
            left_sum = self.tree[left]
            right_sum = self.tree[left + 1]
            # Never descend into an empty subtree (possible with float rounding at the edges)
            if (value <= left_sum and left_sum > 0) or right_sum <= 0:
                index = left
            else:
                value -= left_sum
                index = left + 1
        return index - self.capacity

    def is_consistent(self, rtol: float = 1e-9) -> bool:
        """Check that every internal node equals the sum of its children."""
        for node in range(1, self.capacity):
            expected = self.tree[2 * node] + self.tree[2 * node + 1]
            if not np.isclose(self.tree[node], expected, rtol=rtol, atol=1e-12):
                return False
        return True


class PrioritizedReplayMemory:
    """Fixed-capacity prioritized replay buffer.

    New experiences enter with the configured ``max_priority`` (boosted for
    critical market events) so they are always eligible for sampling.
    Sampling is stratified: the total mass is split into ``batch_size`` equal
    segments and one value is drawn uniformly inside each.

    Not thread-safe: concurrent producers must serialize access externally.
    """

    def __init__(self, config: Optional[BufferConfig] = None, rng: Optional[np.random.Generator] = None):
        self.config = config if config is not None else BufferConfig()
        self.rng = rng if rng is not None else np.random.default_rng()

        self.buffer: List[Optional[Experience]] = [None] * self.config.capacity
        self.tree = SumTree(self.config.capacity)
        self.position = 0
        self.size = 0
        self.beta = self.config.beta
        self.critical_event_tags: Set[str] = set()

        logger.info("PrioritizedReplayMemory initialized with capacity: %d", self.config.capacity)

    def __len__(self):
        return self.size

    @property
    def capacity(self) -> int:
        return self.tree.capacity

    @property
    def total_priority(self) -> float:
        return self.tree.total

    def update_config(self, **overrides):
        """Merge config overrides. A capacity change resizes the storage in place."""
        self.config.update(**overrides)
        if 'beta' in overrides:
            self.beta = self.config.beta
        if self.config.capacity != self.tree.capacity:
            self._resize(self.config.capacity)

    def _resize(self, capacity: int):
        """Rebuild buffer and tree at ``capacity``, keeping the newest experiences."""
        old_capacity = self.tree.capacity
        start = self.position if self.size == old_capacity else 0
        order = [(start + i) % old_capacity for i in range(self.size)]
        kept = order[-capacity:] if capacity < len(order) else order

        buffer: List[Optional[Experience]] = [None] * capacity
        tree = SumTree(capacity)
        for slot, old_slot in enumerate(kept):
            buffer[slot] = self.buffer[old_slot]
            tree.update(slot, self.tree.leaf(old_slot))

        self.buffer = buffer
        self.tree = tree
        self.size = len(kept)
        self.position = self.size % capacity
        logger.info("Replay memory resized: capacity %d -> %d, kept %d experiences",
                    old_capacity, capacity, self.size)

    def insert(self, experience: Experience):
        """Store an experience at the next circular slot with max priority."""
        experience.id = self._generate_experience_id()
        experience.td_error = 0.0
        experience.priority = self.config.max_priority * self._critical_event_boost(experience)

        self.buffer[self.position] = experience
        self.tree.update(self.position, experience.priority)
        self.position = (self.position + 1) % self.tree.capacity
        self.size = min(self.size + 1, self.tree.capacity)

        logger.debug("Experience added: symbol=%s action=%s reward=%.4f size=%d priority=%.4f",
                     experience.symbol, experience.action, experience.reward, self.size, experience.priority)

    def sample(self, batch_size: int) -> SampledBatch:
        """Stratified proportional sample with normalized importance weights."""
        if batch_size < 1 or self.size < batch_size:
            raise InsufficientDataError(self.size, batch_size)

        self.beta = min(1.0, self.beta + self.config.beta_increment)

        total_priority = self.tree.total
        segment = total_priority / batch_size

        indices = np.empty(batch_size, dtype=np.int64)
        priorities = np.empty(batch_size, dtype=np.float64)
        for i in range(batch_size):
            low = segment * i
            high = segment * (i + 1)
            value = self.rng.uniform(low, high)
            index = self.tree.find(value)
            indices[i] = index
            priorities[i] = self.tree.leaf(index)

        probabilities = priorities / total_priority
        weights = np.power(self.size * probabilities, -self.beta)
        max_weight = weights.max()
        if np.isfinite(max_weight) and max_weight > 0:
            weights = weights / max_weight
        else:
            weights = np.ones_like(weights)

        experiences = [self.buffer[i] for i in indices]
        logger.debug("Batch sampled: batch_size=%d total_priority=%.4f avg_weight=%.4f beta=%.4f",
                     batch_size, total_priority, float(weights.mean()), self.beta)
        return SampledBatch(experiences=experiences, indices=indices, weights=weights)

    def update_priorities(self, indices: Sequence[int], td_errors: Sequence[float]):
        """Re-weight sampled slots: priority = (|td_error| + epsilon) ** alpha."""
        td_errors = np.abs(np.asarray(td_errors, dtype=np.float64))
        if len(indices) != len(td_errors):
            raise ValueError(f"indices and td_errors length mismatch: {len(indices)} != {len(td_errors)}")

        for index, td_error in zip(indices, td_errors):
            index = int(index)
            if np.isfinite(td_error):
                priority = (td_error + self.config.epsilon) ** self.config.alpha
            else:
                # A non-finite TD error must not poison the tree
                priority = self.config.max_priority
                td_error = float('inf')
            experience = self.buffer[index]
            if experience is not None:
                experience.td_error = float(td_error)
                experience.priority = float(priority)
            self.tree.update(index, priority)

        if len(td_errors):
            finite = td_errors[np.isfinite(td_errors)]
            logger.debug("Priorities updated: count=%d avg_td_error=%.4f",
                         len(td_errors), float(finite.mean()) if finite.size else float('nan'))

    def _critical_event_boost(self, experience: Experience) -> float:
        """Tag rare, high-signal transitions and return their compounded priority boost."""
        cfg = self.config
        meta = experience.metadata
        boost = 1.0
        if meta.volatility > cfg.volatility_threshold:
            self.critical_event_tags.add(f"{experience.symbol}_high_volatility_{experience.timestamp}")
            boost *= cfg.volatility_boost
        if meta.volume > cfg.volume_threshold:
            self.critical_event_tags.add(f"{experience.symbol}_volume_spike_{experience.timestamp}")
            boost *= cfg.volume_boost
        if abs(experience.reward) > cfg.reward_threshold:
            self.critical_event_tags.add(f"{experience.symbol}_price_movement_{experience.timestamp}")
            boost *= cfg.reward_boost
        return boost

    @staticmethod
    def _generate_experience_id() -> str:
        return f"exp_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    def statistics(self) -> Dict:
        if self.size == 0:
            return {
                'size': 0,
                'capacity': self.tree.capacity,
                'utilization': 0.0,
                'critical_event_count': len(self.critical_event_tags),
                'avg_priority': 0.0,
                'min_priority': 0.0,
                'median_priority': 0.0,
                'max_priority': 0.0,
            }

        priorities = np.sort(self.tree.tree[self.tree.capacity:self.tree.capacity + self.size])
        return {
            'size': self.size,
            'capacity': self.tree.capacity,
            'utilization': self.size / self.tree.capacity,
            'critical_event_count': len(self.critical_event_tags),
            'avg_priority': float(priorities.mean()),
            'min_priority': float(priorities[0]),
            'median_priority': float(priorities[len(priorities) // 2]),
            'max_priority': float(priorities[-1]),
        }

    def clear(self):
        """Drop every experience and rebuild the tree (picks up capacity changes)."""
        logger.info("Clearing replay memory")
        self.buffer = [None] * self.config.capacity
        self.tree = SumTree(self.config.capacity)
        self.position = 0
        self.size = 0
        self.beta = self.config.beta
        self.critical_event_tags.clear()
