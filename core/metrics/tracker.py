from typing import Dict, Iterable, List
import numpy as np
from collections import deque
import logging

from ..types import TrainingMetrics

logger = logging.getLogger(__name__)


def average_metrics(history: Iterable[TrainingMetrics]) -> Dict[str, float]:
    """Mean of every numeric field across a run of step metrics (nan entries ignored)."""
    rows = [m.to_dict() for m in history]
    if not rows:
        return {}
    summary = {}
    for key, value in rows[0].items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        values = np.array([row[key] for row in rows], dtype=np.float64)
        finite = values[np.isfinite(values)]
        summary[key] = float(np.mean(finite)) if finite.size else float('nan')
    return summary


class MetricsTracker:
    """Keeps the most recent step metrics plus per-epoch aggregates."""

    def __init__(self, window_size: int = 1000):
        self.window_size = window_size
        self.history = deque(maxlen=window_size)
        self.epoch_losses: List[float] = []
        self.clip_count = 0
        self.reset_count = 0
        logger.debug(f"MetricsTracker initialized with window_size={window_size}")

    def __len__(self):
        return len(self.history)

    def update(self, metrics: TrainingMetrics):
        self.history.append(metrics)
        if metrics.was_clipped:
            self.clip_count += 1
        if metrics.was_reset:
            self.reset_count += 1

    def latest(self):
        return self.history[-1] if self.history else None

    def end_epoch(self, epoch_loss: float):
        self.epoch_losses.append(float(epoch_loss))
        logger.debug(f"Epoch loss recorded: {epoch_loss}")

    def get_metrics_summary(self) -> Dict:
        """Window averages plus run-level counters."""
        summary = average_metrics(self.history)
        summary.update({
            'window': len(self.history),
            'clip_count': self.clip_count,
            'reset_count': self.reset_count,
            'epochs': len(self.epoch_losses),
            'best_epoch_loss': min(self.epoch_losses) if self.epoch_losses else float('nan'),
        })
        return summary

    def clear(self):
        logger.info("Resetting metrics tracker")
        self.history.clear()
        self.epoch_losses = []
        self.clip_count = 0
        self.reset_count = 0
