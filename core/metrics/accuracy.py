import numpy as np
from typing import Optional, Sequence
from .base import Metric
from ..types import TradeAction, reward_to_action


def directional_scores(predictions: np.ndarray) -> np.ndarray:
    """Reduce model outputs to one signed score per sample.

    Q-value rows with LONG/SHORT columns score as ``Q[LONG] - Q[SHORT]``;
    anything else uses its first column.
    """
    predictions = np.asarray(predictions, dtype=np.float64)
    if predictions.ndim == 1:
        return predictions
    if predictions.shape[1] > TradeAction.SHORT:
        return predictions[:, TradeAction.LONG] - predictions[:, TradeAction.SHORT]
    return predictions[:, 0]


class DirectionalAccuracy(Metric):
    """
    Fraction of samples whose predicted direction matches the sign of the reward.
    A non-positive reward counts as a down move.
    """

    def calculate(self, predictions: Optional[np.ndarray], rewards: Sequence[float]) -> float:
        if predictions is None or len(rewards) == 0:
            return float('nan')
        scores = directional_scores(predictions)
        predicted = np.where(scores > 0, 1, -1)
        actual = np.where(np.asarray(rewards, dtype=np.float64) > 0, 1, -1)
        return float(np.mean(predicted == actual))


class ClassificationAccuracy(Metric):
    """
    Fraction of samples whose argmax action equals the action the reward favours.
    """

    def __init__(self, zero_reward_action: int = TradeAction.HOLD):
        self.zero_reward_action = zero_reward_action

    def calculate(self, predictions: Optional[np.ndarray], rewards: Sequence[float]) -> float:
        if predictions is None or len(rewards) == 0:
            return float('nan')
        predictions = np.asarray(predictions, dtype=np.float64)
        if predictions.ndim != 2:
            return float('nan')
        labels = np.array([reward_to_action(r, self.zero_reward_action) for r in rewards])
        return float(np.mean(np.argmax(predictions, axis=1) == labels))


class LossSummary(Metric):
    """
    Loss breakdown (mse, mae, r_squared) from the scalar loss and per-sample TD errors.
    """

    def calculate(self, loss: float, td_errors: Optional[np.ndarray], rewards: Sequence[float]):
        mse = float(loss)
        if td_errors is not None and len(td_errors) > 0:
            mae = float(np.mean(np.abs(np.asarray(td_errors, dtype=np.float64))))
        else:
            mae = abs(mse)
        rewards = np.asarray(rewards, dtype=np.float64)
        variance = float(np.var(rewards)) if rewards.size > 1 else 0.0
        if variance > 1e-12 and np.isfinite(mse):
            r_squared = max(0.0, 1.0 - mse / variance)
        else:
            r_squared = 0.0
        return mse, mae, r_squared
