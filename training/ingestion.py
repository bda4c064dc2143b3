# ingestion.py
# OHLCV bars -> Experience records for the replay memory.

import numpy as np
import pandas as pd
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Union

from core.config import IngestionConfig
from core.types import Experience, ExperienceMetadata, reward_to_action

logger = logging.getLogger(__name__)

FEATURE_NAMES = [
    'open', 'high', 'low', 'close', 'volume',
    'range_pct', 'body_pct', 'volume_scaled',
]

Bars = Union[pd.DataFrame, Sequence[Mapping]]


def _ratio(numerator: float, denominator: float) -> float:
    if denominator == 0 or not np.isfinite(denominator):
        return 0.0
    return float(numerator / denominator)


def _bar_records(bars: Bars) -> List[Dict]:
    if isinstance(bars, pd.DataFrame):
        return bars.to_dict('records')
    return [dict(bar) for bar in bars]


def extract_features(bar: Mapping, volume_scale: float = 1_000_000.0) -> np.ndarray:
    """8-dim state vector for one bar.

    ``[open, high, low, close, volume, (high-low)/close, (close-open)/open, volume/volume_scale]``
    Ratios against a zero price fall back to 0.
    """
    o = float(bar.get('open', 0.0))
    h = float(bar.get('high', 0.0))
    l = float(bar.get('low', 0.0))
    c = float(bar.get('close', 0.0))
    v = float(bar.get('volume', 0.0))
    return np.array([
        o, h, l, c, v,
        _ratio(h - l, c),
        _ratio(c - o, o),
        _ratio(v, volume_scale),
    ], dtype=np.float64)


def labels_to_actions(rewards: Sequence[float], config: Optional[IngestionConfig] = None) -> List[int]:
    """Map realised rewards/labels to the action each one rewards."""
    config = config if config is not None else IngestionConfig()
    return [reward_to_action(float(r), config.zero_reward_action) for r in rewards]


def bars_to_experiences(bars: Bars, actions: Sequence[int], rewards: Sequence[float],
                        config: Optional[IngestionConfig] = None) -> List[Experience]:
    """Build one transition per consecutive bar pair; the last transition is terminal.

    ``bars``, ``actions`` and ``rewards`` must have the same length; the final
    action/reward has no successor bar and is dropped.
    """
    config = config if config is not None else IngestionConfig()
    records = _bar_records(bars)
    if not (len(records) == len(actions) == len(rewards)):
        raise ValueError(
            f"Market data, actions, and rewards must have same length: "
            f"{len(records)}, {len(actions)}, {len(rewards)}"
        )

    experiences = []
    for i in range(len(records) - 1):
        current, following = records[i], records[i + 1]
        close = float(current.get('close', 0.0))
        experiences.append(Experience(
            state=extract_features(current, config.volume_scale),
            action=int(actions[i]),
            reward=float(rewards[i]),
            next_state=extract_features(following, config.volume_scale),
            terminal=i == len(records) - 2,
            timestamp=current.get('timestamp'),
            symbol=str(current.get('symbol', '')),
            metadata=ExperienceMetadata(
                price=close,
                volume=float(current.get('volume', 0.0)),
                volatility=abs(_ratio(float(current.get('high', 0.0)) - float(current.get('low', 0.0)), close)),
                confidence=config.default_confidence,
            ),
        ))
    return experiences


def add_market_data_experiences(memory, bars: Bars, actions: Sequence[int], rewards: Sequence[float],
                                config: Optional[IngestionConfig] = None) -> int:
    """Convert bars into transitions and insert them into ``memory``. Returns the count added."""
    experiences = bars_to_experiences(bars, actions, rewards, config)
    for experience in experiences:
        memory.insert(experience)

    if experiences:
        logger.info(f"Market data experiences added: symbol={experiences[0].symbol} "
                    f"count={len(experiences)} "
                    f"range=[{experiences[0].timestamp}, {experiences[-1].timestamp}]")
    return len(experiences)
