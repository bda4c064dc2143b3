from .ingestion import (
    extract_features,
    bars_to_experiences,
    add_market_data_experiences,
    labels_to_actions,
)
from .trainer import Trainer

__all__ = [
    'extract_features',
    'bars_to_experiences',
    'add_market_data_experiences',
    'labels_to_actions',
    'Trainer',
]
