import sys
import os
import random
import torch
import numpy as np
import pandas as pd
from typing import Optional
import logging
import asyncio

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeRemainingColumn, MofNCompleteColumn
from rich.table import Table
from rich.panel import Panel

current_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.append(current_dir)

from core.config import TrainerConfig, load_config
from core.exceptions import MaxResetsExceededError
from models.evaluator import TorchQEvaluator
from models.initializer import NetworkSpec
from training.ingestion import FEATURE_NAMES, add_market_data_experiences, labels_to_actions
from training.trainer import Trainer
from monitoring.logger import setup_logger

console = Console()
logger = logging.getLogger(__name__)


def set_seed(seed: int = 42):
    """Set deterministic seeds for reproducibility."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
    torch.backends.cudnn.deterministic = True
    torch.backends.cudnn.benchmark = False


class ModelCheckpoint:
    def __init__(self, checkpoint_dir):
        self.checkpoint_dir = checkpoint_dir
        os.makedirs(checkpoint_dir, exist_ok=True)
        self.best_loss = float('inf')

    def save(self, trainer: Trainer, epoch: int, epoch_loss: float, interval: int):
        checkpoint = {
            'epoch': epoch,
            'parameters': [torch.from_numpy(p.copy()) for p in trainer.parameters],
            'optimizer_state': trainer.optimizer_state.state_dict(),
            'config': trainer.config.to_dict(),
            'epoch_loss': epoch_loss,
        }

        if interval > 0 and epoch % interval == 0:
            torch.save(checkpoint, os.path.join(self.checkpoint_dir, f'checkpoint_{epoch}.pt'))

        if epoch_loss < self.best_loss:
            self.best_loss = epoch_loss
            torch.save(checkpoint, os.path.join(self.checkpoint_dir, 'best_model.pt'))
            logger.info(f"New best model saved (epoch {epoch}, loss {epoch_loss:.6f})")


def load_bars(data_path: str) -> pd.DataFrame:
    """Read an OHLCV CSV; ``timestamp`` and ``symbol`` columns are optional."""
    bars = pd.read_csv(data_path)
    missing = [c for c in ('open', 'high', 'low', 'close', 'volume') if c not in bars.columns]
    if missing:
        raise ValueError(f"{data_path} is missing OHLCV column(s): {', '.join(missing)}")
    if 'symbol' not in bars.columns:
        bars['symbol'] = os.path.splitext(os.path.basename(data_path))[0].upper()
    if 'timestamp' not in bars.columns:
        bars['timestamp'] = np.arange(len(bars))
    return bars


def synthetic_bars(n_bars: int, rng: np.random.Generator, symbol: str = "SYNTHUSDT",
                   start_price: float = 100.0) -> pd.DataFrame:
    """Geometric random walk bars for smoke runs without market data."""
    returns = rng.normal(0.0, 0.01, size=n_bars)
    close = start_price * np.exp(np.cumsum(returns))
    open_ = np.concatenate([[start_price], close[:-1]])
    spread = np.abs(rng.normal(0.0, 0.005, size=n_bars)) * close
    return pd.DataFrame({
        'timestamp': np.arange(n_bars),
        'symbol': symbol,
        'open': open_,
        'high': np.maximum(open_, close) + spread,
        'low': np.minimum(open_, close) - spread,
        'close': close,
        'volume': rng.lognormal(12.0, 1.0, size=n_bars),
    })


def next_bar_returns(bars: pd.DataFrame) -> np.ndarray:
    """Reward of bar i is the close-to-close return into bar i+1 (0 for the last bar)."""
    close = bars['close'].to_numpy(dtype=np.float64)
    returns = np.zeros_like(close)
    returns[:-1] = np.diff(close) / np.where(close[:-1] == 0, 1.0, close[:-1])
    return returns


def print_summary(trainer: Trainer):
    summary = trainer.training_state()
    table = Table(title="Training summary")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Epochs", str(summary['epoch']))
    table.add_row("Steps", str(summary['step']))
    table.add_row("Best epoch loss", f"{summary['best_validation_loss']:.6f}")
    table.add_row("Learning rate", f"{summary['learning_rate']:.3e}")
    table.add_row("Watchdog resets", str(summary['watchdog']['reset_count']))
    table.add_row("Buffer size", str(summary['memory']['size']))
    table.add_row("Critical events", str(summary['memory']['critical_event_count']))
    console.print(table)


async def train(config: TrainerConfig, data_path: Optional[str] = None, synthetic: int = 2000,
                hidden_sizes=(32,), checkpoint_dir: str = "checkpoints", epochs: Optional[int] = None):
    logger.info("Starting training...")
    seed = config.training.seed
    if seed is not None:
        set_seed(seed)
        logger.info(f"Random seed set to {seed}")
    rng = np.random.default_rng(seed)

    if data_path:
        bars = load_bars(data_path)
        logger.info(f"Loaded {len(bars)} bars from {data_path}")
    else:
        bars = synthetic_bars(synthetic, rng)
        logger.info(f"Generated {len(bars)} synthetic bars")

    spec = NetworkSpec(input_features=len(FEATURE_NAMES), output_size=3, hidden_sizes=tuple(hidden_sizes))
    evaluator = TorchQEvaluator(spec, gamma=config.training.gamma,
                                device='cuda' if torch.cuda.is_available() else 'cpu')
    trainer = Trainer(evaluator, config, rng=rng)
    trainer.initialize(spec)

    rewards = next_bar_returns(bars)
    actions = labels_to_actions(rewards, config.ingestion)
    add_market_data_experiences(trainer.memory, bars, actions, rewards, config.ingestion)

    checkpoints = ModelCheckpoint(checkpoint_dir)
    n_epochs = epochs if epochs is not None else config.training.epochs

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("loss={task.fields[loss]:.6f}"),
            TimeRemainingColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Training", total=n_epochs, loss=float('nan'))
            for epoch in range(1, n_epochs + 1):
                await trainer.train_epoch()
                epoch_loss = trainer.tracker.epoch_losses[-1]
                checkpoints.save(trainer, epoch, epoch_loss, config.training.checkpoint_interval)
                progress.update(task, advance=1, loss=epoch_loss)

                if trainer.should_stop_early():
                    logger.info(f"Early stopping at epoch {epoch} "
                                f"(patience {config.training.early_stopping_patience})")
                    break

        print_summary(trainer)
        console.print(Panel.fit(
            f"[bold green]Training completed[/] | "
            f"Epochs: {trainer.state.epoch} | Best loss: {trainer.state.best_validation_loss:.6f}",
            title="Done", border_style="green"
        ))
    except MaxResetsExceededError as e:
        console.print(Panel.fit(f"[bold red]{e}[/]", title="Halted", border_style="red"))
        raise
    return trainer


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Train a Q-network on OHLCV bars with prioritized replay")
    parser.add_argument("--config", type=str, default=None,
                        help="YAML configuration file (default: built-in defaults)")
    parser.add_argument("--data", type=str, default=None,
                        help="OHLCV CSV file (default: synthetic random-walk bars)")
    parser.add_argument("--synthetic-bars", type=int, default=2000,
                        help="Number of synthetic bars when --data is not given")
    parser.add_argument("--epochs", type=int, default=None,
                        help="Override training.epochs")
    parser.add_argument("--hidden", type=int, nargs="*", default=[32],
                        help="Hidden layer sizes")
    parser.add_argument("--checkpoint-dir", type=str, default="checkpoints")
    parser.add_argument("--log-level", type=str, default="INFO")
    parser.add_argument("--log-file", type=str, default=None)
    args = parser.parse_args()

    setup_logger(args.log_level.upper(), args.log_file, console=console)
    config = load_config(args.config) if args.config else TrainerConfig()

    asyncio.run(train(
        config=config,
        data_path=args.data,
        synthetic=args.synthetic_bars,
        hidden_sizes=args.hidden,
        checkpoint_dir=args.checkpoint_dir,
        epochs=args.epochs,
    ))
