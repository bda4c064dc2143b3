import logging
import logging.handlers
import os
from typing import Iterable, Optional, Union

from rich.console import Console
from rich.logging import RichHandler

# Sub-module loggers that flood at DEBUG/INFO during long runs
NOISY_LOGGERS = [
    "core.config",
    "models.rl.memory",
    "market_trainer.memory",
    "models.rl.optimizer",
    "models.rl.scheduler",
    "models.rl.exploration",
    "models.rl.clipping",
    "models.initializer",
    "models.evaluator",
]


def silence_loggers(names: Iterable[str] = NOISY_LOGGERS, level: int = logging.WARNING):
    for name in names:
        logging.getLogger(name).setLevel(level)


def setup_logger(log_level: Union[int, str] = logging.INFO,
                 log_file: Optional[str] = None,
                 console_output: bool = True,
                 backup_count: int = 7,
                 silence_noisy: bool = True,
                 console: Optional[Console] = None) -> logging.Logger:
    """Configure root logging: rich console output plus an optional daily-rotating file."""
    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if console_output:
        console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False, markup=False)
        console_handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%H:%M:%S]"))
        root.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            filename=log_file,
            when='D',  # Daily rotation
            interval=1,
            backupCount=backup_count
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root.addHandler(file_handler)

    if silence_noisy:
        silence_loggers()

    return logging.getLogger('market_trainer')
