class TrainingCoreError(Exception):
    """Base exception for training core errors."""
    pass

class ConfigError(TrainingCoreError):
    """Raised when a configuration override is invalid."""
    pass

class InsufficientDataError(TrainingCoreError):
    """Raised when sampling is attempted before enough experiences exist."""

    def __init__(self, size: int, batch_size: int):
        self.size = size
        self.batch_size = batch_size
        super().__init__(f"Not enough experiences in buffer: {size} < {batch_size}")

class UnknownStrategyError(TrainingCoreError):
    """Raised when a scheduler or exploration mode is not configured."""

    def __init__(self, kind: str, value):
        self.kind = kind
        self.value = value
        super().__init__(f"Unknown {kind} strategy: {value}")

class MaxResetsExceededError(TrainingCoreError):
    """Raised when repeated instability has exhausted the reset budget."""

    def __init__(self, reset_count: int, max_resets: int, step: int = None):
        self.reset_count = reset_count
        self.max_resets = max_resets
        self.step = step
        super().__init__(f"Maximum resets exceeded ({reset_count}/{max_resets}), training must be halted")

class NonFiniteGradientError(TrainingCoreError):
    """Raised by strict gradient clipping when the global norm is NaN or Inf."""

    def __init__(self, global_norm: float):
        self.global_norm = global_norm
        super().__init__(f"Non-finite gradient norm: {global_norm}")

class NotInitializedError(TrainingCoreError):
    """Raised when the trainer is used before initialize()."""
    pass

class EvaluationError(TrainingCoreError):
    """Raised when the model evaluation collaborator fails."""
    pass
