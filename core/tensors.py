# core/tensors.py
# Parameter and gradient sets are lists of float64 numpy arrays, one per tracked tensor.

import numpy as np
from typing import List, Sequence, Tuple

TensorList = List[np.ndarray]


def as_tensor_list(values) -> TensorList:
    """Normalize a parameter/gradient set to a list of float64 arrays.

    A bare ndarray is treated as a single tensor; any other sequence is
    treated as one entry per tensor.
    """
    if isinstance(values, np.ndarray):
        return [values.astype(np.float64, copy=False)]
    return [np.asarray(v, dtype=np.float64) for v in values]


def clone_tensors(tensors: Sequence[np.ndarray]) -> TensorList:
    """Structural deep copy; the result shares no memory with the input."""
    return [np.array(t, dtype=np.float64, copy=True) for t in tensors]


def count_parameters(tensors: Sequence[np.ndarray]) -> int:
    return int(sum(np.size(t) for t in tensors))


def count_non_finite(tensors: Sequence[np.ndarray]) -> Tuple[int, int]:
    """Return (nan_count, inf_count) across every scalar of every tensor."""
    nan_count = 0
    inf_count = 0
    for t in tensors:
        arr = np.asarray(t, dtype=np.float64)
        nan_count += int(np.count_nonzero(np.isnan(arr)))
        inf_count += int(np.count_nonzero(np.isinf(arr)))
    return nan_count, inf_count


def finite_l2_norm(tensors: Sequence[np.ndarray]) -> float:
    """Global L2 norm over finite entries only (non-finite entries are skipped)."""
    total = 0.0
    for t in tensors:
        arr = np.asarray(t, dtype=np.float64)
        finite = arr[np.isfinite(arr)]
        total += float(np.dot(finite.ravel(), finite.ravel()))
    return float(np.sqrt(total))
