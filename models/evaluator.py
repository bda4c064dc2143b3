# models/evaluator.py
# Model evaluation collaborator: (parameters, batch) -> (loss, gradients).

import numpy as np
import torch
from typing import Awaitable, List, Protocol, Union
import logging

from core.tensors import TensorList, as_tensor_list
from core.types import EvaluationResult, SampledBatch
from .initializer import NetworkSpec

logger = logging.getLogger(__name__)


class ModelEvaluator(Protocol):
    """Anything that turns parameters and a sampled batch into a loss and gradients.

    ``evaluate`` may be a plain function or a coroutine; gradients must match
    the parameter shapes. Non-finite output is allowed and handled by the
    trainer's watchdog.
    """

    def evaluate(self, parameters: TensorList,
                 batch: SampledBatch) -> Union[EvaluationResult, Awaitable[EvaluationResult]]:
        ...


class TorchQEvaluator:
    """Reference evaluator: MLP Q-network evaluated with torch autograd.

    Parameters follow the ``[W_0, b_0, W_1, b_1, ...]`` layout of
    ``NetworkSpec``; hidden layers use tanh. The loss is the
    importance-weighted mean squared TD error against the one-step target

        y = r + gamma * max_a Q(s', a) * (1 - terminal)

    with the target held constant (no gradient through Q(s')).
    """

    def __init__(self, spec: NetworkSpec, gamma: float = 0.99, device: str = 'cpu'):
        self.spec = spec
        self.gamma = gamma
        self.device = torch.device(device)

    def _forward(self, params: List[torch.Tensor], x: torch.Tensor) -> torch.Tensor:
        n_layers = len(params) // 2
        for i in range(n_layers):
            weight, bias = params[2 * i], params[2 * i + 1]
            x = x @ weight.T + bias
            if i < n_layers - 1:
                x = torch.tanh(x)
        return x

    def q_values(self, parameters, states) -> np.ndarray:
        params = [torch.as_tensor(p, dtype=torch.float64, device=self.device) for p in as_tensor_list(parameters)]
        x = torch.as_tensor(np.atleast_2d(np.asarray(states, dtype=np.float64)), device=self.device)
        with torch.no_grad():
            return self._forward(params, x).cpu().numpy()

    def evaluate(self, parameters, batch: SampledBatch) -> EvaluationResult:
        params = [torch.tensor(p, dtype=torch.float64, device=self.device, requires_grad=True)
                  for p in as_tensor_list(parameters)]

        experiences = batch.experiences
        states = torch.as_tensor(np.stack([e.state for e in experiences]), dtype=torch.float64, device=self.device)
        next_states = torch.as_tensor(np.stack([e.next_state for e in experiences]), dtype=torch.float64,
                                      device=self.device)
        actions = torch.as_tensor([int(e.action) for e in experiences], dtype=torch.long, device=self.device)
        rewards = torch.as_tensor([float(e.reward) for e in experiences], dtype=torch.float64, device=self.device)
        terminals = torch.as_tensor([float(e.terminal) for e in experiences], dtype=torch.float64,
                                    device=self.device)
        weights = torch.as_tensor(np.asarray(batch.weights, dtype=np.float64), device=self.device)

        q_all = self._forward(params, states)
        q_taken = q_all.gather(1, actions.view(-1, 1)).squeeze(1)

        with torch.no_grad():
            next_q = self._forward(params, next_states).max(dim=1).values
            targets = rewards + self.gamma * next_q * (1.0 - terminals)

        td_errors = targets - q_taken
        loss = (weights * td_errors.pow(2)).mean()
        loss.backward()

        gradients = [p.grad.detach().cpu().numpy().copy() if p.grad is not None else np.zeros(p.shape)
                     for p in params]
        logger.debug("Evaluated batch of %d: loss=%.6f", len(experiences), loss.item())
        return EvaluationResult(
            loss=float(loss.item()),
            gradients=gradients,
            td_errors=td_errors.detach().cpu().numpy(),
            predictions=q_all.detach().cpu().numpy(),
        )
