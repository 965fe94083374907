from typing import Any, Dict, Iterable, Tuple

import numpy as np

from neuro.errors import ConfigurationError
from neuro.tensor import Tensor


class OptimizerBase:
    """
    Base class for all optimizers.

    An optimizer turns accumulated gradients into in-place parameter updates.
    Each layer of a network owns its own :meth:`clone` of the network's
    optimizer, so per-parameter state is never shared between layers.

    Parameters
    ----------
    lr : float
        Learning rate.

    Notes
    -----
    - Per-parameter state lives in ``self.state``, keyed by parameter
      identity (tensors hash by identity).
    - Subclasses implement :meth:`get_update` and :meth:`_get_hyperparams`.
    """
    def __init__(self, lr: float) -> None:
        if lr < 0:
            raise ConfigurationError(f"Learning rate must be >= 0, got {lr}")
        self.lr = lr
        self.state: Dict[Tensor, Any] = {}

    def step(self, parameters_and_gradients: Iterable[Tuple[Tensor, Tensor]], sample_count: int) -> None:
        """
        Apply one update to every ``(parameter, gradient)`` pair.

        Parameters
        ----------
        parameters_and_gradients : iterable of (Tensor, Tensor)
            Parameters with their gradients summed over ``sample_count`` samples.
        sample_count : int
            Number of samples the gradients were accumulated over.

        Notes
        -----
        For each pair: the gradient is divided by ``sample_count``, the
        update from :meth:`get_update` is subtracted from the parameter and
        the gradient is reset to zero.
        """
        if sample_count < 1:
            raise ConfigurationError(f"sample_count must be >= 1, got {sample_count}")
        for param, grad in parameters_and_gradients:
            grad.scale_(1.0 / sample_count)
            param.data -= self.get_update(param, grad)
            grad.zero_()

    def get_update(self, param: Tensor, grad: Tensor) -> np.ndarray:
        """Return the amount to subtract from ``param`` for the averaged ``grad``."""
        raise NotImplementedError

    def clone(self) -> "OptimizerBase":
        """Fresh optimizer with the same hyperparameters and empty state."""
        return self.__class__(**self._get_hyperparams())

    def _get_hyperparams(self) -> Dict[str, Any]:
        raise NotImplementedError

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v}" for k, v in self._get_hyperparams().items())
        return f"{self.__class__.__name__}({params})"


class SGD(OptimizerBase):
    """
    Stochastic gradient descent with optional momentum.

    Parameters
    ----------
    lr : float, default=0.02
        Learning rate.
    momentum : float, default=0.0
        Momentum factor. With ``momentum == 0`` the update is ``lr * grad``.

    Notes
    -----
    The momentum buffer starts as a copy of the first gradient and then
    follows ``buf = momentum * buf + grad``; the update is ``lr * buf``.
    """
    def __init__(self, lr: float = 0.02, momentum: float = 0.0) -> None:
        super().__init__(lr)
        self.momentum = momentum

    def get_update(self, param: Tensor, grad: Tensor) -> np.ndarray:
        d_p = grad.data
        if self.momentum > 0:
            buf = self.state.get(param)
            if buf is None:
                buf = d_p.copy()
            else:
                buf *= self.momentum
                buf += d_p
            self.state[param] = buf
            d_p = buf
        return self.lr * d_p

    def _get_hyperparams(self) -> Dict[str, Any]:
        return {"lr": self.lr, "momentum": self.momentum}


class Adam(OptimizerBase):
    """
    Adam optimizer.

    Parameters
    ----------
    lr : float, default=0.001
        Learning rate.
    beta1, beta2 : float, default=(0.9, 0.999)
        Decay rates of the running averages of the gradient and its square.
    eps : float, default=1e-8
        Term added to the denominator for numerical stability.

    Notes
    -----
    State per parameter: ``step``, ``exp_avg`` (m) and ``exp_avg_sq`` (v).
    The step counter drives the bias correction.
    """
    def __init__(self, lr: float = 0.001, beta1: float = 0.9, beta2: float = 0.999, eps: float = 1e-8) -> None:
        super().__init__(lr)
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps

    def get_update(self, param: Tensor, grad: Tensor) -> np.ndarray:
        if param not in self.state:
            self.state[param] = {
                "step": 0,
                "exp_avg": np.zeros_like(param.data),
                "exp_avg_sq": np.zeros_like(param.data),
            }

        state = self.state[param]
        d_p = grad.data
        exp_avg = state["exp_avg"]
        exp_avg_sq = state["exp_avg_sq"]

        state["step"] += 1
        step = state["step"]

        exp_avg[:] = self.beta1 * exp_avg + (1 - self.beta1) * d_p            # m_t
        exp_avg_sq[:] = self.beta2 * exp_avg_sq + (1 - self.beta2) * d_p**2   # v_t
        bias_correction1 = 1 - self.beta1 ** step
        bias_correction2 = 1 - self.beta2 ** step

        denom = (exp_avg_sq / bias_correction2) ** 0.5 + self.eps
        return self.lr * (exp_avg / bias_correction1) / denom

    def _get_hyperparams(self) -> Dict[str, Any]:
        return {"lr": self.lr, "beta1": self.beta1, "beta2": self.beta2, "eps": self.eps}
