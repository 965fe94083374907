import numpy as np

from neuro.tensor import Tensor


class ActivationFunc:
    """
    Elementwise nonlinearity applied by a layer after its linear part.

    Subclasses implement both directions over whole tensors:

    - :meth:`compute` writes ``f(input)`` into ``result``.
    - :meth:`derivative` writes the gradient with respect to the activation
      input into ``result``, given the forward ``output`` and the gradient
      with respect to that output (chain rule already applied).
    """

    name = "base"

    def compute(self, input: Tensor, result: Tensor) -> None:
        raise NotImplementedError

    def derivative(self, output: Tensor, output_gradient: Tensor, result: Tensor) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Linear(ActivationFunc):
    name = "linear"

    def compute(self, input: Tensor, result: Tensor) -> None:
        input.copy_to(result)

    def derivative(self, output: Tensor, output_gradient: Tensor, result: Tensor) -> None:
        output_gradient.copy_to(result)


class Sigmoid(ActivationFunc):
    name = "sigmoid"

    def compute(self, input: Tensor, result: Tensor) -> None:
        input.map(lambda x: 1.0 / (1.0 + np.exp(-x)), result)

    def derivative(self, output: Tensor, output_gradient: Tensor, result: Tensor) -> None:
        # expressed through the forward output: s' = s * (1 - s)
        result.data[...] = output.data * (1.0 - output.data) * output_gradient.data


class Tanh(ActivationFunc):
    name = "tanh"

    def compute(self, input: Tensor, result: Tensor) -> None:
        input.map(np.tanh, result)

    def derivative(self, output: Tensor, output_gradient: Tensor, result: Tensor) -> None:
        result.data[...] = (1.0 - output.data * output.data) * output_gradient.data


class ReLU(ActivationFunc):
    name = "relu"

    def compute(self, input: Tensor, result: Tensor) -> None:
        input.map(lambda x: np.maximum(x, 0.0), result)

    def derivative(self, output: Tensor, output_gradient: Tensor, result: Tensor) -> None:
        result.data[...] = np.where(output.data > 0.0, output_gradient.data, 0.0)


class ELU(ActivationFunc):
    """Exponential linear unit ``x if x > 0 else alpha * (exp(x) - 1)``."""

    name = "elu"

    def __init__(self, alpha: float = 1.0) -> None:
        self.alpha = alpha

    def compute(self, input: Tensor, result: Tensor) -> None:
        alpha = self.alpha
        input.map(lambda x: np.where(x > 0.0, x, alpha * (np.exp(x) - 1.0)), result)

    def derivative(self, output: Tensor, output_gradient: Tensor, result: Tensor) -> None:
        # for x <= 0: d/dx = alpha * exp(x) = output + alpha
        slope = np.where(output.data > 0.0, 1.0, output.data + self.alpha)
        result.data[...] = slope * output_gradient.data

    def __repr__(self) -> str:
        return f"ELU(alpha={self.alpha})"


class Softmax(ActivationFunc):
    """
    Softmax over all elements of each batch slice.

    The forward pass subtracts the per-batch maximum before exponentiating,
    so large inputs do not overflow.
    """

    name = "softmax"

    def compute(self, input: Tensor, result: Tensor) -> None:
        x = input.data.reshape(input.batch_size, -1)
        e = np.exp(x - x.max(axis=1, keepdims=True))
        result.data[...] = (e / e.sum(axis=1, keepdims=True)).reshape(result.data.shape)

    def derivative(self, output: Tensor, output_gradient: Tensor, result: Tensor) -> None:
        # Jacobian-vector product: s * (g - <s, g>) per batch slice
        s = output.data.reshape(output.batch_size, -1)
        g = output_gradient.data.reshape(output.batch_size, -1)
        dot = (s * g).sum(axis=1, keepdims=True)
        result.data[...] = (s * (g - dot)).reshape(result.data.shape)
