import numpy as np

from neuro.errors import ShapeMismatchError
from neuro.tensor import Tensor

_EPSILON = 1e-7


class LossFunc:
    """
    Per-element loss between a target and a network output.

    :meth:`compute` writes the loss of every output element into ``result``;
    the training loop reduces it. :meth:`derivative` writes the gradient with
    respect to ``output``, which seeds back-propagation.

    Raises
    ------
    ShapeMismatchError
        If ``target`` and ``output`` shapes differ (batch count included).
    """

    name = "base"

    def compute(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        self._check_shapes("compute", target, output)
        self._compute(target, output, result)

    def derivative(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        self._check_shapes("derivative", target, output)
        self._derivative(target, output, result)

    def _check_shapes(self, op: str, target: Tensor, output: Tensor) -> None:
        if target.shape != output.shape:
            raise ShapeMismatchError(
                f"{self.__class__.__name__}.{op}", f"target {target.shape} does not match output {output.shape}"
            )

    def _compute(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        raise NotImplementedError

    def _derivative(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class MeanSquareError(LossFunc):
    """``0.5 * (output - target) ** 2`` with gradient ``output - target``."""

    name = "mse"

    def _compute(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        diff = output.data - target.data
        result.data[...] = 0.5 * diff * diff

    def _derivative(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        output.sub(target, result)


class BinaryCrossEntropy(LossFunc):
    name = "binary_cross_entropy"

    def _compute(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        o = np.clip(output.data, _EPSILON, 1.0 - _EPSILON)
        t = target.data
        result.data[...] = -(t * np.log(o) + (1.0 - t) * np.log(1.0 - o))

    def _derivative(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        o = np.clip(output.data, _EPSILON, 1.0 - _EPSILON)
        t = target.data
        result.data[...] = -t / o + (1.0 - t) / (1.0 - o)


class CategoricalCrossEntropy(LossFunc):
    """
    ``-target * log(output)`` for one-hot targets and probability outputs.

    Usually paired with a :class:`~neuro.activations.Softmax` output layer.
    """

    name = "categorical_cross_entropy"

    def _compute(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        o = np.clip(output.data, _EPSILON, 1.0 - _EPSILON)
        result.data[...] = -target.data * np.log(o)

    def _derivative(self, target: Tensor, output: Tensor, result: Tensor) -> None:
        o = np.clip(output.data, _EPSILON, 1.0 - _EPSILON)
        result.data[...] = -target.data / o
