from typing import List, Optional, Sequence

import numpy as np

from neuro import checkpoint
from neuro.data import Data
from neuro.errors import ConfigurationError, ShapeMismatchError
from neuro.logger import get_logger
from neuro.losses import LossFunc
from neuro.nn import LayerBase
from neuro.optim import OptimizerBase
from neuro.tensor import Shape, Tensor, get_op_mode
from neuro.training import MetricSink, ProgressSink, Track, History, fit

logger = get_logger(__name__)


class NeuralNetwork:
    """
    Sequential chain of layers trained with mini-batch gradient descent.

    Parameters
    ----------
    name : str, default="network"
        Network name, also used as the default file prefix.
    seed : int, default=0
        Seed of the network's random generator (weight initialization and
        shuffling). ``0`` draws fresh entropy.

    Examples
    --------
    >>> net = NeuralNetwork("xor", seed=5)
    >>> net.add_layer(Dense(3, Sigmoid(), input_shape=2))
    >>> net.add_layer(Dense(1, Sigmoid()))
    >>> net.optimize(SGD(lr=0.1), MeanSquareError())
    >>> history = net.fit(samples, batch_size=2, epochs=100, verbose=0)
    """
    def __init__(self, name: str = "network", seed: int = 0) -> None:
        self.name = name
        self.seed = seed
        self.rng = np.random.default_rng(seed if seed > 0 else None)
        self.layers: List[LayerBase] = []
        self.optimizer: Optional[OptimizerBase] = None
        self.loss: Optional[LossFunc] = None
        self._optimizers: List[OptimizerBase] = []

    @property
    def file_prefix(self) -> str:
        return self.name.lower().replace(" ", "_")

    @property
    def input_shape(self) -> Shape:
        return self.layers[0].input_shape

    @property
    def output_shape(self) -> Shape:
        return self.layers[-1].output_shape

    def add_layer(self, layer: LayerBase) -> LayerBase:
        """
        Append ``layer`` and initialize it with the previous layer's output shape.

        The first layer must know its input shape from construction.
        """
        input_shape = self.layers[-1].output_shape if self.layers else None
        layer.init(input_shape, self.rng)
        self.layers.append(layer)
        if self.optimizer is not None:
            self._optimizers.append(self.optimizer.clone())
        return layer

    def optimize(self, optimizer: OptimizerBase, loss: LossFunc) -> None:
        """Set the optimizer (cloned for every layer) and the loss function."""
        self.optimizer = optimizer
        self.loss = loss
        self._optimizers = [optimizer.clone() for _ in self.layers]

    def feed_forward(self, input: Tensor) -> Tensor:
        if not self.layers:
            raise ConfigurationError(f"Network {self.name} has no layers")
        x = input
        for layer in self.layers:
            x = layer.feed_forward(x)
        return x

    def back_prop(self, output_gradient: Tensor) -> Tensor:
        gradient = output_gradient
        for layer in reversed(self.layers):
            gradient = layer.back_prop(gradient)
        return gradient

    def update_parameters(self, sample_count: int) -> None:
        for layer, optimizer in zip(self.layers, self._optimizers):
            layer.update_parameters(optimizer, sample_count)

    def predict(self, input: Tensor) -> Tensor:
        """Network output for a (possibly batched) input, as a new tensor."""
        return self.feed_forward(input).clone()

    def _check_ready(self) -> None:
        if not self.layers:
            raise ConfigurationError(f"Network {self.name} has no layers")
        if self.optimizer is None or self.loss is None:
            raise ConfigurationError(f"Network {self.name}: call optimize() before training")

    def fit(
        self,
        training_data: Sequence[Data],
        batch_size: int = -1,
        epochs: int = 1,
        validation_data: Optional[Sequence[Data]] = None,
        verbose: int = 1,
        track: Track = Track.TRAIN_ERROR | Track.TEST_ACCURACY,
        shuffle: bool = True,
        metrics: Optional[MetricSink] = None,
        progress: Optional[ProgressSink] = None,
    ) -> History:
        """Train on ``training_data``; see :func:`neuro.training.fit`."""
        self._check_ready()
        logger.debug(
            "%s: optimizer=%s loss=%s tensor_mode=%s seed=%s",
            self.name, self.optimizer, self.loss, get_op_mode(), self.seed,
        )
        return fit(
            self,
            training_data,
            batch_size=batch_size,
            epochs=epochs,
            validation_data=validation_data,
            verbose=verbose,
            track=track,
            shuffle=shuffle,
            metrics=metrics,
            progress=progress,
        )

    def fit_batched(
        self,
        input: Tensor,
        output: Tensor,
        epochs: int = 1,
        verbose: int = 1,
        track: Track = Track.TRAIN_ERROR | Track.TEST_ACCURACY,
        shuffle: bool = True,
    ) -> History:
        """
        Train on one pre-batched input/target pair.

        The batch is kept intact for all epochs: every epoch is a single
        gradient step over all of its samples.
        """
        return self.fit(
            [Data(input, output)],
            batch_size=input.batch_size,
            epochs=epochs,
            verbose=verbose,
            track=track,
            shuffle=shuffle,
        )

    def clone(self) -> "NeuralNetwork":
        """Independent copy with equal parameters, optimizer and loss."""
        clone = NeuralNetwork(self.name, self.seed)
        clone.layers = [layer.clone() for layer in self.layers]
        if self.optimizer is not None:
            clone.optimize(self.optimizer, self.loss)
        return clone

    def copy_parameters_to(self, target: "NeuralNetwork", tau: float = 1.0) -> None:
        """
        Blend ``target``'s parameters toward this network's, layer by layer.

        ``target = tau * self + (1 - tau) * target``; ``tau == 1`` copies.

        Raises
        ------
        ConfigurationError
            If ``tau`` is outside ``(0, 1]``.
        ShapeMismatchError
            If the networks have a different number of layers.
        """
        if not 0.0 < tau <= 1.0:
            raise ConfigurationError(f"tau must be in (0, 1], got {tau}")
        if len(self.layers) != len(target.layers):
            raise ShapeMismatchError(
                "copy_parameters_to", f"{self.name} has {len(self.layers)} layers, {target.name} has {len(target.layers)}"
            )
        for layer, target_layer in zip(self.layers, target.layers):
            layer.copy_parameters_to(target_layer, tau)

    def soft_copy_parameters_to(self, target: "NeuralNetwork", tau: float) -> None:
        """Partial parameter copy used for target-network updates; ``tau`` in ``(0, 1]``."""
        self.copy_parameters_to(target, tau)

    def parameters_count(self) -> int:
        return sum(layer.parameters_count() for layer in self.layers)

    def summary(self) -> str:
        """Text table of layers, their output shapes and parameter counts."""
        rule = "_" * 65
        lines = [rule, f"{'Layer (type)':<29}{'Output Shape':<26}Param #", "=" * 65]
        for layer in self.layers:
            shape = layer.output_shape
            shape_str = f"({shape.width}, {shape.height}, {shape.depth})"
            lines.append(f"{layer.name + ' (' + type(layer).__name__ + ')':<29}{shape_str:<26}{layer.parameters_count()}")
            lines.append(rule)
        lines.append(f"Total params: {self.parameters_count()}")
        return "\n".join(lines)

    def save_state(self, path: Optional[str] = None) -> str:
        """Save parameters to ``path`` (default ``<file_prefix>.pkl``) and return the path."""
        path = path or f"{self.file_prefix}.pkl"
        checkpoint.save_state(path, self)
        return path

    def load_state(self, path: Optional[str] = None) -> None:
        checkpoint.load_state(path or f"{self.file_prefix}.pkl", self)

    def __repr__(self) -> str:
        return f"NeuralNetwork(name={self.name!r}, layers={len(self.layers)})"
