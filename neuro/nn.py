from collections import defaultdict
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from neuro.activations import ActivationFunc
from neuro.errors import ConfigurationError, ShapeMismatchError
from neuro.logger import get_logger
from neuro.tensor import PaddingType, PoolType, Shape, Tensor, get_padding_params

logger = get_logger(__name__)

_layer_counts: Dict[str, int] = defaultdict(int)


def _auto_name(kind: str) -> str:
    _layer_counts[kind] += 1
    return f"{kind}_{_layer_counts[kind]}"


def _as_shape(shape: Union[Shape, int, None]) -> Optional[Shape]:
    # a bare int is a column vector of that many values
    if shape is None or isinstance(shape, Shape):
        return shape
    return Shape(1, int(shape))


class LayerBase:
    """
    Base class of every layer in a :class:`~neuro.network.NeuralNetwork`.

    A layer is a differentiable unit with a fixed input and output shape,
    optional learnable parameters and an optional activation applied after
    its linear part. Its life cycle is:

    1. :meth:`init` fixes the shapes and allocates parameters (once).
    2. :meth:`feed_forward` computes the output and keeps ``input`` and
       ``output`` for the following backward call.
    3. :meth:`back_prop` accumulates parameter gradients and returns the
       gradient with respect to the input.
    4. :meth:`update_parameters` lets an optimizer apply and reset the
       accumulated gradients.

    Only one forward/backward pair is in flight at a time; a new forward call
    overwrites the stored activations.

    Parameters
    ----------
    input_shape : Shape or int, optional
        Required for the first layer of a network; later layers take the
        output shape of their predecessor. An int means ``Shape(1, n)``.
    activation : ActivationFunc, optional
        Applied to the output of the linear part. ``None`` skips it.
    name : str, optional
        Layer name, generated from the class when omitted.

    Notes
    -----
    Subclasses implement :meth:`_build`, :meth:`_forward`, :meth:`_backward`
    and, when they own parameters, :meth:`parameters_and_gradients`.
    """

    kind = "layer"

    def __init__(
        self,
        input_shape: Union[Shape, int, None] = None,
        activation: Optional[ActivationFunc] = None,
        name: Optional[str] = None,
    ) -> None:
        self.declared_input_shape = _as_shape(input_shape)
        self.activation = activation
        self.name = name or _auto_name(self.kind)
        self.input_shape: Optional[Shape] = None
        self.output_shape: Optional[Shape] = None
        self.input: Optional[Tensor] = None
        self.output: Optional[Tensor] = None
        self.input_gradient: Optional[Tensor] = None
        self._delta: Optional[Tensor] = None

    @property
    def initialized(self) -> bool:
        return self.output_shape is not None

    def init(self, input_shape: Optional[Shape] = None, rng: Optional[np.random.Generator] = None) -> Shape:
        """
        Fix the input shape, allocate parameters and return the output shape.

        Parameters
        ----------
        input_shape : Shape, optional
            Shape of a single input sample (batch count is ignored). Defaults
            to the shape given at construction.
        rng : numpy.random.Generator, optional
            Source of initial weights. A fresh unseeded generator is used
            when omitted.

        Raises
        ------
        ConfigurationError
            If the layer is already initialized or no input shape is known.
        ShapeMismatchError
            If ``input_shape`` contradicts the shape declared at construction.
        """
        if self.initialized:
            raise ConfigurationError(f"Layer {self.name} is already initialized")
        if input_shape is None:
            input_shape = self.declared_input_shape
        if input_shape is None:
            raise ConfigurationError(f"Layer {self.name} has no input shape")
        input_shape = input_shape.with_batch(1)
        if self.declared_input_shape is not None and input_shape != self.declared_input_shape.with_batch(1):
            raise ShapeMismatchError(
                self.name, f"declared input {self.declared_input_shape} but previous layer outputs {input_shape}"
            )

        self.input_shape = input_shape
        self.output_shape = self._build(input_shape, rng if rng is not None else np.random.default_rng())
        return self.output_shape

    def _build(self, input_shape: Shape, rng: np.random.Generator) -> Shape:
        raise NotImplementedError

    def _forward(self, input: Tensor) -> Tensor:
        raise NotImplementedError

    def _backward(self, delta: Tensor) -> Tensor:
        raise NotImplementedError

    @staticmethod
    def _buffer(current: Optional[Tensor], shape: Shape) -> Tensor:
        # scratch tensors are reused while the batch count stays the same
        if current is not None and current.shape == shape:
            return current
        return Tensor.zeros(shape)

    def feed_forward(self, input: Tensor) -> Tensor:
        """
        Run the forward pass for a (possibly batched) input.

        Raises
        ------
        ConfigurationError
            If the layer was not initialized.
        ShapeMismatchError
            If a sample of ``input`` does not have the layer's input shape.
        """
        if not self.initialized:
            raise ConfigurationError(f"Layer {self.name} used before init")
        if not input.shape.same_sample_shape(self.input_shape):
            raise ShapeMismatchError(self.name, f"expected input {self.input_shape}, got {input.shape}")

        self.input = input
        output = self._forward(input)
        if self.activation is not None:
            self.activation.compute(output, output)
        self.output = output

        logger.debug("%s output:\n%s", self.name, output)
        return output

    def back_prop(self, output_gradient: Tensor) -> Tensor:
        """
        Run the backward pass for the most recent :meth:`feed_forward`.

        Parameter gradients are accumulated (added), the returned input
        gradient is overwritten on every call.

        Raises
        ------
        ConfigurationError
            If no forward pass happened before.
        ShapeMismatchError
            If ``output_gradient`` is not shaped like the last output.
        """
        if self.output is None:
            raise ConfigurationError(f"Layer {self.name}: back_prop called before feed_forward")
        if output_gradient.shape != self.output.shape:
            raise ShapeMismatchError(self.name, f"gradient {output_gradient.shape} vs output {self.output.shape}")

        if self.activation is not None:
            self._delta = self._buffer(self._delta, output_gradient.shape)
            self.activation.derivative(self.output, output_gradient, self._delta)
            delta = self._delta
        else:
            delta = output_gradient

        self.input_gradient = self._backward(delta)
        logger.debug("%s input gradient:\n%s", self.name, self.input_gradient)
        return self.input_gradient

    def parameters_and_gradients(self) -> List[Tuple[Tensor, Tensor]]:
        """``(parameter, gradient)`` pairs in a fixed order; empty for parameterless layers."""
        return []

    def parameters_count(self) -> int:
        return sum(p.length for p, _ in self.parameters_and_gradients())

    def update_parameters(self, optimizer, sample_count: int) -> None:
        """Apply and reset the accumulated gradients with ``optimizer``."""
        pairs = self.parameters_and_gradients()
        if pairs:
            optimizer.step(pairs, sample_count)

    def _parameter_names(self) -> List[str]:
        return []

    def write_parameters(self, writer) -> None:
        """Write every parameter tensor to ``writer`` under its name."""
        for name, (param, _) in zip(self._parameter_names(), self.parameters_and_gradients()):
            writer.write(name, param)

    def read_parameters(self, reader) -> None:
        """Read every parameter tensor back from ``reader``, in write order."""
        for name, (param, _) in zip(self._parameter_names(), self.parameters_and_gradients()):
            reader.read(name, param)

    def _clone_unbuilt(self) -> "LayerBase":
        raise NotImplementedError

    def clone(self) -> "LayerBase":
        """Copy of the layer with equal parameters and no activations."""
        layer = self._clone_unbuilt()
        if self.initialized:
            layer.init(self.input_shape)
            self.copy_parameters_to(layer)
        return layer

    def copy_parameters_to(self, target: "LayerBase", tau: float = 1.0) -> None:
        """
        Blend ``target``'s parameters toward this layer's.

        ``target.param = tau * param + (1 - tau) * target.param``; ``tau == 1``
        overwrites.

        Raises
        ------
        ConfigurationError
            If ``tau`` is outside ``(0, 1]``.
        ShapeMismatchError
            If the parameter sets differ in count or shape.
        """
        if not 0.0 < tau <= 1.0:
            raise ConfigurationError(f"tau must be in (0, 1], got {tau}")
        source = self.parameters_and_gradients()
        dest = target.parameters_and_gradients()
        if len(source) != len(dest):
            raise ShapeMismatchError("copy_parameters_to", f"{self.name} and {target.name} differ in parameters")
        for (param, _), (target_param, _) in zip(source, dest):
            if param.shape != target_param.shape:
                raise ShapeMismatchError("copy_parameters_to", f"{param.shape} vs {target_param.shape}")
            if tau == 1.0:
                param.copy_to(target_param)
            else:
                target_param.data[...] = tau * param.data + (1.0 - tau) * target_param.data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, input_shape={self.input_shape}, output_shape={self.output_shape})"


class Dense(LayerBase):
    """
    Fully-connected layer on column vectors.

    Computes ``y = activation(W @ x + b)`` for inputs shaped ``(1, inputs)``.

    Parameters
    ----------
    outputs : int
        Number of output neurons.
    activation : ActivationFunc, optional
        Output nonlinearity (identity when omitted).
    input_shape : Shape or int, optional
        Input size for the first layer of a network.
    name : str, optional
        Layer name.

    Notes
    -----
    - ``weights`` has shape ``(inputs, outputs)`` (width = inputs, height =
      outputs) and is drawn Glorot-uniform from the network RNG.
    - ``bias`` has shape ``(1, outputs)`` and starts at zero.
    - Gradients are summed over the batch; the optimizer averages them.
    """

    kind = "dense"

    def __init__(
        self,
        outputs: int,
        activation: Optional[ActivationFunc] = None,
        input_shape: Union[Shape, int, None] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(input_shape, activation, name)
        if outputs < 1:
            raise ConfigurationError(f"Dense needs at least one output, got {outputs}")
        self.outputs = outputs
        self.weights: Optional[Tensor] = None
        self.bias: Optional[Tensor] = None
        self.weights_gradient: Optional[Tensor] = None
        self.bias_gradient: Optional[Tensor] = None

    def _build(self, input_shape: Shape, rng: np.random.Generator) -> Shape:
        if input_shape.width != 1 or input_shape.depth != 1:
            raise ShapeMismatchError(self.name, f"expects a column vector input, got {input_shape}")
        inputs = input_shape.height
        limit = np.sqrt(6.0 / (inputs + self.outputs))
        self.weights = Tensor.zeros(Shape(inputs, self.outputs)).fill_with_rand(rng, -limit, limit)
        self.bias = Tensor.zeros(Shape(1, self.outputs))
        self.weights_gradient = Tensor.zeros(self.weights.shape)
        self.bias_gradient = Tensor.zeros(self.bias.shape)
        return Shape(1, self.outputs)

    def _forward(self, input: Tensor) -> Tensor:
        output = self._buffer(self.output, self.output_shape.with_batch(input.batch_size))
        self.weights.mul(input, output)
        output.add_(self.bias)
        return output

    def _backward(self, delta: Tensor) -> Tensor:
        self.weights_gradient.add_(delta.mul(self.input.transposed()).sum_batches())
        self.bias_gradient.add_(delta.sum_batches())
        input_gradient = self._buffer(self.input_gradient, self.input.shape)
        return self.weights.transposed().mul(delta, input_gradient)

    def parameters_and_gradients(self) -> List[Tuple[Tensor, Tensor]]:
        if self.weights is None:
            return []
        return [(self.weights, self.weights_gradient), (self.bias, self.bias_gradient)]

    def _parameter_names(self) -> List[str]:
        return ["weights", "bias"]

    def _clone_unbuilt(self) -> "Dense":
        return Dense(self.outputs, self.activation, self.input_shape, name=self.name)


class Convolution(LayerBase):
    """
    2D convolution layer with one bias per filter.

    Parameters
    ----------
    filter_size : int
        Side of the square kernels.
    filters_num : int
        Number of kernels, i.e. output depth.
    stride : int, default=1
        Window step.
    activation : ActivationFunc, optional
        Output nonlinearity.
    padding : PaddingType, default=PaddingType.VALID
        Padding policy, see :func:`~neuro.tensor.get_padding_params`.
    input_shape : Shape, optional
        Input shape for the first layer of a network.
    name : str, optional
        Layer name.
    """

    kind = "conv"

    def __init__(
        self,
        filter_size: int,
        filters_num: int,
        stride: int = 1,
        activation: Optional[ActivationFunc] = None,
        padding: PaddingType = PaddingType.VALID,
        input_shape: Optional[Shape] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(input_shape, activation, name)
        if filter_size < 1 or filters_num < 1 or stride < 1:
            raise ConfigurationError(
                f"Invalid convolution (filter_size={filter_size}, filters_num={filters_num}, stride={stride})"
            )
        self.filter_size = filter_size
        self.filters_num = filters_num
        self.stride = stride
        self.padding = PaddingType(padding)
        self.kernels: Optional[Tensor] = None
        self.bias: Optional[Tensor] = None
        self.kernels_gradient: Optional[Tensor] = None
        self.bias_gradient: Optional[Tensor] = None

    def _build(self, input_shape: Shape, rng: np.random.Generator) -> Shape:
        f = self.filter_size
        out_w, out_h, _, _ = get_padding_params(self.padding, input_shape.width, input_shape.height, f, f, self.stride)
        fan_in = f * f * input_shape.depth
        fan_out = f * f * self.filters_num
        limit = np.sqrt(6.0 / (fan_in + fan_out))
        self.kernels = Tensor.zeros(Shape(f, f, input_shape.depth, self.filters_num)).fill_with_rand(rng, -limit, limit)
        self.bias = Tensor.zeros(Shape(1, 1, self.filters_num))
        self.kernels_gradient = Tensor.zeros(self.kernels.shape)
        self.bias_gradient = Tensor.zeros(self.bias.shape)
        return Shape(out_w, out_h, self.filters_num)

    def _forward(self, input: Tensor) -> Tensor:
        output = self._buffer(self.output, self.output_shape.with_batch(input.batch_size))
        input.conv2d(self.kernels, self.stride, self.padding, output)
        # bias data is (1, F, 1, 1) and broadcasts over batch and positions
        output.data += self.bias.data
        return output

    def _backward(self, delta: Tensor) -> Tensor:
        Tensor.conv2d_kernels_gradient(self.input, delta, self.stride, self.padding, self.kernels_gradient)
        self.bias_gradient.data += delta.data.sum(axis=(0, 2, 3)).reshape(self.bias.data.shape)
        input_gradient = self._buffer(self.input_gradient, self.input.shape)
        return Tensor.conv2d_input_gradient(delta, self.kernels, self.stride, self.padding, input_gradient)

    def parameters_and_gradients(self) -> List[Tuple[Tensor, Tensor]]:
        if self.kernels is None:
            return []
        return [(self.kernels, self.kernels_gradient), (self.bias, self.bias_gradient)]

    def _parameter_names(self) -> List[str]:
        return ["kernels", "bias"]

    def _clone_unbuilt(self) -> "Convolution":
        return Convolution(
            self.filter_size,
            self.filters_num,
            self.stride,
            self.activation,
            self.padding,
            self.input_shape,
            name=self.name,
        )


class Pooling(LayerBase):
    """
    Max or average pooling with valid padding.

    The output keeps the input depth and has spatial size
    ``floor((input - filter_size) / stride) + 1``.
    """

    kind = "pool"

    def __init__(
        self,
        filter_size: int,
        stride: int = 1,
        pool_type: PoolType = PoolType.MAX,
        input_shape: Optional[Shape] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(input_shape, None, name)
        if filter_size < 1 or stride < 1:
            raise ConfigurationError(f"Invalid pooling (filter_size={filter_size}, stride={stride})")
        self.filter_size = filter_size
        self.stride = stride
        self.pool_type = PoolType(pool_type)

    def _build(self, input_shape: Shape, rng: np.random.Generator) -> Shape:
        f = self.filter_size
        out_w, out_h, _, _ = get_padding_params(PaddingType.VALID, input_shape.width, input_shape.height, f, f, self.stride)
        return Shape(out_w, out_h, input_shape.depth)

    def _forward(self, input: Tensor) -> Tensor:
        output = self._buffer(self.output, self.output_shape.with_batch(input.batch_size))
        return input.pool(self.filter_size, self.stride, self.pool_type, PaddingType.VALID, output)

    def _backward(self, delta: Tensor) -> Tensor:
        input_gradient = self._buffer(self.input_gradient, self.input.shape)
        return Tensor.pool_gradient(
            self.output,
            self.input,
            delta,
            self.filter_size,
            self.stride,
            self.pool_type,
            PaddingType.VALID,
            input_gradient,
        )

    def _clone_unbuilt(self) -> "Pooling":
        return Pooling(self.filter_size, self.stride, self.pool_type, self.input_shape, name=self.name)


class Flatten(LayerBase):
    """Reinterpret every sample as a column vector ``(1, length)``; no values are copied."""

    kind = "flatten"

    def __init__(self, input_shape: Optional[Shape] = None, name: Optional[str] = None) -> None:
        super().__init__(input_shape, None, name)

    def _build(self, input_shape: Shape, rng: np.random.Generator) -> Shape:
        return Shape(1, input_shape.batch_length)

    def _forward(self, input: Tensor) -> Tensor:
        return input.reshaped(self.output_shape.with_batch(input.batch_size))

    def _backward(self, delta: Tensor) -> Tensor:
        return delta.reshaped(self.input.shape)

    def _clone_unbuilt(self) -> "Flatten":
        return Flatten(self.input_shape, name=self.name)
