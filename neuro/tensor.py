import os
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from neuro.errors import ConfigurationError, ShapeMismatchError
from neuro.tensor_ops import CpuOps, PaddingType, PoolType, TensorOps

__all__ = [
    "Shape",
    "Tensor",
    "PaddingType",
    "PoolType",
    "get_padding_params",
    "set_op_mode",
    "get_op_mode",
    "current_ops",
]

_OP_MODES = ("cpu", "multi_cpu")
_ops_cache: Dict[str, TensorOps] = {}
_op_mode = os.getenv("NEURO_TENSOR_MODE", "cpu").lower()


def _create_ops(mode: str) -> TensorOps:
    if mode == "cpu":
        return CpuOps()
    if mode == "multi_cpu":
        # imported on demand so numba only loads when the parallel backend is chosen
        from neuro.fast_ops import FastOps
        return FastOps()
    raise ConfigurationError(f"Unknown tensor op mode {mode!r}, expected one of {_OP_MODES}")


def set_op_mode(mode: str) -> None:
    """
    Select the process-wide compute backend.

    Parameters
    ----------
    mode : {'cpu', 'multi_cpu'}
        ``'cpu'`` is the single-threaded NumPy reference backend;
        ``'multi_cpu'`` runs kernels on the numba thread pool.

    Raises
    ------
    ConfigurationError
        If ``mode`` is not a known backend.

    Notes
    -----
    Intended to be called once at startup. The initial mode is read from
    the ``NEURO_TENSOR_MODE`` environment variable (default ``'cpu'``).
    """
    global _op_mode
    mode = mode.lower()
    if mode not in _ops_cache:
        _ops_cache[mode] = _create_ops(mode)
    _op_mode = mode


def get_op_mode() -> str:
    """Name of the active compute backend."""
    return _op_mode


def current_ops() -> TensorOps:
    """Return the active backend instance, creating it on first use."""
    ops = _ops_cache.get(_op_mode)
    if ops is None:
        ops = _ops_cache[_op_mode] = _create_ops(_op_mode)
    return ops


class Shape:
    """
    Immutable 4-D tensor shape ``(width, height, depth, batch_size)``.

    Width is the fastest-varying axis and every batch slice is a contiguous
    block of ``batch_length = width * height * depth`` elements, so element
    ``(x, y, z, n)`` sits at flat index
    ``n * batch_length + z * height * width + y * width + x``.

    Parameters
    ----------
    width, height, depth, batch_size : int
        Axis sizes, all ``>= 1``. Trailing axes default to 1.

    Raises
    ------
    ConfigurationError
        If any axis is smaller than 1.
    """

    __slots__ = ("_dims",)

    def __init__(self, width: int, height: int = 1, depth: int = 1, batch_size: int = 1) -> None:
        dims = (int(width), int(height), int(depth), int(batch_size))
        if any(d < 1 for d in dims):
            raise ConfigurationError(f"Shape dimensions must be >= 1, got {dims}")
        object.__setattr__(self, "_dims", dims)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Shape is immutable")

    @classmethod
    def from_array_shape(cls, array_shape: Sequence[int]) -> "Shape":
        """
        Build a shape from a NumPy shape, reading axes right-aligned as
        ``(batch, depth, height, width)``.
        """
        array_shape = tuple(int(s) for s in array_shape)
        if len(array_shape) > 4:
            raise ShapeMismatchError("from_array_shape", f"at most 4 axes supported, got {array_shape}")
        padded = (1,) * (4 - len(array_shape)) + array_shape
        n, d, h, w = padded
        return cls(w, h, d, n)

    @property
    def width(self) -> int:
        return self._dims[0]

    @property
    def height(self) -> int:
        return self._dims[1]

    @property
    def depth(self) -> int:
        return self._dims[2]

    @property
    def batch_size(self) -> int:
        return self._dims[3]

    @property
    def dims(self) -> Tuple[int, int, int, int]:
        return self._dims

    @property
    def batch_length(self) -> int:
        """int: Number of elements in one batch slice."""
        return self._dims[0] * self._dims[1] * self._dims[2]

    @property
    def length(self) -> int:
        """int: Total number of elements."""
        return self.batch_length * self._dims[3]

    @property
    def array_shape(self) -> Tuple[int, int, int, int]:
        """tuple of int: The matching NumPy shape ``(batch, depth, height, width)``."""
        w, h, d, n = self._dims
        return (n, d, h, w)

    def with_batch(self, batch_size: int) -> "Shape":
        """Same sample shape with a different batch count."""
        return Shape(self.width, self.height, self.depth, batch_size)

    def same_sample_shape(self, other: "Shape") -> bool:
        """True if width, height and depth match (batch count is ignored)."""
        return self._dims[:3] == other._dims[:3]

    def get_index(self, x: int, y: int = 0, z: int = 0, n: int = 0) -> int:
        return n * self.batch_length + z * self.height * self.width + y * self.width + x

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Shape) and self._dims == other._dims

    def __hash__(self) -> int:
        return hash(self._dims)

    def __iter__(self):
        return iter(self._dims)

    def __repr__(self) -> str:
        w, h, d, n = self._dims
        return f"Shape({w}, {h}, {d}, {n})"


def get_padding_params(
    padding: PaddingType,
    width: int,
    height: int,
    kernel_width: int,
    kernel_height: int,
    stride: int,
) -> Tuple[int, int, int, int]:
    """
    Output size and leading padding of a sliding-window operation.

    Parameters
    ----------
    padding : PaddingType
        Padding policy.
    width, height : int
        Input spatial size.
    kernel_width, kernel_height : int
        Window size.
    stride : int
        Window step (``>= 1``).

    Returns
    -------
    (out_width, out_height, pad_x, pad_y) : tuple[int, int, int, int]
        ``pad_x``/``pad_y`` are the zero columns/rows in front of the input.

    Notes
    -----
    - ``VALID``: no padding, ``out = floor((I - K) / S) + 1``.
    - ``SAME``: ``out = ceil(I / S)``; the total padding
      ``max((out - 1) * S + K - I, 0)`` is split evenly, the extra odd unit
      going after the input.
    - ``FULL``: padding of ``K - 1`` on both sides,
      ``out = floor((I + K - 2) / S) + 1``.

    Raises
    ------
    ConfigurationError
        If ``stride < 1``.
    ShapeMismatchError
        If the window does not fit a ``VALID`` input.
    """
    if stride < 1:
        raise ConfigurationError(f"Stride must be >= 1, got {stride}")

    def _axis(size: int, k: int) -> Tuple[int, int]:
        if padding == PaddingType.VALID:
            if k > size:
                raise ShapeMismatchError("padding", f"window {k} larger than input {size} with valid padding")
            return (size - k) // stride + 1, 0
        if padding == PaddingType.SAME:
            out = (size + stride - 1) // stride
            total = max((out - 1) * stride + k - size, 0)
            return out, total // 2
        if padding == PaddingType.FULL:
            return (size + k - 2) // stride + 1, k - 1
        raise ConfigurationError(f"Unknown padding type {padding!r}")

    out_w, pad_x = _axis(width, kernel_width)
    out_h, pad_y = _axis(height, kernel_height)
    return out_w, out_h, pad_x, pad_y


class Tensor:
    """
    Batched 4-D ``float32`` array with a fixed :class:`Shape`.

    Values live in one C-contiguous NumPy buffer of shape
    ``(batch, depth, height, width)``, which is exactly the flat layout
    described by :class:`Shape`. Arithmetic operators return new tensors;
    the ``*_`` methods work in place for gradient bookkeeping. Heavy kernels
    (elementwise ops, matrix multiply, convolution, pooling) run on the
    process-wide backend selected by :func:`set_op_mode`.

    Parameters
    ----------
    values : iterable of float, optional
        Flat values in the layout of ``shape``. Zeros if omitted.
    shape : Shape
        Tensor shape.

    Raises
    ------
    ShapeMismatchError
        If the number of values differs from ``shape.length``.

    Notes
    -----
    Binary elementwise operations require equal width/height/depth. Batch
    counts may differ only when one side has a single batch, which is then
    broadcast against every batch of the other side.

    Examples
    --------
    >>> t = Tensor([1, 2, 3, 4, 5, 6], Shape(3, 2))
    >>> t[2, 1]
    6.0
    >>> t.transposed().shape
    Shape(2, 3, 1, 1)
    """

    def __init__(self, values: Optional[Iterable[float]] = None, shape: Optional[Shape] = None) -> None:
        if shape is None:
            raise ConfigurationError("Tensor requires a shape")
        if values is None:
            data = np.zeros(shape.array_shape, dtype=np.float32)
        else:
            flat = np.asarray(list(values) if not isinstance(values, np.ndarray) else values, dtype=np.float32).reshape(-1)
            if flat.size != shape.length:
                raise ShapeMismatchError("Tensor", f"{flat.size} values given for {shape} (length {shape.length})")
            data = flat.reshape(shape.array_shape).copy()
        self.shape = shape
        self.data = data

    @classmethod
    def _wrap(cls, data: np.ndarray, shape: Optional[Shape] = None) -> "Tensor":
        """Wrap an existing ``(N, D, H, W)`` float32 buffer without copying it."""
        t = cls.__new__(cls)
        t.shape = shape if shape is not None else Shape.from_array_shape(data.shape)
        t.data = data
        return t

    @classmethod
    def zeros(cls, shape: Shape) -> "Tensor":
        """Tensor of zeros with the given shape."""
        return cls._wrap(np.zeros(shape.array_shape, dtype=np.float32), shape)

    @classmethod
    def from_array(cls, array: Any) -> "Tensor":
        """
        Copy an array-like into a new tensor.

        Axes are read right-aligned as ``(batch, depth, height, width)``, so a
        1-D array becomes a single row and a 2-D array a single matrix.
        """
        arr = np.asarray(array, dtype=np.float32)
        shape = Shape.from_array_shape(arr.shape)
        return cls._wrap(np.ascontiguousarray(arr.reshape(shape.array_shape)).copy(), shape)

    @classmethod
    def merge(cls, tensors: Sequence["Tensor"]) -> "Tensor":
        """
        Stack tensors along the batch axis.

        Raises
        ------
        ShapeMismatchError
            If the tensors do not share width/height/depth.
        """
        if not tensors:
            raise ConfigurationError("Cannot merge an empty list of tensors")
        first = tensors[0].shape
        for t in tensors[1:]:
            if not t.shape.same_sample_shape(first):
                raise ShapeMismatchError("merge", f"{t.shape} does not match {first}")
        data = np.concatenate([t.data for t in tensors], axis=0)
        return cls._wrap(data, first.with_batch(data.shape[0]))

    # ------------------------------------------------------------------ shape

    @property
    def width(self) -> int:
        return self.shape.width

    @property
    def height(self) -> int:
        return self.shape.height

    @property
    def depth(self) -> int:
        return self.shape.depth

    @property
    def batch_size(self) -> int:
        return self.shape.batch_size

    @property
    def batch_length(self) -> int:
        return self.shape.batch_length

    @property
    def length(self) -> int:
        return self.shape.length

    @property
    def values(self) -> np.ndarray:
        """numpy.ndarray: Flat view of the underlying buffer."""
        return self.data.reshape(-1)

    # ----------------------------------------------------------------- access

    def __getitem__(self, idx: Union[int, Tuple[int, ...]]) -> float:
        x, y, z, n = self._coords(idx)
        return float(self.data[n, z, y, x])

    def __setitem__(self, idx: Union[int, Tuple[int, ...]], value: float) -> None:
        x, y, z, n = self._coords(idx)
        self.data[n, z, y, x] = value

    @staticmethod
    def _coords(idx: Union[int, Tuple[int, ...]]) -> Tuple[int, int, int, int]:
        # (x, y, z, n); missing trailing coordinates are 0, negatives do not wrap
        if not isinstance(idx, tuple):
            idx = (idx,)
        if len(idx) > 4:
            raise IndexError(f"Tensor index takes at most 4 coordinates (x, y, z, n), got {len(idx)}")
        coords = tuple(int(i) for i in idx) + (0,) * (4 - len(idx))
        if min(coords) < 0:
            raise IndexError(f"Negative tensor coordinate in {coords}")
        return coords  # type: ignore[return-value]

    def get_flat(self, i: int) -> float:
        return float(self.values[i])

    def set_flat(self, value: float, i: int) -> None:
        self.values[i] = value

    def try_get(self, default: float, x: int, y: int = 0, z: int = 0, n: int = 0) -> float:
        """Bounds-checked read: returns ``default`` for out-of-range ``x``/``y``."""
        if x < 0 or y < 0 or x >= self.width or y >= self.height:
            return default
        return float(self.data[n, z, y, x])

    def try_set(self, value: float, x: int, y: int = 0, z: int = 0, n: int = 0) -> None:
        """Bounds-checked write: silently ignores out-of-range ``x``/``y``."""
        if x < 0 or y < 0 or x >= self.width or y >= self.height:
            return
        self.data[n, z, y, x] = value

    def get_batch(self, n: int) -> "Tensor":
        """Copy of batch slice ``n`` as a single-batch tensor."""
        return Tensor._wrap(self.data[n:n + 1].copy(), self.shape.with_batch(1))

    # ------------------------------------------------------------- validation

    def _check_elementwise(self, other: "Tensor", op: str) -> Shape:
        if not self.shape.same_sample_shape(other.shape):
            raise ShapeMismatchError(op, f"{self.shape} vs {other.shape}")
        a, b = self.batch_size, other.batch_size
        if a != b and a != 1 and b != 1:
            raise ShapeMismatchError(op, f"batch counts {a} and {b} are not broadcastable")
        return self.shape.with_batch(max(a, b))

    @staticmethod
    def _check_result(result: Optional["Tensor"], shape: Shape, op: str) -> "Tensor":
        if result is None:
            return Tensor.zeros(shape)
        if result.shape != shape:
            raise ShapeMismatchError(op, f"result {result.shape} expected {shape}")
        return result

    # ------------------------------------------------------------- arithmetic

    def add(self, other: "Tensor", result: Optional["Tensor"] = None) -> "Tensor":
        """
        Elementwise ``self + other`` with single-batch broadcasting.

        Parameters
        ----------
        other : Tensor
            Operand with the same width/height/depth.
        result : Tensor, optional
            Destination; allocated if omitted.

        Returns
        -------
        Tensor
            ``result``.
        """
        shape = self._check_elementwise(other, "add")
        result = Tensor._check_result(result, shape, "add")
        current_ops().add(self, other, result)
        return result

    def sub(self, other: "Tensor", result: Optional["Tensor"] = None) -> "Tensor":
        """Elementwise ``self - other``; see :meth:`add`."""
        shape = self._check_elementwise(other, "sub")
        result = Tensor._check_result(result, shape, "sub")
        current_ops().sub(self, other, result)
        return result

    def mul_elem(self, other: "Tensor", result: Optional["Tensor"] = None) -> "Tensor":
        """Elementwise (Hadamard) product; see :meth:`add`."""
        shape = self._check_elementwise(other, "mul_elem")
        result = Tensor._check_result(result, shape, "mul_elem")
        current_ops().mul_elem(self, other, result)
        return result

    def mul(self, other: Union["Tensor", float], result: Optional["Tensor"] = None) -> "Tensor":
        """
        Matrix product, or scaling when ``other`` is a number.

        Each batch slice and depth channel is treated as a ``height x width``
        matrix: ``(K, M, D, N1) x (P, K, D, N2) -> (P, M, D, max(N1, N2))``
        in ``(width, height, depth, batch)`` notation.

        Raises
        ------
        ShapeMismatchError
            If ``self.width != other.height``, depths differ, or batch counts
            are not broadcastable.
        """
        if not isinstance(other, Tensor):
            shape = self.shape
            result = Tensor._check_result(result, shape, "mul")
            np.multiply(self.data, np.float32(other), out=result.data)
            return result

        if self.width != other.height or self.depth != other.depth:
            raise ShapeMismatchError("mul", f"cannot multiply {self.shape} by {other.shape}")
        a, b = self.batch_size, other.batch_size
        if a != b and a != 1 and b != 1:
            raise ShapeMismatchError("mul", f"batch counts {a} and {b} are not broadcastable")

        shape = Shape(other.width, self.height, self.depth, max(a, b))
        result = Tensor._check_result(result, shape, "mul")
        result.zero_()
        current_ops().mul(self, other, result)
        return result

    def div(self, value: float, result: Optional["Tensor"] = None) -> "Tensor":
        result = Tensor._check_result(result, self.shape, "div")
        np.divide(self.data, np.float32(value), out=result.data)
        return result

    def __add__(self, other: Union["Tensor", float]) -> "Tensor":
        if isinstance(other, Tensor):
            return self.add(other)
        return Tensor._wrap(self.data + np.float32(other), self.shape)

    def __radd__(self, other: float) -> "Tensor":
        return self + other

    def __sub__(self, other: Union["Tensor", float]) -> "Tensor":
        if isinstance(other, Tensor):
            return self.sub(other)
        return Tensor._wrap(self.data - np.float32(other), self.shape)

    def __mul__(self, other: Union["Tensor", float]) -> "Tensor":
        """Elementwise product with a tensor, or scaling by a number."""
        if isinstance(other, Tensor):
            return self.mul_elem(other)
        return self.mul(other)

    def __rmul__(self, other: float) -> "Tensor":
        return self.mul(other)

    def __matmul__(self, other: "Tensor") -> "Tensor":
        return self.mul(other)

    def __truediv__(self, other: float) -> "Tensor":
        return self.div(other)

    def __neg__(self) -> "Tensor":
        return self.mul(-1.0)

    # --------------------------------------------------------------- in place

    def _check_inplace(self, other: "Tensor", op: str) -> None:
        if not self.shape.same_sample_shape(other.shape):
            raise ShapeMismatchError(op, f"{self.shape} vs {other.shape}")
        if other.batch_size != self.batch_size and other.batch_size != 1:
            raise ShapeMismatchError(op, f"cannot accumulate batch count {other.batch_size} into {self.batch_size}")

    def add_(self, other: "Tensor") -> "Tensor":
        """In-place ``self += other`` (``other`` may have a single batch)."""
        self._check_inplace(other, "add_")
        current_ops().add(self, other, self)
        return self

    def sub_(self, other: "Tensor") -> "Tensor":
        """In-place ``self -= other`` (``other`` may have a single batch)."""
        self._check_inplace(other, "sub_")
        current_ops().sub(self, other, self)
        return self

    def scale_(self, value: float) -> "Tensor":
        self.data *= np.float32(value)
        return self

    def zero_(self) -> "Tensor":
        self.data.fill(0)
        return self

    def copy_to(self, target: "Tensor") -> None:
        if target.shape != self.shape:
            raise ShapeMismatchError("copy_to", f"{self.shape} vs {target.shape}")
        target.data[...] = self.data

    def clone(self) -> "Tensor":
        return Tensor._wrap(self.data.copy(), self.shape)

    # ------------------------------------------------------------- reductions

    def _batch_view(self, batch: Optional[int]) -> np.ndarray:
        return self.data if batch is None else self.data[batch]

    def sum(self, batch: Optional[int] = None) -> float:
        """Sum of all elements, or of one batch slice."""
        return float(self._batch_view(batch).sum(dtype=np.float64))

    def sum_batches(self) -> "Tensor":
        """Single-batch tensor holding the elementwise sum over all batches."""
        return Tensor._wrap(self.data.sum(axis=0, keepdims=True, dtype=np.float32), self.shape.with_batch(1))

    def avg(self, batch: Optional[int] = None) -> float:
        view = self._batch_view(batch)
        return self.sum(batch) / view.size

    def max(self, batch: Optional[int] = None) -> float:
        return float(self._batch_view(batch).max())

    def min(self, batch: Optional[int] = None) -> float:
        return float(self._batch_view(batch).min())

    def arg_max(self, batch: Optional[int] = None) -> int:
        """Flat index of the maximum (within the batch slice when ``batch`` is given)."""
        return int(np.argmax(self._batch_view(batch)))

    # ------------------------------------------------------------ transforms

    def map(self, fn: Callable[[np.ndarray], np.ndarray], result: Optional["Tensor"] = None) -> "Tensor":
        """Apply a vectorized function to every element."""
        result = Tensor._check_result(result, self.shape, "map")
        result.data[...] = fn(self.data)
        return result

    def transposed(self) -> "Tensor":
        """Swap width and height of every (batch, depth) matrix."""
        data = np.ascontiguousarray(self.data.transpose(0, 1, 3, 2))
        return Tensor._wrap(data, Shape(self.height, self.width, self.depth, self.batch_size))

    def rotated180(self) -> "Tensor":
        """Rotate every (batch, depth) plane by 180 degrees."""
        return Tensor._wrap(np.ascontiguousarray(self.data[:, :, ::-1, ::-1]), self.shape)

    def reshaped(self, shape: Shape) -> "Tensor":
        """
        Reinterpret the buffer with a new shape of equal length.

        The returned tensor shares memory with ``self``; no values are copied.
        """
        if shape.length != self.length:
            raise ShapeMismatchError("reshaped", f"cannot view {self.shape} as {shape}")
        return Tensor._wrap(self.data.reshape(shape.array_shape), shape)

    def fill_with_rand(self, rng: np.random.Generator, min_value: float = -1.0, max_value: float = 1.0) -> "Tensor":
        """Fill with uniform values from ``[min_value, max_value)`` drawn from ``rng``."""
        self.data[...] = rng.uniform(min_value, max_value, size=self.data.shape)
        return self

    def fill_with_range(self, start: float = 0.0, step: float = 1.0) -> "Tensor":
        self.values[:] = start + step * np.arange(self.length, dtype=np.float32)
        return self

    def fill_with_value(self, value: float) -> "Tensor":
        self.data.fill(value)
        return self

    def equals(self, other: "Tensor", epsilon: float = 1e-5) -> bool:
        """Shape equality and elementwise ``|a - b| <= epsilon``."""
        return self.shape == other.shape and bool(np.all(np.abs(self.data - other.data) <= epsilon))

    # ------------------------------------------------------- sliding windows

    def conv2d(
        self,
        kernels: "Tensor",
        stride: int,
        padding: PaddingType,
        result: Optional["Tensor"] = None,
    ) -> "Tensor":
        """
        2D convolution (cross-correlation) of every batch slice with ``kernels``.

        Parameters
        ----------
        kernels : Tensor
            Shape ``(kW, kH, D, OutD)``: one batch slice per output channel,
            ``D`` must equal ``self.depth``.
        stride : int
            Window step.
        padding : PaddingType
            Padding policy; see :func:`get_padding_params`.
        result : Tensor, optional
            Destination of shape ``(outW, outH, OutD, N)``.

        Returns
        -------
        Tensor
            ``result[w, h, o, n] = sum over the window of input * kernel``,
            reads outside the input counting as zero.
        """
        if kernels.depth != self.depth:
            raise ShapeMismatchError("conv2d", f"kernel depth {kernels.depth} vs input depth {self.depth}")
        out_w, out_h, pad_x, pad_y = get_padding_params(padding, self.width, self.height, kernels.width, kernels.height, stride)
        shape = Shape(out_w, out_h, kernels.batch_size, self.batch_size)
        result = Tensor._check_result(result, shape, "conv2d")
        current_ops().conv2d(self, kernels, stride, pad_x, pad_y, result)
        return result

    @staticmethod
    def conv2d_input_gradient(
        gradient: "Tensor",
        kernels: "Tensor",
        stride: int,
        padding: PaddingType,
        input_gradient: "Tensor",
    ) -> "Tensor":
        """
        Gradient of :meth:`conv2d` with respect to its input.

        The upstream ``gradient`` is correlated with the 180-degree rotated
        kernels under full padding, redistributing it onto every input
        position that contributed to the forward output. ``padding`` is the
        forward pass policy, needed to align the two coordinate systems.
        ``input_gradient`` (shaped like the forward input) is overwritten.
        """
        out_w, out_h, pad_x, pad_y = get_padding_params(
            padding, input_gradient.width, input_gradient.height, kernels.width, kernels.height, stride
        )
        if (out_w, out_h) != (gradient.width, gradient.height) or gradient.depth != kernels.batch_size:
            raise ShapeMismatchError("conv2d_input_gradient", f"gradient {gradient.shape} does not match forward output")
        if input_gradient.depth != kernels.depth or input_gradient.batch_size != gradient.batch_size:
            raise ShapeMismatchError("conv2d_input_gradient", f"input gradient {input_gradient.shape} does not match kernels/gradient")
        current_ops().conv2d_input_gradient(gradient, kernels, stride, pad_x, pad_y, input_gradient)
        return input_gradient

    @staticmethod
    def conv2d_kernels_gradient(
        input: "Tensor",
        gradient: "Tensor",
        stride: int,
        padding: PaddingType,
        kernels_gradient: "Tensor",
    ) -> "Tensor":
        """
        Gradient of :meth:`conv2d` with respect to its kernels.

        Correlates ``input`` with ``gradient`` and **adds** the result, summed
        over the batch, into ``kernels_gradient``. No division by the batch
        size happens here; optimizers divide by the sample count.
        """
        out_w, out_h, pad_x, pad_y = get_padding_params(
            padding, input.width, input.height, kernels_gradient.width, kernels_gradient.height, stride
        )
        if (out_w, out_h) != (gradient.width, gradient.height) or gradient.depth != kernels_gradient.batch_size:
            raise ShapeMismatchError("conv2d_kernels_gradient", f"gradient {gradient.shape} does not match forward output")
        if input.depth != kernels_gradient.depth or input.batch_size != gradient.batch_size:
            raise ShapeMismatchError("conv2d_kernels_gradient", f"input {input.shape} does not match kernels/gradient")
        current_ops().conv2d_kernels_gradient(input, gradient, stride, pad_x, pad_y, kernels_gradient)
        return kernels_gradient

    def pool(
        self,
        filter_size: int,
        stride: int,
        pool_type: PoolType,
        padding: PaddingType = PaddingType.VALID,
        result: Optional["Tensor"] = None,
    ) -> "Tensor":
        """
        Max or average pooling of every (batch, depth) plane.

        Notes
        -----
        - Max pooling treats out-of-range reads as ``-inf`` so they never win.
        - Average pooling divides the window sum (padding counted as zero) by
          the nominal area ``filter_size ** 2``, also for clipped windows.
        """
        out_w, out_h, pad_x, pad_y = get_padding_params(padding, self.width, self.height, filter_size, filter_size, stride)
        shape = Shape(out_w, out_h, self.depth, self.batch_size)
        result = Tensor._check_result(result, shape, "pool")
        current_ops().pool(self, filter_size, stride, pool_type, pad_x, pad_y, result)
        return result

    @staticmethod
    def pool_gradient(
        output: "Tensor",
        input: "Tensor",
        output_gradient: "Tensor",
        filter_size: int,
        stride: int,
        pool_type: PoolType,
        padding: PaddingType,
        result: "Tensor",
    ) -> "Tensor":
        """
        Gradient of :meth:`pool` with respect to its input.

        ``result`` is zeroed and then accumulated. Max: every input position
        equal to its window's recorded maximum receives the full upstream
        gradient (ties are not split). Avg: every window position receives
        ``gradient / filter_size ** 2``. Overlapping windows add up.
        """
        if output.shape != output_gradient.shape:
            raise ShapeMismatchError("pool_gradient", f"output {output.shape} vs gradient {output_gradient.shape}")
        if result.shape != input.shape:
            raise ShapeMismatchError("pool_gradient", f"result {result.shape} vs input {input.shape}")
        out_w, out_h, pad_x, pad_y = get_padding_params(padding, input.width, input.height, filter_size, filter_size, stride)
        if (out_w, out_h, input.depth, input.batch_size) != output.shape.dims:
            raise ShapeMismatchError("pool_gradient", f"output {output.shape} does not match pooled input {input.shape}")
        current_ops().pool_gradient(output, input, output_gradient, filter_size, stride, pool_type, pad_x, pad_y, result)
        return result

    def __repr__(self) -> str:
        """
        Readable representation listing shape and values per batch.

        Examples
        --------
        >>> Tensor([1, 2], Shape(2))
        Tensor(shape=Shape(2, 1, 1, 1), values=[[[[1. 2.]]]])
        """
        return f"Tensor(shape={self.shape}, values={np.array2string(self.data, precision=4, separator=' ')})"
