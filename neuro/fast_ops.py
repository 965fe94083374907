from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, TypeVar

import numpy as np
from numba import prange
from numba import njit as _njit

from neuro.tensor_ops import PoolType, TensorOps

if TYPE_CHECKING:
    from neuro.tensor import Tensor

# TIP: Use `NUMBA_DISABLE_JIT=1 pytest tests/` to step through these kernels in plain Python.

Fn = TypeVar("Fn")


def njit(fn: Fn, **kwargs: Any) -> Fn:
    """JIT compile ``fn`` with numba, always inlining it into its callers."""
    return _njit(inline="always", **kwargs)(fn)  # type: ignore


def _try_get(t: np.ndarray, default: float, n: int, d: int, y: int, x: int) -> float:
    """Bounds-checked read of ``t[n, d, y, x]``; out-of-range reads return ``default``."""
    if y < 0 or y >= t.shape[2] or x < 0 or x >= t.shape[3]:
        return default
    return t[n, d, y, x]


def _add(x: float, y: float) -> float:
    return x + y


def _sub(x: float, y: float) -> float:
    return x - y


def _mul(x: float, y: float) -> float:
    return x * y


try_get = njit(_try_get)


def tensor_zip(fn: Callable[[float, float], float]) -> Callable[[np.ndarray, np.ndarray, np.ndarray], None]:
    """
    Build a parallel elementwise kernel over ``(batch, batch_length)`` views.

    The main loop runs over the flat output index, so every output element is
    written by exactly one iteration. An operand with a single batch is
    broadcast: every output batch reads its only slice.
    """

    def _zip(out: np.ndarray, a: np.ndarray, b: np.ndarray) -> None:
        batches, length = out.shape
        a_single = a.shape[0] == 1
        b_single = b.shape[0] == 1
        for i in prange(batches * length):
            n = i // length
            j = i - n * length
            an = 0 if a_single else n
            bn = 0 if b_single else n
            out[n, j] = fn(a[an, j], b[bn, j])

    return njit(_zip, parallel=True)  # type: ignore


def _tensor_matrix_multiply(out: np.ndarray, a: np.ndarray, b: np.ndarray) -> None:
    """
    ``out[n, d] = a[n, d] @ b[n, d]`` for ``(N, D, M, K) x (N, D, K, P)`` operands.

    The outer loop runs in parallel over (batch, depth) pairs; each pair owns
    one ``M x P`` block of ``out``. Operands with a single batch broadcast.
    """
    N, D, M, P = out.shape
    K = a.shape[3]
    a_single = a.shape[0] == 1
    b_single = b.shape[0] == 1
    for i in prange(N * D):
        n = i // D
        d = i - n * D
        an = 0 if a_single else n
        bn = 0 if b_single else n
        for h in range(M):
            for w in range(P):
                acc = 0.0
                for k in range(K):
                    acc += a[an, d, h, k] * b[bn, d, k, w]
                out[n, d, h, w] = acc


def _tensor_conv2d(
    out: np.ndarray,
    inp: np.ndarray,
    kernels: np.ndarray,
    stride: int,
    pad_x: int,
    pad_y: int,
) -> None:
    """
    2D correlation of ``inp (N, D, H, W)`` with ``kernels (OD, D, KH, KW)``.

    Parallel over (batch, output channel) pairs; each pair owns one output
    plane.
    """
    N, OD, OH, OW = out.shape
    D = inp.shape[1]
    KH, KW = kernels.shape[2], kernels.shape[3]
    for i in prange(N * OD):
        n = i // OD
        o = i - n * OD
        for oh in range(OH):
            h = oh * stride - pad_y
            for ow in range(OW):
                w = ow * stride - pad_x
                acc = 0.0
                for d in range(D):
                    for kh in range(KH):
                        for kw in range(KW):
                            acc += try_get(inp, 0.0, n, d, h + kh, w + kw) * kernels[o, d, kh, kw]
                out[n, o, oh, ow] = acc


def _tensor_conv2d_input_gradient(
    input_gradient: np.ndarray,
    gradient: np.ndarray,
    kernels: np.ndarray,
    stride: int,
    pad_x: int,
    pad_y: int,
) -> None:
    """
    Correlate the upstream gradient with the 180-degree rotated kernels.

    The gradient is read as if dilated by ``stride`` and zero-padded by
    ``kernel_size - 1`` on every side ("full" padding), so each input position
    collects the contribution of every output it fed in the forward pass.
    ``pad_x``/``pad_y`` are the forward pass paddings. The batch loop is
    sequential; the parallel axis is the input channel, which owns a disjoint
    plane of ``input_gradient``.
    """
    N, D, H, W = input_gradient.shape
    OD, OH, OW = gradient.shape[1], gradient.shape[2], gradient.shape[3]
    KH, KW = kernels.shape[2], kernels.shape[3]
    for n in range(N):
        for d in prange(D):
            for y in range(H):
                for x in range(W):
                    acc = 0.0
                    for o in range(OD):
                        for rkh in range(KH):
                            fy = y + pad_y - (KH - 1) + rkh
                            if fy < 0 or fy % stride != 0 or fy // stride >= OH:
                                continue
                            for rkw in range(KW):
                                fx = x + pad_x - (KW - 1) + rkw
                                if fx < 0 or fx % stride != 0 or fx // stride >= OW:
                                    continue
                                acc += gradient[n, o, fy // stride, fx // stride] * kernels[o, d, KH - 1 - rkh, KW - 1 - rkw]
                    input_gradient[n, d, y, x] = acc


def _tensor_conv2d_kernels_gradient(
    kernels_gradient: np.ndarray,
    inp: np.ndarray,
    gradient: np.ndarray,
    stride: int,
    pad_x: int,
    pad_y: int,
) -> None:
    """
    Correlate the input with the upstream gradient, summed over the batch.

    Every batch adds into the same kernel gradient cells, so the batch loop
    stays sequential and only the output-channel axis runs in parallel.
    """
    N = inp.shape[0]
    OD, D, KH, KW = kernels_gradient.shape
    OH, OW = gradient.shape[2], gradient.shape[3]
    for n in range(N):
        for o in prange(OD):
            for d in range(D):
                for kh in range(KH):
                    for kw in range(KW):
                        acc = 0.0
                        for oh in range(OH):
                            for ow in range(OW):
                                acc += try_get(inp, 0.0, n, d, oh * stride - pad_y + kh, ow * stride - pad_x + kw) * gradient[n, o, oh, ow]
                        kernels_gradient[o, d, kh, kw] += acc


def _tensor_pool(
    out: np.ndarray,
    inp: np.ndarray,
    filter_size: int,
    stride: int,
    pool_type: int,
    pad_x: int,
    pad_y: int,
) -> None:
    """Max (``pool_type == 0``) or average pooling, parallel over (batch, depth) planes."""
    N, D, OH, OW = out.shape
    area = filter_size * filter_size
    for i in prange(N * D):
        n = i // D
        d = i - n * D
        for oh in range(OH):
            h = oh * stride - pad_y
            for ow in range(OW):
                w = ow * stride - pad_x
                if pool_type == 0:
                    value = -np.inf
                    for py in range(filter_size):
                        for px in range(filter_size):
                            value = max(value, try_get(inp, -np.inf, n, d, h + py, w + px))
                    out[n, d, oh, ow] = value
                else:
                    total = 0.0
                    for py in range(filter_size):
                        for px in range(filter_size):
                            total += try_get(inp, 0.0, n, d, h + py, w + px)
                    out[n, d, oh, ow] = total / area


def _tensor_pool_gradient(
    result: np.ndarray,
    output: np.ndarray,
    inp: np.ndarray,
    output_gradient: np.ndarray,
    filter_size: int,
    stride: int,
    pool_type: int,
    pad_x: int,
    pad_y: int,
) -> None:
    """
    Route pooled gradients back to the input, parallel over (batch, depth) planes.

    Overlapping windows of one plane are handled by the same iteration, so
    the additive accumulation never races. ``result`` must be zeroed.
    """
    N, D, H, W = result.shape
    OH, OW = output.shape[2], output.shape[3]
    area = filter_size * filter_size
    for i in prange(N * D):
        n = i // D
        d = i - n * D
        for oh in range(OH):
            h = oh * stride - pad_y
            for ow in range(OW):
                w = ow * stride - pad_x
                g = output_gradient[n, d, oh, ow]
                for py in range(filter_size):
                    y = h + py
                    if y < 0 or y >= H:
                        continue
                    for px in range(filter_size):
                        x = w + px
                        if x < 0 or x >= W:
                            continue
                        if pool_type == 0:
                            if inp[n, d, y, x] == output[n, d, oh, ow]:
                                result[n, d, y, x] += g
                        else:
                            result[n, d, y, x] += g / area


tensor_add = tensor_zip(njit(_add))
tensor_sub = tensor_zip(njit(_sub))
tensor_mul_elem = tensor_zip(njit(_mul))
tensor_matrix_multiply = njit(_tensor_matrix_multiply, parallel=True)
tensor_conv2d = njit(_tensor_conv2d, parallel=True)
tensor_conv2d_input_gradient = njit(_tensor_conv2d_input_gradient, parallel=True)
tensor_conv2d_kernels_gradient = njit(_tensor_conv2d_kernels_gradient, parallel=True)
tensor_pool = njit(_tensor_pool, parallel=True)
tensor_pool_gradient = njit(_tensor_pool_gradient, parallel=True)


def _flat(t: "Tensor") -> np.ndarray:
    return t.data.reshape(t.data.shape[0], -1)


class FastOps(TensorOps):
    """
    Multi-core backend (op mode ``"multi_cpu"``) built on numba ``prange``.

    Each kernel call fans out over the numba thread pool and joins before
    returning. Parallel loops always run over an axis whose iterations write
    disjoint parts of the output buffer.
    """

    name = "multi_cpu"

    def add(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        tensor_add(_flat(result), _flat(t1), _flat(t2))

    def sub(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        tensor_sub(_flat(result), _flat(t1), _flat(t2))

    def mul_elem(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        tensor_mul_elem(_flat(result), _flat(t1), _flat(t2))

    def mul(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        tensor_matrix_multiply(result.data, t1.data, t2.data)

    def conv2d(self, t, kernels, stride, pad_x, pad_y, result) -> None:
        tensor_conv2d(result.data, t.data, kernels.data, stride, pad_x, pad_y)

    def conv2d_input_gradient(self, gradient, kernels, stride, pad_x, pad_y, input_gradient) -> None:
        tensor_conv2d_input_gradient(input_gradient.data, gradient.data, kernels.data, stride, pad_x, pad_y)

    def conv2d_kernels_gradient(self, input, gradient, stride, pad_x, pad_y, kernels_gradient) -> None:
        tensor_conv2d_kernels_gradient(kernels_gradient.data, input.data, gradient.data, stride, pad_x, pad_y)

    def pool(self, t, filter_size, stride, pool_type, pad_x, pad_y, result) -> None:
        tensor_pool(result.data, t.data, filter_size, stride, int(pool_type), pad_x, pad_y)

    def pool_gradient(self, output, input, output_gradient, filter_size, stride, pool_type, pad_x, pad_y, result) -> None:
        result.data[...] = 0
        tensor_pool_gradient(
            result.data,
            output.data,
            input.data,
            output_gradient.data,
            filter_size,
            stride,
            int(pool_type),
            pad_x,
            pad_y,
        )
