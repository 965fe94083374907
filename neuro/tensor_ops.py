from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from neuro.tensor import Tensor


class PaddingType(IntEnum):
    """
    Zero-padding policy of a sliding-window operation.

    - ``VALID``: no padding, the output shrinks.
    - ``SAME``: symmetric padding, the output keeps ``ceil(size / stride)``.
    - ``FULL``: padding of ``kernel_size - 1``, the output grows.
    """
    VALID = 0
    SAME = 1
    FULL = 2


class PoolType(IntEnum):
    MAX = 0
    AVG = 1


class TensorOps:
    """
    Kernel interface implemented by every compute backend.

    A backend receives already validated :class:`Tensor` operands together
    with a preallocated ``result`` tensor and writes the outcome into
    ``result.data``. Tensors store their values as a C-contiguous
    ``float32`` array of shape ``(batch, depth, height, width)``.

    Notes
    -----
    Backends that parallelize must partition work so that every worker
    writes a disjoint region of the output buffer. Read-only operands may be
    shared freely. Accumulation targets that are shared across an axis (the
    batch axis of the kernels gradient) are either reduced sequentially
    along that axis or reduced per partition and summed afterwards.

    Padding is passed as the number of leading zero rows (``pad_y``) and
    columns (``pad_x``) in front of the input; reads outside the input are
    treated as zero (``-inf`` for max pooling) and never fault.
    """

    name = "base"

    def add(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        raise NotImplementedError

    def sub(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        raise NotImplementedError

    def mul_elem(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        raise NotImplementedError

    def mul(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        raise NotImplementedError

    def conv2d(
        self,
        t: "Tensor",
        kernels: "Tensor",
        stride: int,
        pad_x: int,
        pad_y: int,
        result: "Tensor",
    ) -> None:
        raise NotImplementedError

    def conv2d_input_gradient(
        self,
        gradient: "Tensor",
        kernels: "Tensor",
        stride: int,
        pad_x: int,
        pad_y: int,
        input_gradient: "Tensor",
    ) -> None:
        raise NotImplementedError

    def conv2d_kernels_gradient(
        self,
        input: "Tensor",
        gradient: "Tensor",
        stride: int,
        pad_x: int,
        pad_y: int,
        kernels_gradient: "Tensor",
    ) -> None:
        raise NotImplementedError

    def pool(
        self,
        t: "Tensor",
        filter_size: int,
        stride: int,
        pool_type: "PoolType",
        pad_x: int,
        pad_y: int,
        result: "Tensor",
    ) -> None:
        raise NotImplementedError

    def pool_gradient(
        self,
        output: "Tensor",
        input: "Tensor",
        output_gradient: "Tensor",
        filter_size: int,
        stride: int,
        pool_type: "PoolType",
        pad_x: int,
        pad_y: int,
        result: "Tensor",
    ) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


def _window_slice(start: int, count: int, stride: int) -> slice:
    """Slice selecting ``count`` positions ``start, start + stride, ...``."""
    return slice(start, start + stride * (count - 1) + 1, stride)


def _padded(
    x: np.ndarray,
    pad_y: int,
    pad_x: int,
    need_h: int,
    need_w: int,
    value: float = 0.0,
) -> np.ndarray:
    """
    Pad the spatial axes of an ``(N, D, H, W)`` array.

    ``pad_y``/``pad_x`` rows/columns are prepended; trailing padding is added
    until the padded array is at least ``need_h`` x ``need_w``.
    """
    H, W = x.shape[2], x.shape[3]
    bottom = max(need_h - pad_y - H, 0)
    right = max(need_w - pad_x - W, 0)
    return np.pad(
        x,
        ((0, 0), (0, 0), (pad_y, bottom), (pad_x, right)),
        mode="constant",
        constant_values=value,
    )


class CpuOps(TensorOps):
    """
    Single-threaded NumPy reference backend (op mode ``"cpu"``).

    Sliding-window kernels loop over the kernel taps in Python and vectorize
    over batch, channels and output positions with NumPy. This backend is the
    numerical ground truth the parallel backend is tested against.
    """

    name = "cpu"

    def add(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        np.add(t1.data, t2.data, out=result.data)

    def sub(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        np.subtract(t1.data, t2.data, out=result.data)

    def mul_elem(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        np.multiply(t1.data, t2.data, out=result.data)

    def mul(self, t1: "Tensor", t2: "Tensor", result: "Tensor") -> None:
        # (N1, D, M, K) @ (N2, D, K, P); a batch count of 1 broadcasts
        np.matmul(t1.data, t2.data, out=result.data)

    def conv2d(self, t, kernels, stride, pad_x, pad_y, result) -> None:
        k = kernels.data
        _, _, OH, OW = result.data.shape
        KH, KW = k.shape[2], k.shape[3]
        xp = _padded(t.data, pad_y, pad_x, (OH - 1) * stride + KH, (OW - 1) * stride + KW)

        out = np.zeros(result.data.shape, dtype=np.float32)
        for kh in range(KH):
            sh = _window_slice(kh, OH, stride)
            for kw in range(KW):
                patch = xp[:, :, sh, _window_slice(kw, OW, stride)]
                out += np.einsum("ndhw,od->nohw", patch, k[:, :, kh, kw])
        result.data[...] = out

    def conv2d_input_gradient(self, gradient, kernels, stride, pad_x, pad_y, input_gradient) -> None:
        """
        Scatter form of the input gradient.

        Every upstream gradient value is spread back over the input window it
        was computed from. This is the same sum as correlating the
        (stride-dilated) gradient, zero-padded by ``kernel_size - 1``, with the
        180-degree rotated kernels, which is how :class:`FastOps` computes it.
        """
        g, k = gradient.data, kernels.data
        _, _, H, W = input_gradient.data.shape
        N, _, OH, OW = g.shape
        KH, KW = k.shape[2], k.shape[3]

        acc_h = max(pad_y + H, (OH - 1) * stride + KH)
        acc_w = max(pad_x + W, (OW - 1) * stride + KW)
        acc = np.zeros((N, k.shape[1], acc_h, acc_w), dtype=np.float32)
        for kh in range(KH):
            sh = _window_slice(kh, OH, stride)
            for kw in range(KW):
                acc[:, :, sh, _window_slice(kw, OW, stride)] += np.einsum("nohw,od->ndhw", g, k[:, :, kh, kw])
        input_gradient.data[...] = acc[:, :, pad_y:pad_y + H, pad_x:pad_x + W]

    def conv2d_kernels_gradient(self, input, gradient, stride, pad_x, pad_y, kernels_gradient) -> None:
        g, kg = gradient.data, kernels_gradient.data
        _, _, OH, OW = g.shape
        KH, KW = kg.shape[2], kg.shape[3]
        xp = _padded(input.data, pad_y, pad_x, (OH - 1) * stride + KH, (OW - 1) * stride + KW)

        for kh in range(KH):
            sh = _window_slice(kh, OH, stride)
            for kw in range(KW):
                patch = xp[:, :, sh, _window_slice(kw, OW, stride)]
                # summed (not averaged) over the batch axis
                kg[:, :, kh, kw] += np.einsum("nohw,ndhw->od", g, patch)

    def pool(self, t, filter_size, stride, pool_type, pad_x, pad_y, result) -> None:
        _, _, OH, OW = result.data.shape
        need_h = (OH - 1) * stride + filter_size
        need_w = (OW - 1) * stride + filter_size

        if pool_type == PoolType.MAX:
            xp = _padded(t.data, pad_y, pad_x, need_h, need_w, value=-np.inf)
            out = np.full(result.data.shape, -np.inf, dtype=np.float32)
            for py in range(filter_size):
                for px in range(filter_size):
                    np.maximum(out, xp[:, :, _window_slice(py, OH, stride), _window_slice(px, OW, stride)], out=out)
        else:
            xp = _padded(t.data, pad_y, pad_x, need_h, need_w)
            out = np.zeros(result.data.shape, dtype=np.float32)
            for py in range(filter_size):
                for px in range(filter_size):
                    out += xp[:, :, _window_slice(py, OH, stride), _window_slice(px, OW, stride)]
            # nominal window area, also for windows clipped by padding
            out /= filter_size * filter_size
        result.data[...] = out

    def pool_gradient(self, output, input, output_gradient, filter_size, stride, pool_type, pad_x, pad_y, result) -> None:
        N, D, H, W = result.data.shape
        _, _, OH, OW = output.data.shape
        need_h = (OH - 1) * stride + filter_size
        need_w = (OW - 1) * stride + filter_size
        acc = np.zeros((N, D, max(pad_y + H, need_h), max(pad_x + W, need_w)), dtype=np.float32)
        g = output_gradient.data

        if pool_type == PoolType.MAX:
            xp = _padded(input.data, pad_y, pad_x, need_h, need_w, value=-np.inf)
            for py in range(filter_size):
                sh = _window_slice(py, OH, stride)
                for px in range(filter_size):
                    sw = _window_slice(px, OW, stride)
                    # every tied maximum receives the full upstream gradient
                    hits = xp[:, :, sh, sw] == output.data
                    acc[:, :, sh, sw] += np.where(hits, g, np.float32(0))
        else:
            share = g / np.float32(filter_size * filter_size)
            for py in range(filter_size):
                sh = _window_slice(py, OH, stride)
                for px in range(filter_size):
                    acc[:, :, sh, _window_slice(px, OW, stride)] += share
        result.data[...] = acc[:, :, pad_y:pad_y + H, pad_x:pad_x + W]
