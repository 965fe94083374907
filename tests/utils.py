import numpy as np
import torch

from neuro.tensor import Shape, Tensor

ATOL = 1e-6
RTOL = 1e-5

def tdata(t: Tensor) -> np.ndarray:
    return np.asarray(t.data)

def make_tensor(x_np: np.ndarray) -> Tensor:
    return Tensor.from_array(np.asarray(x_np, dtype=np.float32))

def make_torch(x_np: np.ndarray, requires_grad: bool = True) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=np.float32), requires_grad=requires_grad)

def column(values) -> Tensor:
    values = list(values)
    return Tensor(values, Shape(1, len(values)))

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = np.asarray(a)
    b = np.asarray(b)
    assert a.shape == b.shape, f"shape {a.shape} != {b.shape}"
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"
