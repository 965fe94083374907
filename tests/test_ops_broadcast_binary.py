import numpy as np
import pytest

from neuro.errors import ShapeMismatchError
from neuro.tensor import Shape, Tensor
from tests.utils import make_tensor, tdata, assert_close


@pytest.mark.parametrize("op", ["add", "sub", "mul_elem"])
@pytest.mark.parametrize("single_side", ["left", "right"])
def test_single_batch_operand_broadcasts(rng, op, single_side, op_mode):
    batched_np = rng.normal(size=(4, 2, 3, 5)).astype(np.float32)
    single_np = rng.normal(size=(1, 2, 3, 5)).astype(np.float32)

    if single_side == "left":
        a_np, b_np = single_np, batched_np
    else:
        a_np, b_np = batched_np, single_np
    a, b = make_tensor(a_np), make_tensor(b_np)

    y = getattr(a, op)(b)

    assert y.batch_size == 4
    for n in range(4):
        an = a.get_batch(0 if a.batch_size == 1 else n)
        bn = b.get_batch(0 if b.batch_size == 1 else n)
        assert_close(tdata(y.get_batch(n)), tdata(getattr(an, op)(bn)))


def test_non_broadcastable_batches_raise(op_mode):
    a = Tensor.zeros(Shape(2, 2, 1, 3))
    b = Tensor.zeros(Shape(2, 2, 1, 2))

    with pytest.raises(ShapeMismatchError):
        a.add(b)
    with pytest.raises(ShapeMismatchError):
        a.sub(b)


def test_in_place_accumulation_broadcasts_single_batch(rng, op_mode):
    acc_np = rng.normal(size=(3, 1, 2, 2)).astype(np.float32)
    g_np = rng.normal(size=(1, 1, 2, 2)).astype(np.float32)
    acc = make_tensor(acc_np)

    acc.add_(make_tensor(g_np))

    assert_close(tdata(acc), acc_np + g_np)
    with pytest.raises(ShapeMismatchError):
        make_tensor(g_np).add_(make_tensor(acc_np))
