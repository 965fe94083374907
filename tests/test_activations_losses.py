import numpy as np
import pytest
import torch
import torch.nn.functional as F

from neuro.activations import ELU, Linear, ReLU, Sigmoid, Softmax, Tanh
from neuro.errors import ShapeMismatchError
from neuro.losses import BinaryCrossEntropy, CategoricalCrossEntropy, MeanSquareError
from neuro.tensor import Shape, Tensor
from tests.utils import make_tensor, make_torch, tdata, assert_close


def _away_from_zero(rng, shape):
    x = rng.normal(size=shape).astype(np.float32)
    return np.sign(x) * (np.abs(x) + 0.1)


def _numeric_input_gradient(activation, x_np, g_np, eps=1e-2):
    def objective(values):
        out = Tensor.zeros(Shape.from_array_shape(values.shape))
        activation.compute(make_tensor(values), out)
        return float(np.sum(tdata(out).astype(np.float64) * g_np))

    grad = np.zeros_like(x_np, dtype=np.float64)
    for i in np.ndindex(x_np.shape):
        plus, minus = x_np.copy(), x_np.copy()
        plus[i] += eps
        minus[i] -= eps
        grad[i] = (objective(plus) - objective(minus)) / (2 * eps)
    return grad


@pytest.mark.parametrize("activation", [Linear(), Sigmoid(), Tanh(), ReLU(), ELU(), Softmax()], ids=repr)
@pytest.mark.parametrize("batches", [1, 3])
def test_activation_derivative_matches_numeric(rng, activation, batches):
    x_np = _away_from_zero(rng, (batches, 1, 4, 1))
    g_np = rng.normal(size=x_np.shape).astype(np.float32)

    output = Tensor.zeros(Shape(1, 4, 1, batches))
    activation.compute(make_tensor(x_np), output)
    result = Tensor.zeros(output.shape)
    activation.derivative(output, make_tensor(g_np), result)

    assert_close(tdata(result), _numeric_input_gradient(activation, x_np, g_np), atol=1e-3, rtol=1e-2)


@pytest.mark.parametrize("batches", [1, 3])
def test_softmax_sums_to_one_per_batch(rng, batches):
    x = make_tensor(rng.uniform(-1, 1, size=(batches, 3, 3, 3)))
    result = Tensor.zeros(x.shape)

    Softmax().compute(x, result)

    for n in range(batches):
        assert result.sum(n) == pytest.approx(1.0, abs=1e-4)


def test_softmax_derivative_of_constant_gradient_is_zero():
    x = Tensor.zeros(Shape(1, 3, 1, 3)).fill_with_range(1)
    output = Tensor.zeros(x.shape)
    Softmax().compute(x, output)
    result = Tensor.zeros(x.shape)

    Softmax().derivative(output, Tensor.zeros(x.shape).fill_with_value(1.0), result)

    assert np.allclose(tdata(result), 0.0, atol=1e-3)


def test_activations_match_torch(rng):
    x_np = rng.normal(size=(2, 1, 3, 4)).astype(np.float32)
    xt = make_torch(x_np, requires_grad=False)
    cases = [
        (Sigmoid(), torch.sigmoid(xt)),
        (Tanh(), torch.tanh(xt)),
        (ReLU(), F.relu(xt)),
        (ELU(alpha=0.7), F.elu(xt, alpha=0.7)),
    ]
    for activation, expected in cases:
        out = Tensor.zeros(Shape(4, 3, 1, 2))
        activation.compute(make_tensor(x_np), out)
        assert_close(tdata(out), expected.numpy(), atol=1e-6)


def test_mean_square_error():
    target = Tensor([1.0, 2.0, 3.0], Shape(1, 3))
    output = Tensor([1.5, 2.0, 1.0], Shape(1, 3))
    result = Tensor.zeros(target.shape)

    MeanSquareError().compute(target, output, result)
    assert result.values.tolist() == pytest.approx([0.125, 0.0, 2.0])

    MeanSquareError().derivative(target, output, result)
    assert result.values.tolist() == pytest.approx([0.5, 0.0, -2.0])


def test_cross_entropy_matches_torch(rng):
    probs = rng.uniform(0.05, 0.95, size=(4, 1, 3, 1)).astype(np.float32)
    target = (rng.uniform(size=probs.shape) > 0.5).astype(np.float32)
    result = Tensor.zeros(Shape(1, 3, 1, 4))

    BinaryCrossEntropy().compute(make_tensor(target), make_tensor(probs), result)
    expected = F.binary_cross_entropy(make_torch(probs, False), make_torch(target, False), reduction="none")
    assert_close(tdata(result), expected.numpy(), atol=1e-5)

    pt = make_torch(probs)
    F.binary_cross_entropy(pt, make_torch(target, False), reduction="sum").backward()
    BinaryCrossEntropy().derivative(make_tensor(target), make_tensor(probs), result)
    assert_close(tdata(result), pt.grad.numpy(), atol=1e-4, rtol=1e-4)


def test_categorical_cross_entropy():
    target = Tensor([0.0, 1.0, 0.0], Shape(1, 3))
    output = Tensor([0.2, 0.5, 0.3], Shape(1, 3))
    result = Tensor.zeros(target.shape)

    CategoricalCrossEntropy().compute(target, output, result)
    assert result.sum() == pytest.approx(-np.log(0.5), rel=1e-5)

    CategoricalCrossEntropy().derivative(target, output, result)
    assert result.values.tolist() == pytest.approx([0.0, -2.0, 0.0], rel=1e-5)


@pytest.mark.parametrize("loss", [MeanSquareError(), BinaryCrossEntropy(), CategoricalCrossEntropy()])
def test_loss_rejects_target_of_other_shape(loss):
    output = Tensor([0.2, 0.5, 0.3], Shape(1, 3))
    result = Tensor.zeros(output.shape)

    with pytest.raises(ShapeMismatchError):
        loss.compute(Tensor([1.0], Shape(1, 1)), output, result)
    with pytest.raises(ShapeMismatchError):
        loss.derivative(Tensor.merge([output, output]), output, result)
