import numpy as np
import pytest
import torch
import torch.nn.functional as F

from neuro.activations import Linear, ReLU, Sigmoid, Tanh
from neuro.errors import ConfigurationError, ShapeMismatchError
from neuro.nn import Convolution, Dense, Flatten, Pooling
from neuro.optim import SGD
from neuro.tensor import PaddingType, PoolType, Shape, Tensor
from tests.utils import make_tensor, make_torch, tdata, assert_close


def _build(layer, input_shape=None, seed=0):
    layer.init(input_shape, np.random.default_rng(seed))
    return layer


def _objective(layer, x_np, g_np):
    out = layer.feed_forward(make_tensor(x_np))
    return float(np.sum(tdata(out).astype(np.float64) * g_np))


def _check_input_gradient(layer, x_np, eps=1e-2, atol=1e-3):
    out = layer.feed_forward(make_tensor(x_np))
    g_np = np.random.default_rng(1).normal(size=out.data.shape).astype(np.float32)
    analytic = tdata(layer.back_prop(make_tensor(g_np))).copy()

    numeric = np.zeros(x_np.shape, dtype=np.float64)
    for i in np.ndindex(x_np.shape):
        plus, minus = x_np.copy(), x_np.copy()
        plus[i] += eps
        minus[i] -= eps
        numeric[i] = (_objective(layer, plus, g_np) - _objective(layer, minus, g_np)) / (2 * eps)

    assert_close(analytic, numeric, atol=atol, rtol=1e-2)


@pytest.mark.parametrize("activation", [Linear(), Sigmoid(), Tanh()], ids=repr)
@pytest.mark.parametrize("batches", [1, 3])
def test_dense_input_gradient_matches_numeric(activation, batches):
    layer = _build(Dense(3, activation, input_shape=4))
    x_np = np.random.default_rng(2).normal(size=(batches, 1, 4, 1)).astype(np.float32)

    _check_input_gradient(layer, x_np)


def test_dense_parameter_gradients_match_torch(rng, op_mode):
    layer = _build(Dense(3, Sigmoid(), input_shape=5))
    layer.bias.fill_with_rand(rng)
    x_np = rng.normal(size=(4, 1, 5, 1)).astype(np.float32)
    g_np = rng.normal(size=(4, 1, 3, 1)).astype(np.float32)

    wt = make_torch(tdata(layer.weights)[0, 0])   # (outputs, inputs)
    bt = make_torch(tdata(layer.bias)[0, 0, :, 0])
    xt = make_torch(x_np[:, 0, :, 0])
    yt = torch.sigmoid(xt @ wt.T + bt)
    yt.backward(torch.tensor(g_np[:, 0, :, 0]))

    out = layer.feed_forward(make_tensor(x_np))
    input_gradient = layer.back_prop(make_tensor(g_np))

    assert_close(tdata(out)[:, 0, :, 0], yt.detach().numpy(), atol=1e-6)
    assert_close(tdata(input_gradient)[:, 0, :, 0], xt.grad.numpy(), atol=1e-6)
    assert_close(tdata(layer.weights_gradient)[0, 0], wt.grad.numpy(), atol=1e-5)
    assert_close(tdata(layer.bias_gradient)[0, 0, :, 0], bt.grad.numpy(), atol=1e-5)


def test_convolution_layer_matches_torch(rng, op_mode):
    layer = _build(Convolution(3, 4, stride=1, activation=ReLU(), padding=PaddingType.SAME, input_shape=Shape(6, 6, 2)))
    layer.bias.fill_with_rand(rng)
    x_np = rng.normal(size=(2, 2, 6, 6)).astype(np.float32)

    wt = make_torch(tdata(layer.kernels))
    bt = make_torch(tdata(layer.bias).reshape(-1))
    xt = make_torch(x_np)
    yt = F.relu(F.conv2d(xt, wt, bt, padding=1))
    g_np = rng.normal(size=tuple(yt.shape)).astype(np.float32)
    yt.backward(torch.tensor(g_np))

    out = layer.feed_forward(make_tensor(x_np))
    input_gradient = layer.back_prop(make_tensor(g_np))

    assert layer.output_shape == Shape(6, 6, 4)
    assert_close(tdata(out), yt.detach().numpy(), atol=1e-5)
    assert_close(tdata(input_gradient), xt.grad.numpy(), atol=1e-5)
    assert_close(tdata(layer.kernels_gradient), wt.grad.numpy(), atol=1e-4, rtol=1e-4)
    assert_close(tdata(layer.bias_gradient).reshape(-1), bt.grad.numpy(), atol=1e-4)


def test_convolution_input_gradient_matches_numeric():
    layer = _build(Convolution(2, 2, stride=2, activation=Tanh(), input_shape=Shape(5, 5, 2)))
    x_np = np.random.default_rng(3).normal(size=(2, 2, 5, 5)).astype(np.float32)

    _check_input_gradient(layer, x_np)


@pytest.mark.parametrize("pool_type", [PoolType.MAX, PoolType.AVG])
def test_pooling_layer(rng, pool_type):
    layer = _build(Pooling(2, stride=2, pool_type=pool_type, input_shape=Shape(6, 5, 3)))
    # distinct, well separated values keep every window maximum stable under the finite-difference step
    x_np = (rng.permutation(2 * 3 * 5 * 6) * 0.1).reshape(2, 3, 5, 6).astype(np.float32)

    assert layer.output_shape == Shape(3, 2, 3)
    assert layer.parameters_count() == 0
    _check_input_gradient(layer, x_np)


@pytest.mark.parametrize("batches", [1, 3])
def test_flatten_is_a_view(rng, batches):
    layer = _build(Flatten(Shape(5, 5, 3)))
    x = make_tensor(rng.normal(size=(batches, 3, 5, 5)))

    out = layer.feed_forward(x)
    assert out.shape == Shape(1, 75, 1, batches)
    assert np.shares_memory(out.data, x.data)

    g = make_tensor(rng.normal(size=out.data.shape))
    back = layer.back_prop(g)
    assert back.shape == x.shape
    assert_close(tdata(back).reshape(-1), tdata(g).reshape(-1))


def test_back_prop_before_feed_forward_raises():
    layer = _build(Dense(2, input_shape=3))

    with pytest.raises(ConfigurationError):
        layer.back_prop(Tensor.zeros(Shape(1, 2)))


def test_wrong_input_shape_raises():
    layer = _build(Dense(2, input_shape=3))

    with pytest.raises(ShapeMismatchError):
        layer.feed_forward(Tensor.zeros(Shape(1, 4)))
    with pytest.raises(ShapeMismatchError):
        _build(Dense(2), Shape(3, 3))


def test_init_twice_raises():
    layer = _build(Dense(2, input_shape=3))

    with pytest.raises(ConfigurationError):
        layer.init(Shape(1, 3))


def test_update_parameters_averages_and_resets_gradients(rng):
    layer = _build(Dense(2, input_shape=3))
    weights = layer.weights.clone()
    layer.weights_gradient.fill_with_value(4.0)

    layer.update_parameters(SGD(lr=0.5), sample_count=4)

    assert_close(tdata(layer.weights), tdata(weights) - 0.5, atol=1e-6)
    assert layer.weights_gradient.sum() == 0.0
    assert layer.bias_gradient.sum() == 0.0


def test_clone_copies_parameters_not_activations(rng):
    layer = _build(Dense(3, Sigmoid(), input_shape=2))
    layer.feed_forward(make_tensor(rng.normal(size=(1, 1, 2, 1))))

    clone = layer.clone()

    assert clone.weights.equals(layer.weights) and clone.weights is not layer.weights
    assert clone.output is None
    clone.weights.fill_with_value(0.0)
    assert not clone.weights.equals(layer.weights)


def test_copy_parameters_with_tau(rng):
    source = _build(Dense(2, input_shape=2), seed=1)
    target = _build(Dense(2, input_shape=2), seed=2)
    expected = 0.25 * tdata(source.weights) + 0.75 * tdata(target.weights)

    source.copy_parameters_to(target, tau=0.25)

    assert_close(tdata(target.weights), expected, atol=1e-6)
    for tau in (0.0, -0.5, 1.5):
        with pytest.raises(ConfigurationError):
            source.copy_parameters_to(target, tau)
