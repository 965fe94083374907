import logging

import numpy as np
import pytest

from neuro.activations import ReLU, Sigmoid, Softmax
from neuro.data import Data
from neuro.errors import ConfigurationError, ShapeMismatchError
from neuro.losses import CategoricalCrossEntropy, MeanSquareError
from neuro.network import NeuralNetwork
from neuro.nn import Convolution, Dense, Flatten, Pooling
from neuro.optim import SGD, Adam
from neuro.tensor import Shape, Tensor
from neuro.training import History, MetricSink, ProgressSink, Track
from tests.utils import column, make_tensor, tdata, assert_close


def _regression_net(seed=1, lr=0.01):
    net = NeuralNetwork("simple net", seed=seed)
    net.add_layer(Dense(5, Sigmoid(), input_shape=2))
    net.add_layer(Dense(2))
    net.layers[0].weights.values[:] = np.linspace(-0.5, 0.5, 10)
    net.layers[1].weights.values[:] = np.linspace(-0.3, 0.4, 10)
    net.optimize(SGD(lr=lr), MeanSquareError())
    return net


def _regression_data():
    return [Data(column([i, i]), column([i + 1, i + 1])) for i in range(1, 7)]


class RecordingSink(MetricSink):
    def __init__(self):
        self.records = []

    def add(self, epoch, value, kind):
        self.records.append((epoch, kind))


class RecordingProgress(ProgressSink):
    def __init__(self):
        self.phases = []

    def start(self, total, desc):
        self.phases.append([desc, total, []])

    def update(self, completed, total):
        self.phases[-1][2].append(completed)


def test_training_loss_decreases():
    net = _regression_net()

    history = net.fit(_regression_data(), batch_size=2, epochs=10, verbose=0, track=Track.TRAIN_ERROR, shuffle=False)

    errors = history.train_error
    assert len(errors) == 10
    decreases = sum(b < a for a, b in zip(errors, errors[1:]))
    assert decreases >= 8
    assert errors[-1] < errors[0]


def test_training_is_reproducible_with_seed():
    def run():
        net = NeuralNetwork("seeded", seed=3)
        net.add_layer(Dense(4, Sigmoid(), input_shape=2))
        net.add_layer(Dense(2))
        net.optimize(SGD(lr=0.05), MeanSquareError())
        return net.fit(_regression_data(), batch_size=2, epochs=3, verbose=0).train_error

    assert run() == run()


def test_fit_with_remainder_batch_and_accuracy():
    net = _regression_net()
    progress = RecordingProgress()

    history = net.fit(
        _regression_data()[:5], batch_size=2, epochs=2, verbose=0, track=Track.ALL,
        validation_data=_regression_data()[5:], progress=progress,
    )

    assert len(history.train_error) == 2 and len(history.test_error) == 2
    assert all(0.0 <= a <= 1.0 for a in history.train_accuracy + history.test_accuracy)
    desc, total, updates = progress.phases[0]
    assert (desc, total, updates) == ("Epoch 1/2", 5, [2, 4, 5])
    assert progress.phases[1][0] == "validating"


def test_metrics_sink_receives_tracked_kinds_only():
    net = _regression_net()
    sink = RecordingSink()

    history = net.fit(_regression_data(), epochs=2, verbose=0, track=Track.TRAIN_ERROR | Track.TEST_ERROR, metrics=sink)

    assert sink.records == [(1, Track.TRAIN_ERROR), (2, Track.TRAIN_ERROR)]
    assert history.train_accuracy == [] and history.epochs["train_error"] == [1, 2]


def test_fit_batched_trains_one_batch_per_epoch():
    net = _regression_net()
    data = _regression_data()
    input = Tensor.merge([d.input for d in data])
    output = Tensor.merge([d.output for d in data])
    progress = RecordingProgress()

    history = net.fit_batched(input, output, epochs=3, verbose=0, track=Track.TRAIN_ERROR)
    net.fit([Data(input, output)], epochs=1, verbose=0, progress=progress)

    assert len(history.train_error) == 3
    assert progress.phases[0][2] == [6]


def test_fit_argument_errors():
    net = _regression_net()
    data = _regression_data()

    with pytest.raises(ConfigurationError):
        net.fit(data, batch_size=0, verbose=0)
    with pytest.raises(ConfigurationError):
        net.fit(data, batch_size=-3, verbose=0)
    with pytest.raises(ConfigurationError):
        net.fit([], verbose=0)

    mixed = data[:2] + [Data(Tensor.merge([data[2].input] * 2), Tensor.merge([data[2].output] * 2))]
    with pytest.raises(ShapeMismatchError):
        net.fit(mixed, verbose=0)


def test_fit_before_optimize_raises():
    net = NeuralNetwork("bare")
    net.add_layer(Dense(1, input_shape=2))

    with pytest.raises(ConfigurationError):
        net.fit(_regression_data(), verbose=0)


def test_first_layer_needs_input_shape():
    with pytest.raises(ConfigurationError):
        NeuralNetwork().add_layer(Dense(3))


def test_fit_logs_epoch_lines(caplog):
    net = _regression_net()
    caplog.set_level(logging.INFO, logger="neuro")

    net.fit(_regression_data(), epochs=2, verbose=1)

    lines = [r.getMessage() for r in caplog.records if r.name == "neuro.training"]
    assert len(lines) == 2
    assert lines[0].startswith("Epoch 1/2 - loss: ")


def test_clone_is_independent():
    net = _regression_net()
    x = column([0.5, -0.5])

    clone = net.clone()
    assert clone.predict(x).equals(net.predict(x))

    clone.fit(_regression_data(), epochs=2, verbose=0)
    assert not clone.predict(x).equals(net.predict(x))


def test_copy_parameters_to():
    source = _regression_net(seed=1)
    target = NeuralNetwork("target", seed=2)
    target.add_layer(Dense(5, Sigmoid(), input_shape=2))
    target.add_layer(Dense(2))
    before = target.layers[0].weights.clone()

    source.copy_parameters_to(target, tau=0.5)
    expected = 0.5 * tdata(source.layers[0].weights) + 0.5 * tdata(before)
    assert_close(tdata(target.layers[0].weights), expected, atol=1e-6)

    source.soft_copy_parameters_to(target, 1.0)
    assert target.predict(column([1, 2])).equals(source.predict(column([1, 2])))

    for tau in (0.0, 1.01):
        with pytest.raises(ConfigurationError):
            source.copy_parameters_to(target, tau)

    shallow = NeuralNetwork("shallow")
    shallow.add_layer(Dense(2, input_shape=2))
    with pytest.raises(ShapeMismatchError):
        source.copy_parameters_to(shallow)


def test_summary():
    summary = _regression_net().summary()

    assert "dense" in summary and "(Dense)" in summary
    assert summary.strip().endswith("Total params: 27")


def test_convolutional_classifier_trains(op_mode):
    rng = np.random.default_rng(0)
    net = NeuralNetwork("conv net", seed=4)
    net.add_layer(Convolution(3, 4, activation=ReLU(), input_shape=Shape(8, 8, 1)))
    net.add_layer(Pooling(2, stride=2))
    net.add_layer(Flatten())
    net.add_layer(Dense(3, Softmax()))
    net.optimize(Adam(lr=0.01), CategoricalCrossEntropy())

    data = []
    for i in range(12):
        label = i % 3
        image = rng.normal(scale=0.1, size=(8, 8)).astype(np.float32)
        image[:, 2 * label:2 * label + 3] += 1.0
        target = Tensor.zeros(Shape(1, 3))
        target[0, label] = 1.0
        data.append(Data(make_tensor(image), target))

    history = net.fit(data, batch_size=4, epochs=15, verbose=0, track=Track.TRAIN_ERROR | Track.TRAIN_ACCURACY)

    assert net.layers[1].output_shape == Shape(3, 3, 4)
    assert net.output_shape == Shape(1, 3)
    assert history.train_error[-1] < history.train_error[0]
    assert np.isfinite(history.train_error).all()


def test_fit_rejects_target_of_wrong_shape():
    net = NeuralNetwork("classifier", seed=1)
    net.add_layer(Dense(3, Softmax(), input_shape=2))
    net.optimize(SGD(lr=0.1), CategoricalCrossEntropy())

    with pytest.raises(ShapeMismatchError):
        net.fit([Data(column([1, 2]), column([1.0]))], verbose=0)

    regression = _regression_net()
    with pytest.raises(ShapeMismatchError):
        regression.fit(_regression_data(), verbose=0, validation_data=[Data(column([1, 1]), column([5.0]))])


def test_bad_batch_fails_before_any_update():
    net = _regression_net()
    data = _regression_data()
    good = Data(Tensor.merge([d.input for d in data[:3]]), Tensor.merge([d.output for d in data[:3]]))
    wide = Tensor.zeros(Shape(1, 3, 1, 3))
    bad = Data(wide, Tensor.merge([d.output for d in data[3:]]))
    weights = net.layers[0].weights.clone()

    with pytest.raises(ShapeMismatchError):
        net.fit([good, bad], verbose=0)

    assert net.layers[0].weights.equals(weights, epsilon=0.0)
