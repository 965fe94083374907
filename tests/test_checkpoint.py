import pickle

import pytest

from neuro.activations import Sigmoid
from neuro.errors import IOFailure
from neuro.network import NeuralNetwork
from neuro.nn import Convolution, Dense, Flatten
from neuro.tensor import Shape
from tests.utils import make_tensor


def _net(seed):
    net = NeuralNetwork("checkpointed", seed=seed)
    net.add_layer(Convolution(2, 2, input_shape=Shape(4, 4, 1)))
    net.add_layer(Flatten())
    net.add_layer(Dense(3, Sigmoid()))
    return net


def test_save_load_round_trip(tmp_path, rng):
    source, target = _net(1), _net(2)
    x = make_tensor(rng.normal(size=(2, 1, 4, 4)))
    path = str(tmp_path / "net.pkl")
    assert not source.predict(x).equals(target.predict(x))

    source.save_state(path)
    target.load_state(path)

    assert target.predict(x).equals(source.predict(x))


def test_default_path_uses_file_prefix(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    net = _net(1)

    path = net.save_state()

    assert path == "checkpointed.pkl"
    assert (tmp_path / path).exists()
    _net(2).load_state()


def test_missing_file_raises(tmp_path):
    with pytest.raises(IOFailure):
        _net(1).load_state(str(tmp_path / "missing.pkl"))


def test_malformed_and_truncated_files_raise(tmp_path):
    garbage = tmp_path / "garbage.pkl"
    garbage.write_bytes(b"not a parameter file")
    with pytest.raises(IOFailure):
        _net(1).load_state(str(garbage))

    path = str(tmp_path / "net.pkl")
    _net(1).save_state(path)
    data = open(path, "rb").read()
    truncated = tmp_path / "truncated.pkl"
    truncated.write_bytes(data[: len(data) // 2])
    with pytest.raises(IOFailure):
        _net(1).load_state(str(truncated))

    foreign = tmp_path / "foreign.pkl"
    foreign.write_bytes(pickle.dumps({"model": {}}))
    with pytest.raises(IOFailure):
        _net(1).load_state(str(foreign))


def test_architecture_mismatch_raises(tmp_path):
    path = str(tmp_path / "net.pkl")
    _net(1).save_state(path)

    other = NeuralNetwork("other")
    other.add_layer(Convolution(3, 2, input_shape=Shape(4, 4, 1)))
    other.add_layer(Flatten())
    other.add_layer(Dense(3))

    with pytest.raises(IOFailure):
        other.load_state(path)


@pytest.mark.parametrize("layer", [0, 2])
def test_unread_stored_parameters_raise(tmp_path, layer):
    path = tmp_path / "net.pkl"
    _net(1).save_state(str(path))
    with open(path, "rb") as f:
        state = pickle.load(f)
    name, params = state["layers"][layer]
    params.append(("extra", params[0][1].copy()))
    with open(path, "wb") as f:
        pickle.dump(state, f)

    with pytest.raises(IOFailure):
        _net(2).load_state(str(path))
