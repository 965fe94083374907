import pickle
from typing import Any, List, Tuple

import numpy as np

from neuro.errors import IOFailure
from neuro.logger import get_logger
from neuro.tensor import Tensor

logger = get_logger(__name__)

_FORMAT = "neuro-parameters"
_VERSION = 1


class ParameterWriter:
    """
    Write cursor handed to each layer in network order.

    Layers call :meth:`write` once per parameter tensor; the writer stores a
    copy of the values under the current layer.
    """
    def __init__(self) -> None:
        self.layers: List[Tuple[str, List[Tuple[str, np.ndarray]]]] = []

    def begin_layer(self, name: str) -> None:
        self.layers.append((name, []))

    def write(self, name: str, tensor: Tensor) -> None:
        self.layers[-1][1].append((name, tensor.data.copy()))


class ParameterReader:
    """
    Read cursor mirroring :class:`ParameterWriter`.

    Parameters are consumed in exactly the order they were written; a name or
    shape that does not match the receiving tensor, or a stored parameter left
    unread, is an :class:`IOFailure`.
    """
    def __init__(self, layers: List[Tuple[str, List[Tuple[str, np.ndarray]]]], path: str) -> None:
        self.layers = layers
        self.path = path
        self._layer = -1
        self._param = 0

    def begin_layer(self, name: str) -> None:
        self._check_consumed()
        self._layer += 1
        self._param = 0
        if self._layer >= len(self.layers):
            raise IOFailure(self.path, f"no stored parameters for layer {name}")

    def finish(self) -> None:
        """Fail if the current layer left stored parameters unread."""
        self._check_consumed()

    def _check_consumed(self) -> None:
        if self._layer < 0:
            return
        layer_name, params = self.layers[self._layer]
        if self._param != len(params):
            raise IOFailure(self.path, f"layer {layer_name} stores {len(params)} parameters, {self._param} were read")

    def read(self, name: str, tensor: Tensor) -> None:
        layer_name, params = self.layers[self._layer]
        if self._param >= len(params):
            raise IOFailure(self.path, f"layer {layer_name} has no stored parameter {name}")
        stored_name, values = params[self._param]
        self._param += 1
        if stored_name != name:
            raise IOFailure(self.path, f"expected parameter {name} of layer {layer_name}, found {stored_name}")
        if values.shape != tensor.data.shape:
            raise IOFailure(self.path, f"parameter {layer_name}.{name} has shape {values.shape}, expected {tensor.data.shape}")
        tensor.data[...] = values


def save_state(path: str, network: Any) -> None:
    """
    Save every layer's parameters to ``path``.

    Parameters
    ----------
    path : str
        Target file.
    network : NeuralNetwork
        Network whose layers are written in order.

    Notes
    -----
    - The file is serialized using :mod:`pickle`.
    - Only parameter values are stored: no activations, gradients or
      optimizer state.

    Raises
    ------
    IOFailure
        If the file cannot be written.
    """
    writer = ParameterWriter()
    for layer in network.layers:
        writer.begin_layer(layer.name)
        layer.write_parameters(writer)

    state = {"format": _FORMAT, "version": _VERSION, "layers": writer.layers}
    try:
        with open(path, "wb") as f:
            pickle.dump(state, f)
    except OSError as e:
        raise IOFailure(path, str(e)) from e
    logger.info("Saved parameters of %d layers to %s", len(writer.layers), path)


def load_state(path: str, network: Any) -> None:
    """
    Load layer parameters saved by :func:`save_state` into ``network``.

    The network must have the same architecture as the one that was saved;
    parameters are matched by order.

    Raises
    ------
    IOFailure
        If the file is missing, malformed or truncated, or does not match the
        network.
    """
    try:
        with open(path, "rb") as f:
            state = pickle.load(f)
    except OSError as e:
        raise IOFailure(path, str(e)) from e
    except (pickle.UnpicklingError, EOFError, AttributeError, ValueError, ImportError, IndexError) as e:
        raise IOFailure(path, f"malformed parameter file ({e})") from e

    if not isinstance(state, dict) or state.get("format") != _FORMAT or not isinstance(state.get("layers"), list):
        raise IOFailure(path, "not a neuro parameter file")
    if len(state["layers"]) != len(network.layers):
        raise IOFailure(path, f"file holds {len(state['layers'])} layers, network has {len(network.layers)}")

    reader = ParameterReader(state["layers"], path)
    for layer in network.layers:
        reader.begin_layer(layer.name)
        layer.read_parameters(reader)
    reader.finish()
    logger.info("Loaded parameters of %d layers from %s", len(network.layers), path)
