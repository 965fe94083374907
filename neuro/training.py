import math
import time
from enum import IntFlag
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from neuro.data import Data, merge_data, shuffle as shuffle_data
from neuro.errors import ConfigurationError, ShapeMismatchError
from neuro.logger import get_logger
from neuro.tensor import Tensor

logger = get_logger(__name__)

AccuracyFunc = Callable[[Tensor, Tensor], int]


class Track(IntFlag):
    """Metrics recorded by :func:`fit`; combine with ``|``."""
    NOTHING = 0
    TRAIN_ERROR = 1
    TEST_ERROR = 2
    TRAIN_ACCURACY = 4
    TEST_ACCURACY = 8
    ALL = 15


class MetricSink:
    """Receives one ``(epoch, value, kind)`` record per tracked metric and epoch."""

    def add(self, epoch: int, value: float, kind: Track) -> None:
        raise NotImplementedError


class History(MetricSink):
    """
    In-memory metric sink returned by :func:`fit`.

    Attributes
    ----------
    train_error, test_error, train_accuracy, test_accuracy : list of float
        One value per epoch in which the metric was tracked. Accuracies are
        fractions in ``[0, 1]``.
    epochs : dict
        Maps each metric name to the epochs its values belong to.
    """
    _NAMES = {
        Track.TRAIN_ERROR: "train_error",
        Track.TEST_ERROR: "test_error",
        Track.TRAIN_ACCURACY: "train_accuracy",
        Track.TEST_ACCURACY: "test_accuracy",
    }

    def __init__(self) -> None:
        self.train_error: List[float] = []
        self.test_error: List[float] = []
        self.train_accuracy: List[float] = []
        self.test_accuracy: List[float] = []
        self.epochs: Dict[str, List[int]] = {name: [] for name in self._NAMES.values()}

    def add(self, epoch: int, value: float, kind: Track) -> None:
        name = self._NAMES[kind]
        getattr(self, name).append(value)
        self.epochs[name].append(epoch)

    def as_dict(self) -> Dict[str, List[float]]:
        return {name: list(getattr(self, name)) for name in self._NAMES.values()}

    def __repr__(self) -> str:
        return f"History({self.as_dict()})"


class ProgressSink:
    """
    Observer of batch progress; it never influences training.

    :meth:`start` opens a phase of ``total`` units, :meth:`update` reports
    the absolute number completed so far, :meth:`close` ends the phase.
    """

    def start(self, total: int, desc: str) -> None:
        pass

    def update(self, completed: int, total: int) -> None:
        pass

    def close(self) -> None:
        pass


class TqdmProgress(ProgressSink):
    """Console progress bar backed by :mod:`tqdm`."""

    def __init__(self, **tqdm_kwargs: Any) -> None:
        self.tqdm_kwargs = tqdm_kwargs
        self._bar: Optional[tqdm] = None

    def start(self, total: int, desc: str) -> None:
        self.close()
        self._bar = tqdm(total=total, desc=desc, unit="sample", **self.tqdm_kwargs)

    def update(self, completed: int, total: int) -> None:
        if self._bar is not None:
            self._bar.update(completed - self._bar.n)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def no_accuracy(target: Tensor, output: Tensor) -> int:
    return 0


def binary_accuracy(target: Tensor, output: Tensor) -> int:
    """Samples whose single output rounds to the target value."""
    t = target.data.reshape(target.batch_size, -1)[:, 0]
    o = output.data.reshape(output.batch_size, -1)[:, 0]
    return int(np.sum(t == np.round(o)))


def categorical_accuracy(target: Tensor, output: Tensor) -> int:
    """Samples whose output argmax equals the target argmax."""
    t = target.data.reshape(target.batch_size, -1)
    o = output.data.reshape(output.batch_size, -1)
    return int(np.sum(np.argmax(t, axis=1) == np.argmax(o, axis=1)))


def select_accuracy(output_length: int, track: Track) -> AccuracyFunc:
    """Binary accuracy for a single output, categorical otherwise; none if untracked."""
    if not track & (Track.TRAIN_ACCURACY | Track.TEST_ACCURACY):
        return no_accuracy
    return binary_accuracy if output_length == 1 else categorical_accuracy


def _batch_error(network: Any, data: Data) -> Tuple[float, Tensor, Tensor]:
    output = network.feed_forward(data.input)
    losses = Tensor.zeros(output.shape)
    network.loss.compute(data.output, output, losses)
    return losses.sum() / output.batch_length, output, losses


def gradient_descent_step(network: Any, data: Data, accuracy_fn: AccuracyFunc = no_accuracy) -> Tuple[float, int]:
    """
    One full training step on a batch.

    Runs forward, loss, backward and optimizer update strictly in this order.

    Parameters
    ----------
    network : NeuralNetwork
        Network with an optimizer and loss configured.
    data : Data
        Batch to train on.
    accuracy_fn : callable, default=no_accuracy
        Counts correct samples of the batch.

    Returns
    -------
    (error, hits) : tuple[float, int]
        Loss summed over the batch (per-sample loss averaged over output
        elements) and the number of correct samples.
    """
    error, output, losses = _batch_error(network, data)
    hits = accuracy_fn(data.output, output)
    network.loss.derivative(data.output, output, losses)
    network.back_prop(losses)
    network.update_parameters(data.batch_size)
    return error, hits


def evaluate(
    network: Any,
    data: Sequence[Data],
    accuracy_fn: AccuracyFunc = no_accuracy,
    progress: Optional[ProgressSink] = None,
) -> Tuple[float, float]:
    """
    Mean error and accuracy of ``network`` on ``data`` without training.

    Returns
    -------
    (error, accuracy) : tuple[float, float]
        Error per sample and fraction of correct samples.
    """
    total_error = 0.0
    hits = 0
    samples = 0
    for n, d in enumerate(data):
        error, output, _ = _batch_error(network, d)
        total_error += error
        hits += accuracy_fn(d.output, output)
        samples += d.batch_size
        if progress is not None:
            progress.update(n + 1, len(data))
    return total_error / max(1, samples), hits / max(1, samples)


def _check_batches(data: Sequence[Data]) -> bool:
    # returns True when the list already holds batches
    first = data[0].batch_size
    if first > 1:
        return True
    for i, d in enumerate(data):
        if d.batch_size != 1:
            raise ShapeMismatchError("fit", f"sample {i} has {d.batch_size} batches, expected 1 like sample 0")
    return False


def _check_shapes(network: Any, data: Sequence[Data], kind: str) -> None:
    input_shape = network.input_shape
    output_shape = network.output_shape
    for i, d in enumerate(data):
        if not d.input.shape.same_sample_shape(input_shape):
            raise ShapeMismatchError("fit", f"{kind} data {i}: input {d.input.shape} does not fit network input {input_shape}")
        if not d.output.shape.same_sample_shape(output_shape):
            raise ShapeMismatchError("fit", f"{kind} data {i}: target {d.output.shape} does not match network output {output_shape}")


def fit(
    network: Any,
    training_data: Sequence[Data],
    batch_size: int = -1,
    epochs: int = 1,
    validation_data: Optional[Sequence[Data]] = None,
    verbose: int = 1,
    track: Track = Track.TRAIN_ERROR | Track.TEST_ACCURACY,
    shuffle: bool = True,
    metrics: Optional[MetricSink] = None,
    progress: Optional[ProgressSink] = None,
    rng: Optional[np.random.Generator] = None,
) -> History:
    """
    Train ``network`` with mini-batch gradient descent.

    Parameters
    ----------
    network : NeuralNetwork
        Network with an optimizer and loss configured.
    training_data : sequence of Data
        Single samples (batch count 1), or already batched data which is
        then used as is.
    batch_size : int, default=-1
        Samples per gradient step; ``-1`` uses the whole set (or the size of
        the given batches). The last batch may be smaller.
    epochs : int, default=1
        Passes over the training data.
    validation_data : sequence of Data, optional
        Evaluated after every epoch.
    verbose : int, default=1
        ``0`` silent, ``1`` one log line per epoch, ``2`` adds progress bars.
    track : Track, default=TRAIN_ERROR | TEST_ACCURACY
        Metrics to record.
    shuffle : bool, default=True
        Shuffle single samples before every epoch (only with more than one batch).
    metrics : MetricSink, optional
        Extra sink receiving the tracked metrics.
    progress : ProgressSink, optional
        Progress observer; a :class:`TqdmProgress` when ``verbose == 2``.
    rng : numpy.random.Generator, optional
        Shuffle randomness; defaults to the network's generator.

    Returns
    -------
    History
        Tracked metrics per epoch.

    Raises
    ------
    ConfigurationError
        For an invalid batch size or epoch count, or empty training data.
    ShapeMismatchError
        If samples mix batch counts, or any training or validation sample
        does not fit the network input or output. All data is checked before
        the first update.

    Notes
    -----
    The epoch error is the per-sample loss, averaged over output elements,
    averaged over all training samples. Each batch finishes its optimizer
    update before the next batch's forward pass starts.
    """
    if not training_data:
        raise ConfigurationError("Training data is empty")
    if batch_size == 0 or batch_size < -1:
        raise ConfigurationError(f"Invalid batch size {batch_size}")
    if epochs < 0:
        raise ConfigurationError(f"Invalid number of epochs {epochs}")

    training_data = list(training_data)
    already_batched = _check_batches(training_data)
    _check_shapes(network, training_data, "training")
    if validation_data:
        _check_shapes(network, validation_data, "validation")
    if batch_size == -1:
        batch_size = training_data[0].batch_size if already_batched else len(training_data)

    batches_num = len(training_data) if already_batched else math.ceil(len(training_data) / batch_size)
    total_samples = sum(d.batch_size for d in training_data)
    accuracy_fn = select_accuracy(network.output_shape.length, track)
    if rng is None:
        rng = network.rng
    if progress is None and verbose == 2:
        progress = TqdmProgress(leave=False)

    history = History()
    sinks: List[MetricSink] = [history] if metrics is None else [history, metrics]

    def report(epoch: int, value: float, kind: Track) -> None:
        if track & kind:
            for sink in sinks:
                sink.add(epoch, value, kind)

    logger.debug(
        "Training %s on %d samples, %d batches of %d, %d epochs", network.name, total_samples, batches_num, batch_size, epochs
    )

    for epoch in range(1, epochs + 1):
        if batches_num > 1 and shuffle and not already_batched:
            shuffle_data(training_data, rng)

        batches = training_data if already_batched else merge_data(training_data, batch_size)

        train_error = 0.0
        train_hits = 0
        completed = 0
        start = time.perf_counter()
        if progress is not None:
            progress.start(total_samples, f"Epoch {epoch}/{epochs}")

        for batch in batches:
            error, hits = gradient_descent_step(network, batch, accuracy_fn)
            train_error += error
            train_hits += hits
            completed += batch.batch_size
            if progress is not None:
                progress.update(completed, total_samples)

        if progress is not None:
            progress.close()
        elapsed = time.perf_counter() - start

        train_error /= total_samples
        train_accuracy = train_hits / total_samples
        report(epoch, train_error, Track.TRAIN_ERROR)
        report(epoch, train_accuracy, Track.TRAIN_ACCURACY)

        msg = f"Epoch {epoch}/{epochs} - loss: {train_error:.4f}"
        if track & Track.TRAIN_ACCURACY:
            msg += f" - acc: {train_accuracy * 100:.2f}%"

        if validation_data:
            if progress is not None:
                progress.start(len(validation_data), "validating")
            test_error, test_accuracy = evaluate(network, validation_data, accuracy_fn, progress)
            if progress is not None:
                progress.close()
            report(epoch, test_error, Track.TEST_ERROR)
            report(epoch, test_accuracy, Track.TEST_ACCURACY)
            msg += f" - val_loss: {test_error:.4f}"
            if track & Track.TEST_ACCURACY:
                msg += f" - val_acc: {test_accuracy * 100:.2f}%"

        msg += f" - time: {elapsed:.3f}s"
        if verbose > 0:
            logger.info(msg)

    return history
