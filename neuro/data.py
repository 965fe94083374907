from typing import Any, List, MutableSequence, Sequence

import numpy as np

from neuro.errors import ConfigurationError, IOFailure, ShapeMismatchError
from neuro.logger import get_logger
from neuro.tensor import Shape, Tensor

logger = get_logger(__name__)

# label files store ``2039 + number of classes`` as magic, 2049 for 10 classes
_LABELS_MAGIC_BASE = 2039
_IMAGES_MAGIC = 2051


class Data:
    """
    A training sample or batch: an input tensor with its target.

    Parameters
    ----------
    input : Tensor
        Network input.
    output : Tensor
        Expected network output.

    Raises
    ------
    ShapeMismatchError
        If the batch counts of ``input`` and ``output`` differ.
    """
    def __init__(self, input: Tensor, output: Tensor) -> None:
        if input.batch_size != output.batch_size:
            raise ShapeMismatchError(
                "Data", f"input has {input.batch_size} batches but output has {output.batch_size}"
            )
        self.input = input
        self.output = output

    @property
    def batch_size(self) -> int:
        return self.input.batch_size

    def __repr__(self) -> str:
        return f"Data(input={self.input.shape}, output={self.output.shape})"


def shuffle(items: MutableSequence[Any], rng: np.random.Generator) -> None:
    """
    Shuffle ``items`` in place (Fisher-Yates).

    Every permutation is equally likely given a uniform ``rng``. Walking from
    the end, each position swaps with a random position at or before it.
    """
    n = len(items)
    while n > 1:
        n -= 1
        k = int(rng.integers(n + 1))
        items[k], items[n] = items[n], items[k]


def merge_data(data_list: Sequence[Data], batch_size: int = -1) -> List[Data]:
    """
    Group single samples into batches.

    Parameters
    ----------
    data_list : sequence of Data
        Samples, each with a batch count of 1.
    batch_size : int, default=-1
        Samples per batch; ``-1`` puts everything into one batch. When the
        sample count is not divisible, the last batch holds the remainder.

    Returns
    -------
    list of Data
        Batched samples, in input order.

    Raises
    ------
    ConfigurationError
        If ``batch_size`` is 0 or below -1, or ``data_list`` is empty.
    ShapeMismatchError
        If the samples do not share a shape.
    """
    if not data_list:
        raise ConfigurationError("Cannot batch an empty data set")
    if batch_size == 0 or batch_size < -1:
        raise ConfigurationError(f"Invalid batch size {batch_size}")
    if batch_size == -1:
        batch_size = len(data_list)

    merged = []
    for start in range(0, len(data_list), batch_size):
        chunk = data_list[start:start + batch_size]
        merged.append(Data(Tensor.merge([d.input for d in chunk]), Tensor.merge([d.output for d in chunk])))
    return merged


def _read_exact(f, count: int, path: str) -> bytes:
    buf = f.read(count)
    if len(buf) != count:
        raise IOFailure(path, f"truncated file, expected {count} bytes but got {len(buf)}")
    return buf


def _read_header(f, fields: int, path: str) -> List[int]:
    return [int(v) for v in np.frombuffer(_read_exact(f, 4 * fields, path), dtype=">i4")]


def read_mnist(images_path: str, labels_path: str, max_images: int = -1) -> List[Data]:
    """
    Read an image/label pair of files in the MNIST idx format.

    Parameters
    ----------
    images_path : str
        Images file: big-endian int32 header ``(magic, count, rows, cols)``
        followed by one unsigned byte per pixel, row by row.
    labels_path : str
        Labels file: big-endian int32 header ``(magic, count)`` followed by
        one byte per label. The number of classes is ``magic - 2039``.
    max_images : int, default=-1
        Read at most this many samples; ``-1`` reads all.

    Returns
    -------
    list of Data
        Inputs of shape ``(cols, rows)`` scaled to ``[0, 1]`` and one-hot
        targets of shape ``(1, classes)``.

    Raises
    ------
    IOFailure
        If a file is missing, the header is malformed or data is truncated.
    """
    try:
        with open(images_path, "rb") as fi, open(labels_path, "rb") as fl:
            _, num_images, rows, cols = _read_header(fi, 4, images_path)
            labels_magic, num_labels = _read_header(fl, 2, labels_path)

            classes = labels_magic - _LABELS_MAGIC_BASE
            if classes < 1 or rows < 1 or cols < 1 or num_images < 0:
                raise IOFailure(images_path, f"malformed header (rows={rows}, cols={cols}, classes={classes})")
            if num_labels < num_images:
                raise IOFailure(labels_path, f"{num_labels} labels for {num_images} images")

            count = num_images if max_images < 0 else min(max_images, num_images)
            pixels = np.frombuffer(_read_exact(fi, count * rows * cols, images_path), dtype=np.uint8)
            labels = np.frombuffer(_read_exact(fl, count, labels_path), dtype=np.uint8)
    except OSError as e:
        if isinstance(e, IOFailure):
            raise
        raise IOFailure(getattr(e, "filename", None) or images_path, str(e)) from e

    if count and int(labels.max()) >= classes:
        raise IOFailure(labels_path, f"label {int(labels.max())} out of range for {classes} classes")

    images = pixels.reshape(count, rows, cols).astype(np.float32) / 255.0
    data = []
    for i in range(count):
        target = Tensor.zeros(Shape(1, classes))
        target[0, int(labels[i])] = 1.0
        data.append(Data(Tensor.from_array(images[i]), target))

    logger.info("Loaded %d samples (%dx%d, %d classes) from %s", count, cols, rows, classes, images_path)
    return data


def write_mnist(data: Sequence[Data], images_path: str, labels_path: str) -> None:
    """
    Write samples in the idx format read by :func:`read_mnist`.

    Inputs are stored as bytes (``round(value * 255)``); each target is
    stored as the index of its first element equal to 1. Nothing is written
    for an empty ``data``.
    """
    if not data:
        return
    rows, cols = data[0].input.height, data[0].input.width
    classes = data[0].output.length

    pixels = np.stack([d.input.data.reshape(rows, cols) for d in data])
    labels = np.array([int(np.argmax(d.output.values == 1.0)) for d in data], dtype=np.uint8)

    try:
        with open(images_path, "wb") as fi:
            fi.write(np.array([_IMAGES_MAGIC, len(data), rows, cols], dtype=">i4").tobytes())
            fi.write(np.clip(np.rint(pixels * 255.0), 0, 255).astype(np.uint8).tobytes())
        with open(labels_path, "wb") as fl:
            fl.write(np.array([_LABELS_MAGIC_BASE + classes, len(data)], dtype=">i4").tobytes())
            fl.write(labels.tobytes())
    except OSError as e:
        raise IOFailure(getattr(e, "filename", None) or images_path, str(e)) from e


def load_csv(path: str, outputs: int, outputs_one_hot_encoded: bool = False) -> List[Data]:
    """
    Load comma-separated samples, one per line.

    The leading columns are the input, the trailing ``outputs`` columns the
    target. With ``outputs_one_hot_encoded`` the last column is instead a
    single class index expanded into a one-hot target of ``outputs`` values.
    Inputs and targets are column vectors ``(1, n)``.

    Raises
    ------
    IOFailure
        If the file is missing or a value cannot be parsed.
    """
    try:
        table = np.loadtxt(path, delimiter=",", dtype=np.float32, ndmin=2)
    except (OSError, ValueError) as e:
        raise IOFailure(path, str(e)) from e

    target_columns = 1 if outputs_one_hot_encoded else outputs
    inputs = table.shape[1] - target_columns
    if inputs < 1:
        raise IOFailure(path, f"{table.shape[1]} columns cannot hold {target_columns} target columns and an input")

    data = []
    for row in table:
        input = Tensor(row[:inputs], Shape(1, inputs))
        target = Tensor.zeros(Shape(1, outputs))
        if outputs_one_hot_encoded:
            label = int(row[inputs])
            if not 0 <= label < outputs:
                raise IOFailure(path, f"class index {label} out of range for {outputs} outputs")
            target[0, label] = 1.0
        else:
            target.values[:] = row[inputs:]
        data.append(Data(input, target))
    return data
