"""
Exceptions raised by the neuro core.

All checks are eager: a failing check aborts the call that detected it and
nothing is retried. Floating-point overflow and NaN values are not detected
anywhere; they propagate silently through subsequent computation.
"""


class ShapeMismatchError(ValueError):
    """
    Raised when operand shapes are incompatible for the requested operation.

    Covers elementwise width/height/depth mismatches, non-broadcastable batch
    counts, matrix-multiply contraction mismatches, layer input shape
    mismatches and layer-count mismatches between networks.
    """

    def __init__(self, op: str, message: str) -> None:
        super().__init__(f"{op}: {message}")
        self.op = op


class ConfigurationError(ValueError):
    """
    Raised for an invalid hyperparameter or an invalid call order.

    Examples are a blend factor ``tau`` outside ``(0, 1]``, a batch size of 0,
    a layer initialized twice, or ``back_prop`` called before ``feed_forward``.
    """


class IOFailure(OSError):
    """
    Raised when parameter persistence or dataset decoding fails.

    Typical causes are a missing file, a malformed header or a truncated
    stream. The original exception, if any, is chained as ``__cause__``.
    """

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
