import numpy as np
import pytest

from neuro.tensor import get_op_mode, set_op_mode

@pytest.fixture
def rng():
    return np.random.default_rng(0)

@pytest.fixture(params=["cpu", "multi_cpu"])
def op_mode(request):
    previous = get_op_mode()
    set_op_mode(request.param)
    yield request.param
    set_op_mode(previous)
