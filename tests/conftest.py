import numpy as np
import pytest

import stitch
from stitch.errors import BackendUnavailableError

BACKENDS = ["cpu", "device"]


def _backend_or_skip(name):
    try:
        return stitch.get_backend(name)
    except BackendUnavailableError as e:
        pytest.skip(str(e))


@pytest.fixture(params=BACKENDS)
def backend(request):
    """ Every available backend, by name. """
    return _backend_or_skip(request.param)


@pytest.fixture
def cpu_backend():
    return stitch.get_backend("cpu")


@pytest.fixture
def device_backend():
    return _backend_or_skip("device")


@pytest.fixture
def rng():
    return np.random.default_rng(0)
