"""Logic for backend selection"""
import logging
import os

from .backend import Backend, CpuBackend
from .errors import BackendUnavailableError

logger = logging.getLogger(__name__)

try:
    from .backend.device import DeviceBackend
except ImportError:
    DeviceBackend = None

BACKEND = os.environ.get("STITCH_BACKEND", "cpu")
DEVICE = os.environ.get("STITCH_DEVICE") or None
READBACK = os.environ.get("STITCH_READBACK", "auto")

_instances = {}


def cpu():
    """Return the reference backend"""
    return CpuBackend()


def device():
    """Return the accelerated backend"""
    if DeviceBackend is None:
        raise BackendUnavailableError("device", "PyTorch is not installed")
    return DeviceBackend(device=DEVICE, readback=READBACK)


_FACTORIES = {
    "cpu": cpu,
    "device": device,
}


def all_backends():
    """return the names of all known backends"""
    return list(_FACTORIES)


def get_backend(name=None) -> Backend:
    """Return the process-wide backend called ``name`` (default from STITCH_BACKEND)."""
    name = BACKEND if name is None else name
    if name in _instances:
        return _instances[name]
    if name not in _FACTORIES:
        raise BackendUnavailableError(name, f"expected one of {all_backends()}")
    try:
        backend = _FACTORIES[name]()
    except BackendUnavailableError:
        raise
    except (RuntimeError, ValueError) as e:
        raise BackendUnavailableError(name, str(e)) from e
    logger.info("initialised backend %r: %r", name, backend)
    _instances[name] = backend
    return backend


def default_backend() -> Backend:
    return get_backend(BACKEND)


def init(*names):
    """Initialise the named backends (all by default) and return the ones that work."""
    ready = []
    for name in names or all_backends():
        try:
            get_backend(name)
        except BackendUnavailableError as e:
            logger.info("%s", e)
            continue
        ready.append(name)
    return ready


__all__ = ["cpu", "device", "all_backends", "get_backend", "default_backend", "init"]
